from datetime import datetime, timezone
from flashstack_app.extensions import db
from flashstack_app.utils.time_utils import ensure_utc
from .schemas import CardStateDTO, CardStateEnum, ReviewLogEntry, ParameterOverrideLayer, OptimizationResult


def _now():
    return datetime.now(timezone.utc)


class CardMemoryState(db.Model):
    """
    FSRS memory state of one card.
    `version` is the optimistic-concurrency token: every write must name the
    version it read, and bumps it.
    """
    __tablename__ = 'card_memory_states'

    card_id = db.Column(db.String(64), primary_key=True)
    user_id = db.Column(db.String(64), nullable=True, index=True)
    deck_id = db.Column(db.String(64), nullable=True, index=True)

    # FSRS State
    stability = db.Column(db.Float, nullable=False, default=0.0)
    difficulty = db.Column(db.Float, nullable=False, default=5.0)
    state = db.Column(db.Integer, nullable=False, default=CardStateEnum.NEW)  # 0=New, 1=Learning, 2=Review, 3=Relearning
    step = db.Column(db.Integer, nullable=False, default=0)

    # Scheduling
    due = db.Column(db.DateTime(timezone=True), index=True)
    last_review = db.Column(db.DateTime(timezone=True))
    elapsed_days = db.Column(db.Float, nullable=False, default=0.0)
    scheduled_days = db.Column(db.Float, nullable=False, default=0.0)

    # Metrics
    reps = db.Column(db.Integer, nullable=False, default=0)
    lapses = db.Column(db.Integer, nullable=False, default=0)

    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    def to_dto(self) -> CardStateDTO:
        return CardStateDTO(
            card_id=self.card_id,
            deck_id=self.deck_id,
            stability=self.stability or 0.0,
            difficulty=self.difficulty if self.difficulty is not None else 5.0,
            due=ensure_utc(self.due),
            last_review=ensure_utc(self.last_review),
            reps=self.reps or 0,
            lapses=self.lapses or 0,
            state=CardStateEnum(self.state or CardStateEnum.NEW),
            step=self.step or 0,
            elapsed_days=self.elapsed_days or 0.0,
            scheduled_days=self.scheduled_days or 0.0,
            created_at=ensure_utc(self.created_at),
        )

    def to_dict(self):
        data = self.to_dto().to_dict()
        data['user_id'] = self.user_id
        data['version'] = self.version
        return data


class ReviewLog(db.Model):
    """Append-only review history; the optimizer's training data."""
    __tablename__ = 'review_logs'

    log_id = db.Column(db.Integer, primary_key=True)
    card_id = db.Column(db.String(64), nullable=False, index=True)
    user_id = db.Column(db.String(64), nullable=True, index=True)
    deck_id = db.Column(db.String(64), nullable=True, index=True)

    rating = db.Column(db.Integer, nullable=False)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    duration_ms = db.Column(db.Integer, default=0)

    stability_before = db.Column(db.Float, nullable=False)
    stability_after = db.Column(db.Float, nullable=False)
    difficulty_before = db.Column(db.Float, nullable=False)
    difficulty_after = db.Column(db.Float, nullable=False)
    state_before = db.Column(db.Integer)
    state_after = db.Column(db.Integer)
    elapsed_days = db.Column(db.Float)
    scheduled_days = db.Column(db.Float)

    @classmethod
    def from_entry(cls, entry: ReviewLogEntry) -> 'ReviewLog':
        return cls(
            card_id=entry.card_id,
            user_id=None if entry.user_id is None else str(entry.user_id),
            deck_id=entry.deck_id,
            rating=entry.rating,
            reviewed_at=entry.reviewed_at,
            duration_ms=entry.duration_ms,
            stability_before=entry.stability_before,
            stability_after=entry.stability_after,
            difficulty_before=entry.difficulty_before,
            difficulty_after=entry.difficulty_after,
            state_before=entry.state_before,
            state_after=entry.state_after,
            elapsed_days=entry.elapsed_days,
            scheduled_days=entry.scheduled_days,
        )

    def to_entry(self) -> ReviewLogEntry:
        return ReviewLogEntry(
            card_id=self.card_id,
            user_id=self.user_id,
            deck_id=self.deck_id,
            rating=self.rating,
            reviewed_at=ensure_utc(self.reviewed_at),
            duration_ms=self.duration_ms or 0,
            stability_before=self.stability_before,
            stability_after=self.stability_after,
            difficulty_before=self.difficulty_before,
            difficulty_after=self.difficulty_after,
            state_before=self.state_before,
            state_after=self.state_after,
            elapsed_days=self.elapsed_days,
            scheduled_days=self.scheduled_days,
        )


class UserFSRSParams(db.Model):
    """Per-user override layer (typically optimized weights)."""
    __tablename__ = 'user_fsrs_params'

    user_id = db.Column(db.String(64), primary_key=True)
    params = db.Column(db.JSON, nullable=False, default=dict)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    def to_layer(self) -> ParameterOverrideLayer:
        return ParameterOverrideLayer.from_mapping(self.params or {})


class DeckFSRSParams(db.Model):
    """Per-deck override layer; wins over the user layer field by field."""
    __tablename__ = 'deck_fsrs_params'

    deck_id = db.Column(db.String(64), primary_key=True)
    user_id = db.Column(db.String(64), nullable=True, index=True)
    params = db.Column(db.JSON, nullable=False, default=dict)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    def to_layer(self) -> ParameterOverrideLayer:
        return ParameterOverrideLayer.from_mapping(self.params or {})


class OptimizationHistory(db.Model):
    __tablename__ = 'fsrs_optimization_history'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    deck_id = db.Column(db.String(64), nullable=True)
    weights_before = db.Column(db.JSON, nullable=False)
    weights_after = db.Column(db.JSON, nullable=False)
    loss_before = db.Column(db.Float, nullable=False)
    loss_after = db.Column(db.Float, nullable=False)
    improvement_percent = db.Column(db.Float, nullable=False)
    rmse = db.Column(db.Float, nullable=False)
    sample_size = db.Column(db.Integer, nullable=False)
    iterations = db.Column(db.Integer, nullable=False)
    applied = db.Column(db.Boolean, nullable=False, default=False)
    # Full-log loss of the built-in weights vs the fitted ones
    default_loss = db.Column(db.Float, nullable=True)
    fitted_loss = db.Column(db.Float, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_now, index=True)

    @classmethod
    def from_result(cls, user_id, deck_id, result: OptimizationResult, applied: bool) -> 'OptimizationHistory':
        return cls(
            user_id=str(user_id),
            deck_id=deck_id,
            weights_before=list(result.weights_before),
            weights_after=list(result.weights_after),
            loss_before=result.loss_before,
            loss_after=result.loss_after,
            improvement_percent=result.improvement_percent,
            rmse=result.rmse,
            sample_size=result.sample_size,
            iterations=result.iterations,
            applied=applied,
            created_at=result.created_at,
        )

    @property
    def improvement_over_default(self):
        if not self.default_loss or self.fitted_loss is None:
            return None
        return (self.default_loss - self.fitted_loss) / self.default_loss * 100.0

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'deck_id': self.deck_id,
            'weights_before': self.weights_before,
            'weights_after': self.weights_after,
            'loss_before': self.loss_before,
            'loss_after': self.loss_after,
            'improvement_percent': self.improvement_percent,
            'rmse': self.rmse,
            'sample_size': self.sample_size,
            'iterations': self.iterations,
            'applied': self.applied,
            'default_loss': self.default_loss,
            'fitted_loss': self.fitted_loss,
            'improvement_over_default': self.improvement_over_default,
            'created_at': ensure_utc(self.created_at).isoformat() if self.created_at else None,
        }
