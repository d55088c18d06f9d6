"""
Storage collaborator for the FSRS engine.

Repositories add and flush; the calling service owns the transaction.
"""
from __future__ import annotations

import datetime
import logging
from typing import List, Optional

from sqlalchemy import func

from flashstack_app.extensions import db
from ..exceptions import CardNotFoundError, StaleCardStateError
from ..models import CardMemoryState, ReviewLog, UserFSRSParams, DeckFSRSParams, OptimizationHistory
from ..schemas import CardStateDTO, ReviewLogEntry, ParameterOverrideLayer, OptimizationResult

logger = logging.getLogger(__name__)


class CardStateRepository:

    @staticmethod
    def find(card_id: str) -> Optional[CardMemoryState]:
        return db.session.get(CardMemoryState, card_id)

    @staticmethod
    def get(card_id: str) -> CardMemoryState:
        row = CardStateRepository.find(card_id)
        if row is None:
            raise CardNotFoundError(f"Card {card_id} not found", details={'card_id': card_id})
        return row

    @staticmethod
    def create(state: CardStateDTO, user_id=None) -> CardMemoryState:
        row = CardMemoryState(
            card_id=state.card_id,
            user_id=None if user_id is None else str(user_id),
            deck_id=state.deck_id,
            stability=state.stability,
            difficulty=state.difficulty,
            state=int(state.state),
            step=state.step,
            due=state.due,
            last_review=state.last_review,
            reps=state.reps,
            lapses=state.lapses,
            elapsed_days=state.elapsed_days,
            scheduled_days=state.scheduled_days,
            version=1,
            created_at=state.created_at,
        )
        db.session.add(row)
        db.session.flush()
        return row

    @staticmethod
    def save(state: CardStateDTO, expected_version: int) -> int:
        """
        Conditional write: only succeeds when the stored version still equals
        expected_version. Returns the new version.
        """
        new_version = expected_version + 1
        updated = (
            db.session.query(CardMemoryState)
            .filter(CardMemoryState.card_id == state.card_id, CardMemoryState.version == expected_version)
            .update({
                CardMemoryState.stability: state.stability,
                CardMemoryState.difficulty: state.difficulty,
                CardMemoryState.state: int(state.state),
                CardMemoryState.step: state.step,
                CardMemoryState.due: state.due,
                CardMemoryState.last_review: state.last_review,
                CardMemoryState.reps: state.reps,
                CardMemoryState.lapses: state.lapses,
                CardMemoryState.elapsed_days: state.elapsed_days,
                CardMemoryState.scheduled_days: state.scheduled_days,
                CardMemoryState.version: new_version,
                CardMemoryState.updated_at: datetime.datetime.now(datetime.timezone.utc),
            })
        )
        if updated != 1:
            logger.warning("Stale write rejected for card %s (expected version %s)", state.card_id, expected_version)
            raise StaleCardStateError(
                f"Card {state.card_id} was modified concurrently",
                details={'card_id': state.card_id, 'expected_version': expected_version},
            )
        return new_version

    @staticmethod
    def list_for_deck(deck_id: str) -> List[CardStateDTO]:
        rows = CardMemoryState.query.filter_by(deck_id=deck_id).all()
        return [row.to_dto() for row in rows]


class ReviewLogRepository:

    @staticmethod
    def append(entry: ReviewLogEntry) -> ReviewLog:
        row = ReviewLog.from_entry(entry)
        db.session.add(row)
        return row

    @staticmethod
    def list_for_user(user_id, deck_id: Optional[str] = None) -> List[ReviewLogEntry]:
        query = ReviewLog.query.filter_by(user_id=str(user_id))
        if deck_id is not None:
            query = query.filter_by(deck_id=deck_id)
        rows = query.order_by(ReviewLog.card_id, ReviewLog.reviewed_at, ReviewLog.log_id).all()
        return [row.to_entry() for row in rows]

    @staticmethod
    def count_for_user(user_id, since: Optional[datetime.datetime] = None) -> int:
        query = db.session.query(func.count(ReviewLog.log_id)).filter(ReviewLog.user_id == str(user_id))
        if since is not None:
            query = query.filter(ReviewLog.reviewed_at > since)
        return query.scalar() or 0

    @staticmethod
    def user_ids() -> List[str]:
        rows = db.session.query(ReviewLog.user_id).filter(ReviewLog.user_id.isnot(None)).distinct().all()
        return sorted(row[0] for row in rows)


class ParameterLayerRepository:

    @staticmethod
    def get_user_layer(user_id) -> Optional[ParameterOverrideLayer]:
        row = db.session.get(UserFSRSParams, str(user_id))
        return row.to_layer() if row else None

    @staticmethod
    def get_deck_layer(deck_id: str) -> Optional[ParameterOverrideLayer]:
        row = db.session.get(DeckFSRSParams, deck_id)
        return row.to_layer() if row else None

    @staticmethod
    def save_user_layer(user_id, layer: ParameterOverrideLayer) -> UserFSRSParams:
        row = db.session.get(UserFSRSParams, str(user_id))
        if row is None:
            row = UserFSRSParams(user_id=str(user_id))
            db.session.add(row)
        row.params = layer.to_mapping()
        return row

    @staticmethod
    def save_deck_layer(deck_id: str, layer: ParameterOverrideLayer, user_id=None) -> DeckFSRSParams:
        row = db.session.get(DeckFSRSParams, deck_id)
        if row is None:
            row = DeckFSRSParams(deck_id=deck_id)
            db.session.add(row)
        if user_id is not None:
            row.user_id = str(user_id)
        row.params = layer.to_mapping()
        return row

    @staticmethod
    def clear_user_layer(user_id) -> bool:
        row = db.session.get(UserFSRSParams, str(user_id))
        if row is None:
            return False
        db.session.delete(row)
        return True

    @staticmethod
    def clear_deck_layer(deck_id: str) -> bool:
        row = db.session.get(DeckFSRSParams, deck_id)
        if row is None:
            return False
        db.session.delete(row)
        return True

    @staticmethod
    def record_optimization(user_id, deck_id: Optional[str], result: OptimizationResult, applied: bool,
                            default_loss: Optional[float] = None,
                            fitted_loss: Optional[float] = None) -> OptimizationHistory:
        row = OptimizationHistory.from_result(user_id, deck_id, result, applied)
        row.default_loss = default_loss
        row.fitted_loss = fitted_loss
        db.session.add(row)
        return row

    @staticmethod
    def history(user_id, limit: int = 20) -> List[OptimizationHistory]:
        return (
            OptimizationHistory.query.filter_by(user_id=str(user_id))
            .order_by(OptimizationHistory.created_at.desc(), OptimizationHistory.id.desc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def last_optimization(user_id) -> Optional[OptimizationHistory]:
        rows = ParameterLayerRepository.history(user_id, limit=1)
        return rows[0] if rows else None
