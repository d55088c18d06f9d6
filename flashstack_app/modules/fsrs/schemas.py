# File: flashstack_app/modules/fsrs/schemas.py
import datetime
import math
from dataclasses import dataclass, field, fields, asdict
from enum import IntEnum
from typing import Optional, Dict, Any, List, Tuple, Mapping

from .config import FSRSDefaultConfig, DEFAULT_PARAMETERS, WEIGHT_COUNT, DECAY, FACTOR


# Standard FSRS Rating (1-4)
class Rating(IntEnum):
    Again = 1
    Hard = 2
    Good = 3
    Easy = 4


# FSRS Math State Constants
class CardStateEnum(IntEnum):
    NEW = 0
    LEARNING = 1
    REVIEW = 2
    RELEARNING = 3


NEUTRAL_DIFFICULTY = 5.0


@dataclass(frozen=True)
class CardStateDTO:
    """Memory state of one card, as read from and written back to storage."""
    card_id: Optional[str] = None
    stability: float = 0.0      # FSRS S (days)
    difficulty: float = NEUTRAL_DIFFICULTY  # FSRS D (1-10)
    due: Optional[datetime.datetime] = None
    last_review: Optional[datetime.datetime] = None
    reps: int = 0
    lapses: int = 0
    state: int = CardStateEnum.NEW
    step: int = 0
    elapsed_days: float = 0.0
    scheduled_days: float = 0.0 # Interval in days
    deck_id: Optional[str] = None
    created_at: Optional[datetime.datetime] = None

    @classmethod
    def new(cls, card_id: str, created_at: datetime.datetime, deck_id: Optional[str] = None) -> 'CardStateDTO':
        return cls(card_id=card_id, due=created_at, created_at=created_at, deck_id=deck_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'card_id': self.card_id,
            'deck_id': self.deck_id,
            'stability': self.stability,
            'difficulty': self.difficulty,
            'state': CardStateEnum(self.state).name.lower(),
            'step': self.step,
            'due': self.due.isoformat() if self.due else None,
            'last_review': self.last_review.isoformat() if self.last_review else None,
            'reps': self.reps,
            'lapses': self.lapses,
            'elapsed_days': self.elapsed_days,
            'scheduled_days': self.scheduled_days,
        }


@dataclass(frozen=True)
class ReviewLogEntry:
    """Append-only record of a single review transition."""
    card_id: Optional[str]
    user_id: Optional[Any]
    rating: int
    reviewed_at: datetime.datetime
    stability_before: float
    stability_after: float
    difficulty_before: float
    difficulty_after: float
    duration_ms: int = 0
    deck_id: Optional[str] = None
    state_before: Optional[int] = None
    state_after: Optional[int] = None
    elapsed_days: Optional[float] = None
    scheduled_days: Optional[float] = None

    @property
    def is_success(self) -> bool:
        return self.rating > Rating.Again

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['reviewed_at'] = self.reviewed_at.isoformat()
        return data


@dataclass(frozen=True)
class FSRSParameters:
    """
    Fully resolved scheduler configuration.
    Immutable: build one with ParameterResolver and pass it around.
    """
    weights: Tuple[float, ...] = tuple(DEFAULT_PARAMETERS)
    request_retention: float = FSRSDefaultConfig.FSRS_DESIRED_RETENTION
    maximum_interval: int = FSRSDefaultConfig.FSRS_MAX_INTERVAL
    learning_steps: Tuple[float, ...] = tuple(FSRSDefaultConfig.FSRS_LEARNING_STEPS)
    relearning_steps: Tuple[float, ...] = tuple(FSRSDefaultConfig.FSRS_RELEARNING_STEPS)
    graduating_interval: float = FSRSDefaultConfig.FSRS_GRADUATING_INTERVAL
    easy_interval: float = FSRSDefaultConfig.FSRS_EASY_INTERVAL
    enable_fuzz: bool = FSRSDefaultConfig.FSRS_ENABLE_FUZZ
    fuzz_factor: float = FSRSDefaultConfig.FSRS_FUZZ_FACTOR
    enable_short_term: bool = FSRSDefaultConfig.FSRS_ENABLE_SHORT_TERM
    decay: float = DECAY
    factor: float = FACTOR

    def violations(self) -> List[str]:
        """Return a human-readable list of broken invariants (empty when valid)."""
        problems = []
        if len(self.weights) != WEIGHT_COUNT:
            problems.append(f"weights must have {WEIGHT_COUNT} elements, got {len(self.weights)}")
        elif not all(_is_number(w) and math.isfinite(w) for w in self.weights):
            problems.append("weights must be finite numbers")
        if not _is_number(self.request_retention) or not 0.0 < self.request_retention < 1.0:
            problems.append(f"request_retention must be in (0, 1), got {self.request_retention}")
        if not isinstance(self.maximum_interval, int) or isinstance(self.maximum_interval, bool) \
                or self.maximum_interval < 1:
            problems.append(f"maximum_interval must be a positive integer, got {self.maximum_interval}")
        for name in ('learning_steps', 'relearning_steps'):
            steps = getattr(self, name)
            if not steps:
                problems.append(f"{name} must not be empty")
            elif not all(_is_number(s) and math.isfinite(s) and s > 0 for s in steps):
                problems.append(f"{name} must contain positive minute durations")
        for name in ('graduating_interval', 'easy_interval'):
            value = getattr(self, name)
            if not _is_number(value) or not math.isfinite(value) or value <= 0:
                problems.append(f"{name} must be positive, got {value}")
        if not _is_number(self.fuzz_factor) or not 0.0 <= self.fuzz_factor < 1.0:
            problems.append(f"fuzz_factor must be in [0, 1), got {self.fuzz_factor}")
        for name in ('enable_fuzz', 'enable_short_term'):
            value = getattr(self, name)
            if not isinstance(value, bool):
                problems.append(f"{name} must be true or false, got {value!r}")
        if not _is_number(self.decay) or not self.decay < 0:
            problems.append(f"decay must be negative, got {self.decay}")
        if not _is_number(self.factor) or not self.factor > 0:
            problems.append(f"factor must be positive, got {self.factor}")
        return problems

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in ('weights', 'learning_steps', 'relearning_steps'):
            data[name] = list(data[name])
        return data


@dataclass
class ParameterOverrideLayer:
    """A partial FSRSParameters: None means 'not set at this layer'."""
    weights: Optional[Tuple[float, ...]] = None
    request_retention: Optional[float] = None
    maximum_interval: Optional[int] = None
    learning_steps: Optional[Tuple[float, ...]] = None
    relearning_steps: Optional[Tuple[float, ...]] = None
    graduating_interval: Optional[float] = None
    easy_interval: Optional[float] = None
    enable_fuzz: Optional[bool] = None
    fuzz_factor: Optional[float] = None
    enable_short_term: Optional[bool] = None
    decay: Optional[float] = None
    factor: Optional[float] = None

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> 'ParameterOverrideLayer':
        """Build a layer from a dict, ignoring unknown keys."""
        if not data:
            return cls()
        known = set(cls.field_names())
        return cls(**{key: value for key, value in data.items() if key in known})

    def to_mapping(self) -> Dict[str, Any]:
        """Only the fields set at this layer."""
        data = {}
        for name in self.field_names():
            value = getattr(self, name)
            if value is None:
                continue
            data[name] = list(value) if isinstance(value, (tuple, list)) else value
        return data

    def is_empty(self) -> bool:
        return not self.to_mapping()


@dataclass(frozen=True)
class OptimizationResult:
    """Immutable record of one optimizer run."""
    weights_before: Tuple[float, ...]
    weights_after: Tuple[float, ...]
    loss_before: float
    loss_after: float
    improvement_percent: float
    rmse: float
    sample_size: int
    iterations: int
    created_at: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'weights_before': list(self.weights_before),
            'weights_after': list(self.weights_after),
            'loss_before': self.loss_before,
            'loss_after': self.loss_after,
            'improvement_percent': self.improvement_percent,
            'rmse': self.rmse,
            'sample_size': self.sample_size,
            'iterations': self.iterations,
            'created_at': self.created_at.isoformat(),
        }


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
