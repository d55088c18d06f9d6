from __future__ import annotations

import datetime
import logging
import math
import random
from dataclasses import dataclass, replace
from typing import Optional, Tuple, Dict, Any

from flashstack_app.utils.time_utils import ensure_utc, days_between
from . import memory_model
from .resolver import validate_parameters
from ..exceptions import InvalidRatingError, InvalidStateError
from ..schemas import Rating, CardStateEnum, CardStateDTO, ReviewLogEntry, FSRSParameters

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 1440.0
FUZZ_MIN_INTERVAL_DAYS = 3
FUZZ_MIN_RESULT_DAYS = 2


@dataclass(frozen=True)
class _Transition:
    stability: float
    difficulty: float
    state: CardStateEnum
    step: int
    lapses: int
    scheduled_days: float


class CardScheduler:
    """
    FSRS card state machine.
    Pure Logic Layer: No Database, No Flask Context.

    New -> Learning -> Review, Review -> Relearning -> Review on a lapse.
    Every call returns a fresh state; the input state is never modified, and
    invalid input is rejected before anything is computed.
    """

    def __init__(self, params: FSRSParameters):
        self.params = validate_parameters(params)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_rating(rating) -> Rating:
        if isinstance(rating, bool) or not isinstance(rating, int):
            raise InvalidRatingError(f"Rating must be an integer 1-4, got {rating!r}")
        if not Rating.Again <= rating <= Rating.Easy:
            raise InvalidRatingError(f"Rating must be 1-4, got {rating}")
        return Rating(rating)

    def _validate_state(self, card: CardStateDTO) -> CardStateEnum:
        try:
            state = CardStateEnum(card.state)
        except ValueError:
            raise InvalidStateError(f"Unknown card state {card.state!r}") from None

        if card.reps < 0 or card.lapses < 0:
            raise InvalidStateError("reps and lapses must not be negative")
        if card.step < 0:
            raise InvalidStateError(f"step must not be negative, got {card.step}")

        if state != CardStateEnum.NEW:
            if not (math.isfinite(card.stability) and card.stability > 0):
                raise InvalidStateError(
                    f"Stability must be positive for a {state.name} card, got {card.stability}"
                )
            if not (math.isfinite(card.difficulty)
                    and memory_model.MIN_DIFFICULTY <= card.difficulty <= memory_model.MAX_DIFFICULTY):
                raise InvalidStateError(f"Difficulty must be in [1, 10], got {card.difficulty}")

        if state == CardStateEnum.LEARNING and card.step >= len(self.params.learning_steps):
            raise InvalidStateError(
                f"Learning step {card.step} is out of range for {len(self.params.learning_steps)} step(s)"
            )
        if state == CardStateEnum.RELEARNING and card.step >= len(self.params.relearning_steps):
            raise InvalidStateError(
                f"Relearning step {card.step} is out of range for {len(self.params.relearning_steps)} step(s)"
            )
        return state

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _step_days(self, steps, index: int) -> float:
        return steps[index] / MINUTES_PER_DAY

    def _review_interval(self, stability: float) -> int:
        p = self.params
        return memory_model.next_interval(
            stability, p.request_retention, p.maximum_interval, p.decay, p.factor
        )

    def _graduation_days(self, days: float) -> float:
        return min(float(days), float(self.params.maximum_interval))

    def _from_new(self, card: CardStateDTO, rating: Rating) -> _Transition:
        w = self.params.weights
        steps = self.params.learning_steps
        stability = memory_model.initial_stability(rating, w)
        difficulty = memory_model.initial_difficulty(rating, w)

        if rating == Rating.Easy:
            return _Transition(stability, difficulty, CardStateEnum.REVIEW, 0, card.lapses,
                               self._graduation_days(self.params.easy_interval))

        step = 1 if rating == Rating.Good else 0
        if step >= len(steps):
            return _Transition(stability, difficulty, CardStateEnum.REVIEW, 0, card.lapses,
                               self._graduation_days(self.params.graduating_interval))
        return _Transition(stability, difficulty, CardStateEnum.LEARNING, step, card.lapses,
                           self._step_days(steps, step))

    def _from_learning(self, card: CardStateDTO, rating: Rating, elapsed_days: float,
                       relearning: bool) -> _Transition:
        p = self.params
        steps = p.relearning_steps if relearning else p.learning_steps
        current = CardStateEnum.RELEARNING if relearning else CardStateEnum.LEARNING
        stability, difficulty = card.stability, card.difficulty

        if rating == Rating.Again:
            r = memory_model.retrievability(elapsed_days, stability, p.decay, p.factor)
            stability = memory_model.next_stability_failure(stability, difficulty, r, p.weights)
            return _Transition(stability, difficulty, current, 0, card.lapses, self._step_days(steps, 0))

        if p.enable_short_term:
            stability = memory_model.short_term_stability(stability, rating, p.weights)

        if rating == Rating.Hard:
            return _Transition(stability, difficulty, current, card.step, card.lapses,
                               self._step_days(steps, card.step))

        if rating == Rating.Good:
            step = card.step + 1
            if step < len(steps):
                return _Transition(stability, difficulty, current, step, card.lapses,
                                   self._step_days(steps, step))

        # Graduation: Good past the last step, or Easy
        if relearning:
            days = float(self._review_interval(stability))
        elif rating == Rating.Easy:
            days = self._graduation_days(p.easy_interval)
        else:
            days = self._graduation_days(p.graduating_interval)
        return _Transition(stability, difficulty, CardStateEnum.REVIEW, 0, card.lapses, days)

    def _from_review(self, card: CardStateDTO, rating: Rating, elapsed_days: float) -> _Transition:
        p = self.params
        r = memory_model.retrievability(elapsed_days, card.stability, p.decay, p.factor)
        difficulty = memory_model.next_difficulty(card.difficulty, rating, p.weights)

        if rating == Rating.Again:
            stability = memory_model.next_stability_failure(card.stability, card.difficulty, r, p.weights)
            return _Transition(stability, difficulty, CardStateEnum.RELEARNING, 0, card.lapses + 1,
                               self._step_days(p.relearning_steps, 0))

        stability = memory_model.next_stability_success(card.stability, card.difficulty, r, rating, p.weights)
        return _Transition(stability, difficulty, CardStateEnum.REVIEW, 0, card.lapses,
                           float(self._review_interval(stability)))

    # ------------------------------------------------------------------
    # Fuzz
    # ------------------------------------------------------------------

    @staticmethod
    def _default_rng(card: CardStateDTO, now: datetime.datetime) -> random.Random:
        # str seeds are hashed with SHA-512, so this is stable across processes
        return random.Random(f"{card.card_id}:{card.reps}:{now.isoformat()}")

    def fuzz_range(self, interval_days: float) -> Tuple[float, float]:
        p = self.params
        if not p.enable_fuzz or interval_days < FUZZ_MIN_INTERVAL_DAYS:
            return interval_days, interval_days
        fuzz_days = max(1, int(round(interval_days * p.fuzz_factor)))
        low = max(FUZZ_MIN_RESULT_DAYS, interval_days - fuzz_days)
        high = min(interval_days + fuzz_days, p.maximum_interval)
        return low, high

    def _apply_fuzz(self, interval_days: float, rng: random.Random) -> float:
        low, high = self.fuzz_range(interval_days)
        if high <= low:
            return interval_days
        return float(max(1, min(int(round(low + rng.random() * (high - low))), self.params.maximum_interval)))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def apply(
        self,
        card_state: CardStateDTO,
        rating: int,
        now: datetime.datetime,
        rng: Optional[random.Random] = None,
        user_id: Any = None,
        duration_ms: int = 0,
    ) -> Tuple[CardStateDTO, ReviewLogEntry]:
        """
        Process a review and return the card's next state plus the log entry
        describing the transition.
        """
        grade = self._validate_rating(rating)
        state = self._validate_state(card_state)
        now = ensure_utc(now)
        elapsed_days = days_between(card_state.last_review, now)

        if state == CardStateEnum.NEW:
            transition = self._from_new(card_state, grade)
        elif state == CardStateEnum.REVIEW:
            transition = self._from_review(card_state, grade, elapsed_days)
        else:
            transition = self._from_learning(
                card_state, grade, elapsed_days, relearning=state == CardStateEnum.RELEARNING
            )

        scheduled_days = transition.scheduled_days
        if transition.state == CardStateEnum.REVIEW:
            scheduled_days = self._apply_fuzz(scheduled_days, rng or self._default_rng(card_state, now))

        next_state = replace(
            card_state,
            stability=transition.stability,
            difficulty=transition.difficulty,
            state=transition.state,
            step=transition.step,
            reps=card_state.reps + 1,
            lapses=transition.lapses,
            last_review=now,
            due=now + datetime.timedelta(days=scheduled_days),
            elapsed_days=elapsed_days,
            scheduled_days=scheduled_days,
        )

        log = ReviewLogEntry(
            card_id=card_state.card_id,
            user_id=user_id,
            deck_id=card_state.deck_id,
            rating=int(grade),
            duration_ms=duration_ms,
            reviewed_at=now,
            stability_before=card_state.stability,
            stability_after=next_state.stability,
            difficulty_before=card_state.difficulty,
            difficulty_after=next_state.difficulty,
            state_before=int(state),
            state_after=int(next_state.state),
            elapsed_days=elapsed_days,
            scheduled_days=scheduled_days,
        )
        logger.debug(
            "[FSRS ENGINE] card=%s %s -> %s rating=%d S=%.4f D=%.4f ivl=%.4fd",
            card_state.card_id, state.name, CardStateEnum(next_state.state).name, grade,
            next_state.stability, next_state.difficulty, scheduled_days,
        )
        return next_state, log

    def preview(self, card_state: CardStateDTO, now: datetime.datetime) -> Dict[int, float]:
        """Scheduled days for each of the 4 ratings, without fuzz and without updating state."""
        plain = CardScheduler(replace(self.params, enable_fuzz=False))
        return {
            int(rating): plain.apply(card_state, rating, now)[0].scheduled_days
            for rating in Rating
        }

    def current_retrievability(self, card_state: CardStateDTO, now: datetime.datetime) -> float:
        """Calculate current retention probability."""
        # A NEW card always has 0 retrievability until first review
        if card_state.state == CardStateEnum.NEW or card_state.stability <= 0:
            return 0.0
        if card_state.last_review is None:
            return 1.0
        return memory_model.retrievability(
            days_between(card_state.last_review, now), card_state.stability,
            self.params.decay, self.params.factor,
        )


def apply(
    card_state: CardStateDTO,
    rating: int,
    now: datetime.datetime,
    params: FSRSParameters,
    rng: Optional[random.Random] = None,
    **kwargs,
) -> Tuple[CardStateDTO, ReviewLogEntry]:
    """Functional shortcut for CardScheduler(params).apply(...)."""
    return CardScheduler(params).apply(card_state, rating, now, rng=rng, **kwargs)


def format_interval(days: float) -> str:
    if days < 1.0:
        return f"{max(1, round(days * MINUTES_PER_DAY))}m"
    if days >= 30.0:
        return f"{round(days / 30.0, 1)}mo"
    return f"{round(days, 1)}d"
