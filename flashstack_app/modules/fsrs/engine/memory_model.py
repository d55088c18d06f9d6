"""
FSRS-5 memory model.

Pure functions over the DSR model:
- D (Difficulty): 1-10, inherent difficulty of the card
- S (Stability): days for retrievability to decay from 100% to 90%
- R (Retrievability): probability of recall after t days

No state, no I/O. Every result is checked for finiteness; a NaN or infinity
raises NumericDivergenceError instead of leaking into a card state.
"""
from __future__ import annotations

import functools
import math
from typing import Sequence

from ..config import DECAY, FACTOR
from ..exceptions import InvalidRatingError, InvalidStateError, NumericDivergenceError
from ..schemas import Rating

MIN_DIFFICULTY = 1.0
MAX_DIFFICULTY = 10.0
STABILITY_MIN = 0.01


def _finite(value: float, name: str) -> float:
    if not math.isfinite(value):
        raise NumericDivergenceError(f"{name} is not finite ({value})")
    return value


def _numeric(func):
    """Turn float overflow / math domain errors into NumericDivergenceError."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (OverflowError, ZeroDivisionError) as e:
            raise NumericDivergenceError(f"{func.__name__}: {e}") from e
        except ValueError as e:
            # math.pow / math.exp domain errors
            raise NumericDivergenceError(f"{func.__name__}: {e}") from e
    return wrapper


def _rating(rating) -> Rating:
    if isinstance(rating, bool):
        raise InvalidRatingError(f"Rating must be 1-4, got {rating!r}")
    try:
        return Rating(rating)
    except ValueError:
        raise InvalidRatingError(f"Rating must be 1-4, got {rating!r}") from None


def clamp_difficulty(difficulty: float) -> float:
    return max(MIN_DIFFICULTY, min(MAX_DIFFICULTY, _finite(difficulty, "difficulty")))


@_numeric
def retrievability(elapsed_days: float, stability: float, decay: float = DECAY, factor: float = FACTOR) -> float:
    """
    Power-law forgetting curve: R(t, S) = (1 + F * t / S) ^ C

    Returns exactly 1.0 at t = 0 and decreases towards 0 as t grows.
    """
    if not stability > 0:
        raise InvalidStateError(f"Stability must be positive, got {stability}")
    if elapsed_days < 0:
        raise InvalidStateError(f"Elapsed days must not be negative, got {elapsed_days}")
    if elapsed_days == 0:
        return 1.0
    return _finite(math.pow(1 + factor * elapsed_days / stability, decay), "retrievability")


@_numeric
def next_interval(
    stability: float,
    request_retention: float,
    maximum_interval: int,
    decay: float = DECAY,
    factor: float = FACTOR,
) -> int:
    """
    Days until retrievability falls to request_retention.
    Solving R(t) = r for t: I = S / F * (r ^ (1 / C) - 1)
    """
    if not stability > 0:
        raise InvalidStateError(f"Stability must be positive, got {stability}")
    interval = _finite(stability / factor * (math.pow(request_retention, 1 / decay) - 1), "interval")
    return max(1, min(int(round(interval)), maximum_interval))


def initial_stability(rating, weights: Sequence[float]) -> float:
    """S0(G) = w[G-1]"""
    grade = _rating(rating)
    return max(STABILITY_MIN, _finite(weights[grade - 1], "initial stability"))


@_numeric
def initial_difficulty(rating, weights: Sequence[float]) -> float:
    """D0(G) = w4 - e^(w5 * (G - 1)) + 1, clamped to [1, 10]"""
    grade = _rating(rating)
    return clamp_difficulty(weights[4] - math.exp(weights[5] * (grade - 1)) + 1)


@_numeric
def next_difficulty(difficulty: float, rating, weights: Sequence[float]) -> float:
    """
    Linear step keyed by rating (Easy lowers, Again raises), then mean
    reversion towards D0(Good):
        D' = D - w6 * (G - 3)
        D'' = w7 * D0(3) + (1 - w7) * D'
    """
    grade = _rating(rating)
    stepped = difficulty - weights[6] * (grade - 3)
    reverted = weights[7] * initial_difficulty(Rating.Good, weights) + (1 - weights[7]) * stepped
    return clamp_difficulty(reverted)


@_numeric
def next_stability_success(
    stability: float,
    difficulty: float,
    retrievability_at_review: float,
    rating,
    weights: Sequence[float],
) -> float:
    """
    Stability after a successful recall (Hard/Good/Easy):
        SInc = e^w8 * (11 - D) * S^(-w9) * (e^(w10 * (1 - R)) - 1) * hard_penalty * easy_bonus
        S' = S * (1 + SInc)
    A recall never lowers stability.
    """
    grade = _rating(rating)
    if grade == Rating.Again:
        raise InvalidRatingError("Again is a lapse; use next_stability_failure")
    if not stability > 0:
        raise InvalidStateError(f"Stability must be positive, got {stability}")
    hard_penalty = weights[15] if grade == Rating.Hard else 1.0
    easy_bonus = weights[16] if grade == Rating.Easy else 1.0
    increase = (
        math.exp(weights[8])
        * (11 - difficulty)
        * math.pow(stability, -weights[9])
        * (math.exp(weights[10] * (1 - retrievability_at_review)) - 1)
        * hard_penalty
        * easy_bonus
    )
    new_stability = _finite(stability * (1 + increase), "stability")
    return max(stability, new_stability)


@_numeric
def next_stability_failure(
    stability: float,
    difficulty: float,
    retrievability_at_review: float,
    weights: Sequence[float],
) -> float:
    """
    Stability after a lapse:
        S' = w11 * D^(-w12) * ((S + 1)^w13 - 1) * e^(w14 * (1 - R))
    Never above the pre-lapse stability, otherwise never below STABILITY_MIN.
    """
    if not stability > 0:
        raise InvalidStateError(f"Stability must be positive, got {stability}")
    new_stability = _finite(
        weights[11]
        * math.pow(difficulty, -weights[12])
        * (math.pow(stability + 1, weights[13]) - 1)
        * math.exp(weights[14] * (1 - retrievability_at_review)),
        "stability",
    )
    return min(stability, max(STABILITY_MIN, new_stability))


@_numeric
def short_term_stability(stability: float, rating, weights: Sequence[float]) -> float:
    """Same-day review: S' = S * e^(w17 * (G - 3 + w18))"""
    grade = _rating(rating)
    if not stability > 0:
        raise InvalidStateError(f"Stability must be positive, got {stability}")
    new_stability = _finite(stability * math.exp(weights[17] * (grade - 3 + weights[18])), "stability")
    return max(STABILITY_MIN, new_stability)
