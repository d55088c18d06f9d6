"""Synthetic review histories for optimizer validation."""
import datetime
import math
import random
from dataclasses import replace
from typing import List, Optional, Sequence

from . import memory_model
from .core import CardScheduler
from ..schemas import CardStateDTO, CardStateEnum, FSRSParameters, Rating, ReviewLogEntry


def _draw_rating(recalled: bool, rng: random.Random) -> Rating:
    if not recalled:
        return Rating.Again
    roll = rng.random()
    if roll < 0.15:
        return Rating.Hard
    if roll < 0.9:
        return Rating.Good
    return Rating.Easy


def simulate_review_logs(
    weights: Sequence[float],
    n_cards: int,
    reviews_per_card: int,
    seed: int = 0,
    start: Optional[datetime.datetime] = None,
    request_retention: float = 0.9,
    user_id=None,
) -> List[ReviewLogEntry]:
    """
    Simulate a learner whose memory follows the given weights exactly.

    Each card is studied on its scheduled due date; recall is drawn with the
    true retrievability at that moment. Fuzz is off and the seeded generator
    drives every draw, so the same arguments give the same logs.
    """
    rng = random.Random(seed)
    start = start or datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)
    params = FSRSParameters(
        weights=tuple(float(w) for w in weights),
        request_retention=request_retention,
        enable_fuzz=False,
    )
    scheduler = CardScheduler(params)
    logs: List[ReviewLogEntry] = []

    for index in range(n_cards):
        created = start + datetime.timedelta(minutes=index)
        card = CardStateDTO.new(card_id=f"sim-{index:05d}", created_at=created)
        now = created
        for _ in range(reviews_per_card):
            if card.state == CardStateEnum.NEW:
                recalled = rng.random() < 0.7
            else:
                elapsed = (now - card.last_review).total_seconds() / 86400.0
                r = memory_model.retrievability(elapsed, card.stability, params.decay, params.factor)
                recalled = rng.random() < r
            card, log = scheduler.apply(card, _draw_rating(recalled, rng), now, rng=rng, user_id=user_id)
            logs.append(log)
            # Study again exactly when due, at least a minute later
            now = max(card.due, now + datetime.timedelta(minutes=1))

    return logs


def perturb_weights(weights: Sequence[float], scale: float, seed: int = 0) -> List[float]:
    """Multiply every weight by a random factor in [1 - scale, 1 + scale]."""
    rng = random.Random(seed)
    return [w * (1 + scale * (2 * rng.random() - 1)) if math.isfinite(w) else w for w in weights]
