"""
Review queue builder.

Builds a deterministic study queue from a snapshot of card states:
1. Due cards (any non-New state with due <= now), earliest due first
2. New cards, oldest first
"""
import datetime
import logging
from dataclasses import dataclass, field
from typing import Iterable, List

from flashstack_app.utils.time_utils import ensure_utc
from ..schemas import CardStateDTO, CardStateEnum

logger = logging.getLogger(__name__)

_FAR_FUTURE = datetime.datetime.max.replace(tzinfo=datetime.timezone.utc)


@dataclass
class ReviewQueue:
    """Result of queue building."""

    due_ids: List[str] = field(default_factory=list)
    new_ids: List[str] = field(default_factory=list)

    @property
    def card_ids(self) -> List[str]:
        return self.due_ids + self.new_ids

    def __len__(self) -> int:
        return len(self.due_ids) + len(self.new_ids)

    def to_dict(self) -> dict:
        return {
            'card_ids': self.card_ids,
            'due_ids': self.due_ids,
            'new_ids': self.new_ids,
            'due_count': len(self.due_ids),
            'new_count': len(self.new_ids),
        }


def _is_new(card: CardStateDTO) -> bool:
    return card.state == CardStateEnum.NEW


def build_review_queue(
    cards: Iterable[CardStateDTO],
    now: datetime.datetime,
    max_due: int,
    max_new: int,
) -> ReviewQueue:
    """
    Args:
        cards: Every card state of the deck (the snapshot)
        now: Reference time
        max_due: Cap on due cards
        max_new: Cap on new cards

    Returns:
        ReviewQueue with due cards first, then new cards
    """
    if max_due < 0 or max_new < 0:
        raise ValueError(f"Queue limits must not be negative (max_due={max_due}, max_new={max_new})")

    now = ensure_utc(now)
    due: List[CardStateDTO] = []
    new: List[CardStateDTO] = []

    for card in cards:
        if _is_new(card):
            new.append(card)
        elif card.due is not None and ensure_utc(card.due) <= now:
            due.append(card)

    due.sort(key=lambda c: (ensure_utc(c.due), str(c.card_id)))
    # Cards without a creation time go after dated ones
    new.sort(key=lambda c: (
        ensure_utc(c.created_at) if c.created_at is not None else _FAR_FUTURE,
        str(c.card_id),
    ))

    queue = ReviewQueue(
        due_ids=[c.card_id for c in due[:max_due]],
        new_ids=[c.card_id for c in new[:max_new]],
    )
    logger.debug(
        "Built review queue: %d/%d due, %d/%d new",
        len(queue.due_ids), len(due), len(queue.new_ids), len(new),
    )
    return queue
