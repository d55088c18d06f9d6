"""
Tests for the FSRS card state machine.
"""

import datetime
import random
from dataclasses import replace

import pytest

from flashstack_app.modules.fsrs.engine import CardScheduler, apply
from flashstack_app.modules.fsrs.exceptions import InvalidRatingError, InvalidStateError
from flashstack_app.modules.fsrs.schemas import CardStateDTO, CardStateEnum, FSRSParameters, Rating

NOW = datetime.datetime(2024, 3, 1, 12, 0, tzinfo=datetime.timezone.utc)


def new_card(card_id='card-1'):
    return CardStateDTO.new(card_id=card_id, created_at=NOW - datetime.timedelta(days=1), deck_id='deck-1')


def review_card(stability=10.0, difficulty=5.0, days_ago=10):
    return CardStateDTO(
        card_id='card-r',
        stability=stability,
        difficulty=difficulty,
        state=CardStateEnum.REVIEW,
        reps=5,
        lapses=0,
        last_review=NOW - datetime.timedelta(days=days_ago),
        due=NOW,
    )


@pytest.fixture
def scheduler():
    return CardScheduler(FSRSParameters())


@pytest.fixture
def plain_scheduler():
    return CardScheduler(FSRSParameters(enable_fuzz=False))


class TestNewCard:

    def test_good_enters_learning_step_one(self, scheduler):
        state, log = scheduler.apply(new_card(), Rating.Good, NOW)

        assert state.state == CardStateEnum.LEARNING
        assert state.step == 1
        assert abs((state.due - NOW) - datetime.timedelta(minutes=10)) < datetime.timedelta(seconds=1)
        assert state.reps == 1
        assert log.stability_before == 0.0
        assert log.stability_after == state.stability > 0

    def test_same_input_gives_identical_output(self, scheduler):
        first = scheduler.apply(new_card(), Rating.Good, NOW)
        second = scheduler.apply(new_card(), Rating.Good, NOW)
        assert first == second
        assert first[0].to_dict() == second[0].to_dict()
        assert first[1].to_dict() == second[1].to_dict()

    def test_single_learning_step_graduates_on_good(self):
        scheduler = CardScheduler(FSRSParameters(learning_steps=(10.0,)))
        state, _ = scheduler.apply(new_card(), Rating.Good, NOW)
        assert state.state == CardStateEnum.REVIEW
        assert state.scheduled_days == 1

    def test_again_enters_first_step(self, scheduler):
        state, _ = scheduler.apply(new_card(), Rating.Again, NOW)
        assert state.state == CardStateEnum.LEARNING
        assert state.step == 0
        assert abs((state.due - NOW) - datetime.timedelta(minutes=1)) < datetime.timedelta(seconds=1)

    def test_easy_graduates_with_easy_interval(self, plain_scheduler):
        state, _ = plain_scheduler.apply(new_card(), Rating.Easy, NOW)
        assert state.state == CardStateEnum.REVIEW
        assert state.scheduled_days == 4

    def test_easy_interval_is_fuzzed_within_window(self, scheduler):
        state, _ = scheduler.apply(new_card(), Rating.Easy, NOW)
        assert 3 <= state.scheduled_days <= 5

    def test_input_state_is_not_modified(self, scheduler):
        card = new_card()
        scheduler.apply(card, Rating.Good, NOW)
        assert card == new_card()


class TestLearning:

    def test_good_on_last_step_graduates(self, plain_scheduler):
        card, _ = plain_scheduler.apply(new_card(), Rating.Good, NOW)
        later = NOW + datetime.timedelta(minutes=10)
        state, _ = plain_scheduler.apply(card, Rating.Good, later)
        assert state.state == CardStateEnum.REVIEW
        assert state.step == 0
        assert state.scheduled_days == 1

    def test_hard_repeats_current_step(self, plain_scheduler):
        card, _ = plain_scheduler.apply(new_card(), Rating.Good, NOW)
        state, _ = plain_scheduler.apply(card, Rating.Hard, NOW + datetime.timedelta(minutes=10))
        assert state.state == CardStateEnum.LEARNING
        assert state.step == 1

    def test_again_resets_to_first_step(self, plain_scheduler):
        card, _ = plain_scheduler.apply(new_card(), Rating.Good, NOW)
        state, _ = plain_scheduler.apply(card, Rating.Again, NOW + datetime.timedelta(minutes=10))
        assert state.step == 0
        assert state.lapses == 0
        assert state.reps == 2


class TestReview:

    def test_lapse_enters_relearning(self, scheduler):
        card = review_card(stability=10.0, difficulty=5.0)
        state, log = scheduler.apply(card, Rating.Again, NOW)

        assert state.state == CardStateEnum.RELEARNING
        assert state.step == 0
        assert log.stability_after < 10.0
        assert state.lapses == card.lapses + 1
        assert state.difficulty > card.difficulty

    def test_relearning_good_returns_to_review(self, plain_scheduler):
        lapsed, _ = plain_scheduler.apply(review_card(), Rating.Again, NOW)
        state, _ = plain_scheduler.apply(lapsed, Rating.Good, NOW + datetime.timedelta(minutes=10))
        assert state.state == CardStateEnum.REVIEW
        assert state.scheduled_days >= 1
        assert state.lapses == 1

    def test_success_interval_follows_stability(self, plain_scheduler):
        state, _ = plain_scheduler.apply(review_card(), Rating.Good, NOW)
        assert state.state == CardStateEnum.REVIEW
        assert state.stability > 10.0
        # At 90% retention the interval is the stability, rounded
        assert state.scheduled_days == round(state.stability)

    def test_repeated_easy_intervals_never_shrink(self):
        scheduler = CardScheduler(FSRSParameters(enable_fuzz=False, maximum_interval=365))
        card = review_card(stability=2.0)
        now = NOW
        intervals = []
        for _ in range(12):
            card, _ = scheduler.apply(card, Rating.Easy, now)
            intervals.append(card.scheduled_days)
            now = card.due

        assert intervals == sorted(intervals)
        assert max(intervals) <= 365
        assert intervals[-1] == 365

    def test_injected_rng_is_reproducible(self, scheduler):
        a, _ = scheduler.apply(review_card(), Rating.Good, NOW, rng=random.Random(42))
        b, _ = scheduler.apply(review_card(), Rating.Good, NOW, rng=random.Random(42))
        assert a == b


class TestValidation:

    @pytest.mark.parametrize("rating", [0, 5, -1, True, '3', 2.0])
    def test_invalid_rating(self, scheduler, rating):
        with pytest.raises(InvalidRatingError):
            scheduler.apply(new_card(), rating, NOW)

    def test_review_card_needs_positive_stability(self, scheduler):
        with pytest.raises(InvalidStateError):
            scheduler.apply(review_card(stability=0.0), Rating.Good, NOW)

    def test_difficulty_out_of_range(self, scheduler):
        with pytest.raises(InvalidStateError):
            scheduler.apply(review_card(difficulty=11.0), Rating.Good, NOW)

    def test_step_out_of_range(self, scheduler):
        card = replace(review_card(), state=CardStateEnum.RELEARNING, step=3)
        with pytest.raises(InvalidStateError):
            scheduler.apply(card, Rating.Good, NOW)


class TestHelpers:

    def test_preview_has_every_rating_without_fuzz(self, scheduler):
        preview = scheduler.preview(new_card(), NOW)
        assert set(preview) == {1, 2, 3, 4}
        assert preview[4] == 4
        assert preview[1] < preview[3] < preview[4]

    def test_current_retrievability(self, scheduler):
        assert scheduler.current_retrievability(new_card(), NOW) == 0.0
        r = scheduler.current_retrievability(review_card(stability=10.0, days_ago=10), NOW)
        assert r == pytest.approx(0.9)

    def test_functional_apply(self):
        state, _ = apply(new_card(), Rating.Good, NOW, FSRSParameters())
        assert state.state == CardStateEnum.LEARNING


def test_random_walk_stays_in_bounds():
    """Any sequence of valid reviews keeps S > 0 and D in [1, 10]."""
    rng = random.Random(7)
    scheduler = CardScheduler(FSRSParameters(enable_short_term=True))
    card = new_card()
    now = NOW
    for _ in range(300):
        card, _ = scheduler.apply(card, rng.randint(1, 4), now, rng=rng)
        assert card.stability > 0
        assert 1.0 <= card.difficulty <= 10.0
        now = now + datetime.timedelta(days=rng.uniform(0, 40))
