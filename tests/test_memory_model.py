"""
Tests for the FSRS memory model.

Tests cover:
- Forgetting curve shape
- Interval inversion and clamping
- Stability / difficulty updates
- Input validation and numeric safety
"""

import math

import pytest

from flashstack_app.modules.fsrs.config import DEFAULT_PARAMETERS
from flashstack_app.modules.fsrs.engine import memory_model as mm
from flashstack_app.modules.fsrs.exceptions import (
    InvalidRatingError,
    InvalidStateError,
    NumericDivergenceError,
)
from flashstack_app.modules.fsrs.schemas import Rating

W = DEFAULT_PARAMETERS


class TestRetrievability:

    def test_is_one_at_zero_elapsed(self):
        assert mm.retrievability(0, 5.0) == 1.0

    def test_strictly_decreasing_and_bounded(self):
        values = [mm.retrievability(t, 3.0) for t in (0, 0.5, 1, 2, 10, 100, 10000)]
        for earlier, later in zip(values, values[1:]):
            assert later < earlier
        assert all(0.0 <= v <= 1.0 for v in values)

    def test_ninety_percent_after_stability_days(self):
        """S is defined as the time for R to fall to 90%."""
        assert mm.retrievability(7.0, 7.0) == pytest.approx(0.9)

    @pytest.mark.parametrize("stability", [0.0, -1.0])
    def test_rejects_non_positive_stability(self, stability):
        with pytest.raises(InvalidStateError):
            mm.retrievability(1.0, stability)

    def test_rejects_negative_elapsed(self):
        with pytest.raises(InvalidStateError):
            mm.retrievability(-1.0, 2.0)


class TestNextInterval:

    def test_interval_equals_stability_at_ninety_percent(self):
        assert mm.next_interval(10.0, 0.9, 36500) == 10

    def test_higher_retention_gives_shorter_interval(self):
        assert mm.next_interval(30.0, 0.95, 36500) < mm.next_interval(30.0, 0.8, 36500)

    def test_clamped_to_at_least_one_day(self):
        assert mm.next_interval(0.05, 0.9, 36500) == 1

    def test_clamped_to_maximum_interval(self):
        assert mm.next_interval(1e6, 0.9, 365) == 365


class TestInitialValues:

    def test_initial_stability_reads_weight_per_rating(self):
        for rating in Rating:
            assert mm.initial_stability(rating, W) == pytest.approx(W[rating - 1])

    def test_initial_difficulty_ordering(self):
        again = mm.initial_difficulty(Rating.Again, W)
        easy = mm.initial_difficulty(Rating.Easy, W)
        assert easy < again
        assert 1.0 <= easy <= 10.0 and 1.0 <= again <= 10.0

    @pytest.mark.parametrize("rating", [0, 5, True, 2.5, None])
    def test_invalid_rating(self, rating):
        with pytest.raises(InvalidRatingError):
            mm.initial_stability(rating, W)


class TestUpdates:

    def test_difficulty_moves_with_rating(self):
        assert mm.next_difficulty(5.0, Rating.Again, W) > mm.next_difficulty(5.0, Rating.Easy, W)

    def test_difficulty_clamped(self):
        assert mm.next_difficulty(10.0, Rating.Again, W) <= 10.0
        assert mm.next_difficulty(1.0, Rating.Easy, W) >= 1.0

    def test_success_never_lowers_stability(self):
        for rating in (Rating.Hard, Rating.Good, Rating.Easy):
            assert mm.next_stability_success(10.0, 5.0, 0.9, rating, W) >= 10.0

    def test_success_ordering_hard_good_easy(self):
        hard = mm.next_stability_success(10.0, 5.0, 0.85, Rating.Hard, W)
        good = mm.next_stability_success(10.0, 5.0, 0.85, Rating.Good, W)
        easy = mm.next_stability_success(10.0, 5.0, 0.85, Rating.Easy, W)
        assert hard < good < easy

    def test_success_rejects_again(self):
        with pytest.raises(InvalidRatingError):
            mm.next_stability_success(10.0, 5.0, 0.9, Rating.Again, W)

    @pytest.mark.parametrize("stability", [0.5, 10.0, 300.0])
    def test_failure_never_raises_stability(self, stability):
        after = mm.next_stability_failure(stability, 5.0, 0.7, W)
        assert mm.STABILITY_MIN <= after <= stability

    def test_short_term_good_increases_stability(self):
        assert mm.short_term_stability(2.0, Rating.Good, W) > 2.0

    def test_overflow_becomes_numeric_divergence(self):
        weights = list(W)
        weights[8] = 1000.0
        with pytest.raises(NumericDivergenceError):
            mm.next_stability_success(10.0, 5.0, 0.5, Rating.Good, weights)

    def test_results_are_finite(self):
        assert math.isfinite(mm.next_stability_failure(36500.0, 10.0, 0.01, W))
