"""
FSRS weight optimizer.

Fits the 19 weights to a user's review history by replaying every card's
logs through the memory model and minimising the binary cross-entropy between
predicted retrievability and the recall outcome (Again = forgot, anything
else = recalled).

The replay is vectorised with NumPy over a batch of weight vectors, so one
call evaluates the current point and both sides of every central difference
at once. Adam then steps on the finite-difference gradient.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Sequence, Optional, List, Tuple, Dict, Any

import numpy as np

from ..config import WEIGHT_BOUNDS, WEIGHT_COUNT, DECAY, FACTOR
from ..exceptions import (
    InsufficientSamplesError,
    InvalidRatingError,
    InvalidStateError,
    NumericDivergenceError,
    OptimizationCancelledError,
    ParameterInvariantViolation,
)
from ..schemas import CardStateEnum, OptimizationResult, Rating, ReviewLogEntry

logger = logging.getLogger(__name__)

PROB_EPS = 1e-7
STABILITY_MIN = 0.01
GRADIENT_STEP = 1e-3
ADAM_BETA1 = 0.9
ADAM_BETA2 = 0.999
ADAM_EPS = 1e-8

# Replay branch per log entry
_KIND_NEW = 0
_KIND_LEARNING = 1
_KIND_REVIEW = 2


@dataclass
class OptimizerConfig:
    min_samples: int = 100
    max_iterations: int = 500
    convergence_threshold: float = 1e-6
    learning_rate: float = 0.04
    regularization: float = 1e-3
    holdout_fraction: float = 0.2
    enable_short_term: bool = False
    decay: float = DECAY
    factor: float = FACTOR
    timeout_seconds: Optional[float] = None
    cancel_event: Optional[threading.Event] = None


class _ReplayBatch:
    """Review logs packed into (cards x max_len) arrays."""

    def __init__(self, cards: List[List[ReviewLogEntry]]):
        n_cards = len(cards)
        max_len = max(len(c) for c in cards)
        shape = (n_cards, max_len)

        self.ratings = np.full(shape, int(Rating.Good), dtype=np.int64)
        self.elapsed = np.zeros(shape)
        self.kinds = np.full(shape, _KIND_REVIEW, dtype=np.int64)
        self.valid = np.zeros(shape, dtype=bool)
        self.predict = np.zeros(shape, dtype=bool)
        self.seed_stability = np.zeros(n_cards)
        self.seed_difficulty = np.zeros(n_cards)
        self.entries: List[List[ReviewLogEntry]] = cards

        for i, entries in enumerate(cards):
            first = entries[0]
            if first.stability_before and first.stability_before > 0:
                self.seed_stability[i] = first.stability_before
                self.seed_difficulty[i] = first.difficulty_before

            previous_at = None
            for j, entry in enumerate(entries):
                self.ratings[i, j] = int(entry.rating)
                self.valid[i, j] = True
                if previous_at is None:
                    elapsed = float(entry.elapsed_days or 0.0)
                else:
                    elapsed = max(0.0, (entry.reviewed_at - previous_at).total_seconds() / 86400.0)
                previous_at = entry.reviewed_at
                self.elapsed[i, j] = elapsed

                if j == 0 and self.seed_stability[i] <= 0:
                    kind = _KIND_NEW
                else:
                    kind = _kind_of(entry, elapsed)
                self.kinds[i, j] = kind
                self.predict[i, j] = kind != _KIND_NEW and elapsed >= 1.0

        self.outcomes = (self.ratings > int(Rating.Again)).astype(float)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.valid.shape


def _kind_of(entry: ReviewLogEntry, elapsed: float) -> int:
    if entry.state_before is not None:
        state = CardStateEnum(entry.state_before)
        if state == CardStateEnum.NEW:
            return _KIND_NEW
        if state in (CardStateEnum.LEARNING, CardStateEnum.RELEARNING):
            return _KIND_LEARNING
        return _KIND_REVIEW
    if not entry.stability_before or entry.stability_before <= 0:
        return _KIND_NEW
    return _KIND_LEARNING if elapsed < 1.0 else _KIND_REVIEW


def _check_entries(logs: Sequence[ReviewLogEntry]) -> None:
    """Reject logs the replay cannot interpret before any of them is used."""
    for entry in logs:
        rating = entry.rating
        if isinstance(rating, bool) or not isinstance(rating, int) \
                or not Rating.Again <= rating <= Rating.Easy:
            raise InvalidRatingError(
                f"Review of card {entry.card_id} has rating {rating!r}; ratings must be 1-4",
                details={'card_id': entry.card_id, 'rating': rating},
            )
        if entry.state_before is not None:
            try:
                CardStateEnum(entry.state_before)
            except ValueError:
                raise InvalidStateError(
                    f"Review of card {entry.card_id} has unknown state_before {entry.state_before!r}",
                    details={'card_id': entry.card_id, 'state_before': entry.state_before},
                ) from None


def _group_by_card(logs: Sequence[ReviewLogEntry]) -> Dict[Any, List[ReviewLogEntry]]:
    grouped = defaultdict(list)
    for entry in logs:
        grouped[entry.card_id].append(entry)
    for entries in grouped.values():
        entries.sort(key=lambda e: e.reviewed_at)
    return grouped


def _check_weights(weights: Sequence[float]) -> np.ndarray:
    w = np.asarray(list(weights), dtype=float)
    if w.shape != (WEIGHT_COUNT,) or not np.all(np.isfinite(w)):
        raise ParameterInvariantViolation(
            f"Starting weights must be {WEIGHT_COUNT} finite numbers",
            details={'length': int(w.size)},
        )
    return w


def replay_predictions(batch: _ReplayBatch, weights: np.ndarray, config: OptimizerConfig) -> np.ndarray:
    """
    Predicted retrievability for every (weight vector, card, review).

    weights has shape (K, 19); the result has shape (K, cards, max_len) and is
    only meaningful where batch.predict is set.
    """
    W = np.atleast_2d(weights)
    k = W.shape[0]
    n_cards, max_len = batch.shape
    decay, factor = config.decay, config.factor

    def w(i):
        return W[:, i][:, None]

    def init_difficulty(g):
        return np.clip(w(4) - np.exp(w(5) * (g - 1)) + 1, 1.0, 10.0)

    S = np.broadcast_to(batch.seed_stability, (k, n_cards)).copy()
    D = np.broadcast_to(batch.seed_difficulty, (k, n_cards)).copy()
    preds = np.zeros((k, n_cards, max_len))

    with np.errstate(over='ignore', invalid='ignore', divide='ignore'):
        for j in range(max_len):
            g = batch.ratings[:, j][None, :].astype(float)
            t = batch.elapsed[:, j][None, :]
            kind = batch.kinds[:, j][None, :]
            valid = batch.valid[:, j][None, :]

            safe_s = np.where(S > 0, S, 1.0)
            R = np.where(t > 0, np.power(1 + factor * t / safe_s, decay), 1.0)
            preds[:, :, j] = R

            failed = g == Rating.Again
            s_fail = w(11) * np.power(np.maximum(D, 1.0), -w(12)) \
                * (np.power(safe_s + 1, w(13)) - 1) * np.exp(w(14) * (1 - R))
            s_fail = np.minimum(safe_s, np.maximum(STABILITY_MIN, s_fail))

            hard_penalty = np.where(g == Rating.Hard, w(15), 1.0)
            easy_bonus = np.where(g == Rating.Easy, w(16), 1.0)
            s_inc = np.exp(w(8)) * (11 - D) * np.power(safe_s, -w(9)) \
                * (np.exp(w(10) * (1 - R)) - 1) * hard_penalty * easy_bonus
            s_success = np.maximum(safe_s, safe_s * (1 + s_inc))

            if config.enable_short_term:
                s_short = np.maximum(STABILITY_MIN, safe_s * np.exp(w(17) * (g - 3 + w(18))))
            else:
                s_short = safe_s

            s_new = np.maximum(STABILITY_MIN, np.take_along_axis(
                W, np.broadcast_to(batch.ratings[:, j][None, :] - 1, (k, n_cards)), axis=1
            ))
            d_new = init_difficulty(g)

            d_review = w(7) * init_difficulty(3.0) + (1 - w(7)) * (D - w(6) * (g - 3))
            d_review = np.clip(d_review, 1.0, 10.0)

            is_new = kind == _KIND_NEW
            is_learning = kind == _KIND_LEARNING
            next_s = np.where(
                is_new, s_new,
                np.where(is_learning, np.where(failed, s_fail, s_short), np.where(failed, s_fail, s_success)),
            )
            next_d = np.where(is_new, d_new, np.where(is_learning, D, d_review))
            S = np.where(valid, next_s, S)
            D = np.where(valid, next_d, D)

    return preds


def _bce(preds: np.ndarray, outcomes: np.ndarray, mask: np.ndarray) -> np.ndarray:
    count = mask.sum()
    p = np.clip(preds, PROB_EPS, 1 - PROB_EPS)
    with np.errstate(invalid='ignore', divide='ignore'):
        losses = -(outcomes * np.log(p) + (1 - outcomes) * np.log(1 - p))
    losses = np.where(mask, losses, 0.0)
    return losses.reshape(losses.shape[0], -1).sum(axis=1) / count


def _rmse(preds: np.ndarray, outcomes: np.ndarray, mask: np.ndarray) -> float:
    diff = np.where(mask, preds - outcomes, 0.0)
    return float(math.sqrt((diff ** 2).sum() / mask.sum()))


class ParameterOptimizer:
    """Fits FSRS weights to review logs. Returns candidates; never persists."""

    def __init__(self, config: Optional[OptimizerConfig] = None):
        self.config = config or OptimizerConfig()
        lows, highs = zip(*WEIGHT_BOUNDS)
        self.lower = np.asarray(lows, dtype=float)
        self.upper = np.asarray(highs, dtype=float)

    # ------------------------------------------------------------------
    # Data preparation
    # ------------------------------------------------------------------

    def _split(self, batch: _ReplayBatch, card_ids: List[Any]) -> Tuple[np.ndarray, np.ndarray]:
        """Train / holdout prediction masks, split by card."""
        full = batch.predict & batch.valid
        fraction = self.config.holdout_fraction
        if fraction <= 0 or len(card_ids) < 2:
            return full, full

        every = max(2, int(round(1.0 / fraction)))
        holdout_rows = np.zeros(len(card_ids), dtype=bool)
        holdout_rows[every - 1::every] = True

        holdout = full & holdout_rows[:, None]
        train = full & ~holdout_rows[:, None]
        if not holdout.any() or not train.any():
            return full, full
        return train, holdout

    def _prepare(self, logs: Sequence[ReviewLogEntry]):
        if len(logs) < self.config.min_samples:
            raise InsufficientSamplesError(
                f"Need at least {self.config.min_samples} reviews to optimize, got {len(logs)}",
                details={'sample_size': len(logs), 'min_samples': self.config.min_samples},
            )
        _check_entries(logs)
        grouped = _group_by_card(logs)
        card_ids = sorted(grouped, key=str)
        batch = _ReplayBatch([grouped[cid] for cid in card_ids])
        if not (batch.predict & batch.valid).any():
            raise InsufficientSamplesError(
                "No reviews spaced at least one day apart; nothing to fit",
                details={'sample_size': len(logs)},
            )
        return batch, card_ids

    # ------------------------------------------------------------------
    # Loss
    # ------------------------------------------------------------------

    def _losses(self, batch: _ReplayBatch, weights: np.ndarray, mask: np.ndarray) -> np.ndarray:
        preds = replay_predictions(batch, weights, self.config)
        losses = _bce(preds, batch.outcomes[None, :, :], mask[None, :, :])
        if not np.all(np.isfinite(losses)):
            raise NumericDivergenceError("Loss became non-finite during optimization")
        return losses

    def _penalty(self, weights: np.ndarray, start: np.ndarray) -> np.ndarray:
        span = self.upper - self.lower
        return self.config.regularization * (((np.atleast_2d(weights) - start) / span) ** 2).sum(axis=1)

    def compute_loss(self, logs: Sequence[ReviewLogEntry], weights: Sequence[float]) -> float:
        """Mean binary cross-entropy of the logs under one weight vector."""
        loss, _, _ = self.evaluate(logs, weights)
        return loss

    def evaluate(self, logs: Sequence[ReviewLogEntry], weights: Sequence[float]):
        """
        Score a weight vector on all logs.
        Returns (loss, rmse, [(log_entry, predicted_retrievability), ...]).
        """
        w = _check_weights(weights)
        _check_entries(logs)
        grouped = _group_by_card(logs)
        card_ids = sorted(grouped, key=str)
        if not card_ids:
            raise InsufficientSamplesError("No reviews to evaluate", details={'sample_size': 0})
        batch = _ReplayBatch([grouped[cid] for cid in card_ids])
        mask = batch.predict & batch.valid
        if not mask.any():
            raise InsufficientSamplesError(
                "No reviews spaced at least one day apart; nothing to evaluate",
                details={'sample_size': len(logs)},
            )
        preds = replay_predictions(batch, w[None, :], self.config)[0]
        loss = float(self._losses(batch, w[None, :], mask)[0])
        rmse = _rmse(preds, batch.outcomes, mask)

        predictions = []
        for i, entries in enumerate(batch.entries):
            for j, entry in enumerate(entries):
                if mask[i, j]:
                    predictions.append((entry, float(preds[i, j])))
        return loss, rmse, predictions

    # ------------------------------------------------------------------
    # Fit
    # ------------------------------------------------------------------

    def _check_cancelled(self, deadline: Optional[float], iteration: int):
        event = self.config.cancel_event
        if event is not None and event.is_set():
            raise OptimizationCancelledError(
                f"Optimization cancelled after {iteration} iteration(s)",
                details={'iterations': iteration},
            )
        if deadline is not None and time.monotonic() > deadline:
            raise OptimizationCancelledError(
                f"Optimization timed out after {iteration} iteration(s)",
                details={'iterations': iteration, 'timeout_seconds': self.config.timeout_seconds},
            )

    def _perturbations(self, w: np.ndarray, step: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        eye = np.eye(WEIGHT_COUNT)
        plus = np.clip(w + eye * step, self.lower, self.upper)
        minus = np.clip(w - eye * step, self.lower, self.upper)
        width = np.diag(plus - minus)
        return plus, minus, width

    def fit(self, logs: Sequence[ReviewLogEntry], starting_weights: Sequence[float]) -> OptimizationResult:
        cfg = self.config
        w_start = _check_weights(starting_weights)
        batch, card_ids = self._prepare(logs)
        train_mask, holdout_mask = self._split(batch, card_ids)
        deadline = time.monotonic() + cfg.timeout_seconds if cfg.timeout_seconds else None

        logger.info(
            "[FSRS OPTIMIZER] Fitting %d reviews over %d cards (train predictions=%d, holdout=%d)",
            len(logs), len(card_ids), int(train_mask.sum()), int(holdout_mask.sum()),
        )

        loss_before = float(self._losses(batch, w_start[None, :], train_mask)[0])
        best_w, best_loss = w_start.copy(), loss_before

        anchor = np.clip(w_start, self.lower, self.upper)
        scale = np.maximum(np.abs(anchor), 0.1)
        fd_step = GRADIENT_STEP * scale
        w = anchor.copy()
        m = np.zeros(WEIGHT_COUNT)
        v = np.zeros(WEIGHT_COUNT)
        lr = cfg.learning_rate
        prev_total = None
        iterations = 0

        for iteration in range(1, cfg.max_iterations + 1):
            self._check_cancelled(deadline, iteration - 1)
            plus, minus, width = self._perturbations(w, fd_step)
            points = np.vstack([w[None, :], plus, minus])
            data_losses = self._losses(batch, points, train_mask)
            totals = data_losses + self._penalty(points, anchor)
            iterations = iteration

            if data_losses[0] < best_loss:
                best_w, best_loss = w.copy(), float(data_losses[0])

            total = float(totals[0])
            if prev_total is not None:
                if abs(prev_total - total) < cfg.convergence_threshold:
                    logger.debug("[FSRS OPTIMIZER] Converged at iteration %d (loss=%.6f)", iteration, total)
                    break
                if total > prev_total:
                    lr *= 0.5
            prev_total = total

            grad = np.where(
                width > 0,
                (totals[1:1 + WEIGHT_COUNT] - totals[1 + WEIGHT_COUNT:]) / np.where(width > 0, width, 1.0),
                0.0,
            )
            m = ADAM_BETA1 * m + (1 - ADAM_BETA1) * grad
            v = ADAM_BETA2 * v + (1 - ADAM_BETA2) * grad ** 2
            m_hat = m / (1 - ADAM_BETA1 ** iteration)
            v_hat = v / (1 - ADAM_BETA2 ** iteration)
            update = lr * scale * m_hat / (np.sqrt(v_hat) + ADAM_EPS)
            w_next = np.clip(w - update, self.lower, self.upper)
            if not np.all(np.isfinite(w_next)):
                raise NumericDivergenceError(
                    f"Weight update produced non-finite values at iteration {iteration}",
                    details={'iterations': iteration},
                )
            w = w_next

            if iteration % 50 == 0:
                logger.debug("[FSRS OPTIMIZER] iteration=%d loss=%.6f lr=%.5f", iteration, total, lr)
        else:
            # The last update was never scored inside the loop
            final_loss = float(self._losses(batch, w[None, :], train_mask)[0])
            if final_loss < best_loss:
                best_w, best_loss = w.copy(), final_loss

        preds = replay_predictions(batch, best_w[None, :], cfg)[0]
        rmse = _rmse(preds, batch.outcomes, holdout_mask)
        improvement = (loss_before - best_loss) / loss_before * 100.0 if loss_before > 0 else 0.0

        result = OptimizationResult(
            weights_before=tuple(float(x) for x in w_start),
            weights_after=tuple(float(x) for x in best_w),
            loss_before=loss_before,
            loss_after=best_loss,
            improvement_percent=improvement,
            rmse=rmse,
            sample_size=len(logs),
            iterations=iterations,
        )
        logger.info(
            "[FSRS OPTIMIZER] Done after %d iteration(s): loss %.6f -> %.6f (%.2f%%), rmse=%.4f",
            iterations, loss_before, best_loss, improvement, rmse,
        )
        return result


def fit(logs: Sequence[ReviewLogEntry], starting_weights: Sequence[float],
        config: Optional[OptimizerConfig] = None) -> OptimizationResult:
    return ParameterOptimizer(config).fit(logs, starting_weights)
