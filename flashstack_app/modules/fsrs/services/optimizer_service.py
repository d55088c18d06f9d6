# File: flashstack_app/modules/fsrs/services/optimizer_service.py
from __future__ import annotations
import atexit
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional
from flask import Flask, current_app
from flashstack_app.extensions import db, scheduler
from ..engine.optimizer import ParameterOptimizer
from ..exceptions import (
    FSRSError,
    InsufficientSamplesError,
    OptimizationCancelledError,
    OptimizationInProgressError,
)
from ..schemas import OptimizationResult, ParameterOverrideLayer
from ..signals import optimization_finished, parameters_updated
from .repository import ParameterLayerRepository, ReviewLogRepository
from .scheduler_service import SchedulerService
from .settings_service import FSRSSettingsService

logger = logging.getLogger(__name__)

REFRESH_JOB_ID = 'fsrs_refresh_user_parameters'


@dataclass
class _Run:
    user_id: str
    deck_id: Optional[str]
    cancel_event: threading.Event = field(default_factory=threading.Event)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    future: Optional[Future] = None

    @property
    def running(self) -> bool:
        return self.future is None or not self.future.done()


class FSRSOptimizerService:
    """
    Runs weight optimisation off the request path.
    At most one run per user is in flight; results are persisted by the worker.
    """

    def __init__(self, app: Optional[Flask] = None):
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()
        self._runs: Dict[str, _Run] = {}
        if app is not None:
            self.init_app(app)

    def init_app(self, app: Flask) -> None:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=int(app.config.get('FSRS_OPTIMIZER_WORKERS', 2)),
                thread_name_prefix='fsrs-optimizer',
            )
            # Release the pool at interpreter exit
            atexit.register(self.shutdown)
        app.extensions['fsrs_optimizer'] = self

    # ------------------------------------------------------------------
    # Run management
    # ------------------------------------------------------------------

    def _reserve(self, user_id: str, deck_id: Optional[str]) -> _Run:
        with self._lock:
            current = self._runs.get(user_id)
            if current is not None and current.running:
                raise OptimizationInProgressError(
                    f"An optimization is already running for user {user_id}",
                    details={'user_id': user_id, 'started_at': current.started_at.isoformat()},
                )
            run = _Run(user_id=user_id, deck_id=deck_id)
            self._runs[user_id] = run
            return run

    def _release(self, run: _Run) -> None:
        with self._lock:
            if self._runs.get(run.user_id) is run:
                del self._runs[run.user_id]

    def submit(self, user_id, deck_id: Optional[str] = None, auto_apply: Optional[bool] = None) -> Future:
        """
        Load the user's logs and current weights, then fit them on the pool.
        Too few logs are rejected here, before anything is queued.
        """
        user_id = str(user_id)
        run = self._reserve(user_id, deck_id)
        try:
            logs = ReviewLogRepository.list_for_user(user_id, deck_id)
            params = SchedulerService.resolve_parameters(user_id, deck_id)
            config = FSRSSettingsService.optimizer_config(
                cancel_event=run.cancel_event, enable_short_term=params.enable_short_term
            )
            if len(logs) < config.min_samples:
                raise InsufficientSamplesError(
                    f"Need at least {config.min_samples} reviews to optimize, got {len(logs)}",
                    details={'sample_size': len(logs), 'min_samples': config.min_samples},
                )
            if auto_apply is None:
                auto_apply = bool(FSRSSettingsService.get('FSRS_OPTIMIZER_AUTO_APPLY'))
            defaults = list(FSRSSettingsService.get_builtin_parameters().weights)
            app = current_app._get_current_object()
            run.future = self._executor.submit(
                self._run, app, run, logs, list(params.weights), defaults, config, auto_apply
            )
        except Exception:
            self._release(run)
            raise

        logger.info("[FSRS OPTIMIZER] Queued run for user %s (deck=%s, %d logs)", user_id, deck_id, len(logs))
        return run.future

    def _run(self, app: Flask, run: _Run, logs, weights: List[float], defaults: List[float],
             config, auto_apply: bool) -> OptimizationResult:
        with app.app_context():
            try:
                optimizer = ParameterOptimizer(config)
                result = optimizer.fit(logs, weights)
                # Score the built-in weights and the fitted ones on every log, not just the train split
                default_loss = optimizer.compute_loss(logs, defaults)
                fitted_loss = optimizer.compute_loss(logs, result.weights_after)
            except OptimizationCancelledError as e:
                logger.info("[FSRS OPTIMIZER] Run for user %s stopped: %s", run.user_id, e.message)
                optimization_finished.send(self, user_id=run.user_id, status='cancelled', result=None, error=e.message)
                raise
            except FSRSError as e:
                logger.error("[FSRS OPTIMIZER] Run for user %s failed: %s", run.user_id, e.message)
                optimization_finished.send(self, user_id=run.user_id, status='failed', result=None, error=e.message)
                raise

            applied = auto_apply and result.loss_after < result.loss_before
            try:
                if applied:
                    self._apply_weights(run.user_id, run.deck_id, result)
                ParameterLayerRepository.record_optimization(
                    run.user_id, run.deck_id, result, applied,
                    default_loss=default_loss, fitted_loss=fitted_loss,
                )
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise

            if applied:
                parameters_updated.send(self, user_id=run.user_id, deck_id=run.deck_id, source='optimizer')
            optimization_finished.send(
                self, user_id=run.user_id, status='completed', result=result.to_dict(), error=None
            )
            return result

    @staticmethod
    def _apply_weights(user_id: str, deck_id: Optional[str], result: OptimizationResult) -> None:
        if deck_id is not None:
            layer = ParameterLayerRepository.get_deck_layer(deck_id) or ParameterOverrideLayer()
            layer.weights = tuple(result.weights_after)
            ParameterLayerRepository.save_deck_layer(deck_id, layer, user_id=user_id)
        else:
            layer = ParameterLayerRepository.get_user_layer(user_id) or ParameterOverrideLayer()
            layer.weights = tuple(result.weights_after)
            ParameterLayerRepository.save_user_layer(user_id, layer)
        logger.info("[FSRS OPTIMIZER] Applied new weights for user %s (deck=%s)", user_id, deck_id)

    def cancel(self, user_id) -> bool:
        """Signal the running fit to stop. Returns False when nothing is running."""
        with self._lock:
            run = self._runs.get(str(user_id))
        if run is None or not run.running:
            return False
        run.cancel_event.set()
        return True

    def wait(self, user_id, timeout: Optional[float] = None) -> Optional[OptimizationResult]:
        """Block until the user's run ends; re-raises the run's error."""
        with self._lock:
            run = self._runs.get(str(user_id))
        if run is None or run.future is None:
            return None
        return run.future.result(timeout=timeout)

    def is_running(self, user_id) -> bool:
        with self._lock:
            run = self._runs.get(str(user_id))
        return run is not None and run.running

    def status(self, user_id) -> Dict:
        with self._lock:
            run = self._runs.get(str(user_id))
        if run is None:
            return {'user_id': str(user_id), 'status': 'idle'}
        if run.running:
            status = 'cancelling' if run.cancel_event.is_set() else 'running'
        elif run.future.cancelled():
            status = 'cancelled'
        elif run.future.exception() is not None:
            error = run.future.exception()
            status = 'cancelled' if isinstance(error, OptimizationCancelledError) else 'failed'
        else:
            status = 'completed'
        return {
            'user_id': run.user_id,
            'deck_id': run.deck_id,
            'status': status,
            'started_at': run.started_at.isoformat(),
        }

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            runs = list(self._runs.values())
        for run in runs:
            run.cancel_event.set()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None


optimizer_service = FSRSOptimizerService()


def refresh_user_parameters(app: Flask) -> List[str]:
    """
    Periodic job: queue a run for every user with at least min_samples new
    reviews since their last optimization.
    """
    submitted = []
    with app.app_context():
        min_samples = int(FSRSSettingsService.get('FSRS_OPTIMIZER_MIN_SAMPLES'))
        for user_id in ReviewLogRepository.user_ids():
            last = ParameterLayerRepository.last_optimization(user_id)
            new_reviews = ReviewLogRepository.count_for_user(user_id, since=last.created_at if last else None)
            if new_reviews < min_samples:
                continue
            try:
                optimizer_service.submit(user_id)
            except OptimizationInProgressError:
                logger.debug("Skipping user %s: optimization already running", user_id)
                continue
            submitted.append(user_id)
    if submitted:
        logger.info("[FSRS OPTIMIZER] Scheduled refresh queued %d user(s)", len(submitted))
    return submitted


def register_refresh_job(app: Flask) -> None:
    if not app.config.get('FSRS_OPTIMIZER_SCHEDULE_ENABLED') or app.config.get('TESTING'):
        return
    scheduler.add_job(
        id=REFRESH_JOB_ID,
        func=refresh_user_parameters,
        args=[app],
        trigger='interval',
        hours=float(app.config.get('FSRS_OPTIMIZER_REFRESH_HOURS', 24)),
        replace_existing=True,
    )
    app.logger.info("Registered job %s (every %sh).", REFRESH_JOB_ID, app.config.get('FSRS_OPTIMIZER_REFRESH_HOURS'))
