import threading

import pytest

from flashstack_app.extensions import db
from flashstack_app.modules.fsrs.config import DEFAULT_PARAMETERS
from flashstack_app.modules.fsrs.engine import simulate_review_logs
from flashstack_app.modules.fsrs.engine.simulator import perturb_weights
from flashstack_app.modules.fsrs.exceptions import (
    InsufficientSamplesError,
    OptimizationCancelledError,
    OptimizationInProgressError,
)
from flashstack_app.modules.fsrs.models import OptimizationHistory
from flashstack_app.modules.fsrs.schemas import ParameterOverrideLayer
from flashstack_app.modules.fsrs.services import optimizer_service as optimizer_module
from flashstack_app.modules.fsrs.services.optimizer_service import optimizer_service, refresh_user_parameters
from flashstack_app.modules.fsrs.services.repository import ParameterLayerRepository, ReviewLogRepository
from flashstack_app.modules.fsrs.signals import optimization_finished


@pytest.fixture
def user_logs(app):
    logs = simulate_review_logs(DEFAULT_PARAMETERS, n_cards=15, reviews_per_card=6, seed=11, user_id='u1')
    for entry in logs:
        ReviewLogRepository.append(entry)
    db.session.commit()
    return logs


class _BlockingOptimizer:
    """Stands in for ParameterOptimizer: waits until the run is cancelled."""

    started = threading.Event()

    def __init__(self, config):
        self.config = config

    def fit(self, logs, weights):
        _BlockingOptimizer.started.set()
        self.config.cancel_event.wait(5)
        raise OptimizationCancelledError("cancelled")


class TestSubmit:

    def test_run_records_history_and_applies_weights(self, app, user_logs):
        """Weights away from the generating ones always improve, so the run writes them back."""
        start = perturb_weights(DEFAULT_PARAMETERS, 0.5, seed=5)
        ParameterLayerRepository.save_user_layer('u1', ParameterOverrideLayer(weights=tuple(start)))
        db.session.commit()
        finished = []

        def receiver(sender, **kwargs):
            finished.append(kwargs['status'])

        with optimization_finished.connected_to(receiver):
            optimizer_service.submit('u1')
            result = optimizer_service.wait('u1', timeout=60)

        assert result.sample_size == len(user_logs)
        assert list(result.weights_before) == pytest.approx(start)
        assert result.loss_after < result.loss_before
        assert finished == ['completed']

        history = OptimizationHistory.query.filter_by(user_id='u1').one()
        assert history.applied is True
        assert history.default_loss > 0
        assert history.fitted_loss > 0
        assert history.to_dict()['improvement_over_default'] == pytest.approx(
            (history.default_loss - history.fitted_loss) / history.default_loss * 100.0
        )
        layer = ParameterLayerRepository.get_user_layer('u1')
        assert list(layer.weights) == pytest.approx(list(result.weights_after))
        assert optimizer_service.status('u1')['status'] == 'completed'

    def test_auto_apply_off_keeps_weights(self, app, user_logs):
        optimizer_service.submit('u1', auto_apply=False)
        optimizer_service.wait('u1', timeout=60)
        assert ParameterLayerRepository.get_user_layer('u1') is None
        assert OptimizationHistory.query.filter_by(user_id='u1', applied=False).count() == 1

    def test_insufficient_samples_rejected_immediately(self, app):
        with pytest.raises(InsufficientSamplesError):
            optimizer_service.submit('nobody')
        assert not optimizer_service.is_running('nobody')
        assert OptimizationHistory.query.count() == 0


class TestConcurrency:

    def test_one_run_per_user_and_cancel(self, app, user_logs, monkeypatch):
        monkeypatch.setattr(optimizer_module, 'ParameterOptimizer', _BlockingOptimizer)
        _BlockingOptimizer.started.clear()

        optimizer_service.submit('u1')
        assert _BlockingOptimizer.started.wait(5)
        assert optimizer_service.is_running('u1')

        with pytest.raises(OptimizationInProgressError):
            optimizer_service.submit('u1')

        assert optimizer_service.cancel('u1') is True
        with pytest.raises(OptimizationCancelledError):
            optimizer_service.wait('u1', timeout=10)

        assert optimizer_service.status('u1')['status'] == 'cancelled'
        assert OptimizationHistory.query.count() == 0
        assert ParameterLayerRepository.get_user_layer('u1') is None

    def test_cancel_without_run(self, app):
        assert optimizer_service.cancel('idle-user') is False

    def test_shutdown_cancels_runs_and_releases_pool(self, app, user_logs, monkeypatch):
        registered = []
        monkeypatch.setattr(optimizer_module.atexit, 'register', registered.append)
        monkeypatch.setattr(optimizer_module, 'ParameterOptimizer', _BlockingOptimizer)
        _BlockingOptimizer.started.clear()

        service = optimizer_module.FSRSOptimizerService(app)
        assert registered == [service.shutdown]

        service.submit('u1')
        assert _BlockingOptimizer.started.wait(5)
        service.shutdown()

        assert service._executor is None
        assert service.status('u1')['status'] == 'cancelled'
        assert OptimizationHistory.query.count() == 0


def test_refresh_job_submits_users_with_new_reviews(app, user_logs):
    submitted = refresh_user_parameters(app)
    assert submitted == ['u1']
    optimizer_service.wait('u1', timeout=60)

    # Nothing new since the recorded run
    assert refresh_user_parameters(app) == []
