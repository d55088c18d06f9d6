import datetime

import pytest

from flashstack_app.core.error_handlers import FlashStackError
from flashstack_app.extensions import db
from flashstack_app.modules.fsrs.exceptions import (
    CardNotFoundError,
    InvalidRatingError,
    StaleCardStateError,
)
from flashstack_app.modules.fsrs.models import CardMemoryState, ReviewLog
from flashstack_app.modules.fsrs.schemas import CardStateEnum, ParameterOverrideLayer
from flashstack_app.modules.fsrs.services.repository import CardStateRepository, ParameterLayerRepository
from flashstack_app.modules.fsrs.services.scheduler_service import SchedulerService
from flashstack_app.modules.fsrs.signals import card_reviewed


def register(card_id='c1', deck_id='d1', user_id='u1', created_at=None):
    return SchedulerService.register_card(card_id, user_id=user_id, deck_id=deck_id, created_at=created_at)


class TestRegisterCard:

    def test_creates_new_state(self, app):
        data = register()
        assert data['state'] == 'new'
        assert data['version'] == 1
        assert CardMemoryState.query.count() == 1

    def test_duplicate_is_conflict(self, app):
        register()
        with pytest.raises(FlashStackError) as exc:
            register()
        assert exc.value.status_code == 409


class TestProcessReview:

    def test_new_card_good(self, app, now):
        register()
        result = SchedulerService.process_review('u1', 'c1', 3, duration_ms=1500, now=now)

        state = result['state']
        assert state['state'] == 'learning'
        assert state['step'] == 1
        assert state['version'] == 2
        assert ReviewLog.query.count() == 1
        log = ReviewLog.query.first()
        assert log.rating == 3 and log.duration_ms == 1500 and log.user_id == 'u1'

    def test_emits_card_reviewed(self, app, now):
        register()
        received = []

        def receiver(sender, **kwargs):
            received.append(kwargs)

        with card_reviewed.connected_to(receiver):
            SchedulerService.process_review('u1', 'c1', 4, now=now)

        assert received[0]['card_id'] == 'c1'
        assert received[0]['rating'] == 4

    def test_stale_client_version(self, app, now):
        register()
        SchedulerService.process_review('u1', 'c1', 3, now=now)
        with pytest.raises(StaleCardStateError):
            SchedulerService.process_review('u1', 'c1', 3, expected_version=1, now=now)

    def test_concurrent_writer_detected(self, app, now):
        register()
        dto = CardStateRepository.get('c1').to_dto()
        SchedulerService.process_review('u1', 'c1', 3, now=now)
        with pytest.raises(StaleCardStateError):
            CardStateRepository.save(dto, expected_version=1)

    def test_invalid_rating_leaves_state_untouched(self, app, now):
        register()
        with pytest.raises(InvalidRatingError):
            SchedulerService.process_review('u1', 'c1', 7, now=now)
        row = CardStateRepository.get('c1')
        assert row.version == 1
        assert row.state == CardStateEnum.NEW
        assert ReviewLog.query.count() == 0

    def test_unknown_card(self, app, now):
        with pytest.raises(CardNotFoundError):
            SchedulerService.process_review('u1', 'missing', 3, now=now)

    def test_deck_layer_changes_schedule(self, app, now):
        register()
        ParameterLayerRepository.save_deck_layer('d1', ParameterOverrideLayer(learning_steps=(5.0,)))
        db.session.commit()
        result = SchedulerService.process_review('u1', 'c1', 3, now=now)
        assert result['state']['state'] == 'review'


class TestQueriesAndPreview:

    def test_preview(self, app, now):
        register()
        data = SchedulerService.get_preview_intervals('u1', 'c1', now=now)
        assert set(data['previews']) == {'1', '2', '3', '4'}
        assert data['previews']['3']['label'] == '10m'
        assert data['retrievability'] == 0.0

    def test_study_queue(self, app, now):
        register('c1', created_at=now - datetime.timedelta(days=2))
        register('c2', created_at=now - datetime.timedelta(days=3))
        register('c3', deck_id='other')
        queue = SchedulerService.get_study_queue('d1', now=now)
        assert queue.new_ids == ['c2', 'c1']
        assert queue.due_ids == []

    def test_reviewed_card_becomes_due(self, app, now):
        register()
        SchedulerService.process_review('u1', 'c1', 1, now=now)
        later = now + datetime.timedelta(hours=1)
        assert SchedulerService.get_study_queue('d1', now=later).due_ids == ['c1']
