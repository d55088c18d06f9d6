from typing import Dict, Any, Optional
import datetime
import logging
from flashstack_app.core.error_handlers import FlashStackError
from flashstack_app.extensions import db
from flashstack_app.utils.time_utils import utcnow, ensure_utc
from ..engine.core import CardScheduler, format_interval
from ..engine.queue_builder import ReviewQueue, build_review_queue
from ..engine.resolver import resolve
from ..exceptions import FSRSError, StaleCardStateError
from ..schemas import CardStateDTO, FSRSParameters, Rating
from ..signals import card_reviewed
from .repository import CardStateRepository, ReviewLogRepository, ParameterLayerRepository
from .settings_service import FSRSSettingsService

logger = logging.getLogger(__name__)


class SchedulerService:
    """
    Orchestrator for FSRS scheduling.
    Handles DB interactions, Engine calls, and Signal emission.
    """

    @staticmethod
    def resolve_parameters(user_id=None, deck_id: Optional[str] = None) -> FSRSParameters:
        builtins = FSRSSettingsService.get_builtin_parameters()
        user_layer = ParameterLayerRepository.get_user_layer(user_id) if user_id is not None else None
        deck_layer = ParameterLayerRepository.get_deck_layer(deck_id) if deck_id is not None else None
        return resolve(builtins, user_layer, deck_layer)

    @staticmethod
    def register_card(
        card_id: str,
        user_id=None,
        deck_id: Optional[str] = None,
        created_at: Optional[datetime.datetime] = None,
    ) -> Dict[str, Any]:
        """Create the New-state memory record for a card."""
        if CardStateRepository.find(card_id) is not None:
            raise FlashStackError(
                f"Card {card_id} is already registered",
                code='CARD_EXISTS',
                status_code=409,
                details={'card_id': card_id},
            )
        state = CardStateDTO.new(card_id=card_id, created_at=ensure_utc(created_at) or utcnow(), deck_id=deck_id)
        try:
            row = CardStateRepository.create(state, user_id=user_id)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.debug("Registered card %s in deck %s", card_id, deck_id)
        return row.to_dict()

    @staticmethod
    def process_review(
        user_id,
        card_id: str,
        rating: int,
        duration_ms: int = 0,
        expected_version: Optional[int] = None,
        now: Optional[datetime.datetime] = None,
    ) -> Dict[str, Any]:
        """
        Main entry point for processing a review:
        resolve parameters -> apply -> versioned save -> append log -> signal.
        """
        # 1. Fetch Data
        row = CardStateRepository.get(card_id)
        version = row.version
        if expected_version is not None and expected_version != version:
            logger.warning("Review of card %s rejected: client version %s, stored %s",
                           card_id, expected_version, version)
            raise StaleCardStateError(
                f"Card {card_id} was modified since it was read",
                details={'card_id': card_id, 'expected_version': expected_version, 'current_version': version},
            )
        card_dto = row.to_dto()
        now = ensure_utc(now) or utcnow()

        # 2. Parameters & Engine
        params = SchedulerService.resolve_parameters(user_id, card_dto.deck_id)
        scheduler = CardScheduler(params)
        try:
            next_state, log = scheduler.apply(card_dto, rating, now, user_id=user_id, duration_ms=duration_ms)
        except FSRSError as e:
            logger.warning("Review rejected for user %s card %s: %s", user_id, card_id, e.message)
            raise

        # 3. Persist
        try:
            new_version = CardStateRepository.save(next_state, version)
            ReviewLogRepository.append(log)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        result = next_state.to_dict()
        result['version'] = new_version
        result['retrievability'] = scheduler.current_retrievability(next_state, now)

        card_reviewed.send(
            SchedulerService,
            user_id=user_id,
            card_id=card_id,
            rating=int(rating),
            new_state=result,
        )
        return {'state': result, 'log': log.to_dict()}

    @staticmethod
    def get_preview_intervals(user_id, card_id: str, now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
        """Next interval per rating (no fuzz) plus the card's current retrievability."""
        card_dto = CardStateRepository.get(card_id).to_dto()
        now = ensure_utc(now) or utcnow()
        scheduler = CardScheduler(SchedulerService.resolve_parameters(user_id, card_dto.deck_id))

        previews = {}
        for rating, days in scheduler.preview(card_dto, now).items():
            previews[str(rating)] = {
                'rating': Rating(rating).name,
                'days': days,
                'label': format_interval(days),
                'due': (now + datetime.timedelta(days=days)).isoformat(),
            }
        return {
            'card_id': card_id,
            'retrievability': scheduler.current_retrievability(card_dto, now),
            'previews': previews,
        }

    @staticmethod
    def get_study_queue(
        deck_id: str,
        now: Optional[datetime.datetime] = None,
        max_due: Optional[int] = None,
        max_new: Optional[int] = None,
    ) -> ReviewQueue:
        default_due, default_new = FSRSSettingsService.queue_limits()
        cards = CardStateRepository.list_for_deck(deck_id)
        return build_review_queue(
            cards,
            ensure_utc(now) or utcnow(),
            default_due if max_due is None else max_due,
            default_new if max_new is None else max_new,
        )
