from flask import Blueprint, request, jsonify
from flashstack_app.core.error_handlers import ValidationError, success_response
from flashstack_app.extensions import db
from ..engine.resolver import resolve
from ..schemas import ParameterOverrideLayer
from ..signals import parameters_updated
from ..services.optimizer_service import optimizer_service
from ..services.repository import ParameterLayerRepository
from ..services.scheduler_service import SchedulerService
from ..services.settings_service import FSRSSettingsService

api_bp = Blueprint('fsrs_api', __name__, url_prefix='/api/fsrs')


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('No input data provided')
    return data


def _require(data: dict, *names):
    missing = [name for name in names if data.get(name) in (None, '')]
    if missing:
        raise ValidationError('Missing required fields', errors={name: 'required' for name in missing})


def _int_field(data: dict, name: str, default=None, minimum=None):
    value = data.get(name)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or (minimum is not None and value < minimum):
        raise ValidationError(f'{name} must be an integer', errors={name: value})
    return value


def _int_arg(name):
    value = request.args.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f'{name} must be an integer', errors={name: value}) from None


@api_bp.route('/cards', methods=['POST'])
def register_card():
    """
    Register a card with the scheduler.
    Input: { "card_id": str, "user_id": str, "deck_id": str (optional) }
    """
    data = _json_body()
    _require(data, 'card_id')
    state = SchedulerService.register_card(
        card_id=str(data['card_id']),
        user_id=data.get('user_id'),
        deck_id=data.get('deck_id'),
    )
    return jsonify(success_response(state, 'Card registered')), 201


@api_bp.route('/review', methods=['POST'])
def process_review():
    """
    Process a card review.
    Input: {
        "user_id": str,
        "card_id": str,
        "rating": int (1-4),
        "duration_ms": int,
        "version": int (optional, optimistic concurrency token)
    }
    """
    data = _json_body()
    _require(data, 'user_id', 'card_id', 'rating')
    result = SchedulerService.process_review(
        user_id=str(data['user_id']),
        card_id=str(data['card_id']),
        rating=data['rating'],
        duration_ms=_int_field(data, 'duration_ms', default=0, minimum=0),
        expected_version=_int_field(data, 'version', minimum=1),
    )
    return jsonify(success_response(result, 'Review processed successfully')), 200


@api_bp.route('/preview/<card_id>', methods=['GET'])
def preview_intervals(card_id):
    """Next interval per rating, without fuzz."""
    data = SchedulerService.get_preview_intervals(request.args.get('user_id'), card_id)
    return jsonify(success_response(data)), 200


@api_bp.route('/queue/<deck_id>', methods=['GET'])
def study_queue(deck_id):
    queue = SchedulerService.get_study_queue(
        deck_id,
        max_due=_int_arg('max_due'),
        max_new=_int_arg('max_new'),
    )
    return jsonify(success_response(queue.to_dict())), 200


# ----------------------------------------------------------------------
# Parameter layers
# ----------------------------------------------------------------------

def _layer_from_body(data: dict) -> ParameterOverrideLayer:
    unknown = sorted(set(data) - set(ParameterOverrideLayer.field_names()) - {'user_id'})
    if unknown:
        raise ValidationError('Unknown parameter fields', errors={name: 'unknown' for name in unknown})
    return ParameterOverrideLayer.from_mapping(data)


@api_bp.route('/params/user/<user_id>', methods=['GET'])
def get_user_params(user_id):
    layer = ParameterLayerRepository.get_user_layer(user_id)
    effective = SchedulerService.resolve_parameters(user_id)
    return jsonify(success_response({
        'user_id': user_id,
        'layer': layer.to_mapping() if layer else {},
        'effective': effective.to_dict(),
    })), 200


@api_bp.route('/params/user/<user_id>', methods=['PUT'])
def put_user_params(user_id):
    layer = _layer_from_body(_json_body())
    # Reject layers that cannot resolve before storing them
    resolve(FSRSSettingsService.get_builtin_parameters(), user_layer=layer)
    try:
        ParameterLayerRepository.save_user_layer(user_id, layer)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    parameters_updated.send(api_bp, user_id=user_id, deck_id=None, source='manual')
    return jsonify(success_response({'user_id': user_id, 'layer': layer.to_mapping()}, 'Parameters saved')), 200


@api_bp.route('/params/user/<user_id>', methods=['DELETE'])
def reset_user_params(user_id):
    """Drop the user's layer so the built-in parameters apply again."""
    try:
        removed = ParameterLayerRepository.clear_user_layer(user_id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    if removed:
        parameters_updated.send(api_bp, user_id=user_id, deck_id=None, source='reset')
    effective = SchedulerService.resolve_parameters(user_id)
    return jsonify(success_response(
        {'user_id': user_id, 'removed': removed, 'effective': effective.to_dict()},
        'Parameters reset to defaults',
    )), 200


@api_bp.route('/params/deck/<deck_id>', methods=['GET'])
def get_deck_params(deck_id):
    user_id = request.args.get('user_id')
    layer = ParameterLayerRepository.get_deck_layer(deck_id)
    effective = SchedulerService.resolve_parameters(user_id, deck_id)
    return jsonify(success_response({
        'deck_id': deck_id,
        'layer': layer.to_mapping() if layer else {},
        'effective': effective.to_dict(),
    })), 200


@api_bp.route('/params/deck/<deck_id>', methods=['PUT'])
def put_deck_params(deck_id):
    data = _json_body()
    user_id = data.get('user_id')
    layer = _layer_from_body(data)
    user_layer = ParameterLayerRepository.get_user_layer(user_id) if user_id is not None else None
    resolve(FSRSSettingsService.get_builtin_parameters(), user_layer=user_layer, deck_layer=layer)
    try:
        ParameterLayerRepository.save_deck_layer(deck_id, layer, user_id=user_id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    parameters_updated.send(api_bp, user_id=user_id, deck_id=deck_id, source='manual')
    return jsonify(success_response({'deck_id': deck_id, 'layer': layer.to_mapping()}, 'Deck parameters saved')), 200


@api_bp.route('/params/deck/<deck_id>', methods=['DELETE'])
def delete_deck_params(deck_id):
    try:
        removed = ParameterLayerRepository.clear_deck_layer(deck_id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return jsonify(success_response({'deck_id': deck_id, 'removed': removed})), 200


# ----------------------------------------------------------------------
# Optimizer
# ----------------------------------------------------------------------

@api_bp.route('/optimize', methods=['POST'])
def start_optimization():
    """
    Queue an optimizer run for a user.
    Input: { "user_id": str, "deck_id": str (optional), "auto_apply": bool (optional) }
    """
    data = _json_body()
    _require(data, 'user_id')
    user_id = str(data['user_id'])
    optimizer_service.submit(user_id, deck_id=data.get('deck_id'), auto_apply=data.get('auto_apply'))
    return jsonify(success_response(optimizer_service.status(user_id), 'Optimization started')), 202


@api_bp.route('/optimize/<user_id>', methods=['GET'])
def optimization_status(user_id):
    return jsonify(success_response(optimizer_service.status(user_id))), 200


@api_bp.route('/optimize/<user_id>', methods=['DELETE'])
def cancel_optimization(user_id):
    cancelled = optimizer_service.cancel(user_id)
    return jsonify(success_response({'user_id': user_id, 'cancelled': cancelled})), 200


@api_bp.route('/optimize/<user_id>/history', methods=['GET'])
def optimization_history(user_id):
    limit = _int_arg('limit') or 20
    rows = ParameterLayerRepository.history(user_id, limit=limit)
    return jsonify(success_response([row.to_dict() for row in rows])), 200
