"""
Parameter resolution: deck override -> user layer -> built-in defaults.

Pure merge, no I/O. Callers load the layers; this module only combines them.
"""
from __future__ import annotations

import logging
from dataclasses import fields
from typing import Any, Iterable, Optional, Union, Mapping

from ..exceptions import ParameterInvariantViolation
from ..schemas import FSRSParameters, ParameterOverrideLayer

logger = logging.getLogger(__name__)

_SEQUENCE_FIELDS = ('weights', 'learning_steps', 'relearning_steps')

LayerLike = Union[ParameterOverrideLayer, Mapping[str, Any], None]


def _as_layer(layer: LayerLike) -> Optional[ParameterOverrideLayer]:
    if layer is None or isinstance(layer, ParameterOverrideLayer):
        return layer
    return ParameterOverrideLayer.from_mapping(layer)


def _first_present(name: str, layers: Iterable[ParameterOverrideLayer], fallback: Any) -> Any:
    for layer in layers:
        value = getattr(layer, name)
        if value is not None:
            return value
    return fallback


def _normalize(name: str, value: Any) -> Any:
    if name in _SEQUENCE_FIELDS:
        return tuple(float(v) for v in value)
    if name == 'maximum_interval' and isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def validate_parameters(params: FSRSParameters) -> FSRSParameters:
    problems = params.violations()
    if problems:
        raise ParameterInvariantViolation(
            "Invalid FSRS parameters: " + "; ".join(problems),
            details={'violations': problems},
        )
    return params


def resolve(
    builtins: FSRSParameters,
    user_layer: LayerLike = None,
    deck_layer: LayerLike = None,
) -> FSRSParameters:
    """
    Merge the override layers over the built-in parameters, field by field.

    The deck layer wins over the user layer, which wins over builtins. The
    result has no optional fields and satisfies the FSRSParameters invariants,
    otherwise ParameterInvariantViolation is raised.
    """
    chain = [layer for layer in (_as_layer(deck_layer), _as_layer(user_layer)) if layer is not None]
    try:
        merged = {
            f.name: _normalize(f.name, _first_present(f.name, chain, getattr(builtins, f.name)))
            for f in fields(FSRSParameters)
        }
    except (TypeError, ValueError) as e:
        raise ParameterInvariantViolation(f"Invalid FSRS parameter value: {e}") from e
    params = FSRSParameters(**merged)
    validate_parameters(params)
    logger.debug("Resolved FSRS parameters from %d override layer(s)", len(chain))
    return params


class ParameterResolver:
    """Holds the built-in parameters and resolves user/deck layers against them."""

    def __init__(self, builtins: FSRSParameters):
        self.builtins = validate_parameters(builtins)

    def resolve(self, user_layer: LayerLike = None, deck_layer: LayerLike = None) -> FSRSParameters:
        return resolve(self.builtins, user_layer, deck_layer)
