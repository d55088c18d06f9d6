import pytest

from flashstack_app.modules.fsrs.config import DEFAULT_PARAMETERS
from flashstack_app.modules.fsrs.engine import ParameterResolver, resolve
from flashstack_app.modules.fsrs.exceptions import ParameterInvariantViolation
from flashstack_app.modules.fsrs.schemas import FSRSParameters, ParameterOverrideLayer

BUILTINS = FSRSParameters()
USER_WEIGHTS = [w * 1.1 for w in DEFAULT_PARAMETERS]


class TestResolve:

    def test_no_layers_returns_builtins(self):
        assert resolve(BUILTINS) == BUILTINS

    def test_deck_wins_over_user_field_by_field(self):
        user = ParameterOverrideLayer(weights=tuple(USER_WEIGHTS), request_retention=0.85)
        deck = ParameterOverrideLayer(request_retention=0.95)

        params = resolve(BUILTINS, user_layer=user, deck_layer=deck)

        assert params.request_retention == 0.95
        assert params.weights == pytest.approx(tuple(USER_WEIGHTS))
        assert params.maximum_interval == BUILTINS.maximum_interval

    def test_accepts_plain_mappings_and_normalizes_lists(self):
        params = resolve(BUILTINS, user_layer={'learning_steps': [2, 20], 'maximum_interval': 365.0})
        assert params.learning_steps == (2.0, 20.0)
        assert params.maximum_interval == 365
        assert isinstance(params.maximum_interval, int)

    def test_wrong_weight_count_is_rejected(self):
        with pytest.raises(ParameterInvariantViolation) as exc:
            resolve(BUILTINS, user_layer={'weights': [1.0, 2.0]})
        assert exc.value.status_code == 422
        assert any('weights' in v for v in exc.value.details['violations'])

    @pytest.mark.parametrize("retention", [0.0, 1.0, 1.5, -0.2])
    def test_retention_out_of_range(self, retention):
        with pytest.raises(ParameterInvariantViolation):
            resolve(BUILTINS, deck_layer={'request_retention': retention})

    def test_non_numeric_value_is_rejected(self):
        with pytest.raises(ParameterInvariantViolation):
            resolve(BUILTINS, user_layer={'weights': ['a'] * 19})

    @pytest.mark.parametrize("field", ['enable_fuzz', 'enable_short_term'])
    @pytest.mark.parametrize("value", ['false', 0, 1, 'yes'])
    def test_flags_must_be_booleans(self, field, value):
        with pytest.raises(ParameterInvariantViolation) as exc:
            resolve(BUILTINS, user_layer={field: value})
        assert any(field in v for v in exc.value.details['violations'])

    def test_empty_steps_rejected(self):
        with pytest.raises(ParameterInvariantViolation):
            resolve(BUILTINS, user_layer={'relearning_steps': []})

    def test_resolver_object(self):
        resolver = ParameterResolver(BUILTINS)
        assert resolver.resolve(deck_layer={'enable_fuzz': False}).enable_fuzz is False


class TestOverrideLayer:

    def test_from_mapping_ignores_unknown_keys(self):
        layer = ParameterOverrideLayer.from_mapping({'request_retention': 0.8, 'colour': 'red'})
        assert layer.request_retention == 0.8
        assert layer.to_mapping() == {'request_retention': 0.8}

    def test_to_mapping_lists_sequences(self):
        layer = ParameterOverrideLayer(learning_steps=(1.0, 5.0))
        assert layer.to_mapping() == {'learning_steps': [1.0, 5.0]}

    def test_is_empty(self):
        assert ParameterOverrideLayer().is_empty()
        assert not ParameterOverrideLayer(enable_fuzz=False).is_empty()
