# File: flashstack_app/modules/fsrs/services/settings_service.py
from __future__ import annotations
from typing import Any, Dict, Mapping, Optional, Tuple
import threading
from flask import current_app, has_app_context
from ..config import FSRSDefaultConfig
from ..engine.optimizer import OptimizerConfig
from ..engine.resolver import resolve
from ..schemas import FSRSParameters, ParameterOverrideLayer


class FSRSSettingsService:
    """Reads FSRS configuration from the active app config, with module defaults."""

    DEFAULTS: Dict[str, Any] = {
        'FSRS_DESIRED_RETENTION': FSRSDefaultConfig.FSRS_DESIRED_RETENTION,
        'FSRS_MAX_INTERVAL': FSRSDefaultConfig.FSRS_MAX_INTERVAL,
        'FSRS_ENABLE_FUZZ': FSRSDefaultConfig.FSRS_ENABLE_FUZZ,
        'FSRS_FUZZ_FACTOR': FSRSDefaultConfig.FSRS_FUZZ_FACTOR,
        'FSRS_ENABLE_SHORT_TERM': FSRSDefaultConfig.FSRS_ENABLE_SHORT_TERM,
        'FSRS_LEARNING_STEPS': FSRSDefaultConfig.FSRS_LEARNING_STEPS,
        'FSRS_RELEARNING_STEPS': FSRSDefaultConfig.FSRS_RELEARNING_STEPS,
        'FSRS_GRADUATING_INTERVAL': FSRSDefaultConfig.FSRS_GRADUATING_INTERVAL,
        'FSRS_EASY_INTERVAL': FSRSDefaultConfig.FSRS_EASY_INTERVAL,
        'FSRS_GLOBAL_WEIGHTS': FSRSDefaultConfig.FSRS_GLOBAL_WEIGHTS,
        'FSRS_MAX_DUE': FSRSDefaultConfig.FSRS_MAX_DUE,
        'FSRS_MAX_NEW': FSRSDefaultConfig.FSRS_MAX_NEW,
        'FSRS_OPTIMIZER_MIN_SAMPLES': FSRSDefaultConfig.FSRS_OPTIMIZER_MIN_SAMPLES,
        'FSRS_OPTIMIZER_MAX_ITERATIONS': FSRSDefaultConfig.FSRS_OPTIMIZER_MAX_ITERATIONS,
        'FSRS_OPTIMIZER_CONVERGENCE': FSRSDefaultConfig.FSRS_OPTIMIZER_CONVERGENCE,
        'FSRS_OPTIMIZER_TIMEOUT': FSRSDefaultConfig.FSRS_OPTIMIZER_TIMEOUT,
        'FSRS_OPTIMIZER_AUTO_APPLY': FSRSDefaultConfig.FSRS_OPTIMIZER_AUTO_APPLY,
        'FSRS_OPTIMIZER_REFRESH_HOURS': FSRSDefaultConfig.FSRS_OPTIMIZER_REFRESH_HOURS,
    }

    @classmethod
    def get(cls, key: str, default: Any = None, config: Optional[Mapping[str, Any]] = None) -> Any:
        if config is None and has_app_context():
            config = current_app.config
        if config is not None and config.get(key) is not None:
            return config[key]
        if key in cls.DEFAULTS:
            return cls.DEFAULTS[key]
        return default

    @classmethod
    def build_builtin_parameters(cls, config: Mapping[str, Any]) -> FSRSParameters:
        """Build the app-wide FSRSParameters once from configuration."""
        layer = ParameterOverrideLayer(
            weights=cls.get('FSRS_GLOBAL_WEIGHTS', config=config),
            request_retention=cls.get('FSRS_DESIRED_RETENTION', config=config),
            maximum_interval=cls.get('FSRS_MAX_INTERVAL', config=config),
            learning_steps=cls.get('FSRS_LEARNING_STEPS', config=config),
            relearning_steps=cls.get('FSRS_RELEARNING_STEPS', config=config),
            graduating_interval=cls.get('FSRS_GRADUATING_INTERVAL', config=config),
            easy_interval=cls.get('FSRS_EASY_INTERVAL', config=config),
            enable_fuzz=bool(cls.get('FSRS_ENABLE_FUZZ', config=config)),
            fuzz_factor=cls.get('FSRS_FUZZ_FACTOR', config=config),
            enable_short_term=bool(cls.get('FSRS_ENABLE_SHORT_TERM', config=config)),
        )
        return resolve(FSRSParameters(), user_layer=layer)

    @staticmethod
    def get_builtin_parameters() -> FSRSParameters:
        return current_app.extensions['fsrs']['builtins']

    @classmethod
    def queue_limits(cls) -> Tuple[int, int]:
        return int(cls.get('FSRS_MAX_DUE')), int(cls.get('FSRS_MAX_NEW'))

    @classmethod
    def optimizer_config(
        cls,
        cancel_event: Optional[threading.Event] = None,
        enable_short_term: bool = False,
    ) -> OptimizerConfig:
        timeout = cls.get('FSRS_OPTIMIZER_TIMEOUT')
        return OptimizerConfig(
            min_samples=int(cls.get('FSRS_OPTIMIZER_MIN_SAMPLES')),
            max_iterations=int(cls.get('FSRS_OPTIMIZER_MAX_ITERATIONS')),
            convergence_threshold=float(cls.get('FSRS_OPTIMIZER_CONVERGENCE')),
            enable_short_term=enable_short_term,
            timeout_seconds=float(timeout) if timeout else None,
            cancel_event=cancel_event,
        )
