from .core import CardScheduler, apply, format_interval
from .resolver import ParameterResolver, resolve, validate_parameters
from .optimizer import ParameterOptimizer, OptimizerConfig, fit
from .queue_builder import ReviewQueue, build_review_queue
from .simulator import simulate_review_logs

__all__ = [
    'CardScheduler', 'apply', 'format_interval',
    'ParameterResolver', 'resolve', 'validate_parameters',
    'ParameterOptimizer', 'OptimizerConfig', 'fit',
    'ReviewQueue', 'build_review_queue',
    'simulate_review_logs',
]
