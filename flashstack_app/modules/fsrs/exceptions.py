from flashstack_app.core.error_handlers import FlashStackError


class FSRSError(FlashStackError):
    """Base exception for FSRS module."""

    default_code = 'FSRS_ERROR'
    default_status = 500

    def __init__(self, message: str, details: dict = None):
        super().__init__(
            message=message,
            code=self.default_code,
            status_code=self.default_status,
            details=details
        )


class InvalidRatingError(FSRSError):
    """Raised when the provided rating is not valid (must be 1-4)."""
    default_code = 'INVALID_RATING'
    default_status = 400


class InvalidStateError(FSRSError):
    """Raised when a card memory state is malformed."""
    default_code = 'INVALID_STATE'
    default_status = 422


class NumericDivergenceError(FSRSError):
    """Raised when a model or optimizer computation produces NaN/Infinity."""
    default_code = 'NUMERIC_DIVERGENCE'
    default_status = 500


class InsufficientSamplesError(FSRSError):
    """Raised when the optimizer is given too few review logs."""
    default_code = 'INSUFFICIENT_SAMPLES'
    default_status = 422


class ParameterInvariantViolation(FSRSError):
    """Raised when resolved FSRS parameters break their invariants."""
    default_code = 'PARAMETER_INVARIANT_VIOLATION'
    default_status = 422


class CardNotFoundError(FSRSError):
    default_code = 'CARD_NOT_FOUND'
    default_status = 404


class StaleCardStateError(FSRSError):
    """Raised when a card state was written by someone else since it was read."""
    default_code = 'STALE_CARD_STATE'
    default_status = 409


class OptimizationInProgressError(FSRSError):
    default_code = 'OPTIMIZATION_IN_PROGRESS'
    default_status = 409


class OptimizationCancelledError(FSRSError):
    """Raised when an optimizer run is cancelled or exceeds its time budget."""
    default_code = 'OPTIMIZATION_CANCELLED'
    default_status = 409
