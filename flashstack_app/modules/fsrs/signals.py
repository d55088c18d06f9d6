from blinker import Namespace

# Define a signal namespace for FSRS
_signals = Namespace()

# Signal emitted after a review is applied and saved to DB
# Arguments:
# - sender: The SchedulerService class
# - user_id: str
# - card_id: str
# - rating: int
# - new_state: dict (CardStateDTO.to_dict())
card_reviewed = _signals.signal('card-reviewed')

# Signal emitted after user/deck parameters are updated (manually or by the optimizer)
# Arguments:
# - sender: The service that wrote the layer
# - user_id: str
# - deck_id: Optional[str]
# - source: 'manual' | 'optimizer' | 'reset'
parameters_updated = _signals.signal('parameters-updated')

# Signal emitted when a background optimization run ends
# Arguments:
# - sender: The FSRSOptimizerService instance
# - user_id: str
# - status: 'completed' | 'failed' | 'cancelled'
# - result: Optional[dict] (OptimizationResult.to_dict())
# - error: Optional[str]
optimization_finished = _signals.signal('optimization-finished')
