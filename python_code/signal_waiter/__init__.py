"""Block a deployment until readiness signals arrive on an SQS queue."""

from .core import wait_for_signals
from .errors import ConfigurationError, FatalQueueError, SignalTimeoutError, SignalWaiterError
from .model import AggregatorConfig, RunResult, SignalRecord

__all__ = [
    "AggregatorConfig",
    "ConfigurationError",
    "FatalQueueError",
    "RunResult",
    "SignalRecord",
    "SignalTimeoutError",
    "SignalWaiterError",
    "wait_for_signals",
]
