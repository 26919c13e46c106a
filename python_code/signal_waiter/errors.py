"""
Exception types for the Signal Waiter.

Every failure of a run surfaces to the caller as exactly one of these
exceptions, so an orchestrator can halt dependent work on any of them.
"""


class SignalWaiterError(Exception):
    """Base exception for the Signal Waiter."""


class ConfigurationError(SignalWaiterError, ValueError):
    """Raised before polling starts when the configuration is invalid."""


class FatalQueueError(SignalWaiterError):
    """
    Raised when the queue reports a condition that retrying cannot fix.

    The original exception is chained as ``__cause__``.

    Attributes:
        poll_count: The poll attempt on which the fatal error was observed.
    """

    def __init__(self, message: str, poll_count: int):
        super().__init__(message)
        self.poll_count = poll_count


class SignalTimeoutError(SignalWaiterError):
    """
    Raised when the deadline passes before enough signals were received.

    Attributes:
        elapsed_ms: Wall-clock time spent waiting.
        required: The configured number of signals.
        received: The number of signals actually received.
        poll_count: The number of receive attempts made.
    """

    def __init__(self, elapsed_ms: int, required: int, received: int, poll_count: int):
        super().__init__(
            f"Timeout after {round(elapsed_ms / 1000)}s waiting for {required} signal(s). "
            f"Only received {received} ({poll_count} polls attempted)"
        )
        self.elapsed_ms = elapsed_ms
        self.required = required
        self.received = received
        self.poll_count = poll_count
