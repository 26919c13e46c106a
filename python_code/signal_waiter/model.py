"""
Data models for the Signal Waiter.

This module defines the core data structures passed between the handler, the
aggregation loop and the queue client. Using frozen dataclasses for inputs
and outputs keeps the contracts explicit, statically checked by mypy, and
guarantees a configuration is never mutated once a run has started.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set

from .errors import ConfigurationError

# Body recorded for a signal whose message arrived with an empty body.
DEFAULT_SIGNAL_BODY = "ready"

DEFAULT_TIMEOUT_MS = 300_000
MIN_TIMEOUT_MS = 10_000
MAX_TIMEOUT_MS = 3_600_000

DEFAULT_POLL_INTERVAL_SECONDS = 10
MIN_POLL_INTERVAL_SECONDS = 1
# SQS long polling limit for WaitTimeSeconds.
MAX_POLL_INTERVAL_SECONDS = 20

DEFAULT_REQUIRED_SIGNAL_COUNT = 1
MAX_REQUIRED_SIGNAL_COUNT = 100

_FALSE_STRINGS = {"false", "0", "no", "off"}


class RunStatus(str, enum.Enum):
    """States of a single aggregation run."""

    STARTED = "STARTED"
    POLLING = "POLLING"
    SUCCEEDED = "SUCCEEDED"
    TIMED_OUT = "TIMED_OUT"
    FAILED_FATAL = "FAILED_FATAL"


def _check_int(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _as_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in _FALSE_STRINGS
    return bool(value)


@dataclass(frozen=True)
class AggregatorConfig:
    """
    Fully-resolved, immutable input for one aggregation run.

    The region is resolved by the caller before construction; the aggregation
    loop never consults ambient provider configuration.

    Attributes:
        queue_url: The full URL of the SQS queue that receives signals.
        region: The AWS region the queue lives in.
        timeout_ms: How long to wait for signals before giving up.
        poll_interval_seconds: The long-poll wait requested per receive call.
        required_signal_count: The number of signals needed to succeed.
        delete_messages: Whether consumed messages are deleted from the queue.
    """

    queue_url: str
    region: str
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    required_signal_count: int = DEFAULT_REQUIRED_SIGNAL_COUNT
    delete_messages: bool = True

    def __post_init__(self):
        if not self.queue_url or not str(self.queue_url).strip():
            raise ConfigurationError("queue_url is required")
        if not self.region:
            raise ConfigurationError("region must be resolved before building the config")
        _check_int("timeout_ms", self.timeout_ms)
        _check_int("poll_interval_seconds", self.poll_interval_seconds)
        _check_int("required_signal_count", self.required_signal_count)
        if self.timeout_ms < MIN_TIMEOUT_MS:
            raise ConfigurationError(f"timeout_ms must be at least {MIN_TIMEOUT_MS} (10 seconds)")
        if self.timeout_ms > MAX_TIMEOUT_MS:
            raise ConfigurationError(f"timeout_ms must not exceed {MAX_TIMEOUT_MS} (1 hour)")
        if self.poll_interval_seconds < MIN_POLL_INTERVAL_SECONDS:
            raise ConfigurationError(f"poll_interval_seconds must be at least {MIN_POLL_INTERVAL_SECONDS}")
        if self.poll_interval_seconds > MAX_POLL_INTERVAL_SECONDS:
            raise ConfigurationError(
                f"poll_interval_seconds must not exceed {MAX_POLL_INTERVAL_SECONDS} (SQS long polling limit)"
            )
        if self.required_signal_count < 1:
            raise ConfigurationError("required_signal_count must be at least 1")
        if self.required_signal_count > MAX_REQUIRED_SIGNAL_COUNT:
            raise ConfigurationError(
                f"required_signal_count must not exceed {MAX_REQUIRED_SIGNAL_COUNT} (practical limit)"
            )

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any], region: str) -> "AggregatorConfig":
        """
        Builds a config from loose input such as a Lambda event.

        Missing or ``None`` values fall back to the documented defaults, numeric
        strings are coerced, and boolean strings such as ``"false"`` are honoured.

        Args:
            values: A mapping keyed by the dataclass field names.
            region: The already-resolved AWS region.

        Raises:
            ConfigurationError: If any value is missing, malformed or out of range.
        """

        def _get(name: str, default: Any) -> Any:
            value = values.get(name)
            return default if value is None or value == "" else value

        return cls(
            queue_url=str(_get("queue_url", "")),
            region=region,
            timeout_ms=_as_int("timeout_ms", _get("timeout_ms", DEFAULT_TIMEOUT_MS)),
            poll_interval_seconds=_as_int(
                "poll_interval_seconds", _get("poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS)
            ),
            required_signal_count=_as_int(
                "required_signal_count", _get("required_signal_count", DEFAULT_REQUIRED_SIGNAL_COUNT)
            ),
            delete_messages=_as_bool(_get("delete_messages", True)),
        )


@dataclass(frozen=True)
class SignalRecord:
    """
    One message received from the queue.

    Attributes:
        body: The message body, or DEFAULT_SIGNAL_BODY if it arrived empty.
        receipt_handle: Opaque token used only to delete this message instance.
        message_id: The provider-assigned message identifier.
    """

    body: str
    receipt_handle: Optional[str]
    message_id: str

    @classmethod
    def from_message(cls, body: Optional[str], receipt_handle: Optional[str], message_id: str) -> "SignalRecord":
        return cls(body=body or DEFAULT_SIGNAL_BODY, receipt_handle=receipt_handle, message_id=message_id)


@dataclass
class RunState:
    """
    Mutable bookkeeping owned exclusively by one run. It is never persisted.

    Attributes:
        started_at: Monotonic clock reading taken when the run started.
        timeout_ms: The budget the deadline is derived from.
        poll_count: Receive attempts made so far, failed ones included.
        signals: Signal bodies in the order they were received.
        pending_deletes: Receipt handles staged for deletion but not yet acknowledged.
        seen_message_ids: Ids already counted, so a redelivered message is not counted twice.
        delete_failures: Messages whose deletion failed; their signals are still counted.
        status: The current position in the run's state machine.
    """

    started_at: float
    timeout_ms: int
    poll_count: int = 0
    signals: List[str] = field(default_factory=list)
    pending_deletes: Set[str] = field(default_factory=set)
    seen_message_ids: Set[str] = field(default_factory=set)
    delete_failures: int = 0
    status: RunStatus = RunStatus.STARTED

    @property
    def deadline(self) -> float:
        return self.started_at + self.timeout_ms / 1000

    @property
    def received(self) -> int:
        return len(self.signals)

    def elapsed_ms(self, now: float) -> int:
        return int((now - self.started_at) * 1000)

    def remaining_ms(self, now: float) -> int:
        return max(0, int((self.deadline - now) * 1000))


@dataclass(frozen=True)
class RunResult:
    """
    Terminal output of a successful run, produced exactly once.

    Attributes:
        id: A unique identifier for this result, ``signals-<epoch ms>``.
        signals: All received signal bodies, in order.
        signal_count: The number of received signals.
        elapsed_ms: Wall-clock time the run took.
        poll_count: Total receive attempts.
        received_at: ISO-8601 UTC timestamp of completion.
        delete_failures: Messages that were counted but could not be deleted.
    """

    id: str
    signals: List[str]
    signal_count: int
    elapsed_ms: int
    poll_count: int
    received_at: str
    delete_failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "signals": list(self.signals),
            "signalCount": self.signal_count,
            "elapsedMs": self.elapsed_ms,
            "pollCount": self.poll_count,
            "receivedAt": self.received_at,
            "deleteFailures": self.delete_failures,
        }


class QueueClient(Protocol):
    """The narrow interface the aggregation loop needs from a message queue."""

    def receive(self, queue_url: str, max_messages: int, wait_seconds: int) -> List[SignalRecord]:
        """Receives up to ``max_messages``, long-polling for ``wait_seconds``."""
        ...

    def delete_batch(self, queue_url: str, records: List[SignalRecord]) -> List[str]:
        """Deletes the given messages and returns the ids of those that could not be deleted."""
        ...
