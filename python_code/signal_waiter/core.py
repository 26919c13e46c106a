"""
Core business logic for the Signal Waiter.

These functions contain no direct AWS SDK calls and no global state. They
receive the queue client, the Powertools logger and, for testability, the
clock and sleep functions from the caller in app.py or cli.py, so the whole
polling loop can be unit-tested against a fake queue without waiting.
"""

import json
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError, ParamValidationError

from .clients import SQS_MAX_BATCH_SIZE
from .errors import FatalQueueError, SignalTimeoutError
from .model import AggregatorConfig, QueueClient, RunResult, RunState, RunStatus, SignalRecord

# Fixed wait after a transient receive error, clipped to the remaining budget.
TRANSIENT_BACKOFF_SECONDS = 5

# Structured error codes that retrying cannot fix.
FATAL_ERROR_CODES = frozenset(
    {
        "AWS.SimpleQueueService.NonExistentQueue",
        "QueueDoesNotExist",
        "AccessDenied",
        "AccessDeniedException",
        "InvalidParameterValue",
        "InvalidAddress",
        "InvalidSecurity",
    }
)

# Message fragments checked when no structured code is available.
FATAL_ERROR_SUBSTRINGS = ("does not exist", "AccessDenied", "InvalidParameterValue")


def is_fatal_error(error: BaseException) -> bool:
    """
    Classifies a receive error as fatal (True) or transient (False).

    Structured botocore error codes are matched exactly first; the message
    substrings are kept as a fallback for errors that carry no code.
    Client-side parameter validation failures are always fatal.
    """
    if isinstance(error, ParamValidationError):
        return True
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        if code in FATAL_ERROR_CODES:
            return True
    message = str(error)
    return any(fragment in message for fragment in FATAL_ERROR_SUBSTRINGS)


def consume_signals(
    config: AggregatorConfig,
    state: RunState,
    records: List[SignalRecord],
    queue_client: QueueClient,
    logger: Logger,
) -> None:
    """
    Records received signals and acknowledges them with one batched delete.

    A signal counts as received as soon as it is read. A message redelivered
    after its visibility timeout expired is not counted again but is still
    staged for deletion. Deletion failures are downgraded to warnings and never
    remove a signal from the run state; the affected receipt handles simply
    stay in ``state.pending_deletes``.
    """
    required = config.required_signal_count
    staged: List[SignalRecord] = []
    for record in records:
        if record.message_id in state.seen_message_ids:
            logger.info("Skipping redelivered message.", extra={"message_id": record.message_id})
        else:
            state.seen_message_ids.add(record.message_id)
            state.signals.append(record.body)
            logger.info(
                f"Signal {state.received}/{required} received: {record.body}",
                extra={"message_id": record.message_id},
            )
        if config.delete_messages and record.receipt_handle:
            staged.append(record)
            state.pending_deletes.add(record.receipt_handle)

    if not staged:
        return

    try:
        failed_ids = set(queue_client.delete_batch(config.queue_url, staged))
    except Exception as e:
        state.delete_failures += len(staged)
        logger.warning(
            f"Failed to delete messages (signals still received): {e}",
            extra={"error_type": type(e).__name__, "messages": len(staged)},
        )
        return

    for record in staged:
        if record.message_id not in failed_ids:
            state.pending_deletes.discard(record.receipt_handle)
    if failed_ids:
        state.delete_failures += len(failed_ids)
        logger.warning(
            f"{len(failed_ids)} message(s) could not be deleted (signals still received).",
            extra={"failed_ids": sorted(failed_ids)},
        )
    else:
        logger.info(f"{len(staged)} message(s) deleted from queue")


def _log_progress(config: AggregatorConfig, state: RunState, now: float, logger: Logger) -> None:
    logger.info(
        f"Poll #{state.poll_count}: {state.received}/{config.required_signal_count} signals received",
        extra={
            "poll_count": state.poll_count,
            "received": state.received,
            "required": config.required_signal_count,
            "elapsed_seconds": round(state.elapsed_ms(now) / 1000),
            "remaining_seconds": round(state.remaining_ms(now) / 1000),
            "status": state.status.value,
        },
    )


def build_result(state: RunState, elapsed_ms: int) -> RunResult:
    now = datetime.now(timezone.utc)
    return RunResult(
        id=f"signals-{int(now.timestamp() * 1000)}",
        signals=list(state.signals),
        signal_count=state.received,
        elapsed_ms=elapsed_ms,
        poll_count=state.poll_count,
        received_at=now.isoformat(),
        delete_failures=state.delete_failures,
    )


def wait_for_signals(
    config: AggregatorConfig,
    queue_client: QueueClient,
    logger: Logger,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Any] = time.sleep,
) -> RunResult:
    """
    Polls the queue until enough signals have arrived or the deadline passes.

    Every receive call is clipped to the time actually left, so the run never
    overshoots its deadline by more than one network round-trip plus the
    processing of the last batch.

    Args:
        config: The fully-resolved run configuration.
        queue_client: The queue collaborator used to receive and delete messages.
        logger: The Powertools Logger instance for structured logging.
        clock: Monotonic clock returning seconds.
        sleep: Used for the backoff after a transient error.

    Returns:
        A RunResult holding every received signal.

    Raises:
        FatalQueueError: The queue reported a non-retryable condition.
        SignalTimeoutError: The deadline passed with too few signals.
    """
    required = config.required_signal_count
    state = RunState(started_at=clock(), timeout_ms=config.timeout_ms)

    logger.info(
        f"Starting to wait for {required} signal(s) in queue: {config.queue_url}",
        extra={
            "region": config.region,
            "timeout_ms": config.timeout_ms,
            "poll_interval_seconds": config.poll_interval_seconds,
            "delete_messages": config.delete_messages,
        },
    )

    while clock() < state.deadline and state.received < required:
        state.status = RunStatus.POLLING
        state.poll_count += 1
        remaining_ms = state.remaining_ms(clock())

        try:
            records = queue_client.receive(
                config.queue_url,
                max_messages=min(SQS_MAX_BATCH_SIZE, required - state.received),
                wait_seconds=min(config.poll_interval_seconds, remaining_ms // 1000),
            )
        except Exception as e:
            if is_fatal_error(e):
                state.status = RunStatus.FAILED_FATAL
                logger.error(
                    f"Fatal error during poll #{state.poll_count}: {e}",
                    extra={"error_type": type(e).__name__, "status": state.status.value},
                )
                raise FatalQueueError(f"Fatal error - {e}", poll_count=state.poll_count) from e

            logger.warning(
                f"Error during poll #{state.poll_count}: {e}",
                extra={"error_type": type(e).__name__},
            )
            _log_progress(config, state, clock(), logger)
            backoff = min(TRANSIENT_BACKOFF_SECONDS, state.remaining_ms(clock()) / 1000)
            if backoff > 0:
                sleep(backoff)
            continue

        consume_signals(config, state, records, queue_client, logger)
        _log_progress(config, state, clock(), logger)

    elapsed_ms = state.elapsed_ms(clock())
    if state.received < required:
        state.status = RunStatus.TIMED_OUT
        raise SignalTimeoutError(
            elapsed_ms=elapsed_ms, required=required, received=state.received, poll_count=state.poll_count
        )

    state.status = RunStatus.SUCCEEDED
    logger.info(
        f"All {required} signal(s) received after {round(elapsed_ms / 1000)}s",
        extra={"poll_count": state.poll_count, "status": state.status.value},
    )
    return build_result(state, elapsed_ms)


def emit_metrics(logger: Logger, environment: str, status: str, payload: Dict[str, Any]) -> None:
    """
    Formats and logs metrics in CloudWatch Embedded Metric Format (EMF).

    Dashboards and alarms should filter/group by the 'Environment' dimension.
    """
    base_metrics = {
        "SignalsReceived": payload.get("signal_count", 0),
        "PollCount": payload.get("poll_count", 0),
        "DeleteFailures": payload.get("delete_failures", 0),
    }
    if "elapsed_ms" in payload:
        base_metrics["ElapsedMs"] = payload["elapsed_ms"]

    emf_payload = {
        "_aws": {
            "Timestamp": int(datetime.now(timezone.utc).timestamp() * 1000),
            "CloudWatchMetrics": [
                {
                    "Namespace": "SignalWaiter",
                    "Dimensions": [["Environment"]],
                    "Metrics": [
                        {"Name": k, "Unit": "Milliseconds" if k.endswith("Ms") else "Count"}
                        for k in base_metrics.keys()
                    ],
                }
            ],
        },
        "Environment": environment,
        "Status": status,
        **payload,
        **base_metrics,
    }
    logger.info(json.dumps(emf_payload))
