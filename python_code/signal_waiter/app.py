"""
AWS Lambda handler for the Signal Waiter.

This module is the Lambda entry point and orchestrator for the function. It
lets a deployment workflow (for example a Step Functions task placed between
"launch instances" and "create dependent resources") block until the
instances have reported readiness on an SQS queue. Its responsibilities:
  - Loading defaults from environment variables and merging the event over them.
  - Resolving the AWS region and building a validated AggregatorConfig.
  - Creating and caching the SQS client.
  - Calling the polling loop in the 'core' module.
  - Emitting the final metrics and re-raising every failure so the
    orchestrator halts dependent work.
"""

import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from aws_lambda_powertools import Logger

from . import clients, core
from .errors import ConfigurationError, FatalQueueError, SignalTimeoutError
from .model import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_REQUIRED_SIGNAL_COUNT,
    DEFAULT_TIMEOUT_MS,
    AggregatorConfig,
)

# --- 1. SETUP: Configuration and Logging ---


def get_env_var(name: str, default: Optional[str] = None) -> str:
    """
    Gets an environment variable or raises a ConfigurationError for fast-failure.

    Args:
        name: The name of the environment variable.
        default: An optional default value. If not provided, the variable is required.

    Returns:
        The value of the environment variable.

    Raises:
        ConfigurationError: If the required environment variable is not set.
    """
    value = os.environ.get(name, default)
    if value is None:
        raise ConfigurationError(f"FATAL: Environment variable '{name}' is not set.")
    return value


# --- Configuration defaults (loaded once at cold start, events may override) ---
# QUEUE_URL has no default: it is read per invocation when the event omits it.
SIGNAL_REGION = get_env_var("SIGNAL_REGION", "")
SIGNAL_TIMEOUT_MS = get_env_var("SIGNAL_TIMEOUT_MS", str(DEFAULT_TIMEOUT_MS))
POLL_INTERVAL_SECONDS = get_env_var("POLL_INTERVAL_SECONDS", str(DEFAULT_POLL_INTERVAL_SECONDS))
REQUIRED_SIGNAL_COUNT = get_env_var("REQUIRED_SIGNAL_COUNT", str(DEFAULT_REQUIRED_SIGNAL_COUNT))
DELETE_MESSAGES = get_env_var("DELETE_MESSAGES", "true")
ENVIRONMENT = get_env_var("ENVIRONMENT", "dev")
LOG_LEVEL = get_env_var("LOG_LEVEL", "INFO").upper()

logger = Logger(service="signal-waiter", level=LOG_LEVEL)

# Event keys accepted in addition to the snake_case field names.
EVENT_ALIASES = {
    "queueUrl": "queue_url",
    "timeoutMs": "timeout_ms",
    "pollIntervalSeconds": "poll_interval_seconds",
    "requiredSignalCount": "required_signal_count",
    "deleteMessages": "delete_messages",
}

# --- 2. ORCHESTRATION LOGIC ---


def build_config(event: Mapping[str, Any]) -> AggregatorConfig:
    """
    Merges the invocation event over the environment defaults.

    Raises:
        ConfigurationError: If neither the event nor ``QUEUE_URL`` names a queue,
            or the merged values do not form a valid config.
    """
    values: Dict[str, Any] = {
        "queue_url": None,
        "timeout_ms": SIGNAL_TIMEOUT_MS,
        "poll_interval_seconds": POLL_INTERVAL_SECONDS,
        "required_signal_count": REQUIRED_SIGNAL_COUNT,
        "delete_messages": DELETE_MESSAGES,
    }
    for key, value in event.items():
        key = EVENT_ALIASES.get(key, key)
        if key in values and value is not None:
            values[key] = value
    if not values["queue_url"]:
        values["queue_url"] = get_env_var("QUEUE_URL")

    region = clients.resolve_region(event.get("region") or SIGNAL_REGION or None)
    return AggregatorConfig.from_mapping(values, region=region)


def _build_response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    """Centralized helper to build the final Lambda response."""
    return {"statusCode": status_code, "body": json.dumps(body)}


# --- 3. LAMBDA HANDLER ---


def handler(event: Optional[Dict], context: Any):
    """
    Main Lambda entry point. Blocks until the configured signals arrive.

    The function returns a response dictionary on success and re-raises every
    failure (configuration, fatal queue error, timeout) so the calling
    workflow treats the step as failed.
    """
    start_time = datetime.now(timezone.utc)
    event = event or {}

    try:
        config = build_config(event)

        remaining_fn = getattr(context, "get_remaining_time_in_millis", None)
        if callable(remaining_fn) and remaining_fn() < config.timeout_ms:
            logger.warning(
                "Signal timeout exceeds the remaining Lambda execution time.",
                extra={"timeout_ms": config.timeout_ms, "lambda_remaining_ms": remaining_fn()},
            )

        queue_client = clients.SqsQueueClient(clients.get_sqs_client(config.region), logger)
        result = core.wait_for_signals(config, queue_client, logger)

        core.emit_metrics(
            logger,
            ENVIRONMENT,
            "Success",
            {
                "queue_url": config.queue_url,
                "signal_count": result.signal_count,
                "poll_count": result.poll_count,
                "delete_failures": result.delete_failures,
                "elapsed_ms": result.elapsed_ms,
            },
        )
        return _build_response(200, result.to_dict())

    except Exception as e:
        latency_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        error_payload: Dict[str, Any] = {
            "error_type": type(e).__name__,
            "error_message": str(e),
            "latency_ms": latency_ms,
        }
        status = "Failure"
        if isinstance(e, SignalTimeoutError):
            status = "Timeout"
            error_payload.update(
                {"signal_count": e.received, "required": e.required, "poll_count": e.poll_count, "elapsed_ms": e.elapsed_ms}
            )
        elif isinstance(e, FatalQueueError):
            error_payload["poll_count"] = e.poll_count
        core.emit_metrics(logger, ENVIRONMENT, status, error_payload)
        logger.error(f"Waiting for signals failed: {json.dumps(error_payload)}", exc_info=True)
        raise
