"""
Command-line gate for shell-driven deployments.

Blocks until the requested number of signals arrive on the queue, prints the
result as JSON on stdout and exits non-zero on any failure, so a CI job or a
Terraform ``local-exec`` step stops before creating dependent resources.

Exit codes: 0 success, 1 timeout or fatal queue error, 2 invalid configuration.
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError

from . import clients, core
from .errors import ConfigurationError, SignalWaiterError
from .model import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_REQUIRED_SIGNAL_COUNT,
    DEFAULT_TIMEOUT_MS,
    AggregatorConfig,
)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="signal-waiter",
        description="Wait for readiness signals on an SQS queue.",
    )
    parser.add_argument("--queue-url", required=True, help="Full URL of the SQS queue to listen on.")
    parser.add_argument(
        "--region",
        default=None,
        help="AWS region of the queue (default: AWS_REGION, AWS_DEFAULT_REGION, profile, then us-east-1).",
    )
    parser.add_argument(
        "--timeout-ms",
        type=int,
        default=DEFAULT_TIMEOUT_MS,
        help=f"Maximum wait in milliseconds, 10000-3600000 (default: {DEFAULT_TIMEOUT_MS}).",
    )
    parser.add_argument(
        "--poll-interval",
        type=int,
        default=DEFAULT_POLL_INTERVAL_SECONDS,
        help=f"Long-poll wait per receive in seconds, 1-20 (default: {DEFAULT_POLL_INTERVAL_SECONDS}).",
    )
    parser.add_argument(
        "--required-signals",
        type=int,
        default=DEFAULT_REQUIRED_SIGNAL_COUNT,
        help=f"Number of signals needed, 1-100 (default: {DEFAULT_REQUIRED_SIGNAL_COUNT}).",
    )
    parser.add_argument(
        "--no-delete",
        action="store_true",
        help="Leave consumed messages on the queue for other consumers.",
    )
    parser.add_argument("--log-level", default="INFO", help="Log level (default: INFO).")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = create_parser().parse_args(argv)
    # stdout is reserved for the JSON result.
    logger = Logger(
        service="signal-waiter-cli",
        level=args.log_level.upper(),
        logger_handler=logging.StreamHandler(sys.stderr),
    )

    try:
        config = AggregatorConfig(
            queue_url=args.queue_url,
            region=clients.resolve_region(args.region),
            timeout_ms=args.timeout_ms,
            poll_interval_seconds=args.poll_interval,
            required_signal_count=args.required_signals,
            delete_messages=not args.no_delete,
        )
        queue_client = clients.SqsQueueClient(clients.get_sqs_client(config.region), logger)
    except (ConfigurationError, BotoCoreError) as e:
        print(f"signal-waiter: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        result = core.wait_for_signals(config, queue_client, logger)
    except SignalWaiterError as e:
        logger.error(str(e), extra={"error_type": type(e).__name__})
        print(f"signal-waiter: {e}", file=sys.stderr)
        return EXIT_FAILURE

    print(json.dumps(result.to_dict(), indent=2))
    return EXIT_SUCCESS


if __name__ == "__main__":
    sys.exit(main())
