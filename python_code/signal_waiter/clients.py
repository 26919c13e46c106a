"""
A factory module for creating boto3 SQS clients, plus the SQS-backed
implementation of the QueueClient collaborator used by the aggregation loop.

The loop in core.py only ever sees the QueueClient protocol, so tests can
hand it a fake, a moto-backed SqsQueueClient, or a real one interchangeably.
"""

import logging
import os
import uuid
from typing import Dict, List, Optional, cast

import boto3
import botocore.config
from aws_lambda_powertools import Logger
from mypy_boto3_sqs import SQSClient
from mypy_boto3_sqs.type_defs import DeleteMessageBatchRequestEntryTypeDef

from .model import SignalRecord

logger = logging.getLogger(__name__)

FALLBACK_REGION = "us-east-1"

# SQS rejects receive and delete batches larger than 10 entries.
SQS_MAX_BATCH_SIZE = 10

# A shared, robust retry configuration so that throttling and transient
# network errors are first absorbed by botocore before the loop sees them.
BOTO_CONFIG_RETRYABLE = botocore.config.Config(
    retries={"max_attempts": 5, "mode": "adaptive"}
)

SQS_CLIENTS: Dict[str, SQSClient] = {}


def resolve_region(explicit: Optional[str] = None) -> str:
    """
    Resolves the effective AWS region for a run.

    The order is: an explicit value, ``AWS_REGION``, ``AWS_DEFAULT_REGION``,
    the boto3 session's configured region, then a fixed fallback.
    """
    if explicit:
        return explicit
    for name in ("AWS_REGION", "AWS_DEFAULT_REGION"):
        if value := os.environ.get(name):
            return value
    session_region = boto3.session.Session().region_name
    if session_region:
        return session_region
    logger.warning(f"No AWS region configured, falling back to {FALLBACK_REGION}.")
    return FALLBACK_REGION


def get_sqs_client(region: str) -> SQSClient:
    """
    Returns an SQS client for ``region``, cached for the life of the process.

    In a test run under moto's ``mock_aws`` the created client is intercepted
    and talks to the in-memory SQS backend instead of AWS.
    """
    client = SQS_CLIENTS.get(region)
    if client is None:
        if os.environ.get("USE_MOTO"):
            logger.info("MOTO ENABLED: Returning mocked SQS client.")
        client = boto3.client("sqs", region_name=region, config=BOTO_CONFIG_RETRYABLE)
        SQS_CLIENTS[region] = client
    return client


class SqsQueueClient:
    """QueueClient implementation on top of a boto3 SQS client."""

    def __init__(self, sqs_client: SQSClient, logger: Logger):
        self._sqs = sqs_client
        self._logger = logger

    def receive(self, queue_url: str, max_messages: int, wait_seconds: int) -> List[SignalRecord]:
        response = self._sqs.receive_message(
            QueueUrl=queue_url,
            MaxNumberOfMessages=max(1, min(SQS_MAX_BATCH_SIZE, max_messages)),
            WaitTimeSeconds=max(0, wait_seconds),
        )
        return [
            SignalRecord.from_message(
                body=msg.get("Body"),
                receipt_handle=msg.get("ReceiptHandle"),
                message_id=msg.get("MessageId") or f"msg-{uuid.uuid4().hex}",
            )
            for msg in response.get("Messages", [])
        ]

    def delete_batch(self, queue_url: str, records: List[SignalRecord]) -> List[str]:
        """
        Deletes messages from SQS in batches of 10.

        API errors propagate to the caller. Entries SQS reports as failed
        inside an otherwise successful response are logged and returned.

        Returns:
            The message ids that could not be deleted.
        """
        entries = [
            {"Id": record.message_id, "ReceiptHandle": record.receipt_handle}
            for record in records
            if record.receipt_handle
        ]
        failed_ids: List[str] = []
        for i in range(0, len(entries), SQS_MAX_BATCH_SIZE):
            batch = cast(List[DeleteMessageBatchRequestEntryTypeDef], entries[i : i + SQS_MAX_BATCH_SIZE])
            response = self._sqs.delete_message_batch(QueueUrl=queue_url, Entries=batch)
            if failed := response.get("Failed"):
                failed_ids.extend(f["Id"] for f in failed)
                self._logger.warning(
                    "Partial failure in SQS delete batch.",
                    extra={"failed_messages": failed},
                )
        return failed_ids
