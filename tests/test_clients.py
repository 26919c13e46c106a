"""Tests for the SQS client factory and SqsQueueClient, backed by moto."""

from unittest import mock

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from signal_waiter import clients, core
from signal_waiter.errors import FatalQueueError
from signal_waiter.model import AggregatorConfig, SignalRecord

REGION = "us-east-1"


@pytest.fixture(name="sqs")
def fixture_sqs():
    with mock_aws():
        yield boto3.client("sqs", region_name=REGION)


@pytest.fixture(name="queue_url")
def fixture_queue_url(sqs):
    return sqs.create_queue(QueueName="bootstrap-signals")["QueueUrl"]


def _messages_left(sqs, queue_url):
    attrs = sqs.get_queue_attributes(
        QueueUrl=queue_url,
        AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
    )["Attributes"]
    return int(attrs["ApproximateNumberOfMessages"]) + int(attrs["ApproximateNumberOfMessagesNotVisible"])


def test_receive_maps_messages_to_records(sqs, queue_url, logger):
    sqs.send_message(QueueUrl=queue_url, MessageBody="web-1 ready")
    sqs.send_message(QueueUrl=queue_url, MessageBody="web-2 ready")
    queue = clients.SqsQueueClient(sqs, logger)

    records = queue.receive(queue_url, max_messages=10, wait_seconds=0)

    assert sorted(r.body for r in records) == ["web-1 ready", "web-2 ready"]
    assert all(r.receipt_handle and r.message_id for r in records)


def test_receive_respects_max_messages(sqs, queue_url, logger):
    for i in range(3):
        sqs.send_message(QueueUrl=queue_url, MessageBody=f"node-{i}")
    queue = clients.SqsQueueClient(sqs, logger)

    records = queue.receive(queue_url, max_messages=1, wait_seconds=0)

    assert len(records) == 1


def test_delete_batch_removes_messages(sqs, queue_url, logger):
    sqs.send_message(QueueUrl=queue_url, MessageBody="ready")
    queue = clients.SqsQueueClient(sqs, logger)
    records = queue.receive(queue_url, max_messages=10, wait_seconds=0)

    failed = queue.delete_batch(queue_url, records)

    assert failed == []
    assert _messages_left(sqs, queue_url) == 0


def test_delete_batch_chunks_and_reports_failures(logger):
    sqs = mock.Mock()
    sqs.delete_message_batch.side_effect = [
        {"Successful": [{"Id": f"m-{i}"} for i in range(10)]},
        {"Successful": [], "Failed": [{"Id": "m-10", "Code": "ReceiptHandleIsInvalid", "SenderFault": True}]},
    ]
    records = [SignalRecord(body="ready", receipt_handle=f"rh-{i}", message_id=f"m-{i}") for i in range(11)]

    failed = clients.SqsQueueClient(sqs, logger).delete_batch("url", records)

    assert failed == ["m-10"]
    assert [len(c.kwargs["Entries"]) for c in sqs.delete_message_batch.call_args_list] == [10, 1]
    logger.warning.assert_called_once()


def test_delete_batch_propagates_api_errors(logger):
    sqs = mock.Mock()
    sqs.delete_message_batch.side_effect = ClientError({"Error": {"Code": "AccessDenied"}}, "DeleteMessageBatch")
    records = [SignalRecord(body="ready", receipt_handle="rh", message_id="m-1")]

    with pytest.raises(ClientError):
        clients.SqsQueueClient(sqs, logger).delete_batch("url", records)


def test_wait_for_signals_against_moto(sqs, queue_url, logger):
    sqs.send_message(QueueUrl=queue_url, MessageBody="web-1 ready")
    sqs.send_message(QueueUrl=queue_url, MessageBody="web-2 ready")
    config = AggregatorConfig(
        queue_url=queue_url, region=REGION, timeout_ms=10_000, poll_interval_seconds=1, required_signal_count=2
    )

    result = core.wait_for_signals(config, clients.SqsQueueClient(sqs, logger), logger)

    assert result.signal_count == 2
    assert sorted(result.signals) == ["web-1 ready", "web-2 ready"]
    assert result.delete_failures == 0
    assert _messages_left(sqs, queue_url) == 0


def test_missing_queue_is_fatal_against_moto(sqs, logger):
    missing = f"https://sqs.{REGION}.amazonaws.com/123456789012/no-such-queue"
    config = AggregatorConfig(queue_url=missing, region=REGION, timeout_ms=10_000, poll_interval_seconds=1)
    sleep = mock.Mock()

    with pytest.raises(FatalQueueError) as exc_info:
        core.wait_for_signals(config, clients.SqsQueueClient(sqs, logger), logger, sleep=sleep)

    assert exc_info.value.poll_count == 1
    assert isinstance(exc_info.value.__cause__, ClientError)
    sleep.assert_not_called()


def test_get_sqs_client_is_cached_per_region():
    first = clients.get_sqs_client("us-east-1")

    assert clients.get_sqs_client("us-east-1") is first
    assert clients.get_sqs_client("eu-west-1") is not first
    assert first.meta.region_name == "us-east-1"


def test_resolve_region_prefers_explicit(monkeypatch):
    monkeypatch.setenv("AWS_REGION", "ap-southeast-2")

    assert clients.resolve_region("eu-central-1") == "eu-central-1"


def test_resolve_region_from_environment(monkeypatch):
    monkeypatch.setenv("AWS_REGION", "ap-southeast-2")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-west-2")
    assert clients.resolve_region() == "ap-southeast-2"

    monkeypatch.delenv("AWS_REGION")
    assert clients.resolve_region() == "us-west-2"


def test_resolve_region_falls_back(monkeypatch):
    monkeypatch.delenv("AWS_REGION", raising=False)
    monkeypatch.delenv("AWS_DEFAULT_REGION", raising=False)
    session = mock.Mock(region_name=None)
    monkeypatch.setattr(clients.boto3.session, "Session", mock.Mock(return_value=session))

    assert clients.resolve_region() == clients.FALLBACK_REGION
