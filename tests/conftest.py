"""Pytest configuration and shared fixtures for the Signal Waiter."""

import os
from unittest import mock

import pytest

# Dummy credentials and region must be in place before any boto3 client is built.
os.environ["AWS_ACCESS_KEY_ID"] = "testing"
os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
os.environ["AWS_SECURITY_TOKEN"] = "testing"
os.environ["AWS_SESSION_TOKEN"] = "testing"
os.environ["AWS_DEFAULT_REGION"] = "us-east-1"

from fakes import FakeClock  # noqa: E402
from signal_waiter import clients  # noqa: E402


@pytest.fixture(name="clock")
def fixture_clock():
    return FakeClock()


@pytest.fixture(name="logger")
def fixture_logger():
    """A stand-in for the Powertools Logger so tests can assert on warnings."""
    return mock.Mock()


@pytest.fixture(autouse=True)
def clear_sqs_client_cache():
    clients.SQS_CLIENTS.clear()
    yield
    clients.SQS_CLIENTS.clear()
