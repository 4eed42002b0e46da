"""
Shared fixtures for notification service tests.
"""

import json
import time
from typing import Any, List, Optional
from unittest.mock import MagicMock

import pytest
from prometheus_client import CollectorRegistry

from notifier.email_service import EmailTransportRegistry, MailEnvelope, SmtpSettings
from notifier.metrics import NotificationMetrics


class FakeKafkaMessage:
    """Stand-in for confluent_kafka.Message."""

    def __init__(self, value: Any, topic: str = "urlshortener.notifications.email",
                 partition: int = 0, offset: int = 0, error: Any = None):
        self._value = value
        self._topic = topic
        self._partition = partition
        self._offset = offset
        self._error = error

    def value(self):
        return self._value

    def topic(self):
        return self._topic

    def partition(self):
        return self._partition

    def offset(self):
        return self._offset

    def error(self):
        return self._error


class FakeKafkaConsumer:
    """Replays queued messages from poll(), then returns None."""

    def __init__(self, messages: Optional[List[FakeKafkaMessage]] = None, close_error: Optional[Exception] = None):
        self.messages = list(messages or [])
        self.committed: List[FakeKafkaMessage] = []
        self.closed = False
        self.close_error = close_error

    def poll(self, timeout=None):
        if self.messages:
            return self.messages.pop(0)
        time.sleep(0.01)
        return None

    def commit(self, message=None, asynchronous=True):
        self.committed.append(message)

    def close(self):
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


class RecordingTransport:
    """Mail transport that records envelopes instead of talking SMTP."""

    def __init__(self, error: Optional[Exception] = None):
        self.sent: List[MailEnvelope] = []
        self.error = error
        self.closed = False

    def send(self, envelope: MailEnvelope):
        if self.error is not None:
            raise self.error
        self.sent.append(envelope)

    def verify(self):
        return True

    def close(self):
        self.closed = True


def make_payload(**overrides) -> bytes:
    payload = {
        "recipients": ["alice@example.com"],
        "subject": "Your link was created",
        "body": "https://sho.rt/abc",
        "isHtml": False,
        "type": "EMAIL",
    }
    payload.update(overrides)
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def smtp_settings():
    return SmtpSettings(
        host="smtp.example.com",
        port=587,
        secure=False,
        username="notifier@example.com",
        password="secret",
        from_address="notifier@example.com",
        timeout=5.0,
    )


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def metrics(registry):
    return NotificationMetrics(registry=registry, include_default_collectors=False)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def transport_registry(transport, smtp_settings):
    transport_registry = EmailTransportRegistry(transport_factory=lambda settings: transport)
    transport_registry.init(smtp_settings)
    return transport_registry


@pytest.fixture
def smtp_connection():
    """A MagicMock SMTP connection usable as a context manager."""
    smtp = MagicMock()
    smtp.__enter__.return_value = smtp
    smtp.has_extn.return_value = True
    smtp.send_message.return_value = {}
    return smtp
