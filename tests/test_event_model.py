"""
Test notification event decoding and validation.
"""

import json
import logging
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from shared.exceptions import EventDecodeError, InvalidEventError, UnsupportedNotificationType
from shared.models.common import (
    NotificationEvent,
    NotificationType,
    decode_notification_event,
    normalize_event_fields,
    parse_json_payload,
)

from conftest import make_payload


def test_decode_camel_case_event():
    event = decode_notification_event(make_payload())

    assert event.recipients == ("alice@example.com",)
    assert event.subject == "Your link was created"
    assert event.body == "https://sho.rt/abc"
    assert event.is_html is False
    assert event.type == NotificationType.EMAIL


def test_pascal_case_and_camel_case_decode_identically():
    camel = decode_notification_event(make_payload())
    pascal = decode_notification_event(json.dumps({
        "Recipients": ["alice@example.com"],
        "Subject": "Your link was created",
        "Body": "https://sho.rt/abc",
        "IsHtml": False,
        "Type": "EMAIL",
    }).encode())

    assert camel.model_dump() == pascal.model_dump()


def test_legacy_notification_type_key_is_accepted():
    event = decode_notification_event(json.dumps({
        "recipients": ["bob@example.com"],
        "body": "hello",
        "NotificationType": "EMAIL",
    }))

    assert event.type == NotificationType.EMAIL


def test_canonical_spelling_wins_on_duplicate_fields(caplog):
    raw = json.dumps({
        "Subject": "pascal",
        "subject": "camel",
        "recipients": ["a@example.com"],
        "body": "x",
        "type": "EMAIL",
    })

    with caplog.at_level(logging.WARNING):
        event = decode_notification_event(raw)

    assert event.subject == "camel"
    assert "received under multiple names" in caplog.text


def test_canonical_spelling_wins_regardless_of_order():
    fields = normalize_event_fields({"subject": "camel", "SUBJECT": "upper"})
    assert fields == {"subject": "camel"}


def test_unknown_fields_are_ignored():
    event = decode_notification_event(make_payload(trackingId="123"))
    assert not hasattr(event, "trackingId")


def test_missing_subject_and_html_flag_get_defaults():
    event = decode_notification_event(json.dumps({
        "recipients": ["a@example.com"],
        "body": "x",
        "type": "EMAIL",
        "subject": None,
        "isHtml": None,
    }))

    assert event.subject == ""
    assert event.is_html is False


def test_received_at_is_stamped():
    received_at = datetime(2024, 1, 1, tzinfo=timezone.utc)
    event = decode_notification_event(make_payload(), received_at=received_at)

    assert event.received_at == received_at
    assert "received_at" not in event.model_dump()


def test_received_at_is_not_taken_from_payload():
    event = decode_notification_event(make_payload(received_at="2000-01-01T00:00:00Z"))
    assert event.received_at.year != 2000


@pytest.mark.parametrize("type_value", ["SMS", "email", None, 42, ["EMAIL"]])
def test_unsupported_type_raises(type_value):
    with pytest.raises(UnsupportedNotificationType) as exc_info:
        decode_notification_event(make_payload(type=type_value))

    assert exc_info.value.value == type_value


def test_missing_type_raises_unsupported():
    raw = json.dumps({"recipients": ["a@example.com"], "body": "x"})
    with pytest.raises(UnsupportedNotificationType):
        decode_notification_event(raw)


def test_zero_recipients_is_invalid():
    with pytest.raises(InvalidEventError, match="recipients"):
        decode_notification_event(make_payload(recipients=[]))


def test_blank_recipient_is_invalid():
    with pytest.raises(InvalidEventError):
        decode_notification_event(make_payload(recipients=["a@example.com", "  "]))


def test_missing_body_is_invalid():
    raw = json.dumps({"recipients": ["a@example.com"], "type": "EMAIL"})
    with pytest.raises(InvalidEventError, match="body"):
        decode_notification_event(raw)


@pytest.mark.parametrize("raw", [None, b"", b"not json", b"\xff\xfe\xfd", b"[1, 2]", b'"text"'])
def test_malformed_payloads_raise_decode_error(raw):
    with pytest.raises(EventDecodeError):
        parse_json_payload(raw)


def test_event_is_immutable():
    event = decode_notification_event(make_payload())

    with pytest.raises(ValidationError):
        event.subject = "changed"


def test_event_populates_by_field_name():
    event = NotificationEvent(recipients=["a@example.com"], body="x", is_html=True, type="EMAIL")
    assert event.is_html is True
    assert event.model_dump(by_alias=True)["isHtml"] is True
