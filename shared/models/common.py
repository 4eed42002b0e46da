# shared/models/common.py
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from shared.exceptions import EventDecodeError, InvalidEventError, UnsupportedNotificationType

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    EMAIL = "EMAIL"


# Lower-cased wire key -> canonical field name. Producers have used both
# PascalCase and camelCase over time, and older ones sent the type as
# "NotificationType".
FIELD_ALIASES: Dict[str, str] = {
    "recipients": "recipients",
    "subject": "subject",
    "body": "body",
    "ishtml": "isHtml",
    "type": "type",
    "notificationtype": "type",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NotificationEvent(BaseModel):
    """
    A single notification request decoded from the broker.

    Canonical wire names are lower camelCase (``recipients``, ``subject``,
    ``body``, ``isHtml``, ``type``). ``received_at`` is stamped on receipt and
    is never part of the payload.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    recipients: Tuple[str, ...] = Field(..., min_length=1)
    subject: str = ""
    body: str
    is_html: bool = Field(False, alias="isHtml")
    type: NotificationType
    received_at: datetime = Field(default_factory=utc_now, exclude=True)

    @field_validator("recipients")
    @classmethod
    def validate_recipients(cls, v):
        cleaned = tuple(address.strip() for address in v)
        if any(not address for address in cleaned):
            raise ValueError("recipients must not contain blank addresses")
        return cleaned

    @field_validator("subject", mode="before")
    @classmethod
    def default_null_subject(cls, v):
        return "" if v is None else v

    @field_validator("is_html", mode="before")
    @classmethod
    def default_null_is_html(cls, v):
        return False if v is None else v


def parse_json_payload(raw_value: Any) -> Dict[str, Any]:
    """
    Decode a raw message value into a JSON object.

    Raises:
        EventDecodeError: if the value is empty, not UTF-8, not JSON, or not an object
    """
    if raw_value is None or raw_value == b"" or raw_value == "":
        raise EventDecodeError("Message has no value")

    try:
        text = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
        payload = json.loads(text)
    except UnicodeDecodeError as e:
        raise EventDecodeError(f"Message value is not valid UTF-8: {e}") from e
    except json.JSONDecodeError as e:
        raise EventDecodeError(f"Message value is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise EventDecodeError(f"Expected a JSON object, got {type(payload).__name__}")
    return payload


def normalize_event_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map wire keys onto canonical field names, case-insensitively.

    When a field arrives under more than one casing the canonical spelling wins.
    Unknown keys are dropped.
    """
    normalized: Dict[str, Any] = {}
    unknown = []

    for key, value in payload.items():
        canonical = FIELD_ALIASES.get(str(key).lower())
        if canonical is None:
            unknown.append(key)
            continue

        if canonical in normalized:
            logger.warning(f"Field '{canonical}' received under multiple names, using canonical spelling")
            if key != canonical:
                continue
        normalized[canonical] = value

    if unknown:
        logger.debug(f"Ignoring unknown notification event fields: {unknown}")
    return normalized


def decode_notification_event(raw_value: Any, received_at: Optional[datetime] = None) -> NotificationEvent:
    """
    Decode, normalize and validate one broker message value.

    Raises:
        EventDecodeError: malformed payload
        UnsupportedNotificationType: type absent or not a NotificationType value
        InvalidEventError: any other schema violation (e.g. no recipients)
    """
    fields = normalize_event_fields(parse_json_payload(raw_value))

    raw_type = fields.get("type")
    if raw_type not in [t.value for t in NotificationType]:
        raise UnsupportedNotificationType(raw_type)

    fields["received_at"] = received_at or utc_now()
    try:
        return NotificationEvent.model_validate(fields)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'event'}: {err['msg']}" for err in e.errors()
        )
        raise InvalidEventError(f"Invalid notification event: {problems}") from e
