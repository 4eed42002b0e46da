# shared/exceptions.py
"""Error taxonomy for the notification service."""
from typing import Optional


class NotifierError(Exception):
    """Base class for notification service errors."""


class ConfigurationError(NotifierError):
    """Required configuration is missing or invalid. Fatal at startup."""


class ConnectionRetriesExhausted(NotifierError):
    """A remote dependency could not be reached within the retry budget."""

    def __init__(self, target: str, attempts: int, last_error: Optional[Exception] = None):
        self.target = target
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Could not connect to {target} after {attempts} attempts: {last_error}")


class EventDecodeError(NotifierError):
    """The message payload is not a UTF-8 JSON object."""


class UnsupportedNotificationType(NotifierError):
    """The event's type is missing or not a known NotificationType."""

    def __init__(self, value):
        self.value = value
        super().__init__(f"Invalid notification type received: {value!r}")


class InvalidEventError(NotifierError):
    """The event decoded but violates the NotificationEvent schema."""


class RegistrationNotFound(NotifierError):
    """The service registry no longer knows this instance."""
