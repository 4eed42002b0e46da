# shared/models/__init__.py

from .common import NotificationEvent, NotificationType, decode_notification_event

__all__ = [
    'NotificationEvent',
    'NotificationType',
    'decode_notification_event'
]
