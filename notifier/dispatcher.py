# notifier/dispatcher.py
import asyncio
import logging
import time
from typing import Any, Dict, Optional

from shared.models.common import NotificationEvent
from notifier.email_service import EmailTransportRegistry, MailEnvelope
from notifier.metrics import NotificationMetrics

logger = logging.getLogger(__name__)


def build_envelope(event: NotificationEvent) -> MailEnvelope:
    """Place the body in the html slot for markup events, in the text slot otherwise."""
    return MailEnvelope(
        to=list(event.recipients),
        subject=event.subject,
        text=None if event.is_html else event.body,
        html=event.body if event.is_html else None,
    )


class NotificationDispatcher:
    """
    Turns one decoded event into one send attempt and records the outcome.

    Failures are terminal per event: nothing is retried here, and nothing is
    raised to the caller.
    """

    def __init__(self, transport_registry: EmailTransportRegistry, metrics: NotificationMetrics):
        self.transport_registry = transport_registry
        self.metrics = metrics

    async def dispatch(self, event: NotificationEvent, context: Optional[Dict[str, Any]] = None) -> bool:
        """
        Send the event and record metrics.

        Args:
            event: decoded notification event
            context: correlation data for logs (topic, partition, offset)

        Returns:
            True if the send succeeded, False otherwise
        """
        context = context or {}
        start_time = time.perf_counter()
        notification_type = event.type.value
        successful = False

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                f"Received {notification_type} notification event: {event.model_dump_json(by_alias=True)}",
                extra=context,
            )

        try:
            envelope = build_envelope(event)
            transport = self.transport_registry.get()
            if transport is None:
                logger.error("Not sending email because transport is not initialized!", extra=context)
                return False

            try:
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, transport.send, envelope)
                successful = True
                logger.info(
                    f"Email sent to {len(envelope.to)} recipient(s), "
                    f"received at {event.received_at.isoformat()}",
                    extra=context,
                )
            except Exception as e:
                logger.error(
                    f"Error sending email to {envelope.to}: {type(e).__name__}: {e}",
                    extra={**context, "recipients": envelope.to},
                )
            return successful
        finally:
            self.metrics.inc_notification_event(notification_type)
            self.metrics.observe_notification_duration(
                notification_type, successful, time.perf_counter() - start_time
            )
