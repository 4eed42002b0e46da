# notifier/event_consumer.py
import logging
import time
from typing import Any, Dict, Sequence

from shared.exceptions import EventDecodeError, InvalidEventError, UnsupportedNotificationType
from shared.models.common import decode_notification_event, utc_now
from shared.mq.kafka_helpers import KafkaConsumerManager
from notifier.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)


def message_context(message) -> Dict[str, Any]:
    """Correlation fields identifying the broker message in logs."""
    try:
        return {"topic": message.topic(), "partition": message.partition(), "offset": message.offset()}
    except Exception:
        return {}


class NotificationEventConsumer:
    """
    Consumes notification events from Kafka and hands them to the dispatcher.

    Every failure is contained to the message that caused it; the consume loop
    always moves on to the next message.
    """

    def __init__(self, consumer_manager: KafkaConsumerManager, dispatcher: NotificationDispatcher,
                 topics: Sequence[str]):
        self.consumer_manager = consumer_manager
        self.dispatcher = dispatcher
        self.topics = list(topics)

        # Statistics
        self.stats = {
            'messages_processed': 0,
            'notifications_sent': 0,
            'notifications_failed': 0,
            'messages_dropped': 0,
            'started_at': None
        }

    @property
    def running(self) -> bool:
        return self.consumer_manager.running

    async def start(self):
        """
        Connect to the broker and consume until stopped.

        Raises:
            ConnectionRetriesExhausted: if the broker cannot be reached
        """
        self.stats['started_at'] = time.time()
        await self.consumer_manager.start(self.topics, self.handle_message)

    async def stop(self):
        logger.info("Destroying Kafka consumer")
        await self.consumer_manager.stop()

    async def handle_message(self, message) -> bool:
        """
        Decode one broker message and dispatch it.

        Returns:
            True if a notification was sent, False if it was dropped or failed
        """
        self.stats['messages_processed'] += 1
        context = message_context(message)

        try:
            event = decode_notification_event(message.value(), received_at=utc_now())
        except EventDecodeError as e:
            logger.error(f"Error processing Kafka message: {e}", extra=context)
            self.stats['messages_dropped'] += 1
            return False
        except UnsupportedNotificationType as e:
            logger.warning(f"Invalid notification type received: {e.value!r}", extra=context)
            self.stats['messages_dropped'] += 1
            return False
        except InvalidEventError as e:
            logger.warning(f"Dropping notification event with bad data: {e}", extra=context)
            self.stats['messages_dropped'] += 1
            return False

        success = await self.dispatcher.dispatch(event, context)
        if success:
            self.stats['notifications_sent'] += 1
        else:
            self.stats['notifications_failed'] += 1
        return success

    def get_statistics(self) -> Dict[str, Any]:
        """Get consumer statistics."""
        stats = self.stats.copy()
        if stats['started_at']:
            stats['uptime_seconds'] = time.time() - stats['started_at']
        return stats
