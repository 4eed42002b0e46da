# shared/mq/kafka_helpers.py
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from confluent_kafka import Consumer, KafkaError, KafkaException, Message

from shared.utils.backoff import BackoffConnector, ConnectionState

logger = logging.getLogger(__name__)
logging.getLogger("confluent_kafka").setLevel(logging.WARNING)

DEFAULT_BROKER_URL = "localhost:9092"

MessageHandler = Union[Callable[[Message], Any], Callable[[Message], Awaitable[Any]]]


def parse_broker_urls(broker_urls: Optional[str]) -> List[str]:
    """Split a comma-separated broker list, defaulting to a single local broker."""
    if not broker_urls:
        return [DEFAULT_BROKER_URL]
    brokers = [url.strip() for url in broker_urls.split(",") if url.strip()]
    return brokers or [DEFAULT_BROKER_URL]


def get_consumer_config(bootstrap_servers: str, group_id: str, client_id: str,
                        auto_offset_reset: str = "earliest", **overrides) -> Dict[str, Any]:
    """Get consumer configuration for confluent-kafka."""
    config = {
        "bootstrap.servers": ",".join(parse_broker_urls(bootstrap_servers)),
        "group.id": group_id,
        "client.id": client_id,
        "auto.offset.reset": auto_offset_reset,
        "enable.auto.commit": False,  # offsets are committed after the handler returns
        "session.timeout.ms": 30000,
        "heartbeat.interval.ms": 10000,
        "max.poll.interval.ms": 300000,
        "socket.keepalive.enable": True,
        "statistics.interval.ms": 0,
    }

    config.update(overrides)
    return config


def create_kafka_consumer(topics: Sequence[str], config: Dict[str, Any], metadata_timeout: float = 10.0) -> Consumer:
    """
    Create a consumer, verify the cluster is reachable and subscribe to ``topics``.

    One attempt only; retrying is the caller's job.

    Raises:
        KafkaException: if cluster metadata cannot be fetched or subscription fails
    """
    consumer = Consumer(config)
    try:
        # Consumer() is lazy; metadata is the first real round-trip to the brokers
        metadata = consumer.list_topics(timeout=metadata_timeout)
        missing = [topic for topic in topics if topic not in metadata.topics]
        if missing:
            logger.warning(f"Topics not present on the cluster yet: {missing}")

        consumer.subscribe(list(topics), on_assign=_log_assignment, on_revoke=_log_revocation)
    except Exception:
        consumer.close()
        raise

    logger.info(f"Kafka consumer connected to {config.get('bootstrap.servers')}, subscribed to topics: {list(topics)}")
    return consumer


def _log_assignment(consumer, partitions):
    logger.info(f"Partitions assigned: {[f'{p.topic}[{p.partition}]' for p in partitions]}")


def _log_revocation(consumer, partitions):
    logger.info(f"Partitions revoked: {[f'{p.topic}[{p.partition}]' for p in partitions]}")


def safe_kafka_poll(consumer: Consumer, timeout: float = 1.0) -> Optional[Message]:
    """
    Poll once, filtering out end-of-partition events.

    Returns:
        Message or None, raises KafkaException on error
    """
    msg = consumer.poll(timeout=timeout)

    if msg is None:
        return None

    if msg.error():
        if msg.error().code() == KafkaError._PARTITION_EOF:
            logger.debug(f"Reached end of partition {msg.topic()}[{msg.partition()}] at offset {msg.offset()}")
            return None
        raise KafkaException(msg.error())

    return msg


def safe_kafka_commit(consumer: Consumer, message: Optional[Message] = None, asynchronous: bool = True) -> bool:
    """
    Commit offsets, logging instead of raising.

    Returns:
        True if commit successful, False otherwise
    """
    try:
        if message is not None:
            consumer.commit(message=message, asynchronous=asynchronous)
        else:
            consumer.commit(asynchronous=asynchronous)
        return True
    except KafkaException as e:
        logger.error(f"Kafka commit error: {e}")
        return False
    except Exception as e:
        logger.error(f"Unexpected error during Kafka commit: {e}", exc_info=True)
        return False


def is_fatal_kafka_error(error: Any) -> bool:
    """True when a KafkaException/KafkaError marks the client session as unusable."""
    if isinstance(error, KafkaException):
        error = error.args[0] if error.args else None
    return isinstance(error, KafkaError) and error.fatal()


def describe_message(msg: Message) -> str:
    return f"{msg.topic()}[{msg.partition()}]@{msg.offset()}"


class KafkaConsumerManager:
    """
    Owns the broker connection, the subscription and per-message dispatch.

    ``start()`` connects with bounded exponential backoff and then runs the
    consume loop until ``stop()`` is called. Messages are handed to the handler
    one at a time; handler errors are logged and never break the loop. Offsets
    are committed after the handler returns, so delivery is at-least-once.
    """

    def __init__(self, bootstrap_servers: str, group_id: str, client_id: str,
                 auto_offset_reset: str = "earliest", max_retries: int = 5, base_delay: float = 1.0,
                 poll_timeout: float = 1.0, on_fatal: Optional[Callable[[Exception], Any]] = None,
                 consumer_factory: Callable[..., Consumer] = create_kafka_consumer,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep, **config_overrides):
        self.bootstrap_servers = bootstrap_servers
        self.group_id = group_id
        self.client_id = client_id
        self.auto_offset_reset = auto_offset_reset
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.poll_timeout = poll_timeout
        self.on_fatal = on_fatal
        self.consumer_factory = consumer_factory
        self.config_overrides = config_overrides
        self._sleep = sleep

        self.topics: List[str] = []
        self.consumer: Optional[Consumer] = None
        self.connector: Optional[BackoffConnector] = None
        self._running = False
        self._connecting = False
        self._stop_event = asyncio.Event()
        self._finished: Optional[asyncio.Event] = None
        self._session_error: Optional[KafkaError] = None

    @property
    def state(self) -> ConnectionState:
        return self.connector.state if self.connector else ConnectionState.DISCONNECTED

    @property
    def running(self) -> bool:
        return self._running

    def _build_config(self) -> Dict[str, Any]:
        return get_consumer_config(
            self.bootstrap_servers,
            self.group_id,
            self.client_id,
            self.auto_offset_reset,
            error_cb=self._on_client_error,
            **self.config_overrides
        )

    def _on_client_error(self, error: KafkaError):
        # Called from librdkafka's poll thread
        if error.fatal():
            logger.critical(f"Fatal Kafka client error: {error}")
            self._session_error = error
        else:
            logger.warning(f"Kafka client error: {error}")

    async def _connect(self) -> Consumer:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.consumer_factory, self.topics, self._build_config())

    async def start(self, topics: Sequence[str], handler: MessageHandler):
        """
        Connect, subscribe to ``topics`` and consume until stopped.

        Raises:
            ConnectionRetriesExhausted: if the initial connection never succeeds
        """
        if self._running or self._connecting:
            logger.warning("Kafka consumer already running")
            return

        self.topics = list(topics)
        self._stop_event.clear()
        self._session_error = None
        self.connector = BackoffConnector(
            target=f"Kafka brokers {self.bootstrap_servers}",
            connect=self._connect,
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            sleep=self._sleep,
            should_stop=self._stop_event.is_set,
        )

        logger.info(f"Connecting Kafka consumer group '{self.group_id}' to topics {self.topics}")
        self._connecting = True
        try:
            self.consumer = await self.connector.connect()
        finally:
            self._connecting = False

        if self._stop_event.is_set():
            logger.info("Stop requested while connecting, not starting Kafka consumer loop")
            await self._close_consumer()
            return

        self._running = True
        self._finished = asyncio.Event()
        try:
            await self._consume(handler)
        finally:
            self._running = False
            await self._close_consumer()
            self._finished.set()

    async def _consume(self, handler: MessageHandler):
        loop = asyncio.get_running_loop()
        logger.info(f"Kafka consumer started for topics {self.topics}")

        while self._running and not self._stop_event.is_set():
            try:
                msg = await loop.run_in_executor(None, safe_kafka_poll, self.consumer, self.poll_timeout)
            except KafkaException as e:
                if is_fatal_kafka_error(e):
                    await self._handle_session_fault(e)
                    break
                logger.error(f"Kafka error in consumer loop for topics {self.topics}: {e}")
                await self._sleep(self.base_delay)
                continue

            if self._session_error is not None:
                await self._handle_session_fault(KafkaException(self._session_error))
                break

            if msg is None:
                continue

            await self._dispatch(msg, handler)

        logger.info("Kafka consumer loop stopped")

    async def _dispatch(self, msg: Message, handler: MessageHandler):
        try:
            result = handler(msg)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.exception(f"Error processing message at {describe_message(msg)}: {e}")

        if self.consumer is not None and not safe_kafka_commit(self.consumer, message=msg):
            logger.warning(f"Failed to commit offset for message at {describe_message(msg)}")

    async def _handle_session_fault(self, error: Exception):
        logger.critical(f"Kafka session fault, stopping consumer: {error}")
        self._running = False
        if self.connector:
            self.connector.mark_disconnected()
        if self.on_fatal:
            try:
                result = self.on_fatal(error)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error in Kafka fatal error callback: {e}")

    async def _close_consumer(self):
        consumer, self.consumer = self.consumer, None
        if consumer is None:
            return
        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, consumer.close)
            logger.info("Kafka consumer disconnected successfully")
        except Exception as e:
            logger.error(f"Error while disconnecting from kafka consumer: {e}")
        finally:
            if self.connector:
                self.connector.mark_disconnected()

    async def stop(self):
        """Stop consuming and disconnect. Never raises."""
        was_running = self._running
        self._running = False
        self._stop_event.set()

        if self._connecting:
            logger.info("Stop requested while Kafka consumer is connecting")
            return
        if self.consumer is None and not was_running:
            logger.info("Not stopping Kafka consumer because it is not initialized")
            return

        logger.info(f"Stopping Kafka consumer for topics {self.topics}")

        if self._finished is not None and not self._finished.is_set():
            try:
                await asyncio.wait_for(self._finished.wait(), timeout=self.poll_timeout + 5.0)
            except asyncio.TimeoutError:
                logger.warning("Kafka consumer loop did not finish within timeout, closing anyway")

        await self._close_consumer()
        logger.info("Kafka consumer stopped")
