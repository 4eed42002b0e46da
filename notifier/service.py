# notifier/service.py
import asyncio
import inspect
import logging
from typing import Any, Callable, List, Optional, Tuple

from shared.exceptions import ConfigurationError, ConnectionRetriesExhausted
from shared.mq.kafka_helpers import KafkaConsumerManager
from notifier import config
from notifier.api import HttpServer, create_app
from notifier.discovery_client import DiscoveryClient
from notifier.dispatcher import NotificationDispatcher
from notifier.email_service import EmailTransportRegistry
from notifier.event_consumer import NotificationEventConsumer
from notifier.metrics import NotificationMetrics

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIGURATION_ERROR = 1
EXIT_SIGINT = 130
EXIT_SIGTERM = 143
EXIT_FATAL = 255


class NotifierService:
    """
    Main notification service: brings components up in order and tears them
    down in a coordinated shutdown.

    Startup: discovery registration -> metrics -> HTTP listener -> mail
    transport -> Kafka consumer. Shutdown: consumer -> mail transport ->
    discovery deregistration -> HTTP listener, each step isolated.
    """

    def __init__(self, cfg=config, metrics: Optional[NotificationMetrics] = None,
                 transport_registry: Optional[EmailTransportRegistry] = None,
                 discovery_client: Optional[DiscoveryClient] = None,
                 consumer_manager: Optional[KafkaConsumerManager] = None,
                 http_server: Optional[HttpServer] = None):
        self.config = cfg
        self.metrics = metrics or NotificationMetrics()
        self.transport_registry = transport_registry or EmailTransportRegistry()
        self.discovery_client = discovery_client or DiscoveryClient(
            host=cfg.DISCOVERY_SERVER_HOST,
            port=cfg.DISCOVERY_SERVER_PORT,
            service_name=cfg.SERVICE_NAME,
            service_port=cfg.SERVER_PORT,
            enabled=cfg.ENABLE_DISCOVERY_CLIENT,
            max_retries=cfg.DISCOVERY_SERVER_MAX_RETRIES,
            base_delay=cfg.DISCOVERY_RETRY_BACKOFF_S,
            heartbeat_interval=cfg.DISCOVERY_HEARTBEAT_INTERVAL_S,
            on_fatal=self._on_fatal_error,
        )
        self.consumer_manager = consumer_manager or KafkaConsumerManager(
            bootstrap_servers=cfg.KAFKA_BROKER_URLS,
            group_id=cfg.KAFKA_CONSUMER_GROUP_ID,
            client_id=cfg.KAFKA_CLIENT_ID,
            auto_offset_reset=cfg.KAFKA_AUTO_OFFSET_RESET,
            max_retries=cfg.KAFKA_CONSUMER_MAX_RETRIES,
            base_delay=cfg.KAFKA_CONSUMER_RETRY_BACKOFF_S,
            poll_timeout=cfg.KAFKA_CONSUMER_POLL_TIMEOUT_S,
            on_fatal=self._on_fatal_error,
        )
        self.http_server = http_server or HttpServer(
            create_app(self.metrics, cfg.METRICS_PATH), port=cfg.SERVER_PORT
        )
        self.dispatcher = NotificationDispatcher(self.transport_registry, self.metrics)
        self.event_consumer = NotificationEventConsumer(
            self.consumer_manager, self.dispatcher, [cfg.KAFKA_TOPIC_NAME]
        )

        self.exit_code: Optional[int] = None
        self._shutdown_event = asyncio.Event()
        self._shutdown_started = False
        self._consumer_task: Optional[asyncio.Task] = None

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_event.is_set()

    def request_shutdown(self, exit_code: int):
        """Ask the service to stop. The first request decides the exit code."""
        if self._shutdown_event.is_set():
            logger.debug(f"Shutdown already requested, ignoring exit code {exit_code}")
            return
        logger.info(f"Shutdown requested with exit code {exit_code}")
        self.exit_code = exit_code
        self._shutdown_event.set()

    def _on_fatal_error(self, error: Exception):
        logger.critical(f"Terminating application due to fatal error: {error}")
        self.request_shutdown(EXIT_FATAL)

    async def start(self):
        """
        Bring up every component in order.

        Raises:
            ConnectionRetriesExhausted: discovery registration never succeeded
            ConfigurationError: the mail transport is misconfigured
        """
        logger.info(f"Starting {self.config.SERVICE_NAME}")

        await self.discovery_client.register()

        logger.info("Prometheus metrics initialized")

        try:
            if not await self.http_server.start():
                logger.error("HTTP server not available, continuing without metrics endpoint")
        except Exception as e:
            logger.error(f"Error starting HTTP server, continuing without metrics endpoint: {e}")

        transport = self.transport_registry.init()
        if self.config.EMAIL_VERIFY_ON_STARTUP:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, transport.verify)

        if self.shutdown_requested:
            logger.info("Shutdown requested, not starting Kafka consumer")
            return

        self._consumer_task = asyncio.create_task(self.event_consumer.start())
        self._consumer_task.add_done_callback(self._on_consumer_done)
        logger.info(f"{self.config.SERVICE_NAME} started successfully")

    def _on_consumer_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, ConnectionRetriesExhausted):
            logger.critical(f"Kafka consumer could not connect: {error}")
            self.request_shutdown(EXIT_FATAL)
        elif error is not None:
            logger.critical(f"Kafka consumer stopped unexpectedly: {error!r}")
            self.request_shutdown(EXIT_FATAL)
        elif not self._shutdown_started:
            logger.warning("Kafka consumer loop ended")

    async def run(self) -> int:
        """
        Start the service, wait for a shutdown request, then clean up.

        Returns:
            process exit code
        """
        startup = asyncio.create_task(self.start())
        waiter = asyncio.create_task(self._shutdown_event.wait())
        await asyncio.wait([startup, waiter], return_when=asyncio.FIRST_COMPLETED)
        waiter.cancel()

        if not startup.done():
            logger.warning("Shutdown requested during startup, abandoning remaining startup steps")
            startup.cancel()

        try:
            await startup
        except asyncio.CancelledError:
            if not startup.cancelled():
                raise
        except ConfigurationError as e:
            logger.critical(f"{e}. Terminating application")
            self.request_shutdown(EXIT_CONFIGURATION_ERROR)
        except ConnectionRetriesExhausted as e:
            logger.critical(f"{e}. Terminating application")
            self.request_shutdown(EXIT_FATAL)

        await self._shutdown_event.wait()
        await self.shutdown()
        return self.exit_code if self.exit_code is not None else EXIT_OK

    async def shutdown(self):
        """Run every cleanup step; a failure in one never blocks the rest."""
        if self._shutdown_started:
            return
        self._shutdown_started = True
        logger.info(f"Stopping {self.config.SERVICE_NAME}")

        steps: List[Tuple[str, Callable[[], Any]]] = [
            ("Kafka consumer", self._stop_consumer),
            ("email transport", self.transport_registry.destroy),
            ("discovery client", self.discovery_client.deregister),
            ("HTTP server", self.http_server.stop),
        ]
        for name, step in steps:
            try:
                result = step()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error stopping {name}: {e}")

        logger.info(f"Exiting process with exit code: {self.exit_code if self.exit_code is not None else EXIT_OK}")

    async def _stop_consumer(self):
        await self.event_consumer.stop()

        task = self._consumer_task
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.config.KAFKA_CONSUMER_POLL_TIMEOUT_S + 5.0)
        except asyncio.TimeoutError:
            logger.warning("Kafka consumer task did not finish within timeout, cancelling")
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        except Exception:
            # already reported by _on_consumer_done
            pass

    def get_health_status(self) -> dict:
        """Get service health status."""
        return {
            'service': self.config.SERVICE_NAME,
            'status': 'healthy' if self.event_consumer.running else 'unhealthy',
            'consumer_state': self.consumer_manager.state.value,
            'discovery_state': self.discovery_client.state.value,
            'statistics': self.event_consumer.get_statistics(),
        }
