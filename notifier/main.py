# notifier/main.py
"""
Notification Service - email dispatcher for URL shortener notification events

Consumes notification events from Kafka and delivers them over SMTP.

Features:
- Kafka consumer with bounded reconnect backoff
- SMTP delivery with plain text or HTML bodies
- Prometheus metrics over HTTP
- Consul registration with TTL heartbeats
- Coordinated shutdown with meaningful exit codes
"""

import asyncio
import logging
import signal
import sys
from typing import Any, Dict

from shared.logging_setup import LoggingSettings, configure_logging, shutdown_logging
from shared.mq.kafka_helpers import is_fatal_kafka_error
from notifier import config
from notifier.service import EXIT_FATAL, EXIT_OK, EXIT_SIGINT, EXIT_SIGTERM, NotifierService

logger = logging.getLogger(__name__)

SIGNAL_EXIT_CODES = {
    signal.SIGINT: EXIT_SIGINT,
    signal.SIGTERM: EXIT_SIGTERM,
}

# Global signal handlers
SHUTDOWN_SIGNAL_RECEIVED = False


def logging_settings_from_config(cfg=config) -> LoggingSettings:
    return LoggingSettings(
        service_name=cfg.SERVICE_NAME,
        level=cfg.LOG_LEVEL,
        console_enabled=cfg.LOGGING_CONSOLE_ENABLED,
        file_enabled=cfg.LOGGING_FILE_ENABLED,
        file_base_path=cfg.LOGGING_FILE_BASE_PATH,
        stream_enabled=cfg.LOGGING_STREAM_ENABLED,
        stream_host=cfg.LOGGING_STREAM_HOST,
        stream_port=cfg.LOGGING_STREAM_PORT,
    )


def setup_signal_handlers(loop: asyncio.AbstractEventLoop, service: NotifierService) -> None:
    """Setup handlers for OS signals to handle graceful shutdown."""
    def handle_signal(sig):
        global SHUTDOWN_SIGNAL_RECEIVED
        if SHUTDOWN_SIGNAL_RECEIVED:
            logger.warning("Second shutdown signal received, forcing exit")
            sys.exit(1)

        SHUTDOWN_SIGNAL_RECEIVED = True
        logger.info(f"Received shutdown signal {sig.name}, initiating graceful shutdown")
        service.request_shutdown(SIGNAL_EXIT_CODES[sig])

    for sig in SIGNAL_EXIT_CODES:
        loop.add_signal_handler(sig, handle_signal, sig)


def setup_exception_handler(loop: asyncio.AbstractEventLoop, service: NotifierService) -> None:
    """Route exceptions nobody awaited: fatal Kafka errors stop the process, the rest are logged."""
    def handle_exception(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]):
        error = context.get("exception")
        if error is not None and is_fatal_kafka_error(error):
            logger.warning(f"Terminating application due to kafka error: {error}")
            service.request_shutdown(EXIT_FATAL)
            return
        logger.error(f"Unhandled exception: {context.get('message')}", exc_info=error)

    loop.set_exception_handler(handle_exception)


async def run_service() -> int:
    service = NotifierService()
    loop = asyncio.get_running_loop()
    setup_signal_handlers(loop, service)
    setup_exception_handler(loop, service)
    return await service.run()


def run():
    configure_logging(logging_settings_from_config())

    exit_code = EXIT_OK
    try:
        exit_code = asyncio.run(run_service())
    except KeyboardInterrupt:
        logger.info("Exiting due to keyboard interrupt")
        exit_code = EXIT_SIGINT
    except Exception as e:
        logger.exception("Fatal error in main:", exc_info=e)
        exit_code = EXIT_FATAL
    finally:
        logger.info("Notification Service shutdown complete.")
        shutdown_logging()
    sys.exit(exit_code)


if __name__ == "__main__":
    run()
