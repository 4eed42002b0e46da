# shared/utils/backoff.py
import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from shared.exceptions import ConnectionRetriesExhausted

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FATAL = "fatal"


class BackoffConnector:
    """
    Connection state machine with bounded exponential backoff.

    DISCONNECTED -> CONNECTING -> CONNECTED, or CONNECTING -> FATAL once
    ``max_retries`` attempts have failed. Attempt ``k`` waits
    ``base_delay * 2 ** (k - 1)`` seconds before attempt ``k + 1``.
    FATAL is terminal: the connector raises ConnectionRetriesExhausted once
    and refuses further attempts. When ``should_stop`` returns True before an
    attempt or a retry wait, the connector gives up quietly and returns None.
    """

    def __init__(self, target: str, connect: Callable[[], Awaitable[Any]], max_retries: int = 5,
                 base_delay: float = 1.0, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 should_stop: Optional[Callable[[], bool]] = None):
        self.target = target
        self._connect = connect
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self._sleep = sleep
        self._should_stop = should_stop
        self.state = ConnectionState.DISCONNECTED
        self.attempts = 0
        self.last_error: Optional[Exception] = None

    def delay_for_attempt(self, attempt: int) -> float:
        return self.base_delay * (2 ** (attempt - 1))

    def _abandon(self) -> None:
        logger.info(f"Connection to {self.target} abandoned, stop requested")
        self.state = ConnectionState.DISCONNECTED

    async def connect(self) -> Any:
        """Run attempts until one succeeds or the retry budget is spent."""
        if self.state == ConnectionState.FATAL:
            raise RuntimeError(f"Connector for {self.target} is in FATAL state")
        if self.state == ConnectionState.CONNECTING:
            raise RuntimeError(f"Connector for {self.target} is already connecting")

        self.state = ConnectionState.CONNECTING
        self.attempts = 0

        while True:
            if self._should_stop and self._should_stop():
                self._abandon()
                return None
            self.attempts += 1
            try:
                if self.attempts > 1:
                    logger.info(f"Retrying connection to {self.target} (attempt {self.attempts}/{self.max_retries})")
                result = await self._connect()
            except asyncio.CancelledError:
                self.state = ConnectionState.DISCONNECTED
                raise
            except Exception as e:
                self.last_error = e
                if self.attempts >= self.max_retries:
                    self.state = ConnectionState.FATAL
                    logger.critical(
                        f"Connection to {self.target} failed {self.attempts} times, "
                        f"retries exceeded the configured attempts: {self.max_retries}"
                    )
                    raise ConnectionRetriesExhausted(self.target, self.attempts, e) from e

                delay = self.delay_for_attempt(self.attempts)
                logger.error(f"Failed to connect to {self.target} (attempt {self.attempts}): {e}")
                if self._should_stop and self._should_stop():
                    self._abandon()
                    return None
                logger.info(f"Retrying in {delay} seconds...")
                await self._sleep(delay)
                continue

            self.state = ConnectionState.CONNECTED
            self.last_error = None
            logger.info(f"Connected to {self.target} after {self.attempts} attempt(s)")
            return result

    def mark_disconnected(self):
        if self.state != ConnectionState.FATAL:
            self.state = ConnectionState.DISCONNECTED
