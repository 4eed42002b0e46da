# notifier/discovery_client.py
import asyncio
import inspect
import logging
import uuid
from typing import Any, Callable, Dict, Optional

import httpx

from shared.exceptions import ConnectionRetriesExhausted, RegistrationNotFound
from shared.utils.backoff import BackoffConnector, ConnectionState
from shared.utils.network import get_local_ip_address

logger = logging.getLogger(__name__)


class DiscoveryClient:
    """
    Registers this process with the Consul agent and keeps its TTL check passing.

    Registration retries with bounded exponential backoff. A heartbeat that the
    agent rejects with 404 means the registration was lost (agent restart,
    critical-service reaping) and triggers a full re-registration.
    """

    def __init__(self, host: str, port: int, service_name: str, service_port: int, enabled: bool = True,
                 max_retries: int = 5, base_delay: float = 1.0, heartbeat_interval: float = 15.0,
                 service_address: Optional[str] = None, on_fatal: Optional[Callable[[Exception], Any]] = None,
                 http_client: Optional[httpx.AsyncClient] = None, sleep=asyncio.sleep):
        self.enabled = enabled
        self.base_url = f"http://{host}:{port}"
        self.service_name = service_name
        self.service_id = f"{service_name}-{uuid.uuid4().hex}"
        self.service_port = service_port
        self.service_address = service_address
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.heartbeat_interval = heartbeat_interval
        self.on_fatal = on_fatal
        self._sleep = sleep

        self._client = http_client
        self._owns_client = http_client is None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.connector: Optional[BackoffConnector] = None
        self.registered = False

    @property
    def check_id(self) -> str:
        return f"service:{self.service_id}"

    @property
    def state(self) -> ConnectionState:
        return self.connector.state if self.connector else ConnectionState.DISCONNECTED

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=httpx.Timeout(5.0))
        return self._client

    def registration_payload(self) -> Dict[str, Any]:
        return {
            "ID": self.service_id,
            "Name": self.service_name,
            "Address": self.service_address or get_local_ip_address(),
            "Port": self.service_port,
            "Check": {
                "Name": "health-check",
                "Timeout": "5s",
                "TTL": "30s",
                "DeregisterCriticalServiceAfter": "1m",
            },
        }

    async def _register_once(self):
        response = await self._get_client().put("/v1/agent/service/register", json=self.registration_payload())
        response.raise_for_status()

    async def _register_with_retry(self):
        self.registered = False
        self.connector = BackoffConnector(
            target=f"discovery server {self.base_url}",
            connect=self._register_once,
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            sleep=self._sleep,
        )
        await self.connector.connect()
        self.registered = True
        logger.info(f"Discovery client registered service {self.service_id}")

    async def register(self) -> bool:
        """
        Register the service and start heartbeats.

        Returns:
            False when the discovery client is disabled, True once registered

        Raises:
            ConnectionRetriesExhausted: if the agent never accepts the registration
        """
        if not self.enabled:
            logger.info("Discovery client disabled, skipping registration")
            return False

        logger.info(f"Initializing discovery client with agent at {self.base_url}")
        await self._register_with_retry()
        self._start_heartbeat()
        return True

    def _start_heartbeat(self):
        self._stop_event.clear()
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def _pass_check(self):
        response = await self._get_client().put(
            f"/v1/agent/check/pass/{self.check_id}",
            params={"note": "Heartbeat from agent"},
        )
        if response.status_code == 404:
            raise RegistrationNotFound(f"Check {self.check_id} not found: {response.text.strip()}")
        response.raise_for_status()

    async def send_heartbeat(self):
        """Pass the TTL check once; re-register if the agent forgot us."""
        logger.debug(f"Sending heartbeat for {self.check_id}")
        try:
            await self._pass_check()
        except RegistrationNotFound as e:
            logger.info(f"Service registration not found. Re-registering service ({e})")
            await self._reregister()
        except httpx.HTTPError as e:
            logger.error(f"Error sending heartbeat: {e}")

    async def _reregister(self):
        try:
            await self._register_with_retry()
        except ConnectionRetriesExhausted as e:
            logger.critical(f"Discovery client re-registration failed: {e}")
            await self._notify_fatal(e)

    async def _notify_fatal(self, error: Exception):
        self._stop_event.set()
        if self.on_fatal is None:
            return
        try:
            result = self.on_fatal(error)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Error in discovery fatal error callback: {e}")

    async def _heartbeat_loop(self):
        while not self._stop_event.is_set():
            try:
                await self.send_heartbeat()
            except Exception as e:
                logger.exception(f"Unexpected error sending heartbeat: {e}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.heartbeat_interval)
            except asyncio.TimeoutError:
                continue

    async def deregister(self):
        """Stop heartbeats and remove the registration. Never raises."""
        if not self.enabled or self.connector is None:
            logger.warning("Not destroying discovery client because it is not initialized!!")
            await self._close_client()
            return

        self._stop_event.set()
        if (self._heartbeat_task is not None and not self._heartbeat_task.done()
                and self._heartbeat_task is not asyncio.current_task()):
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Heartbeat task ended with error: {e}")
        self._heartbeat_task = None

        try:
            if self.registered:
                response = await self._get_client().put(f"/v1/agent/service/deregister/{self.service_id}")
                response.raise_for_status()
                logger.info(f"Discovery client deregistered service {self.service_id}")
        except Exception as e:
            logger.error(f"Failed to stop Discovery client: {e}")
        finally:
            self.registered = False
            await self._close_client()

    async def _close_client(self):
        if self._client is not None and self._owns_client:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.warning(f"Error closing discovery HTTP client: {e}")
            self._client = None
