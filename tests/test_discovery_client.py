"""
Test Consul registration, heartbeats and deregistration.
"""

import asyncio
import json
import logging
from unittest.mock import AsyncMock

import httpx
import pytest

from notifier.discovery_client import DiscoveryClient
from shared.exceptions import ConnectionRetriesExhausted
from shared.utils.backoff import ConnectionState


class FakeAgent:
    """Scripted Consul agent endpoints for httpx.MockTransport."""

    def __init__(self, register_statuses=None, pass_statuses=None, deregister_status=200):
        self.register_statuses = list(register_statuses or [])
        self.pass_statuses = list(pass_statuses or [])
        self.deregister_status = deregister_status
        self.requests = []

    def count(self, prefix):
        return sum(1 for request in self.requests if request.url.path.startswith(prefix))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v1/agent/service/register":
            status = self.register_statuses.pop(0) if self.register_statuses else 200
        elif path.startswith("/v1/agent/check/pass/"):
            status = self.pass_statuses.pop(0) if self.pass_statuses else 200
        elif path.startswith("/v1/agent/service/deregister/"):
            status = self.deregister_status
        else:
            status = 404
        return httpx.Response(status, text="" if status < 400 else "agent says no")


async def no_sleep(delay):
    return None


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def make_client(agent, **kwargs):
    http_client = httpx.AsyncClient(base_url="http://consul:8500", transport=httpx.MockTransport(agent))
    kwargs.setdefault("heartbeat_interval", 3600)
    return DiscoveryClient(
        host="consul",
        port=8500,
        service_name="urlshortener-notification-service",
        service_port=6789,
        service_address="10.0.0.5",
        max_retries=3,
        http_client=http_client,
        sleep=no_sleep,
        **kwargs
    )


def test_registration_payload():
    client = make_client(FakeAgent())
    payload = client.registration_payload()

    assert payload["ID"].startswith("urlshortener-notification-service-")
    assert payload["Name"] == "urlshortener-notification-service"
    assert payload["Address"] == "10.0.0.5"
    assert payload["Port"] == 6789
    assert payload["Check"]["TTL"] == "30s"
    assert payload["Check"]["DeregisterCriticalServiceAfter"] == "1m"
    assert client.check_id == f"service:{payload['ID']}"


def test_each_instance_gets_a_unique_id():
    assert make_client(FakeAgent()).service_id != make_client(FakeAgent()).service_id


@pytest.mark.asyncio
async def test_register_retries_then_heartbeats_and_deregisters():
    agent = FakeAgent(register_statuses=[500, 500, 200])
    client = make_client(agent)

    assert await client.register() is True
    assert client.state == ConnectionState.CONNECTED
    assert agent.count("/v1/agent/service/register") == 3

    body = json.loads(agent.requests[-1].content)
    assert body["ID"] == client.service_id

    await wait_until(lambda: agent.count("/v1/agent/check/pass/") >= 1)
    await client.deregister()

    assert agent.count(f"/v1/agent/service/deregister/{client.service_id}") == 1
    assert client.registered is False


@pytest.mark.asyncio
async def test_register_gives_up_after_max_retries():
    agent = FakeAgent(register_statuses=[500, 500, 500])
    client = make_client(agent)

    with pytest.raises(ConnectionRetriesExhausted):
        await client.register()

    assert client.state == ConnectionState.FATAL
    assert agent.count("/v1/agent/service/register") == 3


@pytest.mark.asyncio
async def test_missing_registration_triggers_reregistration():
    agent = FakeAgent(pass_statuses=[404])
    client = make_client(agent)

    await client.register()
    await wait_until(lambda: agent.count("/v1/agent/service/register") == 2 and client.registered)

    assert client.state == ConnectionState.CONNECTED
    await client.deregister()


@pytest.mark.asyncio
async def test_failed_reregistration_is_fatal():
    agent = FakeAgent(register_statuses=[200, 500, 500, 500], pass_statuses=[404])
    errors = []
    client = make_client(agent, on_fatal=errors.append)

    await client.register()
    await wait_until(lambda: errors)

    assert isinstance(errors[0], ConnectionRetriesExhausted)
    await client.deregister()


@pytest.mark.asyncio
async def test_heartbeat_transport_errors_are_logged(caplog):
    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(unreachable)

    await client.send_heartbeat()

    assert "Error sending heartbeat" in caplog.text


@pytest.mark.asyncio
async def test_disabled_client_does_nothing():
    agent = FakeAgent()
    client = make_client(agent, enabled=False)

    assert await client.register() is False
    await client.deregister()

    assert agent.requests == []


@pytest.mark.asyncio
async def test_deregister_failure_does_not_raise(caplog):
    agent = FakeAgent(deregister_status=500)
    client = make_client(agent)
    await client.register()

    await client.deregister()

    assert "Failed to stop Discovery client" in caplog.text
    assert client.registered is False


@pytest.mark.asyncio
async def test_heartbeat_loop_survives_unexpected_errors(caplog):
    agent = FakeAgent()
    client = make_client(agent, heartbeat_interval=0.01)

    await client.register()
    client._pass_check = AsyncMock(side_effect=RuntimeError("boom"))

    with caplog.at_level(logging.ERROR):
        await wait_until(lambda: client._pass_check.await_count >= 2)

    assert client._heartbeat_task is not None
    assert not client._heartbeat_task.done()
    assert "Unexpected error sending heartbeat: boom" in caplog.text

    await client.deregister()
    assert agent.count(f"/v1/agent/service/deregister/{client.service_id}") == 1
