from __future__ import annotations

import pytest
from aiohttp.test_utils import TestClient, TestServer

from tests.conftest import NOW, running
from warmhost.gateway.app import create_app
from warmhost.gateway.router import RouterDeps
from warmhost.types import TaskState

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]

AUTH = {"Authorization": "Bearer gw-secret"}


@pytest.fixture
async def gateway(tasks, pending, launcher, delivery):
    deps = RouterDeps(tasks=tasks, pending=pending, launcher=launcher, delivery=delivery, clock=lambda: NOW)
    app = create_app(deps, token="gw-secret", callback_url="https://ws.example.com/prod")
    async with TestClient(TestServer(app)) as client:
        yield client


@pytest.mark.asyncio
async def test_cold_message_starts_instance(gateway, launcher, pending):
    resp = await gateway.post(
        "/messages", json={"userId": "u1", "message": "hi", "connectionId": "conn-1"}, headers=AUTH
    )

    assert resp.status == 200
    assert await resp.json() == {"status": "processing", "result": "started"}
    assert len(launcher.started) == 1
    assert pending.entries[0].channel == "web"


@pytest.mark.asyncio
async def test_delivered_message_carries_callback_url(gateway, tasks, delivery):
    tasks.seed(running("u1", address="1.2.3.4"))

    resp = await gateway.post(
        "/messages",
        json={"userId": "u1", "message": "hi", "channel": "telegram", "connectionId": "telegram:42"},
        headers=AUTH,
    )

    assert (await resp.json())["result"] == "sent"
    [(_, message)] = delivery.delivered
    assert message.bridge_body() == {
        "userId": "u1",
        "message": "hi",
        "channel": "telegram",
        "connectionId": "telegram:42",
        "callbackUrl": "https://ws.example.com/prod",
    }


@pytest.mark.asyncio
async def test_requires_token(gateway):
    resp = await gateway.post("/messages", json={"userId": "u1", "message": "hi", "connectionId": "c"})

    assert resp.status == 401


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"message": "hi", "connectionId": "c"},
        {"userId": "u1", "message": "", "connectionId": "c"},
        {"userId": "u1", "message": "hi", "connectionId": "c", "channel": "sms"},
    ],
)
async def test_rejects_bad_requests(gateway, body, launcher):
    resp = await gateway.post("/messages", json=body, headers=AUTH)

    assert resp.status == 400
    assert launcher.started == []


@pytest.mark.asyncio
async def test_launch_failure_is_service_unavailable(gateway, launcher, pending):
    launcher.fail_start = True

    resp = await gateway.post("/messages", json={"userId": "u1", "message": "hi", "connectionId": "c"}, headers=AUTH)

    assert resp.status == 503
    assert len(pending.entries) == 1


@pytest.mark.asyncio
async def test_status_of_unknown_user_is_idle(gateway):
    resp = await gateway.get("/status/u1", headers=AUTH)

    assert await resp.json() == {"status": "idle"}


@pytest.mark.asyncio
async def test_status_reports_state_and_address(gateway, tasks):
    tasks.seed(running("u1", address="1.2.3.4"), TaskState.starting("u2", "arn:task/2", NOW))

    assert await (await gateway.get("/status/u1", headers=AUTH)).json() == {"status": "Running", "publicIp": "1.2.3.4"}
    assert await (await gateway.get("/status/u2", headers=AUTH)).json() == {"status": "Starting"}


@pytest.mark.asyncio
async def test_health_is_public(gateway):
    resp = await gateway.get("/health")

    assert resp.status == 200
