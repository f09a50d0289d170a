from __future__ import annotations

import itertools
import json
from collections.abc import AsyncGenerator, Mapping
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer
from botocore.exceptions import ClientError

from warmhost.aws.clients import CloudWatchClientFactory
from warmhost.constants import TaskLastStatus
from warmhost.core.exceptions import DeliveryError, LaunchError
from warmhost.observability.metrics import MetricsPublisher
from warmhost.types import Channel, InboundMessage, PendingMessage, TaskState, TaskStatus

NOW = datetime(2026, 3, 2, 14, 0, tzinfo=UTC)


def client_factory[F](factory_type: type[F], client: Any) -> F:
    """Wrap ``client`` in one of the AWS factory types, yielding it on every open."""

    @asynccontextmanager
    async def open_client():
        yield client

    return factory_type(open_client)  # type: ignore[call-arg]


def dynamo_resource(table: Any) -> MagicMock:
    resource = MagicMock()
    resource.Table = AsyncMock(return_value=table)
    return resource


def client_error(code: str, operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


# ─── Stores ──────────────────────────────────────────────────────────


class FakeTaskStore:
    def __init__(self) -> None:
        self.records: dict[str, TaskState] = {}
        self.deleted: list[str] = []
        self.touched: list[tuple[str, datetime, datetime | None]] = []
        self.puts: list[TaskState] = []

    def seed(self, *states: TaskState) -> None:
        for state in states:
            self.records[state.key] = state

    async def get(self, user_key: str) -> TaskState | None:
        state = self.records.get(user_key)
        if state is None or state.status is TaskStatus.IDLE:
            return None
        return state

    async def put(self, state: TaskState) -> None:
        self.puts.append(state)
        self.records[state.key] = state

    async def delete(self, user_key: str) -> None:
        self.deleted.append(user_key)
        self.records.pop(user_key, None)

    async def create_if_absent(self, state: TaskState) -> bool:
        if await self.get(state.key) is not None:
            return False
        await self.put(state)
        return True

    async def scan_active(self) -> AsyncGenerator[TaskState]:
        for state in list(self.records.values()):
            if state.status is not TaskStatus.IDLE:
                yield state

    async def touch(
        self,
        user_key: str,
        *,
        last_activity: datetime,
        prewarm_until: datetime | None = None,
    ) -> None:
        self.touched.append((user_key, last_activity, prewarm_until))
        state = self.records.get(user_key)
        if state is None:
            return
        changes: dict[str, Any] = {"last_activity": last_activity}
        if prewarm_until is not None:
            changes["prewarm_until"] = prewarm_until
        self.records[user_key] = replace(state, **changes)


class FakePendingQueue:
    def __init__(self) -> None:
        self.entries: list[PendingMessage] = []
        self.deleted: list[str] = []

    async def enqueue(
        self,
        user_key: str,
        message: str,
        channel: Channel,
        delivery_target: str,
        now: datetime,
    ) -> PendingMessage:
        entry = PendingMessage.create(user_key, message, channel, delivery_target, now)
        self.entries.append(entry)
        return entry

    async def list(self, user_key: str) -> list[PendingMessage]:
        return [e for e in self.entries if e.user_key == user_key]

    async def delete(self, entry: PendingMessage) -> None:
        self.deleted.append(entry.sort_key)
        self.entries = [e for e in self.entries if e.sort_key != entry.sort_key]


class FakeConversations:
    def __init__(self) -> None:
        self.saved: list[tuple[str, str, str, str]] = []
        self.recent: list[Any] = []

    async def save_pair(self, user_key: str, user_message: str, assistant_message: str, channel: Channel) -> None:
        self.saved.append((user_key, user_message, assistant_message, channel))

    async def load_recent(self, user_key: str, limit: int = 20) -> list[Any]:
        return list(self.recent)


# ─── Compute & delivery ──────────────────────────────────────────────


class FakeLauncher:
    def __init__(self) -> None:
        self.started: list[dict[str, str]] = []
        self.stopped: list[tuple[str, str]] = []
        self.statuses: dict[str, TaskLastStatus | None] = {}
        self.fail_start = False
        self._ids = itertools.count(1)

    async def start(self, environment: Mapping[str, str]) -> str:
        if self.fail_start:
            raise LaunchError("no capacity")
        self.started.append(dict(environment))
        return f"arn:aws:ecs:us-east-1:123:task/agents/t{next(self._ids)}"

    async def stop(self, handle: str, reason: str) -> None:
        self.stopped.append((handle, reason))

    async def last_status(self, handle: str) -> TaskLastStatus | None:
        return self.statuses.get(handle, TaskLastStatus.RUNNING)


class FakeDelivery:
    def __init__(self) -> None:
        self.delivered: list[tuple[str, InboundMessage]] = []
        self.failing: set[str] = set()

    async def deliver(self, address: str, message: InboundMessage) -> None:
        if address in self.failing:
            raise DeliveryError(address, "Connection refused")
        self.delivered.append((address, message))


class FakeCallback:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def send(self, target: str, event: dict[str, Any]) -> None:
        self.events.append((target, event))

    def types(self) -> list[str]:
        return [e["type"] for _, e in self.events]


class FakeWorkspace:
    def __init__(self, calls: list[str] | None = None) -> None:
        self.calls = calls if calls is not None else []
        self.fail_backup = False

    async def restore(self) -> int:
        self.calls.append("restore")
        return 0

    async def backup(self) -> int:
        self.calls.append("backup")
        if self.fail_backup:
            raise OSError("disk gone")
        return 1


# ─── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture
def tasks() -> FakeTaskStore:
    return FakeTaskStore()


@pytest.fixture
def pending() -> FakePendingQueue:
    return FakePendingQueue()


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def delivery() -> FakeDelivery:
    return FakeDelivery()


@pytest.fixture
def callback() -> FakeCallback:
    return FakeCallback()


@pytest.fixture
def cloudwatch() -> MagicMock:
    client = MagicMock()
    client.put_metric_data = AsyncMock()
    client.get_metric_statistics = AsyncMock(return_value={"Datapoints": []})
    return client


@pytest.fixture
def metrics(cloudwatch: MagicMock) -> MetricsPublisher:
    return MetricsPublisher(client_factory(CloudWatchClientFactory, cloudwatch), enabled=True)


def published(cloudwatch: MagicMock) -> list[dict[str, Any]]:
    return [d for call in cloudwatch.put_metric_data.await_args_list for d in call.kwargs["MetricData"]]


# ─── Agent gateway peer ──────────────────────────────────────────────


def chat(run_id: str, state: str, text: str = "", **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"runId": run_id, "state": state, **extra}
    if text:
        payload["message"] = {"role": "assistant", "content": [{"type": "text", "text": text}]}
    return {"type": "event", "event": "chat", "payload": payload}


class FakeAgentGateway:
    """WebSocket peer speaking the agent control protocol.

    ``script`` is what happens after a ``chat.send``: a list of frames,
    where the string ``"res"`` stands for the response and ``"close"``
    drops the connection.
    """

    def __init__(self) -> None:
        self.accept = True
        self.rechallenge = False
        self.run_id = "run-1"
        self.script: list[dict[str, Any] | str] = [
            "res",
            chat("run-1", "delta", "Hello"),
            chat("run-1", "final", "Hello there"),
        ]
        self.requests: list[dict[str, Any]] = []

    def chat_messages(self) -> list[str]:
        return [r["params"]["message"] for r in self.requests if r["method"] == "chat.send"]

    async def handler(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await ws.send_json({"type": "event", "event": "connect.challenge", "payload": {"nonce": "abc"}})
        async for msg in ws:
            if msg.type is not WSMsgType.TEXT:
                break
            frame = json.loads(msg.data)
            self.requests.append(frame)
            match frame.get("method"):
                case "connect" if self.accept:
                    await ws.send_json({"type": "res", "id": frame["id"], "ok": True, "payload": {"type": "hello-ok"}})
                    if self.rechallenge:
                        await ws.send_json({"type": "event", "event": "connect.challenge", "payload": {"nonce": "again"}})
                case "connect":
                    await ws.send_json(
                        {"type": "res", "id": frame["id"], "ok": False, "error": {"message": "bad token"}}
                    )
                case "chat.send":
                    for step in self.script:
                        if step == "res":
                            await ws.send_json(
                                {"type": "res", "id": frame["id"], "ok": True, "payload": {"runId": self.run_id}}
                            )
                        elif step == "close":
                            await ws.close()
                            return ws
                        else:
                            await ws.send_json(step)
                case "fail":
                    await ws.send_json(
                        {"type": "res", "id": frame["id"], "ok": False, "error": {"message": "nope"}}
                    )
                case method:
                    await ws.send_json({"type": "res", "id": frame["id"], "ok": True, "payload": {"echo": method}})
        return ws


@pytest.fixture
async def agent_gateway() -> AsyncGenerator[tuple[FakeAgentGateway, TestServer]]:
    fake = FakeAgentGateway()
    app = web.Application()
    app.router.add_get("/", fake.handler)
    server = TestServer(app)
    await server.start_server()
    yield fake, server
    await server.close()


def ws_url(server: TestServer) -> str:
    return f"ws://{server.host}:{server.port}/"


def running(key: str, *, address: str | None = "1.2.3.4", handle: str = "arn:task/1", **extra: Any) -> TaskState:
    return TaskState(
        key=key,
        instance_handle=handle,
        status=TaskStatus.RUNNING,
        started_at=extra.pop("started_at", NOW.replace(hour=12)),
        last_activity=extra.pop("last_activity", NOW),
        address=address,
        **extra,
    )
