from __future__ import annotations

import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from warmhost.core.exceptions import DeliveryError
from warmhost.gateway.router import BridgeDelivery
from warmhost.infra.http import BearerAuth, HttpClient, HttpError
from warmhost.types import InboundMessage

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


def make_app(*, token: str = "valid-token") -> web.Application:
    app = web.Application()

    async def json_echo(request: web.Request) -> web.Response:
        if request.headers.get("Authorization", "") != f"Bearer {token}":
            return web.Response(status=401, text="unauthorized")
        body = await request.json() if request.can_read_body else {}
        return web.json_response({"echo": body})

    async def text_endpoint(_: web.Request) -> web.Response:
        return web.Response(text="plain-text-response")

    async def empty(_: web.Request) -> web.Response:
        return web.Response(status=204, body=b"")

    async def not_found(_: web.Request) -> web.Response:
        return web.json_response({"error": "not found"}, status=404)

    async def slow(_: web.Request) -> web.Response:
        await asyncio.sleep(2)
        return web.json_response({})

    app.router.add_route("*", "/echo", json_echo)
    app.router.add_get("/text", text_endpoint)
    app.router.add_get("/empty", empty)
    app.router.add_get("/not-found", not_found)
    app.router.add_get("/slow", slow)
    return app


@pytest.fixture
async def server():
    srv = TestServer(make_app())
    await srv.start_server()
    yield srv
    await srv.close()


@pytest.fixture
def base_url(server: TestServer) -> str:
    return f"http://{server.host}:{server.port}"


# ─── BearerAuth ──────────────────────────────────────────────────────


def test_bearer_auth_headers():
    assert BearerAuth("my-token").headers() == {"Authorization": "Bearer my-token"}


# ─── HttpClient ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_post_json(base_url: str):
    async with HttpClient(base_url, BearerAuth("valid-token")) as http:
        result = await http.post("/echo", json={"key": "value"})
    assert result.status == 200
    assert result.data == {"echo": {"key": "value"}}


@pytest.mark.asyncio
async def test_absolute_url_without_base(base_url: str):
    async with HttpClient(auth=BearerAuth("valid-token")) as http:
        result = await http.get(f"{base_url}/echo")
    assert result.data == {"echo": {}}


@pytest.mark.asyncio
async def test_text_format(base_url: str):
    async with HttpClient(base_url) as http:
        result = await http.get("/text", format="text")
    assert result.data == "plain-text-response"


@pytest.mark.asyncio
async def test_empty_body_is_none(base_url: str):
    async with HttpClient(base_url) as http:
        result = await http.get("/empty")
    assert result.status == 204
    assert result.data is None


@pytest.mark.asyncio
async def test_error_status_raises(base_url: str):
    async with HttpClient(base_url) as http:
        with pytest.raises(HttpError) as exc:
            await http.get("/not-found")
    assert exc.value.status == 404
    assert "not found" in exc.value.body


@pytest.mark.asyncio
async def test_wrong_token_raises_401(base_url: str):
    async with HttpClient(base_url, BearerAuth("wrong")) as http:
        with pytest.raises(HttpError) as exc:
            await http.post("/echo", json={})
    assert exc.value.status == 401


@pytest.mark.asyncio
async def test_timeout_is_status_zero(base_url: str):
    async with HttpClient(base_url, timeout=0.2) as http:
        with pytest.raises(HttpError) as exc:
            await http.get("/slow")
    assert exc.value.status == 0
    assert "timed out" in str(exc.value)


@pytest.mark.asyncio
async def test_connection_refused_is_status_zero():
    async with HttpClient("http://127.0.0.1:9") as http:
        with pytest.raises(HttpError) as exc:
            await http.get("/anything")
    assert exc.value.status == 0


# ─── Bridge delivery ─────────────────────────────────────────────────


MESSAGE = InboundMessage(user_key="u1", message="hi", channel="web", delivery_target="conn-1")


@pytest.mark.asyncio
async def test_bridge_delivery_posts_body_with_token():
    received: list[tuple[str, dict]] = []

    async def message(request: web.Request) -> web.Response:
        received.append((request.headers["Authorization"], await request.json()))
        return web.json_response({"status": "processing"}, status=202)

    app = web.Application()
    app.router.add_post("/message", message)
    srv = TestServer(app, host="127.0.0.1")
    await srv.start_server()
    delivery = BridgeDelivery("bridge-secret", port=srv.port)
    try:
        await delivery.deliver("127.0.0.1", MESSAGE)
    finally:
        await delivery.close()
        await srv.close()

    [(auth, body)] = received
    assert auth == "Bearer bridge-secret"
    assert body["userId"] == "u1"
    assert body["connectionId"] == "conn-1"


@pytest.mark.asyncio
async def test_bridge_delivery_failure_becomes_delivery_error():
    delivery = BridgeDelivery("t", port=9)
    try:
        with pytest.raises(DeliveryError) as exc:
            await delivery.deliver("127.0.0.1", MESSAGE)
    finally:
        await delivery.close()
    assert exc.value.address == "127.0.0.1"
