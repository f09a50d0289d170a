"""Instance-local HTTP bridge between the orchestrator and the agent.

``POST /message`` answers 202 right away; the agent reply is streamed
to the caller's connection as ``stream_chunk`` events followed by one
``stream_end``, or a single ``error`` event.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from aiohttp import web

from warmhost.constants import CHANNELS
from warmhost.infra.web import bearer_auth, read_json, require_str
from warmhost.instance.callback import Callback, error_event
from warmhost.instance.lifecycle import LifecycleReporter
from warmhost.instance.relay import Relay
from warmhost.observability.logger import logger
from warmhost.types import format_timestamp, utcnow

log = logger.bind(component="bridge")


def create_bridge_app(
    relay: Relay,
    callback: Callback,
    reporter: LifecycleReporter,
    *,
    token: str,
    on_shutdown: Callable[[], Awaitable[None]],
) -> web.Application:
    background: set[asyncio.Task[None]] = set()

    def spawn(coro: Awaitable[None], name: str) -> None:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        background.add(task)
        task.add_done_callback(background.discard)

    async def process(user_id: str, text: str, channel: str, target: str) -> None:
        received_at = utcnow()
        try:
            await relay.handle(
                user_id=user_id,
                message=text,
                channel=channel,  # type: ignore[arg-type]
                target=target,
                received_at=received_at,
            )
        except Exception as e:
            log.error("Message for {user} failed: {err}", user=user_id, err=e)
            try:
                await callback.send(target, error_event(str(e) or type(e).__name__))
            except Exception as push_error:
                log.warning("Could not deliver error to {target}: {err}", target=target, err=push_error)

    async def health(_request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    async def message(request: web.Request) -> web.Response:
        body = await read_json(request)
        if body is None:
            return web.json_response({"error": "Invalid JSON"}, status=400)
        fields = require_str(body, "userId", "message", "channel", "connectionId")
        if fields is None or fields[2] not in CHANNELS:
            return web.json_response({"error": "Missing required fields"}, status=400)

        user_id, text, channel, target = fields
        reporter.touch()
        spawn(process(user_id, text, channel, target), f"message-{user_id}")
        return web.json_response({"status": "processing"}, status=202)

    async def status(_request: web.Request) -> web.Response:
        return web.json_response({
            "status": "running",
            "uptime": int(reporter.uptime().total_seconds()),
            "lastActivity": format_timestamp(reporter.last_activity),
        })

    async def shutdown(_request: web.Request) -> web.Response:
        spawn(on_shutdown(), "bridge-shutdown")
        return web.json_response({"status": "shutting_down"})

    async def drain_background(_app: web.Application) -> None:
        if background:
            await asyncio.wait(set(background), timeout=5)

    app = web.Application(middlewares=[bearer_auth(token, public=frozenset({"/health"}))])
    app.router.add_get("/health", health)
    app.router.add_post("/message", message)
    app.router.add_get("/status", status)
    app.router.add_post("/shutdown", shutdown)
    app.on_shutdown.append(drain_background)
    return app
