"""HTTP front door of the orchestrator.

Accepts chat messages for a user and reports the user's instance
status. End-user authentication happens upstream; this surface only
checks the shared bearer token of the calling service.
"""

from __future__ import annotations

from aiohttp import web
from botocore.exceptions import BotoCoreError, ClientError

from warmhost.constants import CHANNELS
from warmhost.core.exceptions import LaunchError
from warmhost.gateway.router import RouterDeps, route_message
from warmhost.infra.web import bearer_auth, read_json, require_str
from warmhost.observability.logger import logger
from warmhost.types import InboundMessage

log = logger.bind(component="gateway")


def create_app(deps: RouterDeps, *, token: str, callback_url: str = "") -> web.Application:
    async def post_message(request: web.Request) -> web.Response:
        body = await read_json(request)
        if body is None:
            return web.json_response({"error": "Invalid JSON"}, status=400)

        fields = require_str(body, "userId", "message", "connectionId")
        if fields is None:
            return web.json_response({"error": "Missing required fields"}, status=400)
        user, text, target = fields
        channel = body.get("channel") or "web"
        if channel not in CHANNELS:
            return web.json_response({"error": f"Unknown channel {channel!r}"}, status=400)

        message = InboundMessage(
            user_key=user,
            message=text,
            channel=channel,  # type: ignore[arg-type]
            delivery_target=target,
            callback_url=callback_url,
        )
        try:
            result = await route_message(message, deps)
        except (LaunchError, BotoCoreError, ClientError) as e:
            log.error("Routing for {user} failed: {err}", user=user, err=e)
            return web.json_response({"error": "Could not start agent instance"}, status=503)

        log.info("Message for {user}: {result}", user=user, result=result)
        return web.json_response({"status": "processing", "result": result.value})

    async def get_status(request: web.Request) -> web.Response:
        user = request.match_info["user_id"]
        state = await deps.tasks.get(user)
        if state is None:
            return web.json_response({"status": "idle"})
        return web.json_response(
            {"status": state.status.value, **({"publicIp": state.address} if state.address else {})}
        )

    async def health(_request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    app = web.Application(middlewares=[bearer_auth(token, public=frozenset({"/health"}))])
    app.router.add_post("/messages", post_message)
    app.router.add_get("/status/{user_id}", get_status)
    app.router.add_get("/health", health)
    return app
