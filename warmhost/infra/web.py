"""aiohttp server helpers shared by the gateway and the instance bridge."""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from hmac import compare_digest
from typing import Any

from aiohttp import web

type Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]
type Middleware = Callable[[web.Request, Handler], Awaitable[web.StreamResponse]]


def bearer_auth(token: str, *, public: frozenset[str] = frozenset()) -> Middleware:
    """Reject requests without ``Authorization: Bearer <token>`` unless the path is public."""
    expected = f"Bearer {token}"

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        if request.path in public:
            return await handler(request)
        if not compare_digest(request.headers.get("Authorization", ""), expected):
            return web.json_response({"error": "Unauthorized"}, status=401)
        return await handler(request)

    return middleware


async def read_json(request: web.Request) -> dict[str, Any] | None:
    """The request body as a JSON object, or None when it is not one."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


def require_str(body: dict[str, Any], *names: str) -> list[str] | None:
    """Values of ``names`` if all are non-empty strings, else None."""
    values = [body.get(n) for n in names]
    if all(isinstance(v, str) and v for v in values):
        return values  # type: ignore[return-value]
    return None
