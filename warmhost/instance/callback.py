"""Pushes stream events back to the end user's websocket connection."""

from __future__ import annotations

import json
from typing import Any, Literal, Protocol

from botocore.exceptions import ClientError

from warmhost.aws.clients import PushClientFactory
from warmhost.observability.logger import logger

log = logger.bind(component="callback")

type EventType = Literal["stream_chunk", "stream_end", "error", "status"]


def stream_chunk(content: str) -> dict[str, Any]:
    return {"type": "stream_chunk", "content": content}


def stream_end() -> dict[str, Any]:
    return {"type": "stream_end"}


def error_event(message: str) -> dict[str, Any]:
    return {"type": "error", "error": message}


class Callback(Protocol):
    async def send(self, target: str, event: dict[str, Any]) -> None: ...


class CallbackSender:
    """Posts JSON events through the API Gateway management API.

    A connection that went away (``GoneException``) is not an error;
    the user simply closed the page.
    """

    def __init__(self, push: PushClientFactory) -> None:
        self._push = push

    async def send(self, target: str, event: dict[str, Any]) -> None:
        if target.startswith("telegram:"):
            # Bot delivery lives outside this process.
            log.debug("No push channel for {target}, dropping {type}", target=target, type=event.get("type"))
            return
        async with self._push() as client:
            try:
                await client.post_to_connection(ConnectionId=target, Data=json.dumps(event).encode())
            except ClientError as e:
                if e.response.get("Error", {}).get("Code") == "GoneException":
                    log.debug("Connection {target} is gone", target=target)
                    return
                raise
