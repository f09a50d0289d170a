"""Wire frames of the agent gateway control protocol.

Every frame is a JSON object tagged by ``type``::

    {"type": "req", "id": "...", "method": "chat.send", "params": {...}}
    {"type": "res", "id": "...", "ok": true, "payload": {...}}
    {"type": "res", "id": "...", "ok": false, "error": {"message": "..."}}
    {"type": "event", "event": "chat", "payload": {...}}
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from warmhost.core.exceptions import ProtocolError

PROTOCOL_VERSION = 3


@dataclass(frozen=True, slots=True)
class RequestFrame:
    id: str
    method: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ResponseFrame:
    id: str
    ok: bool
    payload: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass(frozen=True, slots=True)
class EventFrame:
    event: str
    payload: dict[str, Any] = field(default_factory=dict)


type Frame = RequestFrame | ResponseFrame | EventFrame


class ChatState(StrEnum):
    DELTA = "delta"
    FINAL = "final"
    ERROR = "error"
    ABORTED = "aborted"


@dataclass(frozen=True, slots=True)
class ChatEvent:
    """Payload of a ``chat`` event. ``text`` is cumulative for the run."""

    run_id: str
    state: ChatState
    text: str = ""
    error_message: str | None = None


def _error_text(error: Any) -> str:
    match error:
        case None:
            return "unknown error"
        case str():
            return error
        case {"message": str(message)}:
            return message
        case _:
            return json.dumps(error)


def message_text(message: Any) -> str:
    """Flatten a chat message (plain string or content-part list) to text."""
    match message:
        case None:
            return ""
        case str():
            return message
        case {"content": str(content)}:
            return content
        case {"content": list(parts)}:
            return "".join(p.get("text", "") for p in parts if isinstance(p, dict) and p.get("type") == "text")
        case {"text": str(text)}:
            return text
        case _:
            return ""


def decode(raw: str | bytes) -> Frame:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Frame is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("Frame is not a JSON object")

    try:
        match data.get("type"):
            case "req":
                return RequestFrame(id=str(data["id"]), method=str(data["method"]), params=data.get("params") or {})
            case "res":
                ok = bool(data.get("ok"))
                return ResponseFrame(
                    id=str(data["id"]),
                    ok=ok,
                    payload=data.get("payload") or {},
                    error=None if ok else _error_text(data.get("error")),
                )
            case "event":
                name = data.get("event") or data.get("method")
                if not name:
                    raise ProtocolError("Event frame without a name")
                return EventFrame(event=str(name), payload=data.get("payload") or data.get("params") or {})
            case other:
                raise ProtocolError(f"Unknown frame type {other!r}")
    except KeyError as e:
        raise ProtocolError(f"Frame missing field {e}") from e


def encode(frame: Frame) -> str:
    match frame:
        case RequestFrame(id=id_, method=method, params=params):
            data: dict[str, Any] = {"type": "req", "id": id_, "method": method, "params": params}
        case ResponseFrame(id=id_, ok=True, payload=payload):
            data = {"type": "res", "id": id_, "ok": True, "payload": payload}
        case ResponseFrame(id=id_, ok=False, error=error):
            data = {"type": "res", "id": id_, "ok": False, "error": {"message": error or "unknown error"}}
        case EventFrame(event=event, payload=payload):
            data = {"type": "event", "event": event, "payload": payload}
    return json.dumps(data)


def chat_event(payload: dict[str, Any]) -> ChatEvent:
    try:
        state = ChatState(payload.get("state"))
    except ValueError as e:
        raise ProtocolError(f"Unknown chat state {payload.get('state')!r}") from e
    run_id = payload.get("runId")
    if not run_id:
        raise ProtocolError("Chat event without runId")
    return ChatEvent(
        run_id=str(run_id),
        state=state,
        text=message_text(payload.get("message")),
        error_message=payload.get("errorMessage"),
    )


def connect_params(token: str, *, client_id: str, version: str, platform: str) -> dict[str, Any]:
    return {
        "minProtocol": PROTOCOL_VERSION,
        "maxProtocol": PROTOCOL_VERSION,
        "client": {"id": client_id, "version": version, "platform": platform, "mode": "backend"},
        "role": "operator",
        "scopes": ["operator.admin"],
        "caps": [],
        "auth": {"token": token},
    }
