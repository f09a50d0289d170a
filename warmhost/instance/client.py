"""Persistent WebSocket client for the local agent gateway.

One reader task owns the socket and dispatches frames: responses go to
the future registered under their request id, ``chat`` events go to
the turn registered under their run id. Callers only ever await their
own future or turn, so a slow consumer never blocks anybody else.
"""

from __future__ import annotations

import asyncio
import sys
import uuid
from collections import OrderedDict
from typing import Any, Final

import aiohttp

from warmhost.core.exceptions import (
    AgentConnectionError,
    AgentRequestError,
    AgentTurnError,
    HandshakeError,
    ProtocolError,
)
from warmhost.instance.protocol import (
    ChatEvent,
    ChatState,
    EventFrame,
    RequestFrame,
    ResponseFrame,
    chat_event,
    connect_params,
    decode,
    encode,
)
from warmhost.observability.logger import logger

log = logger.bind(component="agent-client")

_ORPHAN_RUNS: Final = 32


class _End:
    pass


_END: Final = _End()


class ChatTurn:
    """Lazy, finite, single-use stream of text deltas for one chat run.

    The reader feeds cumulative snapshots; the consumer pulls only the
    newly added suffix. ``final`` ends iteration, ``error``/``aborted``
    and connection loss raise from the pending ``__anext__``.
    """

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self._queue: asyncio.Queue[str | _End | BaseException] = asyncio.Queue()
        self._seen = ""
        self._closed = False
        self._finished = False

    @property
    def text(self) -> str:
        return self._seen

    def _advance(self, text: str) -> None:
        if len(text) <= len(self._seen) or not text.startswith(self._seen):
            return
        suffix = text[len(self._seen):]
        self._seen = text
        self._queue.put_nowait(suffix)

    def feed(self, event: ChatEvent) -> bool:
        """Apply one event; True when the turn is over."""
        if self._closed:
            return True
        match event.state:
            case ChatState.DELTA:
                self._advance(event.text)
                return False
            case ChatState.FINAL:
                self._advance(event.text)
                self._close(_END)
            case ChatState.ERROR:
                self._close(AgentTurnError(self.run_id, "error", event.error_message or "agent error"))
            case ChatState.ABORTED:
                self._close(AgentTurnError(self.run_id, "aborted", event.error_message or "run aborted"))
        return True

    def fail(self, error: BaseException) -> None:
        self._close(error)

    def _close(self, item: _End | BaseException) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(item)

    def __aiter__(self) -> ChatTurn:
        return self

    async def __anext__(self) -> str:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        match item:
            case str():
                return item
            case _End():
                self._finished = True
                raise StopAsyncIteration
            case BaseException():
                self._finished = True
                raise item

    async def collect(self) -> str:
        return "".join([chunk async for chunk in self])


class AgentClient:
    def __init__(
        self,
        url: str,
        token: str,
        *,
        client_id: str = "warmhost-bridge",
        version: str = "0",
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._url = url
        self._token = token
        self._client_id = client_id
        self._version = version
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task[None] | None = None
        self._handshake: asyncio.Task[None] | None = None
        self._ready: asyncio.Future[None] | None = None
        self._send_lock = asyncio.Lock()
        self._pending: dict[str, asyncio.Future[ResponseFrame]] = {}
        self._chat_requests: dict[str, str] = {}
        self._turns: dict[str, ChatTurn] = {}
        self._orphans: OrderedDict[str, list[ChatEvent]] = OrderedDict()

    @property
    def ready(self) -> bool:
        return (
            self._ready is not None
            and self._ready.done()
            and not self._ready.cancelled()
            and self._ready.exception() is None
            and self._ws is not None
            and not self._ws.closed
        )

    # ─── Connection ──────────────────────────────────────────────────

    async def connect(self, timeout: float = 30.0) -> None:
        """Open the socket and wait until the handshake has completed."""
        if self._session is None:
            self._session = aiohttp.ClientSession()
        self._ready = asyncio.get_running_loop().create_future()
        try:
            self._ws = await self._session.ws_connect(self._url, heartbeat=30.0)
        except aiohttp.ClientError as e:
            raise AgentConnectionError(f"Cannot reach agent gateway at {self._url}: {e}") from e

        self._reader = asyncio.create_task(self._read(self._ws), name="agent-client-reader")
        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout)
        except TimeoutError as e:
            raise HandshakeError(f"No handshake from agent gateway within {timeout}s") from e
        log.info("Connected to agent gateway at {url}", url=self._url)

    async def close(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    # ─── Reader ──────────────────────────────────────────────────────

    async def _read(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                match msg.type:
                    case aiohttp.WSMsgType.TEXT | aiohttp.WSMsgType.BINARY:
                        self._dispatch(msg.data)
                    case aiohttp.WSMsgType.ERROR:
                        log.warning("Agent socket error: {err}", err=ws.exception())
                        break
        finally:
            self._fail_all(AgentConnectionError("Agent gateway connection closed"))

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            frame = decode(raw)
        except ProtocolError as e:
            log.warning("Dropping frame: {err}", err=e)
            return

        match frame:
            case EventFrame(event="connect.challenge"):
                self._on_challenge()
            case EventFrame(event="chat", payload=payload):
                try:
                    self._on_chat(chat_event(payload))
                except ProtocolError as e:
                    log.warning("Dropping chat event: {err}", err=e)
            case EventFrame(event=event):
                log.trace("Ignoring event {event}", event=event)
            case ResponseFrame(id=id_):
                self._on_response(frame)
                future = self._pending.pop(id_, None)
                if future is None:
                    log.debug("Dropping unmatched response {id}", id=id_)
                elif not future.done():
                    future.set_result(frame)
            case RequestFrame(method=method):
                log.debug("Ignoring server request {method}", method=method)

    def _on_response(self, frame: ResponseFrame) -> None:
        key = self._chat_requests.pop(frame.id, None)
        if key is None or not frame.ok:
            return
        run_id = str(frame.payload.get("runId") or key)
        turn = self._turns.pop(key, None)
        if turn is None:
            return
        turn.run_id = run_id
        self._turns[run_id] = turn
        for event in self._orphans.pop(run_id, []):
            self._on_chat(event)

    def _on_chat(self, event: ChatEvent) -> None:
        turn = self._turns.get(event.run_id)
        if turn is None:
            self._orphans.setdefault(event.run_id, []).append(event)
            while len(self._orphans) > _ORPHAN_RUNS:
                self._orphans.popitem(last=False)
            return
        if turn.feed(event):
            self._turns.pop(event.run_id, None)

    def _fail_all(self, error: AgentConnectionError) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(error)
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        for turn in self._turns.values():
            turn.fail(error)
        self._pending.clear()
        self._turns.clear()
        self._chat_requests.clear()

    def _on_challenge(self) -> None:
        if self._ready is None or self._ready.done():
            log.debug("Ignoring challenge outside of a pending handshake")
            return
        self._handshake = asyncio.create_task(self._answer_challenge(self._ready), name="agent-client-handshake")

    async def _answer_challenge(self, ready: asyncio.Future[None]) -> None:
        params = connect_params(self._token, client_id=self._client_id, version=self._version, platform=sys.platform)
        try:
            response = await self._call("connect", params)
        except AgentConnectionError as e:
            if not ready.done():
                ready.set_exception(e)
            return
        if ready.done():
            return
        if response.ok and response.payload.get("type") == "hello-ok":
            ready.set_result(None)
        else:
            ready.set_exception(HandshakeError(response.error or "unexpected handshake reply"))

    # ─── Requests ────────────────────────────────────────────────────

    async def _send(self, frame: RequestFrame) -> None:
        if self._ws is None or self._ws.closed:
            raise AgentConnectionError("Agent gateway is not connected")
        async with self._send_lock:
            try:
                await self._ws.send_str(encode(frame))
            except (aiohttp.ClientError, ConnectionResetError) as e:
                raise AgentConnectionError(f"Send failed: {e}") from e

    async def _call(self, method: str, params: dict[str, Any], *, chat_key: str | None = None) -> ResponseFrame:
        frame = RequestFrame(id=uuid.uuid4().hex, method=method, params=params)
        future: asyncio.Future[ResponseFrame] = asyncio.get_running_loop().create_future()
        self._pending[frame.id] = future
        if chat_key is not None:
            self._chat_requests[frame.id] = chat_key
        try:
            await self._send(frame)
            return await future
        finally:
            self._pending.pop(frame.id, None)
            self._chat_requests.pop(frame.id, None)

    async def request(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.ready:
            raise AgentConnectionError("Agent gateway handshake has not completed")
        response = await self._call(method, params or {})
        if not response.ok:
            raise AgentRequestError(method, response.error or "unknown error")
        return response.payload

    async def send_chat(self, session_key: str, message: str) -> ChatTurn:
        """Start a chat run and return its delta stream.

        The turn is registered under the idempotency key before the
        request goes out and moved to the returned ``runId`` as soon as
        the response is read, so no event for the run is missed.
        """
        if not self.ready:
            raise AgentConnectionError("Agent gateway handshake has not completed")
        key = uuid.uuid4().hex
        turn = ChatTurn(key)
        self._turns[key] = turn
        params = {"sessionKey": session_key, "message": message, "idempotencyKey": key}
        try:
            response = await self._call("chat.send", params, chat_key=key)
        except BaseException:
            self._turns.pop(key, None)
            raise
        if not response.ok:
            self._turns.pop(key, None)
            raise AgentRequestError("chat.send", response.error or "unknown error")
        return turn
