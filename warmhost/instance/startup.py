"""Boot sequence of an agent instance, from cold start to serving."""

from __future__ import annotations

import asyncio
import signal
import time
from collections.abc import Awaitable, Callable
from datetime import timedelta

from aiohttp import web
from botocore.exceptions import BotoCoreError, ClientError
from tenacity import retry, retry_if_exception_type, stop_after_delay, wait_fixed

from warmhost.config import InstanceSettings
from warmhost.constants import AGENT_PORT_RETRY, AGENT_PORT_WAIT
from warmhost.core.exceptions import WarmhostError
from warmhost.instance.bridge import create_bridge_app
from warmhost.instance.callback import Callback, error_event
from warmhost.instance.client import AgentClient
from warmhost.instance.lifecycle import LifecycleReporter
from warmhost.instance.relay import Relay
from warmhost.instance.workspace import WorkspaceSync
from warmhost.observability.logger import logger
from warmhost.observability.metrics import MetricsPublisher, StartupTimings
from warmhost.store.conversations import ConversationStore, HistoryPrefix, format_history
from warmhost.store.pending import PendingQueue, drain
from warmhost.types import ConversationTurn, PendingMessage, TaskStatus

log = logger.bind(component="startup")

type Locator = Callable[[], Awaitable[str | None]]


async def wait_for_port(
    port: int,
    *,
    host: str = "127.0.0.1",
    ceiling: timedelta = AGENT_PORT_WAIT,
    interval: timedelta = AGENT_PORT_RETRY,
) -> None:
    """Block until something accepts TCP connections on ``host:port``.

    Raises the last ``OSError`` once ``ceiling`` has passed.
    """

    @retry(
        stop=stop_after_delay(ceiling.total_seconds()),
        wait=wait_fixed(interval.total_seconds()),
        retry=retry_if_exception_type(OSError),
        reraise=True,
    )
    async def probe() -> None:
        _, writer = await asyncio.open_connection(host, port)
        writer.close()
        await writer.wait_closed()

    await probe()


def _ms(start: float, end: float) -> float:
    return round((end - start) * 1000, 1)


class StartupSequencer:
    def __init__(
        self,
        settings: InstanceSettings,
        *,
        workspace: WorkspaceSync,
        conversations: ConversationStore,
        pending: PendingQueue,
        client: AgentClient,
        callback: Callback,
        metrics: MetricsPublisher,
        reporter: LifecycleReporter,
        locate: Locator,
    ) -> None:
        self._settings = settings
        self._workspace = workspace
        self._conversations = conversations
        self._pending = pending
        self._client = client
        self._callback = callback
        self._metrics = metrics
        self._reporter = reporter
        self._locate = locate
        self._stopped = asyncio.Event()
        self._runner: web.AppRunner | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._drain_lock = asyncio.Lock()

    @property
    def channel(self) -> str:
        return "telegram" if self._settings.user_id.startswith("telegram:") else "web"

    def _spawn(self, coro: Awaitable[None], name: str) -> asyncio.Task[None]:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _load_history(self) -> list[ConversationTurn]:
        try:
            return await self._conversations.load_recent(self._settings.user_id)
        except (BotoCoreError, ClientError) as e:
            log.warning("Conversation history unavailable: {err}", err=e)
            return []

    async def _publish_address(self, relay: Relay) -> None:
        """Report the public address, then pick up anything queued before it was known."""
        try:
            address = await self._locate()
            if not address:
                log.warning("No public address found for this task")
                return
            if self._reporter.shutting_down:
                return
            await self._reporter.report(TaskStatus.RUNNING, address)
        except (BotoCoreError, ClientError, WarmhostError) as e:
            log.warning("Address discovery failed: {err}", err=e)
            return
        await self._drain(relay)

    async def _drain(self, relay: Relay) -> int:
        async def process(entry: PendingMessage) -> None:
            try:
                await relay.handle(
                    user_id=self._settings.user_id,
                    message=entry.message,
                    channel=entry.channel,
                    target=entry.delivery_target,
                    received_at=entry.created_at,
                )
            except WarmhostError as e:
                await self._callback.send(entry.delivery_target, error_event(str(e)))
                raise

        try:
            async with self._drain_lock:
                return await drain(self._pending, self._settings.user_id, process)
        except (BotoCoreError, ClientError, WarmhostError) as e:
            log.error("Pending drain stopped, remaining messages stay queued: {err}", err=e)
            return 0

    async def start(self) -> None:
        """Run every startup phase; returns once the instance is serving."""
        settings = self._settings
        t0 = time.monotonic()

        _, history = await asyncio.gather(self._workspace.restore(), self._load_history())
        prefix = HistoryPrefix(format_history(history))
        if prefix:
            log.info("Loaded {n} earlier message(s) as context", n=len(history))
        t_restore = time.monotonic()

        await wait_for_port(settings.agent_port)
        t_port = time.monotonic()
        await self._client.connect()
        t_client = time.monotonic()

        relay = Relay(self._client, self._callback, self._conversations, self._metrics, prefix)
        app = create_bridge_app(
            relay, self._callback, self._reporter,
            token=settings.bridge_auth_token,
            on_shutdown=self.shutdown,
        )
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        await web.TCPSite(self._runner, "0.0.0.0", settings.bridge_port).start()
        log.info("Bridge listening on port {port}", port=settings.bridge_port)
        await self._reporter.report(TaskStatus.RUNNING)

        self._spawn(self._publish_address(relay), "address-discovery")

        consumed = await self._drain(relay)
        t_done = time.monotonic()

        timings = StartupTimings(
            total=_ms(t0, t_done),
            restore=_ms(t0, t_restore),
            agent_wait=_ms(t_restore, t_port),
            client_ready=_ms(t_port, t_client),
            pending_messages=consumed,
        )
        log.info(
            "Startup complete in {total}ms (restore {r}ms, agent {a}ms, client {c}ms, {n} pending)",
            total=timings.total, r=timings.restore, a=timings.agent_wait, c=timings.client_ready, n=consumed,
        )
        await self._metrics.startup(timings, self.channel)

        self._reporter.start_periodic_backup()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: self._spawn(self.shutdown(), "signal-shutdown"))

    async def shutdown(self) -> None:
        await self._reporter.graceful_shutdown()
        self._stopped.set()

    async def run(self) -> None:
        """Start, serve until shutdown, then release the bridge and agent connection."""
        try:
            await self.start()
            await self._stopped.wait()
        finally:
            for task in self._background:
                task.cancel()
            await asyncio.gather(*self._background, return_exceptions=True)
            if self._runner is not None:
                await self._runner.cleanup()
            await self._client.close()
