"""Instance-side bookkeeping: status reports, backups and graceful shutdown."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from datetime import datetime, timedelta

from botocore.exceptions import BotoCoreError, ClientError

from warmhost.constants import IDLE_STATE_TTL, PERIODIC_BACKUP_INTERVAL
from warmhost.instance.workspace import WorkspaceSync
from warmhost.observability.logger import logger
from warmhost.store.tasks import TaskStateStore
from warmhost.types import TaskState, TaskStatus, utcnow

log = logger.bind(component="lifecycle")


class LifecycleReporter:
    def __init__(
        self,
        tasks: TaskStateStore,
        workspace: WorkspaceSync,
        *,
        user_id: str,
        task_arn: str,
        backup_interval: timedelta = PERIODIC_BACKUP_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._tasks = tasks
        self._workspace = workspace
        self.user_id = user_id
        self.task_arn = task_arn
        self._interval = backup_interval
        self._clock = clock
        self.started_at = clock()
        self._last_activity = self.started_at
        self._backup_task: asyncio.Task[None] | None = None
        self._shutdown: asyncio.Future[None] | None = None

    @property
    def last_activity(self) -> datetime:
        return self._last_activity

    @property
    def shutting_down(self) -> bool:
        return self._shutdown is not None

    def touch(self) -> None:
        self._last_activity = self._clock()

    def uptime(self) -> timedelta:
        return self._clock() - self.started_at

    async def report(self, status: TaskStatus, address: str | None = None) -> None:
        now = self._clock()
        state = TaskState(
            key=self.user_id,
            instance_handle=self.task_arn,
            status=status,
            started_at=self.started_at,
            last_activity=self._last_activity,
            address=address if status is TaskStatus.RUNNING else None,
            expire_at=now + IDLE_STATE_TTL if status is TaskStatus.IDLE else None,
        )
        await self._tasks.put(state)
        log.info("Reported {status}{addr}", status=status, addr=f" at {address}" if address else "")

    # ─── Backups ─────────────────────────────────────────────────────

    async def backup(self) -> bool:
        try:
            await self._workspace.backup()
        except (BotoCoreError, ClientError, OSError) as e:
            log.warning("Workspace backup failed: {err}", err=e)
            return False
        return True

    async def _backup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval.total_seconds())
            await self.backup()

    def start_periodic_backup(self) -> None:
        if self.shutting_down:
            return
        if self._backup_task is None or self._backup_task.done():
            self._backup_task = asyncio.create_task(self._backup_loop(), name="periodic-backup")

    async def stop_periodic_backup(self) -> None:
        task, self._backup_task = self._backup_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    # ─── Shutdown ────────────────────────────────────────────────────

    async def graceful_shutdown(self) -> None:
        """Stop backups, take one last backup, then report Idle.

        Safe to call more than once; later calls wait for the first.
        """
        if self._shutdown is None:
            self._shutdown = asyncio.ensure_future(self._shutdown_sequence())
        await asyncio.shield(self._shutdown)

    async def _shutdown_sequence(self) -> None:
        log.info("Shutting down")
        await self.stop_periodic_backup()
        await self.backup()
        try:
            await self.report(TaskStatus.IDLE)
        except (BotoCoreError, ClientError) as e:
            log.error("Could not report Idle: {err}", err=e)
