"""Periodic sweep evicting idle instances and clearing stale bookkeeping."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

from botocore.exceptions import BotoCoreError, ClientError

from warmhost.compute.launcher import ComputeLauncher, is_stopped
from warmhost.constants import MIN_UPTIME, STALE_STARTING_THRESHOLD
from warmhost.core.exceptions import WarmhostError
from warmhost.observability.logger import logger
from warmhost.store.tasks import TaskStateStore
from warmhost.types import TaskState, TaskStatus, utcnow

log = logger.bind(component="watchdog")

EVICTION_REASON = "Watchdog: inactivity timeout"


class TimeoutSource(Protocol):
    async def timeout(self, now: datetime) -> timedelta: ...


@dataclass(slots=True)
class SweepReport:
    evicted: list[str] = field(default_factory=list)
    cleaned: list[str] = field(default_factory=list)
    retained: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    timeout: timedelta | None = None


class Watchdog:
    def __init__(
        self,
        tasks: TaskStateStore,
        launcher: ComputeLauncher,
        activity: TimeoutSource,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._tasks = tasks
        self._launcher = launcher
        self._activity = activity
        self._clock = clock

    async def sweep(self) -> SweepReport:
        now = self._clock()
        report = SweepReport()
        async for state in self._tasks.scan_active():
            try:
                await self._check(state, now, report)
            except (BotoCoreError, ClientError, WarmhostError) as e:
                log.error("Sweep failed for {key}: {err}", key=state.key, err=e)
                report.failed.append(state.key)

        log.info(
            "Sweep done: {e} evicted, {c} cleaned, {r} retained, {f} failed",
            e=len(report.evicted), c=len(report.cleaned), r=len(report.retained), f=len(report.failed),
        )
        return report

    async def _check(self, state: TaskState, now: datetime, report: SweepReport) -> None:
        match state.status:
            case TaskStatus.STARTING:
                await self._check_starting(state, now, report)
            case TaskStatus.RUNNING:
                await self._check_running(state, now, report)
            case _:
                report.retained.append(state.key)

    async def _check_starting(self, state: TaskState, now: datetime, report: SweepReport) -> None:
        if state.uptime(now) <= STALE_STARTING_THRESHOLD:
            report.retained.append(state.key)
            return
        if state.instance_handle and not await is_stopped(self._launcher, state.instance_handle):
            report.retained.append(state.key)
            return
        await self._tasks.delete(state.key)
        report.cleaned.append(state.key)
        log.info("Removed stale Starting record for {key}", key=state.key)

    async def _check_running(self, state: TaskState, now: datetime, report: SweepReport) -> None:
        if await is_stopped(self._launcher, state.instance_handle):
            await self._tasks.delete(state.key)
            report.cleaned.append(state.key)
            log.info("Instance for {key} is gone, record removed", key=state.key)
            return

        if state.uptime(now) < MIN_UPTIME:
            report.retained.append(state.key)
            return
        if state.prewarm_until is not None and now < state.prewarm_until:
            report.retained.append(state.key)
            return

        if report.timeout is None:
            report.timeout = await self._activity.timeout(now)
        idle = state.inactivity(now)
        if idle <= report.timeout:
            report.retained.append(state.key)
            return

        await self._launcher.stop(state.instance_handle, EVICTION_REASON)
        await self._tasks.delete(state.key)
        report.evicted.append(state.key)
        log.info("Evicted {key} after {idle} idle (timeout {t})", key=state.key, idle=idle, t=report.timeout)
