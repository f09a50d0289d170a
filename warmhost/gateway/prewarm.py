"""Keeps one spare instance warm under the prewarm sentinel key."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from contextlib import aclosing
from datetime import datetime, timedelta
from enum import StrEnum

from warmhost.compute.launcher import ComputeLauncher
from warmhost.constants import DEFAULT_PREWARM_DURATION, PREWARM_USER_ID
from warmhost.observability.logger import logger
from warmhost.observability.metrics import MetricsPublisher
from warmhost.store.tasks import TaskStateStore
from warmhost.types import TaskState, utcnow

log = logger.bind(component="prewarm")


class PrewarmOutcome(StrEnum):
    TRIGGERED = "triggered"
    SKIPPED = "skipped"


class Prewarmer:
    def __init__(
        self,
        tasks: TaskStateStore,
        launcher: ComputeLauncher,
        metrics: MetricsPublisher,
        *,
        duration: timedelta = DEFAULT_PREWARM_DURATION,
        launch_environment: Mapping[str, str] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._tasks = tasks
        self._launcher = launcher
        self._metrics = metrics
        self._duration = duration
        self._environment = dict(launch_environment or {})
        self._clock = clock

    async def run(self) -> PrewarmOutcome:
        now = self._clock()
        until = now + self._duration

        async with aclosing(self._tasks.scan_active()) as active:
            first = await anext(active, None)

        if first is not None:
            await self._tasks.touch(first.key, last_activity=now, prewarm_until=until)
            log.info("Instance for {key} already active, kept warm until {until}", key=first.key, until=until)
            await self._metrics.count("PrewarmSkipped", Reason="AlreadyRunning")
            return PrewarmOutcome.SKIPPED

        handle = await self._launcher.start({**self._environment, "USER_ID": PREWARM_USER_ID})
        await self._tasks.put(TaskState.starting(PREWARM_USER_ID, handle, now, prewarm_until=until))
        log.info("Prewarm instance {arn} launched, warm until {until}", arn=handle, until=until)
        await self._metrics.count("PrewarmTriggered")
        return PrewarmOutcome.TRIGGERED
