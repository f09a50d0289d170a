"""CloudWatch metric emission.

Publishing is best-effort: a disabled publisher is a no-op and a failed
``put_metric_data`` call is logged, never raised. Nothing in the
lifecycle waits on metrics.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from botocore.exceptions import BotoCoreError, ClientError

from warmhost.aws.clients import CloudWatchClientFactory
from warmhost.constants import METRICS_NAMESPACE
from warmhost.observability.logger import logger
from warmhost.types import utcnow

log = logger.bind(component="metrics")

type Unit = Literal["Count", "Milliseconds", "Seconds"]


@dataclass(frozen=True, slots=True)
class Datum:
    name: str
    value: float
    unit: Unit = "Count"
    dimensions: Mapping[str, str] = field(default_factory=dict)
    timestamp: datetime | None = None

    def to_cloudwatch(self, default_ts: datetime) -> dict[str, object]:
        datum: dict[str, object] = {
            "MetricName": self.name,
            "Value": self.value,
            "Unit": self.unit,
            "Timestamp": self.timestamp or default_ts,
        }
        if self.dimensions:
            datum["Dimensions"] = [{"Name": k, "Value": v} for k, v in self.dimensions.items()]
        return datum


@dataclass(frozen=True, slots=True)
class StartupTimings:
    """Per-phase startup durations, in milliseconds."""

    total: float
    restore: float
    agent_wait: float
    client_ready: float
    pending_messages: int


class MetricsPublisher:
    def __init__(
        self,
        cloudwatch: CloudWatchClientFactory,
        *,
        enabled: bool,
        namespace: str = METRICS_NAMESPACE,
    ) -> None:
        self._cloudwatch = cloudwatch
        self._enabled = enabled
        self._namespace = namespace

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def put(self, data: Sequence[Datum]) -> None:
        if not self._enabled or not data:
            return
        now = utcnow()
        try:
            async with self._cloudwatch() as client:
                await client.put_metric_data(
                    Namespace=self._namespace,
                    MetricData=[d.to_cloudwatch(now) for d in data],
                )
        except (BotoCoreError, ClientError) as e:
            log.warning("Failed to publish {n} metric(s): {err}", n=len(data), err=e)

    async def count(self, name: str, **dimensions: str) -> None:
        await self.put([Datum(name=name, value=1, dimensions=dimensions)])

    async def startup(self, timings: StartupTimings, channel: str) -> None:
        dims = {"Channel": channel}
        await self.put([
            Datum("StartupTotal", timings.total, "Milliseconds", dims),
            Datum("StartupRestore", timings.restore, "Milliseconds", dims),
            Datum("StartupAgentWait", timings.agent_wait, "Milliseconds", dims),
            Datum("StartupClientReady", timings.client_ready, "Milliseconds", dims),
            Datum("PendingMessagesConsumed", timings.pending_messages, "Count", dims),
        ])

    async def message(self, *, latency_ms: float, response_length: int, channel: str) -> None:
        dims = {"Channel": channel}
        await self.put([
            Datum("MessageLatency", latency_ms, "Milliseconds", dims),
            Datum("ResponseLength", response_length, "Count", dims),
        ])
