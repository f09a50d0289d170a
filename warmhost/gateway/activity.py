"""Dynamic inactivity timeout from historical message volume.

If users tended to be active at this hour on enough recent days, idle
instances are kept longer; otherwise they are reclaimed sooner.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from botocore.exceptions import BotoCoreError, ClientError

from warmhost.aws.clients import CloudWatchClientFactory
from warmhost.constants import (
    ACTIVE_HOUR_THRESHOLD,
    ACTIVE_TIMEOUT,
    ACTIVITY_LOOKBACK_DAYS,
    CHANNELS,
    DEFAULT_INACTIVITY_TIMEOUT,
    INACTIVE_TIMEOUT,
    METRICS_NAMESPACE,
)
from warmhost.observability.logger import logger

log = logger.bind(component="activity")

_PERIOD_SECONDS = 3600


def active_days(datapoints: Iterable[datetime], now: datetime, tz: ZoneInfo) -> set[date]:
    """Local calendar days that had traffic during the current local hour."""
    hour = now.astimezone(tz).hour
    local = (ts.astimezone(tz) for ts in datapoints)
    return {ts.date() for ts in local if ts.hour == hour}


def inactivity_timeout(datapoints: Sequence[datetime], now: datetime, tz: ZoneInfo) -> timedelta:
    if not datapoints:
        return DEFAULT_INACTIVITY_TIMEOUT
    if len(active_days(datapoints, now, tz)) >= ACTIVE_HOUR_THRESHOLD:
        return ACTIVE_TIMEOUT
    return INACTIVE_TIMEOUT


class ActivityProfile:
    """Reads hourly ``MessageLatency`` sample counts for every channel."""

    def __init__(
        self,
        cloudwatch: CloudWatchClientFactory,
        tz: ZoneInfo,
        *,
        namespace: str = METRICS_NAMESPACE,
        channels: Sequence[str] = CHANNELS,
        lookback_days: int = ACTIVITY_LOOKBACK_DAYS,
    ) -> None:
        self._cloudwatch = cloudwatch
        self._tz = tz
        self._namespace = namespace
        self._channels = channels
        self._lookback = timedelta(days=lookback_days)

    async def datapoints(self, now: datetime) -> list[datetime]:
        found: list[datetime] = []
        async with self._cloudwatch() as cw:
            for channel in self._channels:
                resp = await cw.get_metric_statistics(
                    Namespace=self._namespace,
                    MetricName="MessageLatency",
                    Dimensions=[{"Name": "Channel", "Value": channel}],
                    StartTime=now - self._lookback,
                    EndTime=now,
                    Period=_PERIOD_SECONDS,
                    Statistics=["SampleCount"],
                )
                found.extend(
                    dp["Timestamp"] for dp in resp.get("Datapoints", []) if dp.get("SampleCount", 0) > 0
                )
        return found

    async def timeout(self, now: datetime) -> timedelta:
        try:
            points = await self.datapoints(now)
        except (BotoCoreError, ClientError) as e:
            log.warning("Activity metrics unavailable, using default timeout: {err}", err=e)
            return DEFAULT_INACTIVITY_TIMEOUT
        chosen = inactivity_timeout(points, now, self._tz)
        log.debug("Inactivity timeout {t} from {n} datapoint(s)", t=chosen, n=len(points))
        return chosen
