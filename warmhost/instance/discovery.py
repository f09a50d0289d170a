"""Finding out which ECS task this process runs in, and where it can be reached."""

from __future__ import annotations

from dataclasses import dataclass

from warmhost.config import InstanceSettings
from warmhost.core.exceptions import ConfigurationError
from warmhost.infra.http import HttpClient, HttpError


@dataclass(frozen=True, slots=True)
class TaskIdentity:
    task_arn: str
    cluster: str


async def resolve_identity(settings: InstanceSettings, *, http: HttpClient | None = None) -> TaskIdentity:
    """Task ARN from ``TASK_ARN`` or the ECS task metadata endpoint.

    The cluster comes from the metadata when available, else from the
    configured cluster.
    """
    if settings.task_arn:
        return TaskIdentity(settings.task_arn, settings.aws.cluster)
    if not settings.metadata_uri:
        raise ConfigurationError("Cannot determine task ARN: set TASK_ARN or run inside ECS")

    client = http or HttpClient(timeout=5)
    try:
        resp = await client.get(f"{settings.metadata_uri.rstrip('/')}/task")
    except HttpError as e:
        raise ConfigurationError(f"ECS metadata endpoint failed: {e}") from e
    finally:
        if http is None:
            await client.close()

    data = resp.data or {}
    arn = data.get("TaskARN")
    if not arn:
        raise ConfigurationError("ECS metadata did not include TaskARN")
    return TaskIdentity(arn, data.get("Cluster") or settings.aws.cluster)
