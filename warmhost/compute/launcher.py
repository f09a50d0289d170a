"""Compute launcher: one ECS task (Fargate Spot, public IP) per agent instance."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from injector import inject

from warmhost.aws.clients import EC2ClientFactory, ECSClientFactory
from warmhost.aws.config import AWS
from warmhost.constants import TaskLastStatus
from warmhost.core.exceptions import LaunchError
from warmhost.observability.logger import logger

log = logger.bind(component="launcher")


class ComputeLauncher(Protocol):
    async def start(self, environment: Mapping[str, str]) -> str: ...

    async def stop(self, handle: str, reason: str) -> None: ...

    async def last_status(self, handle: str) -> TaskLastStatus | None: ...


_WINDING_DOWN = frozenset({
    TaskLastStatus.DEACTIVATING,
    TaskLastStatus.STOPPING,
    TaskLastStatus.DEPROVISIONING,
    TaskLastStatus.STOPPED,
})


async def is_stopped(launcher: ComputeLauncher, handle: str) -> bool:
    """True when the instance is gone or already past RUNNING."""
    status = await launcher.last_status(handle)
    return status is None or status in _WINDING_DOWN


def _eni_id(task: dict[str, Any]) -> str | None:
    for attachment in task.get("attachments", []):
        if attachment.get("type") != "ElasticNetworkInterface":
            continue
        for detail in attachment.get("details", []):
            if detail.get("name") == "networkInterfaceId":
                return detail.get("value")
    return None


class ECSLauncher:
    """Runs, stops and inspects agent tasks in the configured cluster."""

    @inject
    def __init__(self, ecs: ECSClientFactory, ec2: EC2ClientFactory, config: AWS) -> None:
        self._ecs = ecs
        self._ec2 = ec2
        self._config = config

    async def start(self, environment: Mapping[str, str]) -> str:
        cfg = self._config
        async with self._ecs() as ecs:
            resp = await ecs.run_task(
                cluster=cfg.cluster,
                taskDefinition=cfg.task_definition,
                capacityProviderStrategy=[{"capacityProvider": cfg.capacity_provider, "weight": 1}],
                networkConfiguration={
                    "awsvpcConfiguration": {
                        "subnets": list(cfg.subnets),
                        "securityGroups": list(cfg.security_groups),
                        "assignPublicIp": "ENABLED",
                    }
                },
                overrides={
                    "containerOverrides": [
                        {
                            "name": cfg.container_name,
                            "environment": [{"name": k, "value": v} for k, v in environment.items()],
                        }
                    ]
                },
            )

        tasks = resp.get("tasks") or []
        if not tasks or not tasks[0].get("taskArn"):
            failures = "; ".join(
                f"{f.get('arn', '?')}: {f.get('reason', 'unknown')}" for f in resp.get("failures", [])
            )
            raise LaunchError(f"RunTask returned no tasks{f' ({failures})' if failures else ''}")

        arn = tasks[0]["taskArn"]
        log.info("Launched task {arn}", arn=arn)
        return arn

    async def stop(self, handle: str, reason: str) -> None:
        async with self._ecs() as ecs:
            await ecs.stop_task(cluster=self._config.cluster, task=handle, reason=reason)
        log.info("Stopped task {arn}: {reason}", arn=handle, reason=reason)

    async def _describe(self, handle: str) -> dict[str, Any] | None:
        async with self._ecs() as ecs:
            resp = await ecs.describe_tasks(cluster=self._config.cluster, tasks=[handle])
        tasks = resp.get("tasks") or []
        return tasks[0] if tasks else None

    async def last_status(self, handle: str) -> TaskLastStatus | None:
        task = await self._describe(handle)
        if task is None:
            return None
        try:
            return TaskLastStatus(task.get("lastStatus", ""))
        except ValueError:
            log.warning("Unknown lastStatus {s!r} for {arn}", s=task.get("lastStatus"), arn=handle)
            return TaskLastStatus.PENDING

    async def public_address(self, handle: str) -> str | None:
        """Public IP of the task's network interface, once AWS has associated one."""
        task = await self._describe(handle)
        eni = _eni_id(task) if task else None
        if not eni:
            return None
        async with self._ec2() as ec2:
            resp = await ec2.describe_network_interfaces(NetworkInterfaceIds=[eni])
        interfaces = resp.get("NetworkInterfaces") or []
        if not interfaces:
            return None
        return (interfaces[0].get("Association") or {}).get("PublicIp")
