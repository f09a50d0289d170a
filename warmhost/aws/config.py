"""AWS configuration.

Immutable configuration dataclass describing where instances run and
where their bookkeeping lives.
"""

from __future__ import annotations

from dataclasses import dataclass

from warmhost.constants import DEFAULT_TABLE_PREFIX, Table


@dataclass(frozen=True, slots=True)
class AWS:
    """AWS configuration.

    Example:
        >>> from warmhost.aws import AWS
        >>> config = AWS(region="ap-northeast-2", cluster="arn:aws:ecs:...:cluster/agents")

    Args:
        region: AWS region for every client. Default: us-east-1
        cluster: ECS cluster ARN the agent tasks run in.
        task_definition: Task definition ARN of the agent image.
        subnets: Subnets for the task ENI (public IP is assigned).
        security_groups: Security groups for the task ENI.
        container_name: Container receiving the environment overrides.
        capacity_provider: ECS capacity provider. Default: FARGATE_SPOT
        table_prefix: Prefix of the DynamoDB table names.
        data_bucket: S3 bucket holding workspace backups.
    """

    region: str = "us-east-1"
    cluster: str = ""
    task_definition: str = ""
    subnets: tuple[str, ...] = ()
    security_groups: tuple[str, ...] = ()
    container_name: str = "openclaw"
    capacity_provider: str = "FARGATE_SPOT"
    table_prefix: str = DEFAULT_TABLE_PREFIX
    data_bucket: str = ""

    def table(self, table: Table) -> str:
        return f"{self.table_prefix}-{table}"
