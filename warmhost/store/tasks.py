"""Task state machine persistence.

One TaskState record per user (plus the prewarm sentinel). There is no
locking: every caller must tolerate the record having changed between
its read and its write. ``Idle`` is reported as absence by ``get``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime
from typing import Protocol

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError
from injector import inject

from warmhost.aws.clients import DynamoDBFactory
from warmhost.aws.config import AWS
from warmhost.constants import Table
from warmhost.observability.logger import logger
from warmhost.types import (
    TaskState,
    TaskStatus,
    epoch_millis,
    format_timestamp,
    user_pk,
)

log = logger.bind(component="task-state")

_ACTIVE = (TaskStatus.STARTING.value, TaskStatus.RUNNING.value)


class TaskStateStore(Protocol):
    async def get(self, user_key: str) -> TaskState | None: ...

    async def put(self, state: TaskState) -> None: ...

    async def delete(self, user_key: str) -> None: ...

    async def create_if_absent(self, state: TaskState) -> bool: ...

    def scan_active(self) -> AsyncGenerator[TaskState]: ...

    async def touch(
        self,
        user_key: str,
        *,
        last_activity: datetime,
        prewarm_until: datetime | None = None,
    ) -> None: ...


class DynamoTaskStateStore:
    """TaskState records in the ``TaskState`` table, keyed by ``USER#<id>``."""

    @inject
    def __init__(self, dynamodb: DynamoDBFactory, config: AWS) -> None:
        self._dynamodb = dynamodb
        self._table_name = config.table(Table.TASK_STATE)

    async def get(self, user_key: str) -> TaskState | None:
        async with self._dynamodb() as ddb:
            table = await ddb.Table(self._table_name)
            resp = await table.get_item(Key={"PK": user_pk(user_key)})
        item = resp.get("Item")
        if not item:
            return None
        state = TaskState.from_item(item)
        return None if state.status is TaskStatus.IDLE else state

    async def put(self, state: TaskState) -> None:
        async with self._dynamodb() as ddb:
            table = await ddb.Table(self._table_name)
            await table.put_item(Item=state.to_item())
        log.debug("Stored {key} as {status}", key=state.key, status=state.status)

    async def delete(self, user_key: str) -> None:
        async with self._dynamodb() as ddb:
            table = await ddb.Table(self._table_name)
            await table.delete_item(Key={"PK": user_pk(user_key)})
        log.debug("Deleted task state for {key}", key=user_key)

    async def create_if_absent(self, state: TaskState) -> bool:
        """Write ``state`` only when no active record exists for its key.

        Returns False when another writer got there first.
        """
        async with self._dynamodb() as ddb:
            table = await ddb.Table(self._table_name)
            try:
                await table.put_item(
                    Item=state.to_item(),
                    ConditionExpression=Attr("PK").not_exists() | Attr("status").eq(TaskStatus.IDLE.value),
                )
            except ClientError as e:
                if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                    return False
                raise
        return True

    async def scan_active(self) -> AsyncGenerator[TaskState]:
        async with self._dynamodb() as ddb:
            table = await ddb.Table(self._table_name)
            kwargs: dict[str, object] = {"FilterExpression": Attr("status").is_in(list(_ACTIVE))}
            while True:
                resp = await table.scan(**kwargs)
                for item in resp.get("Items", []):
                    try:
                        state = TaskState.from_item(item)
                    except (KeyError, ValueError) as e:
                        log.warning("Skipping malformed task record {pk}: {err}", pk=item.get("PK"), err=e)
                        continue
                    yield state
                last = resp.get("LastEvaluatedKey")
                if not last:
                    break
                kwargs["ExclusiveStartKey"] = last

    async def touch(
        self,
        user_key: str,
        *,
        last_activity: datetime,
        prewarm_until: datetime | None = None,
    ) -> None:
        expression = "SET lastActivity = :la"
        values: dict[str, object] = {":la": format_timestamp(last_activity)}
        if prewarm_until is not None:
            expression += ", prewarmUntil = :pu"
            values[":pu"] = epoch_millis(prewarm_until)
        async with self._dynamodb() as ddb:
            table = await ddb.Table(self._table_name)
            try:
                await table.update_item(
                    Key={"PK": user_pk(user_key)},
                    UpdateExpression=expression,
                    ConditionExpression=Attr("PK").exists(),
                    ExpressionAttributeValues=values,
                )
            except ClientError as e:
                if e.response.get("Error", {}).get("Code") != "ConditionalCheckFailedException":
                    raise
                log.debug("Skipped touch of {key}: record is gone", key=user_key)
