"""Durable per-user FIFO of messages that could not be delivered yet."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Protocol

from boto3.dynamodb.conditions import Key
from injector import inject

from warmhost.aws.clients import DynamoDBFactory
from warmhost.aws.config import AWS
from warmhost.constants import Table
from warmhost.observability.logger import logger
from warmhost.types import Channel, PendingMessage, user_pk

log = logger.bind(component="pending-queue")

type Processor = Callable[[PendingMessage], Awaitable[None]]


class PendingQueue(Protocol):
    async def enqueue(
        self,
        user_key: str,
        message: str,
        channel: Channel,
        delivery_target: str,
        now: datetime,
    ) -> PendingMessage: ...

    async def list(self, user_key: str) -> list[PendingMessage]: ...

    async def delete(self, entry: PendingMessage) -> None: ...


async def drain(queue: PendingQueue, user_key: str, process: Processor) -> int:
    """Process the user's queued messages oldest first, one at a time.

    Each entry is deleted only after ``process`` returned for it. If
    ``process`` raises, that entry and everything after it stay queued
    and the error propagates. The queue is listed again after every
    round, so messages enqueued while draining are picked up too.
    """
    processed = 0
    while entries := sorted(await queue.list(user_key), key=lambda e: e.sort_key):
        for entry in entries:
            await process(entry)
            await queue.delete(entry)
            processed += 1
    if processed:
        log.info("Drained {n} pending message(s) for {user}", n=processed, user=user_key)
    return processed


class DynamoPendingQueue:
    """Entries in the ``PendingMessages`` table (PK user, SK ``MSG#<ms>#<uuid>``)."""

    @inject
    def __init__(self, dynamodb: DynamoDBFactory, config: AWS) -> None:
        self._dynamodb = dynamodb
        self._table_name = config.table(Table.PENDING_MESSAGES)

    async def enqueue(
        self,
        user_key: str,
        message: str,
        channel: Channel,
        delivery_target: str,
        now: datetime,
    ) -> PendingMessage:
        entry = PendingMessage.create(user_key, message, channel, delivery_target, now)
        async with self._dynamodb() as ddb:
            table = await ddb.Table(self._table_name)
            await table.put_item(Item=entry.to_item())
        log.debug("Queued {sk} for {user}", sk=entry.sort_key, user=user_key)
        return entry

    async def list(self, user_key: str) -> list[PendingMessage]:
        entries: list[PendingMessage] = []
        async with self._dynamodb() as ddb:
            table = await ddb.Table(self._table_name)
            kwargs: dict[str, object] = {
                "KeyConditionExpression": Key("PK").eq(user_pk(user_key)),
                "ScanIndexForward": True,
            }
            while True:
                resp = await table.query(**kwargs)
                for item in resp.get("Items", []):
                    try:
                        entries.append(PendingMessage.from_item(item))
                    except (KeyError, ValueError) as e:
                        log.warning("Skipping malformed pending entry {sk}: {err}", sk=item.get("SK"), err=e)
                last = resp.get("LastEvaluatedKey")
                if not last:
                    break
                kwargs["ExclusiveStartKey"] = last
        return entries

    async def delete(self, entry: PendingMessage) -> None:
        async with self._dynamodb() as ddb:
            table = await ddb.Table(self._table_name)
            await table.delete_item(Key={"PK": user_pk(entry.user_key), "SK": entry.sort_key})
