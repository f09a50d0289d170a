"""Domain records shared by the gateway and the instance.

Each record knows how to turn itself into a DynamoDB item and back.
Attribute names on the wire (``PK``, ``taskArn``, ``publicIp`` ...) are
the persisted layout and must not change; Python field names are
snake_case.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Any, Literal

from warmhost.constants import (
    CONVERSATION_TTL,
    IDLE_STATE_TTL,
    PENDING_MESSAGE_TTL,
    KeyPrefix,
)

type Channel = Literal["web", "telegram"]
type Item = dict[str, Any]


class TaskStatus(StrEnum):
    STARTING = "Starting"
    RUNNING = "Running"
    IDLE = "Idle"


class RouteResult(StrEnum):
    SENT = "sent"
    QUEUED = "queued"
    STARTED = "started"


def utcnow() -> datetime:
    return datetime.now(UTC)


def user_pk(user_id: str) -> str:
    return f"{KeyPrefix.USER}{user_id}"


def user_from_pk(pk: str) -> str:
    return pk.removeprefix(KeyPrefix.USER)


def epoch_seconds(ts: datetime) -> int:
    return int(ts.timestamp())


def epoch_millis(ts: datetime) -> int:
    return int(ts.timestamp() * 1000)


def from_millis(value: int | Decimal) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=UTC)


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def format_timestamp(ts: datetime) -> str:
    return ts.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# =============================================================================
# TaskState
# =============================================================================


@dataclass(frozen=True, slots=True)
class TaskState:
    """Per-user record of instance existence and readiness.

    ``address`` is only meaningful while ``status`` is Running. A Running
    record without an address belongs to an instance whose public IP has
    not been discovered yet and cannot receive direct deliveries.
    """

    key: str
    instance_handle: str
    status: TaskStatus
    started_at: datetime
    last_activity: datetime
    address: str | None = None
    expire_at: datetime | None = None
    prewarm_until: datetime | None = None

    @property
    def deliverable(self) -> bool:
        return self.status is TaskStatus.RUNNING and bool(self.address)

    def uptime(self, now: datetime) -> timedelta:
        return now - self.started_at

    def inactivity(self, now: datetime) -> timedelta:
        return now - self.last_activity

    def to_item(self) -> Item:
        item: Item = {
            "PK": user_pk(self.key),
            "taskArn": self.instance_handle,
            "status": self.status.value,
            "startedAt": format_timestamp(self.started_at),
            "lastActivity": format_timestamp(self.last_activity),
        }
        if self.address:
            item["publicIp"] = self.address
        if self.expire_at is not None:
            item["ttl"] = epoch_seconds(self.expire_at)
        if self.prewarm_until is not None:
            item["prewarmUntil"] = epoch_millis(self.prewarm_until)
        return item

    @classmethod
    def from_item(cls, item: Item) -> TaskState:
        ttl = item.get("ttl")
        prewarm_until = item.get("prewarmUntil")
        return cls(
            key=user_from_pk(str(item["PK"])),
            instance_handle=str(item["taskArn"]),
            status=TaskStatus(item["status"]),
            started_at=parse_timestamp(str(item["startedAt"])),
            last_activity=parse_timestamp(str(item["lastActivity"])),
            address=item.get("publicIp") or None,
            expire_at=datetime.fromtimestamp(int(ttl), tz=UTC) if ttl is not None else None,
            prewarm_until=from_millis(prewarm_until) if prewarm_until is not None else None,
        )

    @classmethod
    def starting(cls, key: str, instance_handle: str, now: datetime, **extra: Any) -> TaskState:
        return cls(
            key=key,
            instance_handle=instance_handle,
            status=TaskStatus.STARTING,
            started_at=now,
            last_activity=now,
            **extra,
        )

    @classmethod
    def idle(cls, key: str, instance_handle: str, now: datetime, last_activity: datetime) -> TaskState:
        return cls(
            key=key,
            instance_handle=instance_handle,
            status=TaskStatus.IDLE,
            started_at=now,
            last_activity=last_activity,
            expire_at=now + IDLE_STATE_TTL,
        )


# =============================================================================
# PendingMessage
# =============================================================================


@dataclass(frozen=True, slots=True)
class PendingMessage:
    user_key: str
    sort_key: str
    message: str
    channel: Channel
    delivery_target: str
    created_at: datetime
    expire_at: datetime

    @classmethod
    def create(
        cls,
        user_key: str,
        message: str,
        channel: Channel,
        delivery_target: str,
        now: datetime,
    ) -> PendingMessage:
        ms = epoch_millis(now)
        return cls(
            user_key=user_key,
            sort_key=f"{KeyPrefix.MSG}{ms:013d}#{uuid.uuid4().hex}",
            message=message,
            channel=channel,
            delivery_target=delivery_target,
            created_at=now,
            expire_at=now + PENDING_MESSAGE_TTL,
        )

    def to_item(self) -> Item:
        return {
            "PK": user_pk(self.user_key),
            "SK": self.sort_key,
            "message": self.message,
            "channel": self.channel,
            "connectionId": self.delivery_target,
            "createdAt": format_timestamp(self.created_at),
            "ttl": epoch_seconds(self.expire_at),
        }

    @classmethod
    def from_item(cls, item: Item) -> PendingMessage:
        return cls(
            user_key=user_from_pk(str(item["PK"])),
            sort_key=str(item["SK"]),
            message=str(item["message"]),
            channel=item.get("channel", "web"),
            delivery_target=str(item["connectionId"]),
            created_at=parse_timestamp(str(item["createdAt"])),
            expire_at=datetime.fromtimestamp(int(item["ttl"]), tz=UTC),
        )


# =============================================================================
# ConversationTurn
# =============================================================================


@dataclass(frozen=True, slots=True)
class ConversationTurn:
    user_key: str
    role: Literal["user", "assistant"]
    content: str
    channel: Channel
    sequence: int
    conversation_key: str = "default"
    expire_at: datetime = field(default_factory=lambda: utcnow() + CONVERSATION_TTL)

    def to_item(self) -> Item:
        return {
            "PK": user_pk(self.user_key),
            "SK": f"{KeyPrefix.CONV}{self.conversation_key}#{KeyPrefix.MSG}{self.sequence}",
            "role": self.role,
            "content": self.content,
            "channel": self.channel,
            "ttl": epoch_seconds(self.expire_at),
        }

    @classmethod
    def from_item(cls, item: Item) -> ConversationTurn:
        sk = str(item["SK"]).removeprefix(KeyPrefix.CONV)
        conversation_key, _, sequence = sk.rpartition(f"#{KeyPrefix.MSG}")
        return cls(
            user_key=user_from_pk(str(item["PK"])),
            role=item["role"],
            content=str(item["content"]),
            channel=item.get("channel", "web"),
            sequence=int(sequence),
            conversation_key=conversation_key,
            expire_at=datetime.fromtimestamp(int(item.get("ttl", 0)), tz=UTC),
        )


# =============================================================================
# Routing
# =============================================================================


@dataclass(frozen=True, slots=True)
class InboundMessage:
    """A message the gateway has to get to the user's agent."""

    user_key: str
    message: str
    channel: Channel
    delivery_target: str
    callback_url: str = ""

    def bridge_body(self) -> dict[str, str]:
        return {
            "userId": self.user_key,
            "message": self.message,
            "channel": self.channel,
            "connectionId": self.delivery_target,
            "callbackUrl": self.callback_url,
        }
