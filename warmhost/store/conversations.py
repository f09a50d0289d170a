"""Short-term conversation memory that survives cold starts."""

from __future__ import annotations

from typing import Protocol

from boto3.dynamodb.conditions import Key
from injector import inject

from warmhost.aws.clients import DynamoDBFactory
from warmhost.aws.config import AWS
from warmhost.constants import KeyPrefix, Table
from warmhost.types import Channel, ConversationTurn, epoch_millis, user_pk, utcnow


class ConversationStore(Protocol):
    async def save_pair(
        self,
        user_key: str,
        user_message: str,
        assistant_message: str,
        channel: Channel,
    ) -> None: ...

    async def load_recent(self, user_key: str, limit: int = 20) -> list[ConversationTurn]: ...


def format_history(turns: list[ConversationTurn]) -> str:
    """Render turns as a context prefix for the first agent message."""
    if not turns:
        return ""
    lines = "\n".join(f'<message role="{t.role}">{t.content}</message>' for t in turns)
    return f"<conversation_history>\n{lines}\n</conversation_history>\n\n"


class HistoryPrefix:
    """Rendered history that is prepended to exactly one outgoing message."""

    def __init__(self, text: str = "") -> None:
        self._text = text

    def __bool__(self) -> bool:
        return bool(self._text)

    def take(self) -> str:
        text, self._text = self._text, ""
        return text


class DynamoConversationStore:
    @inject
    def __init__(self, dynamodb: DynamoDBFactory, config: AWS) -> None:
        self._dynamodb = dynamodb
        self._table_name = config.table(Table.CONVERSATIONS)

    async def save_pair(
        self,
        user_key: str,
        user_message: str,
        assistant_message: str,
        channel: Channel,
        conversation_key: str = "default",
    ) -> None:
        seq = epoch_millis(utcnow())
        turns = (
            ConversationTurn(user_key, "user", user_message, channel, seq, conversation_key),
            ConversationTurn(user_key, "assistant", assistant_message, channel, seq + 1, conversation_key),
        )
        async with self._dynamodb() as ddb:
            table = await ddb.Table(self._table_name)
            for turn in turns:
                await table.put_item(Item=turn.to_item())

    async def load_recent(
        self,
        user_key: str,
        limit: int = 20,
        conversation_key: str = "default",
    ) -> list[ConversationTurn]:
        async with self._dynamodb() as ddb:
            table = await ddb.Table(self._table_name)
            resp = await table.query(
                KeyConditionExpression=Key("PK").eq(user_pk(user_key))
                & Key("SK").begins_with(f"{KeyPrefix.CONV}{conversation_key}#{KeyPrefix.MSG}"),
                ScanIndexForward=False,
                Limit=limit,
            )
        newest_first = [ConversationTurn.from_item(item) for item in resp.get("Items", [])]
        return list(reversed(newest_first))
