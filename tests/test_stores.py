from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.conftest import NOW, client_error, client_factory, dynamo_resource, running
from warmhost.aws.clients import DynamoDBFactory
from warmhost.aws.config import AWS
from warmhost.store.conversations import DynamoConversationStore, HistoryPrefix, format_history
from warmhost.store.pending import DynamoPendingQueue, drain
from warmhost.store.tasks import DynamoTaskStateStore
from warmhost.types import ConversationTurn, TaskState, TaskStatus

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


@pytest.fixture
def table() -> MagicMock:
    t = MagicMock()
    for op in ("get_item", "put_item", "delete_item", "update_item", "scan", "query"):
        setattr(t, op, AsyncMock(return_value={}))
    return t


@pytest.fixture
def dynamodb(table) -> DynamoDBFactory:
    return client_factory(DynamoDBFactory, dynamo_resource(table))


AWS_CONFIG = AWS(table_prefix="test")


# ─── Pending drain ───────────────────────────────────────────────────


class TestDrain:
    @pytest.mark.asyncio
    async def test_processes_oldest_first_and_deletes_each_once(self, pending):
        for minutes, text in ((3, "third"), (1, "first"), (2, "second")):
            await pending.enqueue("u1", text, "web", "c", NOW + timedelta(minutes=minutes))
        seen: list[str] = []

        async def process(entry):
            assert entry.sort_key not in pending.deleted
            seen.append(entry.message)

        count = await drain(pending, "u1", process)

        assert count == 3
        assert seen == ["first", "second", "third"]
        assert len(pending.deleted) == len(set(pending.deleted)) == 3
        assert pending.entries == []

    @pytest.mark.asyncio
    async def test_failure_leaves_entry_and_later_ones_queued(self, pending):
        for minutes, text in ((1, "ok"), (2, "boom"), (3, "later")):
            await pending.enqueue("u1", text, "web", "c", NOW + timedelta(minutes=minutes))

        async def process(entry):
            if entry.message == "boom":
                raise RuntimeError("agent down")

        with pytest.raises(RuntimeError):
            await drain(pending, "u1", process)

        assert [e.message for e in pending.entries] == ["boom", "later"]

    @pytest.mark.asyncio
    async def test_picks_up_messages_queued_while_draining(self, pending):
        await pending.enqueue("u1", "first", "web", "c", NOW)
        seen: list[str] = []

        async def process(entry):
            seen.append(entry.message)
            if entry.message == "first":
                await pending.enqueue("u1", "second", "web", "c", NOW + timedelta(seconds=1))

        count = await drain(pending, "u1", process)

        assert count == 2
        assert seen == ["first", "second"]
        assert len(pending.deleted) == 2
        assert pending.entries == []

    @pytest.mark.asyncio
    async def test_other_users_untouched(self, pending):
        await pending.enqueue("u2", "not mine", "web", "c", NOW)

        assert await drain(pending, "u1", AsyncMock()) == 0
        assert len(pending.entries) == 1


# ─── TaskState store ─────────────────────────────────────────────────


class TestDynamoTaskStateStore:
    def test_uses_prefixed_table_name(self, dynamodb):
        store = DynamoTaskStateStore(dynamodb, AWS_CONFIG)
        assert store._table_name == "test-TaskState"

    @pytest.mark.asyncio
    async def test_get_missing_record(self, dynamodb):
        assert await DynamoTaskStateStore(dynamodb, AWS_CONFIG).get("u1") is None

    @pytest.mark.asyncio
    async def test_get_idle_record_reads_as_absent(self, dynamodb, table):
        idle = TaskState.idle("u1", "arn:task/1", NOW, NOW)
        table.get_item.return_value = {"Item": idle.to_item()}

        assert await DynamoTaskStateStore(dynamodb, AWS_CONFIG).get("u1") is None
        table.get_item.assert_awaited_once_with(Key={"PK": "USER#u1"})

    @pytest.mark.asyncio
    async def test_get_running_record(self, dynamodb, table):
        table.get_item.return_value = {"Item": running("u1", address="1.2.3.4").to_item()}

        state = await DynamoTaskStateStore(dynamodb, AWS_CONFIG).get("u1")

        assert state is not None
        assert state.status is TaskStatus.RUNNING
        assert state.address == "1.2.3.4"

    @pytest.mark.asyncio
    async def test_create_if_absent_reports_lost_race(self, dynamodb, table):
        table.put_item.side_effect = client_error("ConditionalCheckFailedException", "PutItem")

        created = await DynamoTaskStateStore(dynamodb, AWS_CONFIG).create_if_absent(
            TaskState.starting("u1", "", NOW)
        )

        assert created is False
        assert "ConditionExpression" in table.put_item.await_args.kwargs

    @pytest.mark.asyncio
    async def test_create_if_absent_propagates_other_errors(self, dynamodb, table):
        table.put_item.side_effect = client_error("ProvisionedThroughputExceededException", "PutItem")

        with pytest.raises(Exception, match="ProvisionedThroughputExceeded"):
            await DynamoTaskStateStore(dynamodb, AWS_CONFIG).create_if_absent(TaskState.starting("u1", "", NOW))

    @pytest.mark.asyncio
    async def test_scan_active_follows_pages(self, dynamodb, table):
        table.scan.side_effect = [
            {"Items": [running("u1").to_item()], "LastEvaluatedKey": {"PK": "USER#u1"}},
            {"Items": [TaskState.starting("u2", "arn:task/2", NOW).to_item()]},
        ]

        keys = [s.key async for s in DynamoTaskStateStore(dynamodb, AWS_CONFIG).scan_active()]

        assert keys == ["u1", "u2"]
        assert table.scan.await_args_list[1].kwargs["ExclusiveStartKey"] == {"PK": "USER#u1"}

    @pytest.mark.asyncio
    async def test_scan_active_skips_malformed_records(self, dynamodb, table):
        no_activity = running("u2").to_item()
        del no_activity["lastActivity"]
        table.scan.return_value = {
            "Items": [
                running("u1").to_item(),
                no_activity,
                {**running("u3").to_item(), "status": "Hibernating"},
                running("u4").to_item(),
            ]
        }

        keys = [s.key async for s in DynamoTaskStateStore(dynamodb, AWS_CONFIG).scan_active()]

        assert keys == ["u1", "u4"]

    @pytest.mark.asyncio
    async def test_touch_sets_activity_and_prewarm_window(self, dynamodb, table):
        until = NOW + timedelta(hours=1)

        await DynamoTaskStateStore(dynamodb, AWS_CONFIG).touch("u1", last_activity=NOW, prewarm_until=until)

        kwargs = table.update_item.await_args.kwargs
        assert kwargs["Key"] == {"PK": "USER#u1"}
        assert kwargs["UpdateExpression"] == "SET lastActivity = :la, prewarmUntil = :pu"
        assert kwargs["ExpressionAttributeValues"][":pu"] == int(until.timestamp() * 1000)

    @pytest.mark.asyncio
    async def test_touch_of_deleted_record_is_ignored(self, dynamodb, table):
        table.update_item.side_effect = client_error("ConditionalCheckFailedException", "UpdateItem")

        await DynamoTaskStateStore(dynamodb, AWS_CONFIG).touch("u1", last_activity=NOW)


# ─── Pending queue ───────────────────────────────────────────────────


class TestDynamoPendingQueue:
    @pytest.mark.asyncio
    async def test_enqueue_writes_sortable_entry(self, dynamodb, table):
        entry = await DynamoPendingQueue(dynamodb, AWS_CONFIG).enqueue("u1", "hi", "telegram", "telegram:42", NOW)

        item = table.put_item.await_args.kwargs["Item"]
        assert item["PK"] == "USER#u1"
        assert item["SK"] == entry.sort_key
        assert item["SK"].startswith(f"MSG#{int(NOW.timestamp() * 1000):013d}#")
        assert item["ttl"] == int((NOW + timedelta(minutes=5)).timestamp())
        assert item["channel"] == "telegram"
        assert item["connectionId"] == "telegram:42"

    @pytest.mark.asyncio
    async def test_list_skips_malformed_items(self, dynamodb, table):
        good = await DynamoPendingQueue(dynamodb, AWS_CONFIG).enqueue("u1", "hi", "web", "c", NOW)
        table.query.return_value = {"Items": [{"PK": "USER#u1", "SK": "MSG#broken"}, good.to_item()]}

        entries = await DynamoPendingQueue(dynamodb, AWS_CONFIG).list("u1")

        assert [e.sort_key for e in entries] == [good.sort_key]

    @pytest.mark.asyncio
    async def test_delete_uses_full_key(self, dynamodb, table):
        queue = DynamoPendingQueue(dynamodb, AWS_CONFIG)
        entry = await queue.enqueue("u1", "hi", "web", "c", NOW)

        await queue.delete(entry)

        table.delete_item.assert_awaited_once_with(Key={"PK": "USER#u1", "SK": entry.sort_key})


# ─── Conversations ───────────────────────────────────────────────────


def turn(role: str, content: str, seq: int) -> ConversationTurn:
    return ConversationTurn("u1", role, content, "web", seq)  # type: ignore[arg-type]


class TestConversations:
    def test_format_history(self):
        text = format_history([turn("user", "hi", 1), turn("assistant", "hello", 2)])

        assert text == (
            "<conversation_history>\n"
            '<message role="user">hi</message>\n'
            '<message role="assistant">hello</message>\n'
            "</conversation_history>\n\n"
        )

    def test_empty_history_renders_nothing(self):
        assert format_history([]) == ""

    def test_history_prefix_is_taken_once(self):
        prefix = HistoryPrefix("ctx\n")

        assert prefix
        assert prefix.take() == "ctx\n"
        assert not prefix
        assert prefix.take() == ""

    @pytest.mark.asyncio
    async def test_load_recent_returns_oldest_first(self, dynamodb, table):
        table.query.return_value = {"Items": [turn("assistant", "b", 2).to_item(), turn("user", "a", 1).to_item()]}

        turns = await DynamoConversationStore(dynamodb, AWS_CONFIG).load_recent("u1", limit=2)

        assert [t.content for t in turns] == ["a", "b"]
        kwargs = table.query.await_args.kwargs
        assert kwargs["ScanIndexForward"] is False
        assert kwargs["Limit"] == 2

    @pytest.mark.asyncio
    async def test_save_pair_orders_user_before_assistant(self, dynamodb, table):
        await DynamoConversationStore(dynamodb, AWS_CONFIG).save_pair("u1", "q", "a", "web")

        items = [c.kwargs["Item"] for c in table.put_item.await_args_list]
        assert [i["role"] for i in items] == ["user", "assistant"]
        user_seq = int(items[0]["SK"].rsplit("#", 1)[1])
        assert items[1]["SK"] == f"CONV#default#MSG#{user_seq + 1}"
