from warmhost.store.conversations import (
    ConversationStore,
    DynamoConversationStore,
    HistoryPrefix,
    format_history,
)
from warmhost.store.pending import DynamoPendingQueue, PendingQueue, drain
from warmhost.store.tasks import DynamoTaskStateStore, TaskStateStore

__all__ = [
    "ConversationStore",
    "DynamoConversationStore",
    "DynamoPendingQueue",
    "DynamoTaskStateStore",
    "HistoryPrefix",
    "PendingQueue",
    "TaskStateStore",
    "drain",
    "format_history",
]
