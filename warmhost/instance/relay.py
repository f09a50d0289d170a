from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from botocore.exceptions import BotoCoreError, ClientError

from warmhost.instance.callback import Callback, stream_chunk, stream_end
from warmhost.instance.client import AgentClient
from warmhost.observability.logger import logger
from warmhost.observability.metrics import MetricsPublisher
from warmhost.store.conversations import ConversationStore, HistoryPrefix
from warmhost.types import Channel, utcnow

log = logger.bind(component="relay")


class Relay:
    """Runs one user message through the agent and streams the reply to its target."""

    def __init__(
        self,
        client: AgentClient,
        callback: Callback,
        conversations: ConversationStore,
        metrics: MetricsPublisher,
        history: HistoryPrefix,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._client = client
        self._callback = callback
        self._conversations = conversations
        self._metrics = metrics
        self._history = history
        self._clock = clock

    async def handle(
        self,
        *,
        user_id: str,
        message: str,
        channel: Channel,
        target: str,
        received_at: datetime,
    ) -> str:
        turn = await self._client.send_chat(user_id, self._history.take() + message)
        parts: list[str] = []
        async for chunk in turn:
            parts.append(chunk)
            await self._callback.send(target, stream_chunk(chunk))
        await self._callback.send(target, stream_end())

        response = "".join(parts)
        latency = self._clock() - received_at
        await self._metrics.message(
            latency_ms=latency.total_seconds() * 1000,
            response_length=len(response),
            channel=channel,
        )
        if response:
            try:
                await self._conversations.save_pair(user_id, message, response, channel)
            except (BotoCoreError, ClientError) as e:
                log.warning("Conversation for {user} not saved: {err}", user=user_id, err=e)
        return response
