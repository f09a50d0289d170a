"""Message routing: deliver directly, claim a prewarmed instance, or queue and launch."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Protocol

from warmhost.compute.launcher import ComputeLauncher
from warmhost.constants import BRIDGE_HTTP_TIMEOUT, BRIDGE_PORT, PREWARM_USER_ID
from warmhost.core.exceptions import DeliveryError
from warmhost.infra.http import BearerAuth, HttpClient, HttpError
from warmhost.observability.logger import logger
from warmhost.store.pending import PendingQueue
from warmhost.store.tasks import TaskStateStore
from warmhost.types import InboundMessage, RouteResult, TaskState, utcnow

log = logger.bind(component="router")


class Delivery(Protocol):
    async def deliver(self, address: str, message: InboundMessage) -> None: ...


class BridgeDelivery:
    """POSTs messages to an instance bridge. Any failure becomes ``DeliveryError``."""

    def __init__(
        self,
        token: str,
        *,
        port: int = BRIDGE_PORT,
        timeout: timedelta = BRIDGE_HTTP_TIMEOUT,
    ) -> None:
        self._port = port
        self._http = HttpClient(auth=BearerAuth(token), timeout=timeout.total_seconds())

    async def deliver(self, address: str, message: InboundMessage) -> None:
        try:
            await self._http.post(f"http://{address}:{self._port}/message", json=message.bridge_body())
        except HttpError as e:
            raise DeliveryError(address, str(e)) from e

    async def close(self) -> None:
        await self._http.close()


@dataclass(frozen=True, slots=True)
class RouterDeps:
    tasks: TaskStateStore
    pending: PendingQueue
    launcher: ComputeLauncher
    delivery: Delivery
    launch_environment: Mapping[str, str] = field(default_factory=dict)
    clock: Callable[[], datetime] = utcnow
    exclusive_launch: bool = False


async def _try_deliver(deps: RouterDeps, address: str, message: InboundMessage) -> bool:
    try:
        await deps.delivery.deliver(address, message)
    except DeliveryError as e:
        log.warning("Delivery to {user} failed, falling back to queue: {err}", user=message.user_key, err=e)
        return False
    return True


async def _claim_prewarm(deps: RouterDeps, message: InboundMessage, now: datetime) -> bool:
    prewarm = await deps.tasks.get(PREWARM_USER_ID)
    if prewarm is None or not prewarm.deliverable or prewarm.address is None:
        return False
    if not await _try_deliver(deps, prewarm.address, message):
        return False

    await deps.tasks.delete(PREWARM_USER_ID)
    await deps.tasks.put(
        replace(prewarm, key=message.user_key, last_activity=now, prewarm_until=None, expire_at=None)
    )
    log.info("Prewarmed instance {arn} claimed by {user}", arn=prewarm.instance_handle, user=message.user_key)
    return True


async def _launch(deps: RouterDeps, message: InboundMessage, now: datetime) -> RouteResult:
    user = message.user_key
    environment = {**deps.launch_environment, "USER_ID": user}

    if deps.exclusive_launch:
        if not await deps.tasks.create_if_absent(TaskState.starting(user, "", now)):
            log.info("Another launch for {user} won the race, message stays queued", user=user)
            return RouteResult.QUEUED
        try:
            handle = await deps.launcher.start(environment)
        except Exception:
            await deps.tasks.delete(user)
            raise
    else:
        # Two concurrent callers can both get here for the same user.
        log.info("No instance for {user}, launching", user=user)
        handle = await deps.launcher.start(environment)

    await deps.tasks.put(TaskState.starting(user, handle, now))
    return RouteResult.STARTED


async def route_message(message: InboundMessage, deps: RouterDeps) -> RouteResult:
    """Get ``message`` to the user's agent, starting an instance if there is none.

    Delivery failures never reach the caller. Whenever direct delivery
    did not happen the message is queued before anything is launched,
    so it survives a failed launch.
    """
    now = deps.clock()
    user = message.user_key
    state = await deps.tasks.get(user)

    if state is not None and state.deliverable and state.address is not None:
        if await _try_deliver(deps, state.address, message):
            await deps.tasks.touch(user, last_activity=now)
            return RouteResult.SENT
        await deps.tasks.delete(user)
        state = None
    elif state is None and await _claim_prewarm(deps, message, now):
        return RouteResult.SENT

    await deps.pending.enqueue(user, message.message, message.channel, message.delivery_target, now)

    if state is not None:
        return RouteResult.QUEUED
    return await _launch(deps, message, now)
