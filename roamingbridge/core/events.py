"""Fan-out of change notifications to subscribers.

Producers call :meth:`EventBus.publish`, which only appends to one bounded
queue per subscriber and returns immediately.  A delivery task per
subscriber drains its queue in FIFO order, so notifications for one entity
reach every subscriber in the order they were published.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol, Union

from .. import config
from ..ids import EntityId
from .domain import AdminStatus, LifecycleEvent, SessionState, StatusValue

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StatusChanged:
    """``new`` is ``None`` when the entity was removed from the fleet."""

    entity_id: EntityId
    old: Optional[StatusValue]
    new: Optional[StatusValue]
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class AdminStatusChanged:
    entity_id: EntityId
    old: AdminStatus
    new: AdminStatus
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class SessionStateChanged:
    entity_id: EntityId
    session_id: Optional[str]
    old: SessionState
    new: SessionState
    timestamp: datetime
    event: Optional[LifecycleEvent] = None
    reservation_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class CommandSettled:
    """A command finished after its caller stopped waiting for it."""

    entity_id: Optional[EntityId]
    correlation_id: Optional[str]
    result: Any
    timestamp: datetime


Notification = Union[StatusChanged, AdminStatusChanged, SessionStateChanged, CommandSettled]


class Subscriber(Protocol):
    def notify(self, notification: Notification) -> Any:
        """Receive one notification.  May be a coroutine function."""


class Subscription:
    """Queue and delivery statistics of one subscriber."""

    def __init__(
        self,
        bus: "EventBus",
        subscriber: Subscriber,
        maxsize: int,
        name: str,
    ) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self._bus = bus
        self.subscriber = subscriber
        self.maxsize = maxsize
        self.name = name
        self.dropped = 0
        self.failed = 0
        self.delivered = 0
        self._queue: deque[Notification] = deque()
        self._wakeup = asyncio.Event()
        self._delivering = False
        self._task: asyncio.Task | None = None

    def __repr__(self) -> str:
        return (
            f"Subscription({self.name!r}, queued={len(self._queue)}, "
            f"dropped={self.dropped}, failed={self.failed})"
        )

    @property
    def queued(self) -> int:
        return len(self._queue)

    @property
    def idle(self) -> bool:
        return not self._queue and not self._delivering

    def _offer(self, notification: Notification) -> None:
        if len(self._queue) >= self.maxsize:
            self._queue.popleft()
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning(
                    "Subscriber %s is falling behind; %d notifications dropped",
                    self.name,
                    self.dropped,
                )
        self._queue.append(notification)
        self._wakeup.set()

    def _start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name=f"event-bus:{self.name}")

    async def _run(self) -> None:
        while True:
            if not self._queue:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue
            notification = self._queue.popleft()
            self._delivering = True
            try:
                await self._deliver(notification)
            finally:
                self._delivering = False

    async def _deliver(self, notification: Notification) -> None:
        attempts = self._bus.attempts
        for attempt in range(1, attempts + 1):
            try:
                result = self.subscriber.notify(notification)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                if attempt == attempts:
                    self.failed += 1
                    logger.exception(
                        "Subscriber %s failed on %s after %d attempts",
                        self.name,
                        type(notification).__name__,
                        attempts,
                    )
                    return
                logger.warning(
                    "Subscriber %s failed on %s (attempt %d/%d); retrying",
                    self.name,
                    type(notification).__name__,
                    attempt,
                    attempts,
                )
                await asyncio.sleep(self._bus.retry_delay)
            else:
                self.delivered += 1
                return

    async def _stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


class EventBus:
    """Non-blocking publish/subscribe hub.

    Delivery tasks need a running event loop.  Subscriptions made before one
    exists start delivering on :meth:`start`; notifications published in the
    meantime wait in their queues.
    """

    def __init__(
        self,
        queue_size: int = config.EVENT_QUEUE_SIZE,
        attempts: int = config.DELIVERY_ATTEMPTS,
        retry_delay: float = config.DELIVERY_RETRY_DELAY,
    ) -> None:
        self.queue_size = queue_size
        self.attempts = max(1, attempts)
        self.retry_delay = retry_delay
        self.published = 0
        self._subscriptions: list[Subscription] = []
        self._running = False

    @property
    def subscriptions(self) -> tuple[Subscription, ...]:
        return tuple(self._subscriptions)

    def subscribe(
        self,
        subscriber: Subscriber,
        *,
        maxsize: int | None = None,
        name: str | None = None,
    ) -> Subscription:
        subscription = Subscription(
            self,
            subscriber,
            maxsize or self.queue_size,
            name or type(subscriber).__name__,
        )
        self._subscriptions.append(subscription)
        if self._running or _loop_running():
            subscription._start()
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        await subscription._stop()

    def publish(self, notification: Notification) -> None:
        """Queue ``notification`` for every subscriber.  Never blocks."""
        self.published += 1
        for subscription in self._subscriptions:
            subscription._offer(notification)

    async def start(self) -> None:
        self._running = True
        for subscription in self._subscriptions:
            subscription._start()

    async def join(self) -> None:
        """Wait until every subscriber has handled its queued notifications."""
        while any(not s.idle and s._task is not None for s in self._subscriptions):
            await asyncio.sleep(0)

    async def close(self) -> None:
        self._running = False
        for subscription in self._subscriptions:
            await subscription._stop()


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
