"""In-memory message bus satisfying the IMessageBus protocol.

Used for intra-process pub/sub between the state machine, dispatcher and
orchestrator. Each subscriber owns a bounded asyncio.Queue drained by its
own delivery task, so per-topic publish order is preserved for every
subscriber. Publishers wait on a full queue rather than dropping.
"""

import asyncio
import logging
import uuid
from collections import OrderedDict, deque
from typing import Any, Deque, Dict, List, Optional, Tuple

from devmind.interfaces.event_bus import Handler, Message, SubscriptionHandle
from devmind.interfaces.task import TaskPriority

logger = logging.getLogger(__name__)

_SEEN_LIMIT = 10_000


class _Subscriber:
    def __init__(self, handle: SubscriptionHandle, handler: Handler, dedupe: bool, queue_size: int) -> None:
        self.handle = handle
        self.handler = handler
        self.dedupe = dedupe
        self.queue: "asyncio.Queue[Message]" = asyncio.Queue(maxsize=queue_size)
        self.pending = 0
        self.seen: "OrderedDict[tuple, None]" = OrderedDict()
        self.task: Optional[asyncio.Task] = None

    def remember(self, key: tuple) -> None:
        self.seen[key] = None
        if len(self.seen) > _SEEN_LIMIT:
            self.seen.popitem(last=False)


class MessageBus:
    """Async topic bus with at-least-once delivery and per-subscriber dedupe."""

    def __init__(
        self,
        queue_size: int = 256,
        max_redeliveries: int = 3,
        history_size: int = 500,
        redelivery_delay: float = 0.0,
    ) -> None:
        self.queue_size = queue_size
        self.max_redeliveries = max_redeliveries
        self.history_size = history_size
        self.redelivery_delay = redelivery_delay
        self._subscribers: Dict[str, Dict[str, _Subscriber]] = {}
        self._topic_locks: Dict[str, asyncio.Lock] = {}
        self._history: Dict[str, Deque[Message]] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False
        self.dead_letters: List[Tuple[Message, str]] = []

    # ── Publish / subscribe ──────────────────────────────────────────

    async def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        priority: TaskPriority = TaskPriority.MEDIUM,
        correlation_id: Optional[str] = None,
    ) -> Message:
        if self._closed:
            raise RuntimeError("MessageBus is closed")
        message = Message(
            topic=topic,
            payload=payload,
            correlation_id=correlation_id,
            priority=TaskPriority.parse(priority),
        )
        lock = self._topic_locks.setdefault(topic, asyncio.Lock())
        async with lock:
            if self.history_size:
                self._history.setdefault(topic, deque(maxlen=self.history_size)).append(message)

            waiting = []
            for sub in list(self._subscribers.get(topic, {}).values()):
                sub.pending += 1
                self._idle.clear()
                try:
                    sub.queue.put_nowait(message)
                except asyncio.QueueFull:
                    waiting.append(sub)
            for sub in waiting:
                logger.warning(
                    "Subscriber %s on %s is full (%d); publisher waiting",
                    sub.handle.subscription_id, topic, sub.queue.maxsize,
                )
                await sub.queue.put(message)
        return message

    async def subscribe(self, topic: str, handler: Handler, dedupe: bool = True) -> SubscriptionHandle:
        if self._closed:
            raise RuntimeError("MessageBus is closed")
        handle = SubscriptionHandle(subscription_id=uuid.uuid4().hex[:12], topic=topic)
        sub = _Subscriber(handle, handler, dedupe, self.queue_size)
        sub.task = asyncio.get_running_loop().create_task(self._deliver(sub))
        self._subscribers.setdefault(topic, {})[handle.subscription_id] = sub
        logger.debug("Subscribed %s to %s", handle.subscription_id, topic)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        sub = self._subscribers.get(handle.topic, {}).pop(handle.subscription_id, None)
        if sub is None:
            return
        await self._stop(sub)
        self._refresh_idle()

    # ── Delivery ─────────────────────────────────────────────────────

    async def _deliver(self, sub: _Subscriber) -> None:
        while True:
            message = await sub.queue.get()
            try:
                await self._handle(sub, message)
            finally:
                sub.queue.task_done()
                sub.pending = max(0, sub.pending - 1)
                self._refresh_idle()

    async def _handle(self, sub: _Subscriber, message: Message) -> None:
        key = message.dedupe_key
        if sub.dedupe and key in sub.seen:
            logger.debug(
                "Duplicate %s for %s dropped by %s",
                message.topic, message.correlation_id, sub.handle.subscription_id,
            )
            return

        failures = 0
        while True:
            try:
                await sub.handler(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failures += 1
                if failures > self.max_redeliveries:
                    self.dead_letters.append((message, repr(e)))
                    logger.error(
                        "Dead letter on %s (correlation %s) after %d deliveries: %s",
                        message.topic, message.correlation_id, failures, e,
                    )
                    return
                logger.warning(
                    "Handler %s failed on %s (delivery %d/%d): %s",
                    sub.handle.subscription_id, message.topic,
                    failures, self.max_redeliveries + 1, e,
                )
                if self.redelivery_delay:
                    await asyncio.sleep(self.redelivery_delay)
                continue
            if sub.dedupe:
                sub.remember(key)
            return

    # ── Lifecycle ────────────────────────────────────────────────────

    async def drain(self) -> None:
        """Wait until every delivered message has been handled.

        Must not be awaited from inside a handler.
        """
        self._refresh_idle()
        await self._idle.wait()

    async def close(self) -> None:
        self._closed = True
        subs = [sub for topic in self._subscribers.values() for sub in topic.values()]
        self._subscribers.clear()
        for sub in subs:
            await self._stop(sub)
        self._refresh_idle()

    async def _stop(self, sub: _Subscriber) -> None:
        sub.pending = 0
        if sub.task is not None and not sub.task.done():
            sub.task.cancel()
            try:
                await sub.task
            except asyncio.CancelledError:
                pass

    def _refresh_idle(self) -> None:
        busy = any(
            sub.pending for topic in self._subscribers.values() for sub in topic.values()
        )
        if busy:
            self._idle.clear()
        else:
            self._idle.set()

    # ── Diagnostics ──────────────────────────────────────────────────

    @property
    def closed(self) -> bool:
        return self._closed

    def history(self, topic: str, limit: Optional[int] = None) -> List[Message]:
        messages = list(self._history.get(topic, ()))
        if limit is not None:
            messages = messages[-limit:]
        return messages

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, {}))
