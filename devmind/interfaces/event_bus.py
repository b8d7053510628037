"""Interface for the inter-agent message bus.

Decouples components by allowing communication through published messages.
Delivery is at-least-once; handlers are deduplicated on
``(topic, correlation_id, payload_hash)``.
"""

from __future__ import annotations

import hashlib
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from devmind.interfaces.task import TaskPriority


class Topic:
    """Well-known topics."""
    TASK_TRANSITION = "task.transition"
    TASK_RESULT = "task.result"


def payload_hash(payload: Dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of a payload."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Message:
    topic: str
    payload: Dict[str, Any]
    correlation_id: Optional[str] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    published_at: float = field(default_factory=time.time)
    payload_hash: str = ""

    def __post_init__(self) -> None:
        if not self.payload_hash:
            object.__setattr__(self, "payload_hash", payload_hash(self.payload))

    @property
    def dedupe_key(self) -> tuple:
        return (self.topic, self.correlation_id, self.payload_hash)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "topic": self.topic,
            "correlation_id": self.correlation_id,
            "priority": self.priority.value,
            "published_at": self.published_at,
            "payload_hash": self.payload_hash,
            "payload": self.payload,
        }


Handler = Callable[[Message], Awaitable[None]]


@dataclass(frozen=True)
class SubscriptionHandle:
    subscription_id: str
    topic: str


class IMessageBus(Protocol):
    """Interface for publish-subscribe messaging between components."""

    async def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        priority: TaskPriority = TaskPriority.MEDIUM,
        correlation_id: Optional[str] = None,
    ) -> Message:
        """Publish a message; waits while a subscriber queue is full.

        Args:
            topic: Topic name
            payload: JSON-serialisable payload
            priority: Informational priority carried with the message
            correlation_id: Task id for task-scoped messages

        Returns:
            The published message
        """
        ...

    async def subscribe(
        self,
        topic: str,
        handler: Handler,
        dedupe: bool = True,
    ) -> SubscriptionHandle:
        """Subscribe to a topic.

        Args:
            topic: Topic to listen on
            handler: Async function receiving each Message
            dedupe: Drop messages already handled by this subscriber

        Returns:
            Handle for later unsubscribe
        """
        ...

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        ...

    async def drain(self) -> None:
        """Wait until every queued message has been handled."""
        ...

    async def close(self) -> None:
        ...
