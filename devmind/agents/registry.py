"""Agent registry: who can do what, and how many at once.

Agents are registered with a descriptor; dynamic capabilities register a
worker factory through the same ``register`` contract. Per-capability
concurrency limits are enforced with ConcurrencySlot counters on top of
each agent's own ``concurrency_limit``.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from devmind.exceptions_unified import AgentUnavailableError
from devmind.interfaces.task import AgentDescriptor

logger = logging.getLogger(__name__)


class ConcurrencySlot:
    """Concurrency limiter for a capability.

    When all slots are occupied, acquire() returns False (backpressure).
    """

    def __init__(self, capability: str, max_concurrent: int = 1) -> None:
        self.capability = capability
        self.max_concurrent = max_concurrent
        self._active: int = 0
        self._total_acquired: int = 0
        self._total_rejected: int = 0

    def acquire(self) -> bool:
        if self._active < self.max_concurrent:
            self._active += 1
            self._total_acquired += 1
            return True
        self._total_rejected += 1
        return False

    def release(self) -> None:
        self._active = max(0, self._active - 1)

    @property
    def active(self) -> int:
        return self._active

    @property
    def available(self) -> int:
        return max(0, self.max_concurrent - self._active)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "capability": self.capability,
            "max_concurrent": self.max_concurrent,
            "active": self._active,
            "available": self.available,
            "total_acquired": self._total_acquired,
            "total_rejected": self._total_rejected,
        }


class AgentRegistry:
    """Capability-indexed registry of agent descriptors."""

    def __init__(
        self,
        default_concurrency_limit: int = 1,
        capability_limits: Optional[Dict[str, int]] = None,
    ) -> None:
        self.default_concurrency_limit = default_concurrency_limit
        self._agents: Dict[str, AgentDescriptor] = {}
        self._slots: Dict[str, ConcurrencySlot] = {}
        for capability, limit in (capability_limits or {}).items():
            self.set_capability_limit(capability, limit)

    # ── Registration ─────────────────────────────────────────────────

    def register(self, descriptor: AgentDescriptor) -> AgentDescriptor:
        if descriptor.agent_id in self._agents:
            raise ValueError(f"Agent {descriptor.agent_id!r} is already registered")
        self._agents[descriptor.agent_id] = descriptor
        logger.info(
            "Registered agent %s for %s (limit %d)",
            descriptor.agent_id, ", ".join(sorted(descriptor.capabilities)), descriptor.concurrency_limit,
        )
        return descriptor

    def register_factory(
        self,
        capability: str,
        factory: Callable[[], Any],
        concurrency_limit: Optional[int] = None,
        agent_id: Optional[str] = None,
    ) -> AgentDescriptor:
        """Register a worker factory resolved at dispatch time."""
        return self.register(AgentDescriptor(
            agent_id=agent_id or f"{capability}-agent",
            capabilities=frozenset({capability}),
            concurrency_limit=concurrency_limit or self.default_concurrency_limit,
            factory=factory,
        ))

    def register_worker(
        self,
        agent_id: str,
        worker: Any,
        capabilities,
        concurrency_limit: Optional[int] = None,
    ) -> AgentDescriptor:
        """Register a long-lived worker instance shared by every invocation."""
        return self.register(AgentDescriptor(
            agent_id=agent_id,
            capabilities=frozenset(capabilities),
            concurrency_limit=concurrency_limit or self.default_concurrency_limit,
            factory=lambda: worker,
        ))

    def unregister(self, agent_id: str) -> Optional[AgentDescriptor]:
        descriptor = self._agents.pop(agent_id, None)
        if descriptor is not None:
            logger.info("Unregistered agent %s", agent_id)
        return descriptor

    # ── Lookup ───────────────────────────────────────────────────────

    def get(self, agent_id: str) -> AgentDescriptor:
        descriptor = self._agents.get(agent_id)
        if descriptor is None:
            raise AgentUnavailableError(f"Unknown agent: {agent_id}", details={"agent_id": agent_id})
        return descriptor

    def candidates(self, capability: str) -> List[AgentDescriptor]:
        """Agents serving ``capability``, least loaded first."""
        agents = [a for a in self._agents.values() if capability in a.capabilities]
        return sorted(agents, key=lambda a: (-a.available, a.agent_id))

    def list_agents(self) -> List[AgentDescriptor]:
        return sorted(self._agents.values(), key=lambda a: a.agent_id)

    def capabilities(self) -> List[str]:
        return sorted({c for a in self._agents.values() for c in a.capabilities})

    # ── Capability limits ────────────────────────────────────────────

    def set_capability_limit(self, capability: str, limit: int) -> None:
        if limit < 1:
            raise ValueError("capability limit must be >= 1")
        slot = self._slots.get(capability)
        if slot is None:
            self._slots[capability] = ConcurrencySlot(capability, limit)
        else:
            slot.max_concurrent = limit

    def acquire_slot(self, capability: str) -> bool:
        slot = self._slots.get(capability)
        return True if slot is None else slot.acquire()

    def release_slot(self, capability: str) -> None:
        slot = self._slots.get(capability)
        if slot is not None:
            slot.release()

    def get_concurrency_status(self) -> Dict[str, Dict[str, Any]]:
        return {name: slot.to_dict() for name, slot in self._slots.items()}
