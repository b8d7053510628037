"""Priority scheduler: the single scheduling decision point.

``tick()`` is synchronous. It builds a heap over ready and runnable tasks
keyed by ``(effective rank, creation order)`` and pops tasks while an agent
for the task's capability has a free slot, reserving that slot through the
dispatcher. Tasks that cannot be placed stay queued for the next tick.

Effective rank = declared rank (0=critical .. 3=low)
                 - aging boost (+1 per tick once queued past ``age_threshold``)
                 - deadline urgency boost (0-3)
"""

from __future__ import annotations

import heapq
import logging
import time
from typing import Callable, Dict, List, Optional

from devmind.agents.dispatcher import Dispatcher
from devmind.agents.registry import AgentRegistry
from devmind.exceptions_unified import AgentBusyError, AgentUnavailableError
from devmind.interfaces.task import Dispatch
from devmind.scheduling.dependency_resolver import TaskGraphManager
from devmind.storage.context_store import ContextStore

logger = logging.getLogger(__name__)

ONE_HOUR = 3600.0
ONE_DAY = 86400.0


def deadline_urgency(deadline: Optional[float], now: float) -> float:
    """Urgency (0.0-1.0) based on deadline proximity.

    The urgency curve:
    - >24h away: 0.0-0.1 (low)
    - 1h-24h:    0.1-0.5 (medium)
    - <1h:       0.5-1.0 (high, linear ramp)
    - past due:  1.0 (critical)
    """
    if deadline is None:
        return 0.0
    remaining = deadline - now
    if remaining <= 0:
        return 1.0
    if remaining <= ONE_HOUR:
        return 0.5 + 0.5 * (1.0 - remaining / ONE_HOUR)
    if remaining <= ONE_DAY:
        fraction = (ONE_DAY - remaining) / (ONE_DAY - ONE_HOUR)
        return 0.1 + 0.4 * fraction
    days_away = remaining / ONE_DAY
    return max(0.0, 0.1 * (1.0 / days_away))


def urgency_boost(deadline: Optional[float], now: float) -> int:
    """Convert deadline urgency to a priority tier boost (0-3)."""
    urgency = deadline_urgency(deadline, now)
    if urgency >= 0.8:
        return 3
    elif urgency >= 0.5:
        return 2
    elif urgency >= 0.2:
        return 1
    return 0


class PriorityScheduler:
    """Picks which queued tasks get agent slots on each tick."""

    def __init__(
        self,
        graph: TaskGraphManager,
        store: ContextStore,
        registry: AgentRegistry,
        dispatcher: Dispatcher,
        age_threshold: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.graph = graph
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher
        self.age_threshold = age_threshold
        self._clock = clock
        self._queued_since: Dict[str, float] = {}
        self._boost: Dict[str, int] = {}
        self._ticks = 0

    def effective_rank(self, task_id: str, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        task = self.store.get_task(task_id)
        batch = self.store.get_batch(task.batch_id)
        return (
            task.priority.rank
            - self._boost.get(task_id, 0)
            - urgency_boost(batch.constraints.deadline, now)
        )

    def tick(self) -> List[Dispatch]:
        """Reserve slots for as many queued tasks as capacity allows."""
        now = self._clock()
        self._ticks += 1
        candidates = list(dict.fromkeys(self.graph.ready() + self.graph.runnable(now)))

        live = set(candidates)
        for tid in [t for t in self._queued_since if t not in live]:
            self._queued_since.pop(tid, None)
            self._boost.pop(tid, None)

        heap = []
        for tid in candidates:
            task = self.store.get_task(tid)
            since = self._queued_since.setdefault(tid, now)
            if now - since >= self.age_threshold:
                self._boost[tid] = self._boost.get(tid, 0) + 1
            heapq.heappush(heap, (self.effective_rank(tid, now), task.created_seq, tid))

        planned: Dict[str, int] = {}
        dispatches: List[Dispatch] = []
        while heap:
            rank, _, tid = heapq.heappop(heap)
            task = self.store.get_task(tid)
            batch = self.store.get_batch(task.batch_id)
            budget = batch.constraints.budget
            if budget is not None and batch.invocations + planned.get(batch.batch_id, 0) >= budget:
                logger.debug("Batch %s budget exhausted; %s stays queued", batch.batch_id, tid)
                continue

            dispatch = self._place(tid, task.capability)
            if dispatch is None:
                continue
            planned[batch.batch_id] = planned.get(batch.batch_id, 0) + 1
            self.graph.claim(tid)
            self._queued_since.pop(tid, None)
            boost = self._boost.pop(tid, 0)
            if boost:
                logger.info("Task %s dispatched after aging boost of %d tiers", tid, boost)
            dispatches.append(dispatch)

        if dispatches:
            logger.debug(
                "Tick %d: %d dispatched, %d still queued",
                self._ticks, len(dispatches), len(candidates) - len(dispatches),
            )
        return dispatches

    def _place(self, task_id: str, capability: str) -> Optional[Dispatch]:
        agents = self.registry.candidates(capability)
        if not agents:
            logger.debug("No agent registered for %s; %s stays queued", capability, task_id)
            return None
        for agent in agents:
            try:
                return self.dispatcher.dispatch(task_id, agent.agent_id)
            except AgentBusyError:
                continue
            except AgentUnavailableError as e:
                logger.debug("Agent %s unavailable for %s: %s", agent.agent_id, task_id, e)
                continue
        return None

    def forget(self, task_id: str) -> None:
        self._queued_since.pop(task_id, None)
        self._boost.pop(task_id, None)

    def queue_age(self, task_id: str) -> Optional[float]:
        since = self._queued_since.get(task_id)
        return None if since is None else self._clock() - since

    @property
    def ticks(self) -> int:
        return self._ticks
