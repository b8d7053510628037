"""DAG-based task graph manager for DevMind scheduling.

Provides:
- Batch validation with Kahn's algorithm (cycle, duplicate and unknown-dependency
  rejection; nothing is persisted on failure)
- Incremental readiness (only direct dependents are re-evaluated on completion)
- Failure propagation (BFS cascade of downstream tasks)
- A runnable queue for tasks restarting from ERROR, REVIEW or BLOCKED
- Execution waves for status reporting

The context store is authoritative for task status; this index only holds
edges and readiness bookkeeping and can be rebuilt from the store at any time.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import deque
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from devmind.exceptions_unified import (
    CycleDetectedError,
    DuplicateTaskError,
    UnknownDependencyError,
)
from devmind.interfaces.task import (
    Batch,
    BatchConstraints,
    ErrorInfo,
    ErrorKind,
    TaskRecord,
    TaskSpec,
    TaskStatus,
)
from devmind.storage.context_store import ContextStore

logger = logging.getLogger(__name__)

Edge = Tuple[str, str]  # (upstream, downstream): downstream depends on upstream

# Non-PENDING states a task may be restarted from via the runnable queue
_RESTARTABLE = (TaskStatus.ERROR, TaskStatus.REVIEW, TaskStatus.BLOCKED)


class TaskGraphManager:
    """Dependency index over the context store.

    Not thread-safe; designed for a single asyncio event loop.
    """

    def __init__(
        self,
        store: ContextStore,
        default_max_attempts: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.default_max_attempts = default_max_attempts
        self._clock = clock
        # Reverse edges: task_id -> tasks that depend on it
        self._dependents: Dict[str, Set[str]] = {}
        # PENDING task -> dependencies not yet COMPLETED
        self._remaining: Dict[str, Set[str]] = {}
        self._ready: Set[str] = set()
        # task_id -> earliest time it may be restarted
        self._runnable: Dict[str, float] = {}
        # dependent -> upstream tasks currently blocked or erroring
        self._waiting_on: Dict[str, Set[str]] = {}

    # ── Submission ───────────────────────────────────────────────────

    def submit(
        self,
        tasks: Sequence[TaskSpec],
        edges: Iterable[Edge] = (),
        description: str = "",
        constraints: Optional[BatchConstraints] = None,
        batch_id: Optional[str] = None,
    ) -> str:
        """Validate and persist a batch. Returns the batch id.

        Raises:
            DuplicateTaskError: a task id repeats or already exists.
            UnknownDependencyError: a dependency is neither in the batch nor the store.
            CycleDetectedError: the batch's edges contain a cycle.
        """
        specs: Dict[str, TaskSpec] = {}
        for spec in tasks:
            if spec.task_id in specs or self.store.find_task(spec.task_id) is not None:
                raise DuplicateTaskError(f"Duplicate task id: {spec.task_id}", task_id=spec.task_id)
            specs[spec.task_id] = spec

        deps: Dict[str, Set[str]] = {tid: set(spec.depends_on) for tid, spec in specs.items()}
        for upstream, downstream in edges:
            if downstream not in deps:
                raise UnknownDependencyError(
                    f"Edge {upstream} -> {downstream} targets a task outside the batch",
                    task_id=downstream,
                )
            deps[downstream].add(upstream)

        for tid, needed in deps.items():
            if tid in needed:
                raise CycleDetectedError([tid, tid])
            for dep in needed:
                if dep not in specs and self.store.find_task(dep) is None:
                    raise UnknownDependencyError(
                        f"Task {tid} depends on unknown task {dep}",
                        task_id=tid,
                        details={"dependency": dep},
                    )

        order = self._validate(deps)
        doomed = self._doomed(order, deps)

        records = []
        for tid in order:
            spec = specs[tid]
            status = TaskStatus.PENDING
            error = None
            if tid in doomed:
                status = TaskStatus.CANCELLED
                error = ErrorInfo(
                    kind=ErrorKind.CANCELLED,
                    message=f"Dependency {doomed[tid]} failed or was cancelled",
                    at=self._clock(),
                )
            records.append(TaskRecord(
                task_id=tid,
                batch_id="",
                capability=spec.capability,
                description=spec.description,
                depends_on=frozenset(deps[tid]),
                priority=spec.priority,
                status=status,
                error=error,
                max_attempts=spec.max_attempts or self.default_max_attempts,
                requires_approval=spec.requires_approval,
                subject=spec.subject,
                estimated_time=spec.estimated_time,
                metadata=dict(spec.metadata),
            ))
        # Preserve submission order for FIFO tie-breaks
        position = {spec.task_id: i for i, spec in enumerate(tasks)}
        records.sort(key=lambda r: position[r.task_id])

        batch = self.store.create_batch(
            Batch(
                batch_id=batch_id or uuid.uuid4().hex[:12],
                description=description,
                constraints=constraints or BatchConstraints(),
            ),
            records,
        )
        for tid in batch.task_ids:
            self._index(self.store.get_task(tid))
        if doomed:
            logger.info("Batch %s: %d tasks cancelled at submission", batch.batch_id, len(doomed))
        return batch.batch_id

    def _validate(self, deps: Dict[str, Set[str]]) -> List[str]:
        """Kahn's algorithm over the batch-internal edges. Returns a topological order."""
        in_degree = {tid: len([d for d in needed if d in deps]) for tid, needed in deps.items()}
        children: Dict[str, Set[str]] = {tid: set() for tid in deps}
        for tid, needed in deps.items():
            for dep in needed:
                if dep in deps:
                    children[dep].add(tid)

        queue = deque(tid for tid, deg in in_degree.items() if deg == 0)
        order: List[str] = []
        while queue:
            tid = queue.popleft()
            order.append(tid)
            for child in sorted(children[tid]):
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    queue.append(child)

        if len(order) < len(deps):
            leftover = {tid for tid, deg in in_degree.items() if deg > 0}
            raise CycleDetectedError(_find_cycle(leftover, deps))
        return order

    def _doomed(self, order: List[str], deps: Dict[str, Set[str]]) -> Dict[str, str]:
        """Tasks that can never run because an upstream task already failed."""
        doomed: Dict[str, str] = {}
        for tid in order:
            for dep in sorted(deps[tid]):
                if dep in doomed:
                    doomed[tid] = doomed[dep]
                    break
                existing = self.store.find_task(dep)
                if existing is not None and existing.is_failed:
                    doomed[tid] = dep
                    break
        return doomed

    # ── Index maintenance ────────────────────────────────────────────

    def _index(self, task: TaskRecord) -> None:
        for dep in task.depends_on:
            self._dependents.setdefault(dep, set()).add(task.task_id)
        self._dependents.setdefault(task.task_id, set())
        if task.status == TaskStatus.PENDING:
            remaining = {
                dep for dep in task.depends_on
                if self.store.get_task(dep).status != TaskStatus.COMPLETED
            }
            self._remaining[task.task_id] = remaining
            if not remaining:
                self._ready.add(task.task_id)

    def rebuild(self) -> None:
        """Reconstruct the index from the context store (after recovery)."""
        self._dependents.clear()
        self._remaining.clear()
        self._ready.clear()
        self._runnable.clear()
        self._waiting_on.clear()
        now = self._clock()
        tasks = self.store.list_tasks()
        for task in tasks:
            self._index(task)
        for task in tasks:
            if task.status == TaskStatus.ERROR and not task.is_terminal:
                self.enqueue(task.task_id, now)
            if task.status == TaskStatus.BLOCKED or (
                task.status == TaskStatus.ERROR and not task.is_terminal
            ):
                self.mark_dependents_blocked(task.task_id)
        logger.info(
            "Graph rebuilt: %d tasks, %d ready, %d runnable",
            len(tasks), len(self._ready), len(self._runnable),
        )

    # ── Readiness ────────────────────────────────────────────────────

    def _sort_key(self, task_id: str) -> Tuple[int, int]:
        task = self.store.get_task(task_id)
        return (task.priority.rank, task.created_seq)

    def ready(self) -> List[str]:
        """PENDING tasks whose dependencies are all COMPLETED, by priority then creation order."""
        stale = [tid for tid in self._ready if self.store.get_task(tid).status != TaskStatus.PENDING]
        for tid in stale:
            self._ready.discard(tid)
        return sorted(self._ready, key=self._sort_key)

    def on_completed(self, task_id: str) -> List[str]:
        """Re-evaluate the direct dependents of a completed task. Returns the newly ready ones."""
        newly_ready: List[str] = []
        for dependent in self._dependents.get(task_id, ()):
            remaining = self._remaining.get(dependent)
            if remaining is None or task_id not in remaining:
                continue
            remaining.discard(task_id)
            if not remaining and self.store.get_task(dependent).status == TaskStatus.PENDING:
                self._ready.add(dependent)
                newly_ready.append(dependent)
        newly_ready.sort(key=self._sort_key)
        return newly_ready

    def remaining(self, task_id: str) -> Set[str]:
        return set(self._remaining.get(task_id, ()))

    def dependents(self, task_id: str) -> Set[str]:
        return set(self._dependents.get(task_id, ()))

    def claim(self, task_id: str) -> None:
        """Remove a dispatched task from the ready and runnable sets."""
        self._ready.discard(task_id)
        self._runnable.pop(task_id, None)

    def release(self, task_id: str) -> None:
        """Put back a claimed task whose dispatch did not go through."""
        task = self.store.get_task(task_id)
        if task.status == TaskStatus.PENDING:
            if not self._remaining.get(task_id):
                self._ready.add(task_id)
        elif task.status in _RESTARTABLE and not task.is_terminal:
            self._runnable[task_id] = self._clock()

    # ── Runnable queue ───────────────────────────────────────────────

    def enqueue(self, task_id: str, not_before: Optional[float] = None) -> None:
        """Queue a non-PENDING task to be restarted no earlier than ``not_before``."""
        self._runnable[task_id] = not_before if not_before is not None else self._clock()

    def runnable(self, now: Optional[float] = None) -> List[str]:
        """Queued restartable tasks whose backoff has elapsed."""
        now = self._clock() if now is None else now
        due = []
        for tid, not_before in list(self._runnable.items()):
            task = self.store.get_task(tid)
            if task.status not in _RESTARTABLE or task.is_terminal:
                del self._runnable[tid]
                continue
            if not_before <= now:
                due.append(tid)
        return sorted(due, key=self._sort_key)

    def next_runnable_at(self) -> Optional[float]:
        return min(self._runnable.values()) if self._runnable else None

    # ── Blocking & cancellation ──────────────────────────────────────

    def _downstream(self, task_id: str) -> List[str]:
        """BFS over transitive dependents that are not terminal."""
        result: List[str] = []
        visited: Set[str] = set()
        queue: deque[str] = deque(sorted(self._dependents.get(task_id, ())))
        while queue:
            tid = queue.popleft()
            if tid in visited:
                continue
            visited.add(tid)
            task = self.store.find_task(tid)
            if task is None or task.is_terminal:
                continue
            result.append(tid)
            queue.extend(sorted(self._dependents.get(tid, ())))
        return result

    def mark_dependents_blocked(self, task_id: str) -> List[str]:
        """Flag transitive dependents as waiting on a blocked or erroring task."""
        affected = self._downstream(task_id)
        for tid in affected:
            self._waiting_on.setdefault(tid, set()).add(task_id)
        return affected

    def clear_dependents_blocked(self, task_id: str) -> List[str]:
        cleared = []
        for tid, upstream in list(self._waiting_on.items()):
            if task_id in upstream:
                upstream.discard(task_id)
                cleared.append(tid)
                if not upstream:
                    del self._waiting_on[tid]
        return cleared

    def waiting_on(self, task_id: str) -> Set[str]:
        return set(self._waiting_on.get(task_id, ()))

    def cascade_cancel(self, task_id: str) -> List[str]:
        """Non-terminal transitive dependents in BFS order; the caller cancels them."""
        return self._downstream(task_id)

    # ── Reporting ────────────────────────────────────────────────────

    def execution_waves(self, batch_id: Optional[str] = None) -> List[List[str]]:
        """Kahn layering: each wave only depends on earlier waves."""
        tasks = {t.task_id: t for t in self.store.list_tasks(batch_id)}
        in_degree = {
            tid: len([d for d in t.depends_on if d in tasks]) for tid, t in tasks.items()
        }
        wave = [tid for tid, deg in in_degree.items() if deg == 0]
        waves: List[List[str]] = []
        while wave:
            wave.sort(key=lambda tid: (tasks[tid].priority.rank, tasks[tid].created_seq))
            waves.append(wave)
            next_wave: List[str] = []
            for tid in wave:
                for child in self._dependents.get(tid, ()):
                    if child in in_degree:
                        in_degree[child] -= 1
                        if in_degree[child] == 0:
                            next_wave.append(child)
            wave = next_wave
        return waves


def _find_cycle(nodes: Set[str], deps: Dict[str, Set[str]]) -> List[str]:
    """Return one cycle among ``nodes`` as a closed path, e.g. [X, Y, X]."""
    for start in sorted(nodes):
        stack: List[Tuple[str, List[str]]] = [(start, [start])]
        visited: Set[str] = set()
        while stack:
            node, path = stack.pop()
            for dep in sorted(deps.get(node, ())):
                if dep == start:
                    return path + [start]
                if dep in nodes and dep not in visited:
                    visited.add(dep)
                    stack.append((dep, path + [dep]))
    return sorted(nodes)
