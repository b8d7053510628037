"""Orchestrator façade: the only component that knows project semantics.

Pipeline::

    submit -> TaskGraphManager (validate, persist) -> PriorityScheduler.tick()
           -> TaskLifecycle (IN_PROGRESS) -> Dispatcher.invoke -> bus "task.result"
           -> _on_result -> ConflictResolver -> TaskLifecycle (COMPLETED/REVIEW/ERROR/BLOCKED)

The context store owns every entity; the orchestrator only reads through it.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Sequence, Union

from devmind.agents.dispatcher import BLOCKED, CANCELLED, COMPLETED, Dispatcher
from devmind.agents.registry import AgentRegistry
from devmind.config.settings import Settings, get_settings
from devmind.enhanced_logging import track_performance
from devmind.exceptions_unified import (
    ConflictUnresolvedError,
    IllegalTransitionError,
    RetryConfig,
    StorageCorruption,
    TaskNotFoundError,
)
from devmind.interfaces.event_bus import IMessageBus, Message, SubscriptionHandle, Topic
from devmind.interfaces.task import (
    BatchConstraints,
    Checkpoint,
    DecisionRecord,
    ErrorInfo,
    ErrorKind,
    TaskEvent,
    TaskRecord,
    TaskSpec,
    TaskStatus,
)
from devmind.orchestration.conflict_resolver import ConflictResolver, ConflictValidator, same_subject_validator
from devmind.orchestration.event_stream import EventStream
from devmind.orchestration.planner import IPlanner, ProjectPlan, TemplatePlanner, plan_from_dict
from devmind.scheduling.dependency_resolver import Edge, TaskGraphManager
from devmind.scheduling.priority_scheduler import PriorityScheduler
from devmind.scheduling.retry_strategies import RetryPolicy
from devmind.scheduling.state_machine import TaskLifecycle
from devmind.storage.context_store import ContextStore

logger = logging.getLogger(__name__)


@dataclass
class ProjectStatus:
    """Read-through view of one batch."""

    batch_id: str
    description: str
    state: str  # running, awaiting_review, completed, failed, cancelled
    counts: Dict[str, int]
    tasks: List[Dict[str, Any]]
    waves: List[List[str]] = field(default_factory=list)
    invocations: int = 0
    budget: Optional[int] = None
    deadline: Optional[float] = None
    decisions: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "description": self.description,
            "state": self.state,
            "counts": dict(self.counts),
            "tasks": list(self.tasks),
            "waves": [list(w) for w in self.waves],
            "invocations": self.invocations,
            "budget": self.budget,
            "deadline": self.deadline,
            "decisions": list(self.decisions),
        }


class Orchestrator:
    """Coordinates submission, scheduling, result handling and recovery."""

    def __init__(
        self,
        store: ContextStore,
        bus: IMessageBus,
        registry: AgentRegistry,
        settings: Optional[Settings] = None,
        planner: Optional[IPlanner] = None,
        retry_policy: Optional[RetryPolicy] = None,
        conflict_validator: ConflictValidator = same_subject_validator,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.bus = bus
        self.registry = registry
        self._clock = clock
        self.lifecycle = TaskLifecycle(
            store, bus, RetryConfig(max_retries=self.settings.storage_retry_attempts)
        )
        self.graph = TaskGraphManager(store, self.settings.default_max_attempts, clock=clock)
        self.dispatcher = Dispatcher(
            store,
            registry,
            bus,
            default_timeout=self.settings.default_capability_timeout,
            capability_timeouts=self.settings.capability_timeouts,
            cancel_grace_period=self.settings.cancel_grace_period,
        )
        self.scheduler = PriorityScheduler(
            self.graph,
            store,
            registry,
            self.dispatcher,
            age_threshold=self.settings.age_threshold_seconds,
            clock=clock,
        )
        self.conflicts = ConflictResolver(store, conflict_validator, clock=clock)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self.planner = planner or TemplatePlanner()
        self.events = EventStream(store)
        self._inflight: Dict[str, asyncio.Task] = {}
        self._results: Optional[SubscriptionHandle] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._halted: Optional[StorageCorruption] = None

    # ── Submission ───────────────────────────────────────────────────

    def submit_project(
        self,
        description: str,
        constraints: Optional[Dict[str, Any]] = None,
        plan: Optional[Union[ProjectPlan, Dict[str, Any]]] = None,
    ) -> str:
        """Plan a project (or use ``plan``) and submit it as one batch."""
        self._check_halted()
        if plan is None:
            plan = self.planner.plan(description, constraints)
        elif isinstance(plan, dict):
            plan = plan_from_dict(plan)
        batch_id = uuid.uuid4().hex[:12]
        return self.graph.submit(
            plan.to_specs(batch_id),
            description=description or plan.description,
            constraints=BatchConstraints.from_dict(constraints),
            batch_id=batch_id,
        )

    def submit_tasks(
        self,
        tasks: Sequence[TaskSpec],
        edges: Iterable[Edge] = (),
        description: str = "",
        constraints: Optional[Dict[str, Any]] = None,
    ) -> str:
        self._check_halted()
        return self.graph.submit(
            tasks,
            edges,
            description=description,
            constraints=BatchConstraints.from_dict(constraints),
        )

    # ── Observation ──────────────────────────────────────────────────

    def status(self, batch_id: str) -> ProjectStatus:
        batch = self.store.get_batch(batch_id)
        tasks = self.store.list_tasks(batch_id)
        counts = {s.value: 0 for s in TaskStatus}
        for task in tasks:
            counts[task.status.value] += 1

        if any(t.status == TaskStatus.REVIEW for t in tasks):
            state = "awaiting_review"
        elif any(not t.is_terminal for t in tasks):
            state = "running"
        elif all(t.status == TaskStatus.COMPLETED for t in tasks):
            state = "completed"
        elif any(t.status == TaskStatus.ERROR for t in tasks):
            state = "failed"
        else:
            state = "cancelled"

        return ProjectStatus(
            batch_id=batch_id,
            description=batch.description,
            state=state,
            counts=counts,
            tasks=[self._task_view(t) for t in tasks],
            waves=self.graph.execution_waves(batch_id),
            invocations=batch.invocations,
            budget=batch.constraints.budget,
            deadline=batch.constraints.deadline,
            decisions=[d.to_dict() for d in self.store.decisions(batch_id=batch_id)],
        )

    def _task_view(self, task: TaskRecord) -> Dict[str, Any]:
        return {
            "task_id": task.task_id,
            "capability": task.capability,
            "description": task.description,
            "status": task.status.value,
            "priority": task.priority.value,
            "depends_on": sorted(task.depends_on),
            "attempt": task.attempt,
            "max_attempts": task.max_attempts,
            "assigned_agent": task.assigned_agent,
            "requires_approval": task.requires_approval,
            "superseded_by": task.superseded_by,
            "waiting_on": sorted(self.graph.waiting_on(task.task_id)),
            "error": task.error.to_dict() if task.error else None,
            "estimated_time": task.estimated_time,
        }

    def stream_events(self, batch_id: str, after_sequence: int = 0) -> AsyncIterator[Optional[TaskEvent]]:
        return self.events.stream(batch_id, after_sequence)

    # ── Operator actions ─────────────────────────────────────────────

    async def cancel(self, batch_id: str, reason: str = "batch cancelled") -> List[str]:
        """Cancel every non-terminal task of a batch. Returns the cancelled ids."""
        self._check_halted()
        cancelled = []
        for task in self.store.list_tasks(batch_id):
            if await self._cancel_one(task.task_id, reason):
                cancelled.append(task.task_id)
        self.store.append_decision(DecisionRecord(
            task_id=batch_id,
            agent_id=None,
            rationale=f"{reason}: {len(cancelled)} tasks cancelled",
            timestamp=self._clock(),
            kind="cancel",
            batch_id=batch_id,
        ))
        return cancelled

    async def cancel_task(self, task_id: str, reason: str = "cancelled by operator") -> List[str]:
        """Cancel one task and cascade to its dependents."""
        self._check_halted()
        task = self.store.get_task(task_id)
        if task.is_terminal:
            raise IllegalTransitionError(
                f"Task {task_id} is already {task.status.value}", task_id=task_id
            )
        cancelled = [task_id] if await self._cancel_one(task_id, reason) else []
        cancelled += await self._cascade_cancel(task_id, f"dependency {task_id} cancelled")
        return cancelled

    async def approve(self, task_id: str, rationale: str = "approved") -> TaskRecord:
        self._check_halted()
        task = self._require_status(task_id, TaskStatus.REVIEW, "approve")
        record = await self.lifecycle.transition(task_id, TaskStatus.COMPLETED, reason=rationale)
        self.store.append_decision(DecisionRecord(
            task_id=task_id,
            agent_id=task.assigned_agent,
            rationale=rationale,
            timestamp=self._clock(),
            kind="approval",
            batch_id=task.batch_id,
        ))
        rival = task.metadata.get("conflict_with")
        if rival:
            self._supersede(rival, task_id)
        self._after_completed(task_id)
        return record

    async def reject(self, task_id: str, reason: str) -> TaskRecord:
        """Send a REVIEW task back for another run with ``reason`` as feedback."""
        self._check_halted()
        task = self._require_status(task_id, TaskStatus.REVIEW, "reject")
        metadata = dict(task.metadata)
        metadata["review_feedback"] = reason
        metadata.pop("conflict_with", None)
        record, _ = self.store.commit(task_id, task.version, {"metadata": metadata}, reason="rejected")
        self.store.append_decision(DecisionRecord(
            task_id=task_id,
            agent_id=task.assigned_agent,
            rationale=reason,
            timestamp=self._clock(),
            kind="rejection",
            batch_id=task.batch_id,
        ))
        self.graph.enqueue(task_id)
        return record

    async def unblock(self, task_id: str, note: str = "precondition resolved") -> TaskRecord:
        self._check_halted()
        task = self._require_status(task_id, TaskStatus.BLOCKED, "unblock")
        self.store.append_decision(DecisionRecord(
            task_id=task_id,
            agent_id=task.assigned_agent,
            rationale=note,
            timestamp=self._clock(),
            kind="unblock",
            batch_id=task.batch_id,
        ))
        self.graph.clear_dependents_blocked(task_id)
        self.graph.enqueue(task_id)
        return task

    def _require_status(self, task_id: str, status: TaskStatus, action: str) -> TaskRecord:
        task = self.store.get_task(task_id)
        if task.status != status:
            raise IllegalTransitionError(
                f"Cannot {action} {task_id}: it is {task.status.value}, not {status.value}",
                task_id=task_id,
                details={"status": task.status.value},
            )
        return task

    # ── Scheduling loop ──────────────────────────────────────────────

    async def open(self) -> None:
        """Subscribe to worker results. Idempotent."""
        if self._results is None:
            self._results = await self.bus.subscribe(Topic.TASK_RESULT, self._on_result, dedupe=True)

    async def run_once(self) -> int:
        """One scheduler tick: start every dispatch it produced. Returns how many started."""
        self._check_halted()
        await self.open()
        every = self.settings.checkpoint_every
        if every and self.store.transitions_since_checkpoint >= every:
            self.checkpoint()

        started = 0
        for dispatch in self.scheduler.tick():
            try:
                await self.lifecycle.transition(
                    dispatch.task_id,
                    TaskStatus.IN_PROGRESS,
                    reason=f"dispatched to {dispatch.agent_id}",
                    changes={"assigned_agent": dispatch.agent_id, "invocation_id": uuid.uuid4().hex[:12]},
                )
            except (IllegalTransitionError, TaskNotFoundError) as e:
                logger.warning("Dispatch of %s abandoned: %s", dispatch.task_id, e)
                self.dispatcher.release(dispatch)
                self.graph.release(dispatch.task_id)
                continue
            self._inflight[dispatch.task_id] = asyncio.create_task(self._invoke(dispatch))
            started += 1
        return started

    async def _invoke(self, dispatch) -> None:
        try:
            await self.dispatcher.invoke(dispatch)
        except Exception:
            logger.exception("Invocation of %s failed outside the worker", dispatch.task_id)
        finally:
            self._inflight.pop(dispatch.task_id, None)

    @track_performance(operation="orchestrator.run_until_idle")
    async def run_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Run ticks until nothing can progress without outside input.

        Returns False if ``timeout`` elapsed first. Tasks waiting for review,
        an unblock, a free budget or an agent count as idle.
        """
        interval = self.settings.tick_interval

        async def _loop() -> None:
            while True:
                started = await self.run_once()
                if self._inflight:
                    await asyncio.wait(
                        list(self._inflight.values()),
                        timeout=interval,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                    await self.bus.drain()
                    continue
                seen = self.store.sequence
                await self.bus.drain()
                if started or self.store.sequence != seen:
                    continue
                upcoming = self.graph.next_runnable_at()
                now = self._clock()
                if upcoming is not None and upcoming > now:
                    await asyncio.sleep(min(upcoming - now, interval))
                    continue
                return

        try:
            await asyncio.wait_for(_loop(), timeout)
        except asyncio.TimeoutError:
            logger.warning("run_until_idle timed out after %.1fs", timeout)
            return False
        return True

    def is_idle(self) -> bool:
        return not self._inflight and not self.graph.ready() and self.graph.next_runnable_at() is None

    async def start(self) -> None:
        """Run the scheduling loop in the background until stop()."""
        await self.open()
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._run_forever())
            logger.info("Orchestrator loop started (tick %.3fs)", self.settings.tick_interval)

    async def _run_forever(self) -> None:
        while True:
            try:
                await self.run_once()
            except StorageCorruption:
                logger.error("Orchestrator loop halted by storage corruption")
                return
            await asyncio.sleep(self.settings.tick_interval)

    async def stop(self, cancel_running: bool = False) -> None:
        """Stop the loop and wait for running invocations to report."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        if cancel_running:
            for task_id in list(self._inflight):
                self.dispatcher.cancel(task_id, "orchestrator stopping")
        if self._inflight:
            await asyncio.gather(*self._inflight.values(), return_exceptions=True)
        if not self.bus.closed:
            await self.bus.drain()
            if self._results is not None:
                await self.bus.unsubscribe(self._results)
        self._results = None
        logger.info("Orchestrator stopped")

    # ── Result handling ──────────────────────────────────────────────

    async def _on_result(self, message: Message) -> None:
        payload = message.payload
        task_id = payload.get("task_id")
        task = self.store.find_task(task_id) if task_id else None
        if task is None:
            logger.warning("Result for unknown task %r ignored", task_id)
            return
        # Re-runs after reject or unblock keep the attempt, so match the invocation.
        if task.status != TaskStatus.IN_PROGRESS or task.invocation_id != payload.get("invocation_id"):
            logger.info(
                "Stale result for %s ignored (status %s, invocation %s, result invocation %s)",
                task_id, task.status.value, task.invocation_id, payload.get("invocation_id"),
            )
            return

        outcome = payload.get("outcome")
        error = payload.get("error") or {}
        try:
            if outcome == COMPLETED:
                await self._complete(task, payload)
            elif outcome == BLOCKED:
                await self.lifecycle.transition(
                    task_id,
                    TaskStatus.BLOCKED,
                    reason=error.get("message", "precondition missing"),
                    changes={"error": _error_info(error, ErrorKind.PRECONDITION, self._clock())},
                )
                self.graph.mark_dependents_blocked(task_id)
            elif outcome == CANCELLED:
                await self._cancel_one(task_id, error.get("message", "cancelled"))
                await self._cascade_cancel(task_id, f"dependency {task_id} cancelled")
            else:
                await self._fail(task_id, _error_info(error, ErrorKind.WORKER, self._clock()))
        except IllegalTransitionError as e:
            logger.warning("Result for %s could not be applied: %s", task_id, e)
        except StorageCorruption as e:
            self._halt(e)

    async def _complete(self, task: TaskRecord, payload: Dict[str, Any]) -> None:
        result = payload.get("result")
        subject = payload.get("subject") or task.subject
        changes: Dict[str, Any] = {"result": result}
        if subject != task.subject:
            changes["subject"] = subject

        for other, description in self.conflicts.detect(task, result, subject):
            try:
                resolution = self.conflicts.resolve(other, task, description)
            except ConflictUnresolvedError as e:
                metadata = dict(task.metadata)
                metadata["conflict_with"] = other.task_id
                changes["metadata"] = metadata
                await self.lifecycle.transition(
                    task.task_id, TaskStatus.REVIEW, reason=e.message, changes=changes,
                    detail={"conflict_with": other.task_id},
                )
                return
            if resolution.loser == task.task_id:
                changes["superseded_by"] = other.task_id
                break
            self._supersede(other.task_id, task.task_id)

        if task.requires_approval:
            await self.lifecycle.transition(
                task.task_id, TaskStatus.REVIEW, reason="awaiting approval", changes=changes
            )
            return
        await self.lifecycle.transition(task.task_id, TaskStatus.COMPLETED, changes=changes)
        self._after_completed(task.task_id)

    def _supersede(self, task_id: str, winner: str) -> None:
        loser = self.store.get_task(task_id)
        if loser.superseded_by == winner:
            return
        self.store.commit(task_id, loser.version, {"superseded_by": winner}, reason=f"superseded by {winner}")

    def _after_completed(self, task_id: str) -> None:
        newly_ready = self.graph.on_completed(task_id)
        self.graph.clear_dependents_blocked(task_id)
        if newly_ready:
            logger.debug("%s completed; now ready: %s", task_id, ", ".join(newly_ready))

    async def _fail(self, task_id: str, error: ErrorInfo) -> None:
        record = await self.lifecycle.transition(
            task_id, TaskStatus.ERROR, reason=error.message, changes={"error": error}
        )
        await self._after_error(record)

    async def _after_error(self, record: TaskRecord) -> None:
        decision = self.retry_policy.decide(record)
        if decision.should_retry:
            self.graph.enqueue(record.task_id, self._clock() + decision.delay)
            self.graph.mark_dependents_blocked(record.task_id)
            return
        logger.error(
            "Task %s failed permanently after %d attempts: %s",
            record.task_id, record.attempt, record.error.message if record.error else "unknown error",
        )
        await self._cascade_cancel(record.task_id, f"dependency {record.task_id} failed")

    async def _cancel_one(self, task_id: str, reason: str) -> bool:
        task = self.store.get_task(task_id)
        if task.is_terminal:
            return False
        if task.status == TaskStatus.IN_PROGRESS:
            self.dispatcher.cancel(task_id, reason)
        await self.lifecycle.transition(
            task_id,
            TaskStatus.CANCELLED,
            reason=reason,
            changes={"error": ErrorInfo(ErrorKind.CANCELLED, reason, attempt=task.attempt, at=self._clock())},
        )
        self.graph.claim(task_id)
        self.scheduler.forget(task_id)
        return True

    async def _cascade_cancel(self, task_id: str, reason: str) -> List[str]:
        cancelled = []
        for dependent in self.graph.cascade_cancel(task_id):
            if await self._cancel_one(dependent, reason):
                cancelled.append(dependent)
        if cancelled:
            logger.info("Cascade from %s cancelled %d tasks", task_id, len(cancelled))
        return cancelled

    # ── Persistence ──────────────────────────────────────────────────

    def checkpoint(self) -> Optional[Checkpoint]:
        self._check_halted()
        return self.store.checkpoint()

    async def recover(self) -> Dict[str, Any]:
        """Reload state, replay unacknowledged transitions, interrupt orphaned work.

        Raises StorageCorruption (and halts) if persisted state is unreadable.
        """
        try:
            self.store.load()
        except StorageCorruption as e:
            self._halt(e)
            raise
        await self.open()
        self.graph.rebuild()
        replayed = await self.lifecycle.replay_unpublished()

        interrupted = []
        for task in self.store.list_tasks(statuses=[TaskStatus.IN_PROGRESS]):
            if self.dispatcher.is_running(task.task_id):
                continue
            record = await self.lifecycle.transition(
                task.task_id,
                TaskStatus.ERROR,
                reason="interrupted by restart",
                changes={"error": ErrorInfo(ErrorKind.INTERRUPTED, "interrupted by restart", at=self._clock())},
            )
            interrupted.append(task.task_id)
            await self._after_error(record)

        report = {
            "sequence": self.store.sequence,
            "tasks": len(self.store.list_tasks()),
            "replayed": replayed,
            "interrupted": interrupted,
        }
        logger.info("Recovery complete: %s", report)
        return report

    # ── Halting ──────────────────────────────────────────────────────

    @property
    def halted(self) -> bool:
        return self._halted is not None

    def _halt(self, error: StorageCorruption) -> None:
        if self._halted is None:
            logger.error("Storage corruption, orchestrator halted: %s", error.message)
        self._halted = error

    def _check_halted(self) -> None:
        if self._halted is not None:
            raise self._halted


def _error_info(error: Dict[str, Any], default: ErrorKind, at: float) -> ErrorInfo:
    try:
        kind = ErrorKind(error.get("kind", default.value))
    except ValueError:
        kind = default
    return ErrorInfo(
        kind=kind,
        message=error.get("message", kind.value),
        at=at,
        details=dict(error.get("details") or {}),
    )
