"""Dispatcher: reserves agent slots and invokes workers.

``dispatch`` is synchronous and only reserves capacity. ``invoke`` runs the
worker under the capability timeout, honours cooperative cancellation with
a grace period, publishes the outcome on ``task.result`` and releases the
slot. Workers are never trusted to report their own timeouts.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

from devmind.exceptions_unified import (
    AgentBusyError,
    AgentUnavailableError,
    CapabilityError,
    CapabilityTimeoutError,
    PreconditionMissingError,
)
from devmind.interfaces.event_bus import IMessageBus, Topic
from devmind.interfaces.task import Dispatch, ErrorKind
from devmind.interfaces.worker import CancellationToken, TaskPayload, WorkerResult
from devmind.agents.registry import AgentRegistry
from devmind.storage.context_store import ContextStore

logger = logging.getLogger(__name__)

# Result outcomes carried on task.result
COMPLETED = "completed"
FAILED = "error"
BLOCKED = "blocked"
CANCELLED = "cancelled"


class Dispatcher:
    """Claims agent capacity and runs invocations."""

    def __init__(
        self,
        store: ContextStore,
        registry: AgentRegistry,
        bus: IMessageBus,
        default_timeout: float = 300.0,
        capability_timeouts: Optional[Dict[str, float]] = None,
        cancel_grace_period: float = 5.0,
    ) -> None:
        self.store = store
        self.registry = registry
        self.bus = bus
        self.default_timeout = default_timeout
        self.capability_timeouts = dict(capability_timeouts or {})
        self.cancel_grace_period = cancel_grace_period
        # task_id -> (agent_id, capability) for reserved slots
        self._reserved: Dict[str, Tuple[str, str]] = {}
        self._tokens: Dict[str, CancellationToken] = {}

    def timeout_for(self, capability: str) -> float:
        return self.capability_timeouts.get(capability, self.default_timeout)

    # ── Reservation ──────────────────────────────────────────────────

    def dispatch(self, task_id: str, agent_id: str) -> Dispatch:
        """Reserve a slot on ``agent_id`` for ``task_id``.

        Raises:
            AgentUnavailableError: unknown agent, or it lacks the capability.
            AgentBusyError: the agent or the capability is at its limit.
        """
        task = self.store.get_task(task_id)
        agent = self.registry.get(agent_id)
        if task.capability not in agent.capabilities:
            raise AgentUnavailableError(
                f"Agent {agent_id} does not serve {task.capability}",
                task_id=task_id,
                details={"agent_id": agent_id, "capability": task.capability},
            )
        if task_id in self._reserved:
            raise AgentBusyError(f"Task {task_id} already has a reserved slot", task_id=task_id)
        if agent.in_flight >= agent.concurrency_limit:
            raise AgentBusyError(
                f"Agent {agent_id} is at its limit ({agent.concurrency_limit})",
                task_id=task_id,
                details={"agent_id": agent_id},
            )
        if not self.registry.acquire_slot(task.capability):
            raise AgentBusyError(
                f"Capability {task.capability} is at its concurrency limit",
                task_id=task_id,
                details={"capability": task.capability},
            )
        agent.in_flight += 1
        self._reserved[task_id] = (agent_id, task.capability)
        logger.debug("Reserved %s on %s (%d/%d)", task_id, agent_id, agent.in_flight, agent.concurrency_limit)
        return Dispatch(task_id=task_id, agent_id=agent_id)

    def release(self, dispatch: Dispatch) -> None:
        """Give back a reserved slot. Safe to call twice."""
        reserved = self._reserved.pop(dispatch.task_id, None)
        if reserved is None:
            return
        agent_id, capability = reserved
        self.registry.release_slot(capability)
        try:
            agent = self.registry.get(agent_id)
        except AgentUnavailableError:
            return  # unregistered while busy
        agent.in_flight = max(0, agent.in_flight - 1)

    def in_flight(self) -> int:
        return len(self._reserved)

    def is_running(self, task_id: str) -> bool:
        return task_id in self._tokens

    # ── Invocation ───────────────────────────────────────────────────

    async def invoke(self, dispatch: Dispatch) -> Dict[str, Any]:
        """Run the worker for a reserved dispatch and publish its outcome."""
        task = self.store.get_task(dispatch.task_id)
        token = CancellationToken()
        self._tokens[task.task_id] = token
        payload = TaskPayload(
            task_id=task.task_id,
            batch_id=task.batch_id,
            capability=task.capability,
            description=task.description,
            attempt=task.attempt,
            dependency_results={dep: self.store.get_task(dep).result for dep in sorted(task.depends_on)},
            metadata=dict(task.metadata),
        )
        outcome: Dict[str, Any] = {
            "task_id": task.task_id,
            "agent_id": dispatch.agent_id,
            "attempt": task.attempt,
            "invocation_id": task.invocation_id,
        }
        try:
            try:
                descriptor = self.registry.get(dispatch.agent_id)
                if descriptor.factory is None:
                    raise AgentUnavailableError(f"Agent {dispatch.agent_id} has no worker factory")
                worker = descriptor.factory()
            except AgentUnavailableError as e:
                outcome.update(_failure(ErrorKind.WORKER, e.message))
            except Exception as e:
                logger.exception("Worker factory for %s failed", dispatch.agent_id)
                outcome.update(_failure(ErrorKind.WORKER, f"Worker factory failed: {e}"))
            else:
                outcome.update(await self._run(worker, payload, token, self.timeout_for(task.capability)))
            await self.bus.publish(
                Topic.TASK_RESULT,
                outcome,
                priority=task.priority,
                correlation_id=task.task_id,
            )
        finally:
            self._tokens.pop(task.task_id, None)
            self.release(dispatch)
        return outcome

    async def _run(
        self,
        worker: Any,
        payload: TaskPayload,
        token: CancellationToken,
        timeout: float,
    ) -> Dict[str, Any]:
        invocation = asyncio.ensure_future(worker.invoke(payload, token))
        cancel_requested = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {invocation, cancel_requested},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not cancel_requested.done():
                cancel_requested.cancel()

        if invocation in done:
            return _outcome_of(payload.task_id, invocation)

        if cancel_requested in done and not invocation.done():
            await self._abandon(invocation, payload.task_id, self.cancel_grace_period)
            return _failure(ErrorKind.CANCELLED, token.reason or "cancelled")

        if invocation.done():
            return _outcome_of(payload.task_id, invocation)

        # Timed out: ask nicely, then stop waiting.
        token.cancel("timeout")
        await self._abandon(invocation, payload.task_id, 0)
        logger.warning("Task %s timed out after %.1fs", payload.task_id, timeout)
        return _raised(FAILED, ErrorKind.TIMEOUT, CapabilityTimeoutError(
            f"Worker did not respond within {timeout:.1f}s",
            task_id=payload.task_id,
            details={"timeout": timeout},
        ))

    async def _abandon(self, invocation: asyncio.Future, task_id: str, grace: float) -> None:
        if grace > 0:
            done, _ = await asyncio.wait({invocation}, timeout=grace)
            if done:
                _consume(invocation)
                return
            logger.warning("Task %s ignored cancellation for %.1fs; invocation abandoned", task_id, grace)
        # Not awaited: a worker that swallows CancelledError must not stall the dispatcher.
        invocation.cancel()
        invocation.add_done_callback(_consume)

    def cancel(self, task_id: str, reason: str = "cancelled") -> bool:
        """Request cooperative cancellation of a running invocation."""
        token = self._tokens.get(task_id)
        if token is None:
            return False
        token.cancel(reason)
        return True


def _failure(kind: ErrorKind, message: str) -> Dict[str, Any]:
    outcome = CANCELLED if kind == ErrorKind.CANCELLED else FAILED
    return {"outcome": outcome, "error": {"kind": kind.value, "message": message}}


def _raised(outcome: str, kind: ErrorKind, error: CapabilityError) -> Dict[str, Any]:
    return {
        "outcome": outcome,
        "error": {"kind": kind.value, "message": error.message, "details": error.details},
    }


def _consume(invocation: asyncio.Future) -> None:
    if not invocation.cancelled() and invocation.exception() is not None:
        logger.debug("Invocation finished after cancellation with %r", invocation.exception())


def _outcome_of(task_id: str, invocation: asyncio.Future) -> Dict[str, Any]:
    try:
        result = invocation.result()
    except asyncio.CancelledError:
        return _failure(ErrorKind.CANCELLED, "Invocation was cancelled")
    except PreconditionMissingError as e:
        return _raised(BLOCKED, ErrorKind.PRECONDITION, e)
    except CapabilityTimeoutError as e:
        return _raised(FAILED, ErrorKind.TIMEOUT, e)
    except CapabilityError as e:
        return _raised(FAILED, ErrorKind.WORKER, e)
    except Exception as e:
        logger.exception("Worker for %s raised an unexpected error", task_id)
        return _failure(ErrorKind.WORKER, f"{type(e).__name__}: {e}")

    if not isinstance(result, WorkerResult):
        result = WorkerResult(output=result)
    return {
        "outcome": COMPLETED,
        "result": result.output,
        "subject": result.subject,
        "rationale": result.rationale,
    }
