"""Worker plugins and the built-in simulated workers.

Concrete workers live outside the core. They are registered either from
``worker_plugins`` (capability -> ``"package.module:attr"``, where ``attr``
is a zero-argument factory or class) or, in simulated mode, as
SimulatedWorker instances for the template plan's capabilities.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from typing import Any, Callable, Dict, Optional

from devmind.agents.registry import AgentRegistry
from devmind.exceptions_unified import CapabilityError
from devmind.interfaces.worker import CancellationToken, TaskPayload, WorkerResult

logger = logging.getLogger(__name__)

SIMULATED_CAPABILITIES = ("vision", "architect", "refactor", "doc")


class SimulatedWorker:
    """Stand-in worker that produces a canned artifact after ``delay`` seconds.

    ``fail_times`` makes the first N invocations raise CapabilityError, which
    is handy for exercising retries.
    """

    def __init__(self, capability: str, delay: float = 0.0, fail_times: int = 0) -> None:
        self.capability = capability
        self.delay = delay
        self.fail_times = fail_times
        self.invocations = 0

    async def invoke(self, payload: TaskPayload, cancel_token: CancellationToken) -> WorkerResult:
        self.invocations += 1
        if self.delay:
            try:
                await asyncio.wait_for(cancel_token.wait(), timeout=self.delay)
            except asyncio.TimeoutError:
                pass
            else:
                raise CapabilityError(f"{self.capability} worker cancelled: {cancel_token.reason}")
        if self.invocations <= self.fail_times:
            raise CapabilityError(
                f"Simulated {self.capability} failure ({self.invocations}/{self.fail_times})",
                task_id=payload.task_id,
            )
        return WorkerResult(
            output={
                "capability": self.capability,
                "summary": f"[{self.capability}] {payload.description}".strip(),
                "inputs": sorted(payload.dependency_results),
            },
            rationale="simulated",
        )


def resolve_plugin(target: str) -> Callable[[], Any]:
    """Import ``"package.module:attr"`` and return the attribute."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Worker plugin must be 'module:attr', got {target!r}")
    module = importlib.import_module(module_name)
    factory = module
    for part in attr.split("."):
        factory = getattr(factory, part)
    if not callable(factory):
        raise TypeError(f"Worker plugin {target!r} is not callable")
    return factory


def load_worker_plugins(
    registry: AgentRegistry,
    plugins: Dict[str, str],
    concurrency_limits: Optional[Dict[str, int]] = None,
) -> int:
    """Register a factory per capability from import paths. Returns the count."""
    limits = concurrency_limits or {}
    for capability, target in sorted(plugins.items()):
        factory = resolve_plugin(target)
        registry.register_factory(capability, factory, concurrency_limit=limits.get(capability))
        logger.info("Loaded worker plugin %s for %s", target, capability)
    return len(plugins)


def register_simulated_workers(
    registry: AgentRegistry,
    capabilities=SIMULATED_CAPABILITIES,
    delay: float = 0.0,
) -> None:
    """Register one SimulatedWorker per capability that has no agent yet."""
    for capability in capabilities:
        if registry.candidates(capability):
            continue
        registry.register_factory(
            capability,
            lambda capability=capability: SimulatedWorker(capability, delay=delay),
        )
