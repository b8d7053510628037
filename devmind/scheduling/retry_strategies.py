"""Retry backoff for failed task attempts.

A task that ends an attempt in ERROR is re-queued on the runnable queue
with a delay from its policy; once ``attempt >= max_attempts`` it is
terminal and no further retry is scheduled. The curve is configuration:

    delay(attempt) = min(base_delay * multiplier ** (attempt - 1), max_delay)

optionally with up to 25% random jitter.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from devmind.interfaces.task import ErrorKind, TaskRecord

logger = logging.getLogger(__name__)


# ── Strategy types ───────────────────────────────────────────────────


class RetryReason(str, Enum):
    """Why a retry was triggered."""

    EXECUTION_FAILURE = "execution_failure"  # Worker raised CapabilityError
    TIMEOUT = "timeout"  # Worker exceeded its capability timeout
    INTERRUPTED = "interrupted"  # Orchestrator restarted mid-invocation

    @classmethod
    def from_error(cls, kind: Optional[ErrorKind]) -> "RetryReason":
        if kind == ErrorKind.TIMEOUT:
            return cls.TIMEOUT
        if kind == ErrorKind.INTERRUPTED:
            return cls.INTERRUPTED
        return cls.EXECUTION_FAILURE


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of consulting the policy after a failed attempt."""

    should_retry: bool
    reason: RetryReason
    attempt: int  # attempts used so far (1-indexed)
    delay: float = 0.0
    message: str = ""


# ── Policy ───────────────────────────────────────────────────────────


@dataclass
class RetryPolicy:
    """Exponential backoff with a cap and optional jitter."""

    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: bool = True
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            base_delay=settings.retry_base_delay,
            multiplier=settings.retry_multiplier,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows failed attempt number ``attempt``."""
        exponent = max(0, attempt - 1)
        delay = min(self.base_delay * (self.multiplier ** exponent), self.max_delay)
        if self.jitter and delay > 0:
            delay += delay * self.rng.uniform(0, 0.25)
        return delay

    def decide(self, task: TaskRecord) -> RetryDecision:
        """Decide whether a task that just entered ERROR gets another attempt."""
        reason = RetryReason.from_error(task.error.kind if task.error else None)
        if task.attempt >= task.max_attempts:
            return RetryDecision(
                should_retry=False,
                reason=reason,
                attempt=task.attempt,
                message=f"Max attempts exhausted ({task.attempt}/{task.max_attempts})",
            )
        delay = self.delay_for(task.attempt)
        logger.info(
            "Task %s failed (%s), retry %d/%d in %.2fs",
            task.task_id, reason.value, task.attempt + 1, task.max_attempts, delay,
        )
        return RetryDecision(
            should_retry=True,
            reason=reason,
            attempt=task.attempt,
            delay=delay,
            message=f"Retry (attempt {task.attempt}/{task.max_attempts})",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_delay": self.base_delay,
            "multiplier": self.multiplier,
            "max_delay": self.max_delay,
            "jitter": self.jitter,
        }
