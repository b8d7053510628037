"""
UnifiedError System - error handling for the DevMind orchestration core.

Single exception hierarchy for every component, with:
- Consistent error context and metadata (error id, category, severity)
- Retry configuration with exponential backoff for transient failures
- Categories the CLI and HTTP layers map to exit codes / status codes

Transient errors (AgentBusyError, StorageWriteConflict) are retried
internally and never reach callers. StorageCorruption is fatal.
"""

import asyncio
import logging
import random
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# Enums & Constants
# ============================================================================

class ErrorSeverity(Enum):
    """Error severity levels."""
    CRITICAL = "critical"      # Orchestrator must halt
    ERROR = "error"            # Operation failure, caller impacted
    WARNING = "warning"        # Rejected request, nothing changed
    INFO = "info"              # Informational, no action needed


class ErrorCategory(Enum):
    """Error categories for classification and routing."""
    VALIDATION = "validation"           # Submission or plan rejected
    NOT_FOUND = "not_found"             # Unknown batch / task / agent
    AGENT = "agent"                     # Agent capacity or availability
    CAPABILITY = "capability"           # Worker-reported failure
    TIMEOUT = "timeout"                 # Worker exceeded its capability timeout
    CONFLICT = "conflict"               # Illegal transition, unresolved conflict
    STORAGE = "storage"                 # Context store failure
    INTERNAL = "internal"               # Internal system error


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ErrorContext:
    """Rich error context with metadata."""
    error_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None
    is_recoverable: bool = True
    http_status: int = 500

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (excludes stack trace for API responses)."""
        return {
            "error_id": self.error_id,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
            "is_recoverable": self.is_recoverable,
            "http_status": self.http_status,
        }


@dataclass
class RetryConfig:
    """Retry strategy configuration."""
    max_retries: int = 3
    initial_delay_ms: int = 10
    max_delay_ms: int = 1000
    exponential_base: float = 2.0
    jitter: bool = True

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for given attempt number."""
        delay = min(
            self.initial_delay_ms * (self.exponential_base ** attempt),
            self.max_delay_ms
        )

        if self.jitter:
            # Add random jitter (0-25% of delay)
            delay += delay * random.uniform(0, 0.25)

        return delay / 1000.0  # Convert to seconds


# ============================================================================
# Exception Hierarchy
# ============================================================================

class DevMindException(Exception):
    """Base exception for all DevMind errors with rich context."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        details: Optional[Dict[str, Any]] = None,
        is_recoverable: bool = True,
        http_status: int = 500,
        task_id: Optional[str] = None,
    ):
        """Initialize exception with full context."""
        self.message = message
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.is_recoverable = is_recoverable
        self.http_status = http_status
        self.task_id = task_id
        if task_id is not None:
            self.details.setdefault("task_id", task_id)

        self.context = ErrorContext(
            severity=severity,
            category=category,
            message=message,
            details=self.details,
            stack_trace=traceback.format_exc(),
            is_recoverable=is_recoverable,
            http_status=http_status,
        )

        super().__init__(self.message)

    @property
    def kind(self) -> str:
        """Short error kind used in CLI and API output (the class name)."""
        return type(self).__name__

    def __str__(self) -> str:
        return f"{self.category.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        data = self.context.to_dict()
        data["kind"] = self.kind
        return data


# ============================================================================
# Validation Errors
# ============================================================================

class ValidationError(DevMindException):
    """Submission rejected before anything was persisted."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("http_status", 400)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class CycleDetectedError(ValidationError):
    """Raised when a submitted batch contains a dependency cycle."""

    def __init__(self, cycle: List[str], **kwargs) -> None:
        self.cycle = list(cycle)
        kwargs.setdefault("details", {"cycle": self.cycle})
        if self.cycle:
            kwargs.setdefault("task_id", self.cycle[0])
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(self.cycle)}", **kwargs
        )


class UnknownDependencyError(ValidationError):
    """A task depends on an id that is neither in the batch nor the store."""
    pass


class DuplicateTaskError(ValidationError):
    """A task id appears twice or already exists in the store."""
    pass


class PlanValidationError(ValidationError):
    """A project plan document is malformed."""
    pass


# ============================================================================
# Lookup Errors
# ============================================================================

class NotFoundError(DevMindException):
    """Base lookup error."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.NOT_FOUND)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("http_status", 404)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class TaskNotFoundError(NotFoundError):
    """Unknown task id."""
    pass


class BatchNotFoundError(NotFoundError):
    """Unknown batch id."""
    pass


# ============================================================================
# Agent & Capability Errors
# ============================================================================

class AgentError(DevMindException):
    """Base dispatch-time agent error. The task stays PENDING."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.AGENT)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("http_status", 503)
        super().__init__(message, **kwargs)


class AgentUnavailableError(AgentError):
    """No registered agent serves the requested capability / id."""
    pass


class AgentBusyError(AgentError):
    """The agent (or capability) has no free concurrency slot."""
    pass


class CapabilityError(DevMindException):
    """Raised by workers to report a failed invocation."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CAPABILITY)
        kwargs.setdefault("http_status", 502)
        super().__init__(message, **kwargs)


class CapabilityTimeoutError(CapabilityError):
    """Worker did not respond within its capability timeout."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.TIMEOUT)
        kwargs.setdefault("http_status", 504)
        super().__init__(message, **kwargs)


class PreconditionMissingError(CapabilityError):
    """Worker needs an external precondition not expressible as a dependency."""
    pass


# ============================================================================
# Conflict Errors
# ============================================================================

class ConflictError(DevMindException):
    """Base conflict / approval-required error."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CONFLICT)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("http_status", 409)
        super().__init__(message, **kwargs)


class IllegalTransitionError(ConflictError):
    """Requested lifecycle transition is not allowed from the current state."""
    pass


class ConflictUnresolvedError(ConflictError):
    """Two results conflict and priority does not pick a winner."""
    pass


# ============================================================================
# Storage Errors
# ============================================================================

class StorageError(DevMindException):
    """Base context store error."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.STORAGE)
        kwargs.setdefault("http_status", 500)
        super().__init__(message, **kwargs)


class StorageWriteConflict(StorageError):
    """Optimistic concurrency failure: the write was based on a stale version."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("http_status", 409)
        kwargs.setdefault("is_recoverable", True)
        super().__init__(message, **kwargs)


class StorageCorruption(StorageError):
    """Persisted state is unreadable or inconsistent. Requires an operator."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


# ============================================================================
# Retry Functions
# ============================================================================

async def retry_with_backoff(
    fn: Callable,
    config: Optional[RetryConfig] = None,
    should_retry: Optional[Callable[[Exception], bool]] = None,
) -> Any:
    """
    Execute function with retry and exponential backoff.

    Args:
        fn: Async function to execute
        config: Retry configuration
        should_retry: Optional function to determine if error is retryable

    Returns:
        Function result
    """
    config = config or RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            return await fn()
        except Exception as e:
            if should_retry and not should_retry(e):
                raise
            if attempt >= config.max_retries:
                raise

            delay = config.get_delay(attempt)
            logger.warning(
                "Attempt %d failed, retrying in %.3fs: %s", attempt + 1, delay, e
            )
            await asyncio.sleep(delay)


def is_transient(error: Exception) -> bool:
    """Transient errors are retried internally and never surfaced."""
    return isinstance(error, (AgentBusyError, StorageWriteConflict))


__all__ = [
    "ErrorSeverity",
    "ErrorCategory",
    "ErrorContext",
    "RetryConfig",
    "DevMindException",
    "ValidationError",
    "CycleDetectedError",
    "UnknownDependencyError",
    "DuplicateTaskError",
    "PlanValidationError",
    "NotFoundError",
    "TaskNotFoundError",
    "BatchNotFoundError",
    "AgentError",
    "AgentUnavailableError",
    "AgentBusyError",
    "CapabilityError",
    "CapabilityTimeoutError",
    "PreconditionMissingError",
    "ConflictError",
    "IllegalTransitionError",
    "ConflictUnresolvedError",
    "StorageError",
    "StorageWriteConflict",
    "StorageCorruption",
    "retry_with_backoff",
    "is_transient",
]
