"""Task graph, lifecycle, retry policy and priority scheduling."""
from devmind.scheduling.dependency_resolver import TaskGraphManager
from devmind.scheduling.priority_scheduler import PriorityScheduler
from devmind.scheduling.retry_strategies import RetryDecision, RetryPolicy, RetryReason
from devmind.scheduling.state_machine import LEGAL_TRANSITIONS, TaskLifecycle

__all__ = [
    "LEGAL_TRANSITIONS",
    "PriorityScheduler",
    "RetryDecision",
    "RetryPolicy",
    "RetryReason",
    "TaskGraphManager",
    "TaskLifecycle",
]
