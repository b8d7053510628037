"""Project-level orchestration on top of the scheduling core."""
from devmind.orchestration.conflict_resolver import ConflictResolver, Resolution, same_subject_validator
from devmind.orchestration.event_stream import EventStream, to_event
from devmind.orchestration.orchestrator import Orchestrator, ProjectStatus
from devmind.orchestration.planner import ProjectPlan, TemplatePlanner, load_plan, plan_from_dict

__all__ = [
    "ConflictResolver",
    "EventStream",
    "Orchestrator",
    "ProjectPlan",
    "ProjectStatus",
    "Resolution",
    "TemplatePlanner",
    "load_plan",
    "plan_from_dict",
    "same_subject_validator",
    "to_event",
]
