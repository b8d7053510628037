"""Project planning: turn a project description into a task batch.

Plans use the ``project-plan.json`` format::

    {
      "projectName": "...",
      "description": "...",
      "tasks": [{"id": "task-1", "type": "vision", "description": "...",
                 "dependencies": [], "estimatedTime": "1h", "priority": "high"}],
      "humanDecisionPoints": [{"afterTask": "task-2", "description": "..."}]
    }

``type`` is the capability. A task named in ``humanDecisionPoints`` requires
approval before it completes. Task ids are namespaced per batch
(``<batch>:<id>``) so plans can be reused across submissions.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union

from devmind.exceptions_unified import PlanValidationError
from devmind.interfaces.task import TaskPriority, TaskSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProjectPlan:
    project_name: str
    description: str
    tasks: List[Dict[str, Any]]
    decision_points: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "projectName": self.project_name,
            "description": self.description,
            "tasks": list(self.tasks),
            "humanDecisionPoints": list(self.decision_points),
        }

    def to_specs(self, batch_id: str) -> List[TaskSpec]:
        """Materialise the plan as TaskSpecs with ids namespaced under ``batch_id``."""
        gated = {point["afterTask"] for point in self.decision_points}
        notes = {point["afterTask"]: point.get("description", "") for point in self.decision_points}
        specs = []
        for task in self.tasks:
            metadata = {"plan_id": task["id"]}
            if task["id"] in notes:
                metadata["decision_point"] = notes[task["id"]]
            specs.append(TaskSpec(
                task_id=f"{batch_id}:{task['id']}",
                capability=task["type"],
                description=task.get("description", ""),
                depends_on=frozenset(f"{batch_id}:{dep}" for dep in task.get("dependencies", [])),
                priority=TaskPriority.parse(task.get("priority", "medium")),
                max_attempts=task.get("maxAttempts"),
                requires_approval=task["id"] in gated,
                subject=task.get("subject"),
                estimated_time=task.get("estimatedTime"),
                metadata=metadata,
            ))
        return specs


def plan_from_dict(data: Dict[str, Any]) -> ProjectPlan:
    """Validate a ``project-plan.json`` document."""
    if not isinstance(data, dict):
        raise PlanValidationError("Plan must be a JSON object")
    tasks = data.get("tasks")
    if not isinstance(tasks, list) or not tasks:
        raise PlanValidationError("Plan must contain a non-empty 'tasks' list")

    seen = set()
    for index, task in enumerate(tasks):
        if not isinstance(task, dict):
            raise PlanValidationError(f"tasks[{index}] must be an object")
        for key in ("id", "type"):
            if not isinstance(task.get(key), str) or not task[key]:
                raise PlanValidationError(f"tasks[{index}] is missing '{key}'")
        if task["id"] in seen:
            raise PlanValidationError(f"Duplicate plan task id: {task['id']}", task_id=task["id"])
        seen.add(task["id"])
        if not isinstance(task.get("dependencies", []), list):
            raise PlanValidationError(f"tasks[{index}].dependencies must be a list", task_id=task["id"])
        try:
            TaskPriority.parse(task.get("priority", "medium"))
        except ValueError as e:
            raise PlanValidationError(f"tasks[{index}] has an invalid priority", task_id=task["id"]) from e

    points = data.get("humanDecisionPoints", []) or []
    for point in points:
        if not isinstance(point, dict) or point.get("afterTask") not in seen:
            raise PlanValidationError(f"Decision point refers to unknown task: {point!r}")

    return ProjectPlan(
        project_name=data.get("projectName", ""),
        description=data.get("description", ""),
        tasks=[dict(t) for t in tasks],
        decision_points=[dict(p) for p in points],
    )


def load_plan(path: Union[str, Path]) -> ProjectPlan:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise PlanValidationError(f"Plan {path} is not valid JSON: {e}") from e
    except OSError as e:
        raise PlanValidationError(f"Cannot read plan {path}: {e}") from e
    return plan_from_dict(data)


class IPlanner(Protocol):
    def plan(self, description: str, constraints: Optional[Dict[str, Any]] = None) -> ProjectPlan:
        ...


class TemplatePlanner:
    """Fixed vision -> architect -> refactor -> doc plan, with review after architecture."""

    def plan(self, description: str, constraints: Optional[Dict[str, Any]] = None) -> ProjectPlan:
        short = description if len(description) <= 30 else f"{description[:30]}..."
        return plan_from_dict({
            "projectName": f"Project: {short}",
            "description": f"Full implementation of {description}",
            "tasks": [
                {
                    "id": "task-1",
                    "type": "vision",
                    "description": "Define detailed project requirements",
                    "dependencies": [],
                    "estimatedTime": "1h",
                },
                {
                    "id": "task-2",
                    "type": "architect",
                    "description": "Design the overall system architecture",
                    "dependencies": ["task-1"],
                    "estimatedTime": "2h",
                },
                {
                    "id": "task-3",
                    "type": "refactor",
                    "description": "Prepare the base folder structure",
                    "dependencies": ["task-2"],
                    "estimatedTime": "1h",
                },
                {
                    "id": "task-4",
                    "type": "doc",
                    "description": "Document the initial architecture",
                    "dependencies": ["task-2", "task-3"],
                    "estimatedTime": "1h",
                },
            ],
            "humanDecisionPoints": [
                {"afterTask": "task-2", "description": "Review and approve the proposed architecture"},
            ],
        })
