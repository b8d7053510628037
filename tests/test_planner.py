"""Tests for project plans (devmind/orchestration/planner.py)."""

import json

import pytest

from devmind.exceptions_unified import PlanValidationError
from devmind.interfaces.task import TaskPriority
from devmind.orchestration.planner import TemplatePlanner, load_plan, plan_from_dict


def _plan(**overrides):
    data = {
        "projectName": "Shop",
        "description": "An online shop",
        "tasks": [
            {"id": "t1", "type": "vision", "description": "requirements"},
            {"id": "t2", "type": "architect", "dependencies": ["t1"], "priority": "high", "estimatedTime": "2h"},
        ],
        "humanDecisionPoints": [{"afterTask": "t2", "description": "sign off"}],
    }
    data.update(overrides)
    return data


class TestTemplatePlanner:

    def test_template_shape(self):
        plan = TemplatePlanner().plan("a todo app with sync")
        assert [t["type"] for t in plan.tasks] == ["vision", "architect", "refactor", "doc"]
        assert plan.decision_points[0]["afterTask"] == "task-2"
        assert plan.project_name == "Project: a todo app with sync"

    def test_long_description_shortened(self):
        plan = TemplatePlanner().plan("x" * 40)
        assert plan.project_name == "Project: " + "x" * 30 + "..."


class TestToSpecs:

    def test_ids_namespaced_per_batch(self):
        specs = plan_from_dict(_plan()).to_specs("b42")
        assert [s.task_id for s in specs] == ["b42:t1", "b42:t2"]
        assert specs[1].depends_on == frozenset({"b42:t1"})
        assert specs[1].metadata == {"plan_id": "t2", "decision_point": "sign off"}

    def test_decision_point_requires_approval(self):
        first, second = plan_from_dict(_plan()).to_specs("b")
        assert not first.requires_approval
        assert second.requires_approval

    def test_plan_fields_carried(self):
        first, second = plan_from_dict(_plan()).to_specs("b")
        assert first.priority == TaskPriority.MEDIUM
        assert second.priority == TaskPriority.HIGH
        assert second.estimated_time == "2h"
        assert second.capability == "architect"

    def test_round_trip_keeps_camel_case_keys(self):
        data = plan_from_dict(_plan()).to_dict()
        assert set(data) == {"projectName", "description", "tasks", "humanDecisionPoints"}


class TestValidation:

    @pytest.mark.parametrize("data", [
        [],
        {"tasks": []},
        {"tasks": ["t1"]},
        {"tasks": [{"id": "t1"}]},
        {"tasks": [{"type": "vision"}]},
        {"tasks": [{"id": "t1", "type": "vision"}, {"id": "t1", "type": "doc"}]},
        {"tasks": [{"id": "t1", "type": "vision", "dependencies": "t0"}]},
        {"tasks": [{"id": "t1", "type": "vision", "priority": "urgent"}]},
        {"tasks": [{"id": "t1", "type": "vision"}], "humanDecisionPoints": [{"afterTask": "t9"}]},
    ])
    def test_malformed_plans_rejected(self, data):
        with pytest.raises(PlanValidationError):
            plan_from_dict(data)

    def test_numeric_priority_rank_accepted(self):
        plan = plan_from_dict(_plan(tasks=[{"id": "t1", "type": "vision", "priority": 0}], humanDecisionPoints=[]))
        assert plan.to_specs("b")[0].priority == TaskPriority.CRITICAL


class TestLoadPlan:

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "project-plan.json"
        path.write_text(json.dumps(_plan()))
        assert load_plan(path).project_name == "Shop"

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "project-plan.json"
        path.write_text("{oops")
        with pytest.raises(PlanValidationError, match="not valid JSON"):
            load_plan(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(PlanValidationError, match="Cannot read"):
            load_plan(tmp_path / "nope.json")
