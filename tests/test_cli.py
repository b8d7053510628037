"""Tests for the click CLI (devmind/cli.py)."""

import json
import logging

import pytest
from click.testing import CliRunner

from devmind import __version__
from devmind.cli import EXIT_CONFLICT, EXIT_NOT_FOUND, EXIT_VALIDATION, cli


@pytest.fixture(autouse=True)
def _restore_logging():
    root = logging.getLogger()
    level, handlers = root.level, list(root.handlers)
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
    root.setLevel(level)


@pytest.fixture
def invoke(tmp_path, monkeypatch):
    monkeypatch.setenv("DEVMIND_TICK_INTERVAL", "0.01")
    monkeypatch.setenv("DEVMIND_ENVIRONMENT", "test")
    runner = CliRunner()
    state_dir = str(tmp_path / "state")

    def _invoke(*args):
        return runner.invoke(cli, ["--state-dir", state_dir, "--log-level", "CRITICAL", *args], obj={})

    return _invoke


def _submit(invoke):
    result = invoke("submit", "todo app", "--json", "--timeout", "10")
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def test_version():
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_submit_runs_until_review(invoke):
    status = _submit(invoke)
    assert status["state"] == "awaiting_review"
    states = {t["task_id"].split(":")[1]: t["status"] for t in status["tasks"]}
    assert states == {"task-1": "completed", "task-2": "review", "task-3": "pending", "task-4": "pending"}


def test_state_survives_between_commands(invoke):
    batch_id = _submit(invoke)["batch_id"]

    result = invoke("approve", f"{batch_id}:task-2", "--rationale", "fine")
    assert result.exit_code == 0, result.output
    assert "completed" in result.output

    result = invoke("status", batch_id)
    assert result.exit_code == 0
    assert f"Batch {batch_id}" in result.output

    result = invoke("events", batch_id)
    lines = [json.loads(line) for line in result.output.splitlines()]
    assert lines[0]["kind"] == "submitted"
    assert any(e["kind"] == "decision" for e in lines)


def test_unknown_batch_exit_code(invoke):
    result = invoke("status", "nope")
    assert result.exit_code == EXIT_NOT_FOUND
    assert "BatchNotFoundError" in result.output


def test_invalid_plan_exit_code(invoke, tmp_path):
    plan = tmp_path / "project-plan.json"
    plan.write_text(json.dumps({"tasks": []}))
    result = invoke("submit", "x", "--plan", str(plan))
    assert result.exit_code == EXIT_VALIDATION
    assert "PlanValidationError" in result.output


def test_cyclic_plan_exit_code(invoke, tmp_path):
    plan = tmp_path / "project-plan.json"
    plan.write_text(json.dumps({"tasks": [
        {"id": "t1", "type": "vision", "dependencies": ["t2"]},
        {"id": "t2", "type": "architect", "dependencies": ["t1"]},
    ]}))
    result = invoke("submit", "loop", "--plan", str(plan))
    assert result.exit_code == EXIT_VALIDATION
    assert "CycleDetectedError" in result.output

    result = invoke("run", "--timeout", "5")
    assert result.exit_code == 0
    assert result.output.strip() == ""


def test_approve_wrong_state_exit_code(invoke):
    batch_id = _submit(invoke)["batch_id"]
    result = invoke("approve", f"{batch_id}:task-1")
    assert result.exit_code == EXIT_CONFLICT
    assert f"task: {batch_id}:task-1" in result.output


def test_cancel_and_run(invoke):
    batch_id = _submit(invoke)["batch_id"]
    result = invoke("cancel", batch_id)
    assert result.exit_code == 0
    assert "cancelled 3 tasks" in result.output

    result = invoke("run", "--timeout", "5")
    assert result.exit_code == 0
    assert f"{batch_id}: cancelled" in result.output


def test_serve_uses_configured_address(tmp_path, monkeypatch):
    import uvicorn

    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append(kwargs))
    monkeypatch.setenv("DEVMIND_API_PORT", "8123")
    result = CliRunner().invoke(
        cli, ["--state-dir", str(tmp_path / "state"), "--log-level", "CRITICAL", "serve"], obj={}
    )
    assert result.exit_code == 0, result.output
    assert "http://127.0.0.1:8123" in result.output
    assert calls == [{"host": "127.0.0.1", "port": 8123, "log_level": "critical"}]
