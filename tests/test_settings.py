"""Tests for devmind.config.settings and logging configuration."""

import json
import logging

import pytest
from pydantic import ValidationError

from devmind.config.settings import Settings
from devmind.enhanced_logging import JsonFormatter, configure_logging, track_performance


def test_defaults():
    s = Settings(_env_file=None)
    assert s.state_dir == ".devmind"
    assert s.default_max_attempts == 3
    assert s.simulated_mode is True
    assert s.journal_path.name == "journal.jsonl"
    assert s.checkpoint_dir.name == "checkpoints"


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("DEVMIND_CHECKPOINT_EVERY", "7")
    monkeypatch.setenv("DEVMIND_CAPABILITY_TIMEOUTS", '{"vision": 12.5}')
    s = Settings(_env_file=None)
    assert s.checkpoint_every == 7
    assert s.capability_timeouts == {"vision": 12.5}


def test_invalid_environment_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, environment="moon")


def test_invalid_worker_plugin_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, worker_plugins={"vision": "no_colon_here"})


def test_log_level_normalised():
    s = Settings(_env_file=None, log_level="debug")
    assert s.log_level == "DEBUG"
    assert s.get_log_level() == logging.DEBUG


def test_debug_forces_debug_level():
    s = Settings(_env_file=None, log_level="ERROR", debug=True)
    assert s.log_level == "ERROR"
    assert s.get_log_level() == logging.DEBUG


def test_ensure_directories(tmp_path):
    s = Settings(_env_file=None, state_dir=str(tmp_path / "st"))
    s.ensure_directories()
    assert (tmp_path / "st" / "checkpoints").is_dir()


# -- Logging ---------------------------------------------------------------


def test_json_formatter_merges_extra():
    record = logging.makeLogRecord({"msg": "hello %s", "args": ("world",), "levelname": "INFO", "name": "x"})
    record.task_id = "t1"
    data = json.loads(JsonFormatter().format(record))
    assert data["message"] == "hello world"
    assert data["task_id"] == "t1"


def test_configure_logging_replaces_own_handlers(tmp_path):
    s = Settings(_env_file=None, log_file=str(tmp_path / "devmind.log"), log_format="json")
    configure_logging(s)
    configure_logging(s)
    root = logging.getLogger()
    ours = [h for h in root.handlers if getattr(h, "_devmind", False)]
    assert len(ours) == 2  # stream + file, not duplicated
    for handler in ours:
        root.removeHandler(handler)
        handler.close()


@pytest.mark.asyncio
async def test_track_performance_wraps_coroutines(caplog):
    @track_performance(operation="unit.op")
    async def work():
        return 42

    with caplog.at_level(logging.DEBUG):
        assert await work() == 42
    assert "unit.op completed" in caplog.text
