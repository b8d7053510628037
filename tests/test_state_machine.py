"""Tests for devmind.scheduling.state_machine (TaskLifecycle)."""

from unittest.mock import AsyncMock

import pytest

from devmind.exceptions_unified import IllegalTransitionError, RetryConfig, StorageWriteConflict
from devmind.interfaces.event_bus import Topic
from devmind.interfaces.task import ErrorInfo, ErrorKind, TaskStatus
from devmind.scheduling.dependency_resolver import TaskGraphManager
from devmind.scheduling.state_machine import LEGAL_TRANSITIONS, TaskLifecycle
from helpers import spec

S = TaskStatus


@pytest.fixture
def lifecycle(store, bus):
    return TaskLifecycle(store, bus, RetryConfig(max_retries=3, initial_delay_ms=0, jitter=False))


@pytest.fixture
def seeded(store):
    TaskGraphManager(store).submit(
        [spec("a", max_attempts=2), spec("b", depends_on=["a"])], batch_id="b1"
    )
    return store


class TestTable:

    def test_terminal_states_have_no_exits(self):
        assert LEGAL_TRANSITIONS[S.COMPLETED] == frozenset()
        assert LEGAL_TRANSITIONS[S.CANCELLED] == frozenset()

    def test_every_state_listed(self):
        assert set(LEGAL_TRANSITIONS) == set(TaskStatus)


class TestTransitions:

    @pytest.mark.asyncio
    async def test_happy_path_publishes_and_acks(self, seeded, bus, lifecycle):
        received = []

        async def on_transition(message):
            received.append(message.payload)

        await bus.subscribe(Topic.TASK_TRANSITION, on_transition)
        await lifecycle.transition("a", S.IN_PROGRESS, reason="start")
        record = await lifecycle.transition("a", S.COMPLETED)
        await bus.drain()

        assert record.status == S.COMPLETED
        assert [(p["from"], p["to"]) for p in received] == [("pending", "in_progress"), ("in_progress", "completed")]
        assert received[0]["reason"] == "start"
        assert seeded.unpublished() == []

    @pytest.mark.asyncio
    async def test_illegal_transition_rejected(self, seeded, lifecycle):
        with pytest.raises(IllegalTransitionError) as exc:
            await lifecycle.transition("a", S.COMPLETED)
        assert exc.value.task_id == "a"
        assert seeded.get_task("a").status == S.PENDING

    @pytest.mark.asyncio
    async def test_dependency_guard(self, seeded, lifecycle):
        with pytest.raises(IllegalTransitionError, match="dependencies not completed"):
            await lifecycle.transition("b", S.IN_PROGRESS)

    @pytest.mark.asyncio
    async def test_error_increments_attempt(self, seeded, lifecycle):
        await lifecycle.transition("a", S.IN_PROGRESS)
        record = await lifecycle.transition(
            "a", S.ERROR, changes={"error": ErrorInfo(ErrorKind.WORKER, "boom")}
        )
        assert record.attempt == 1
        assert record.error.attempt == 1
        assert not record.is_terminal

    @pytest.mark.asyncio
    async def test_error_is_terminal_once_attempts_exhausted(self, seeded, lifecycle):
        for _ in range(2):
            await lifecycle.transition("a", S.IN_PROGRESS)
            record = await lifecycle.transition("a", S.ERROR)
        assert record.attempt == 2
        assert record.is_terminal
        with pytest.raises(IllegalTransitionError):
            await lifecycle.transition("a", S.IN_PROGRESS)

    @pytest.mark.asyncio
    async def test_completed_is_terminal(self, seeded, lifecycle):
        await lifecycle.transition("a", S.IN_PROGRESS)
        await lifecycle.transition("a", S.COMPLETED)
        for target in (S.IN_PROGRESS, S.CANCELLED, S.ERROR):
            assert not lifecycle.can_transition(seeded.get_task("a"), target)

    @pytest.mark.asyncio
    async def test_stale_write_retried(self, seeded, lifecycle, monkeypatch):
        real_commit = seeded.commit
        calls = []

        def flaky_commit(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise StorageWriteConflict("stale", task_id="a")
            return real_commit(*args, **kwargs)

        monkeypatch.setattr(seeded, "commit", flaky_commit)
        record = await lifecycle.transition("a", S.IN_PROGRESS)
        assert record.status == S.IN_PROGRESS
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_publish_failure_leaves_entry_unpublished(self, seeded):
        broken_bus = AsyncMock()
        broken_bus.publish = AsyncMock(side_effect=RuntimeError("bus down"))
        lifecycle = TaskLifecycle(seeded, broken_bus)
        record = await lifecycle.transition("a", S.IN_PROGRESS)
        assert record.status == S.IN_PROGRESS
        assert [e.data["to"] for e in seeded.unpublished()] == ["in_progress"]

    @pytest.mark.asyncio
    async def test_replay_unpublished(self, seeded, bus, lifecycle):
        task = seeded.get_task("a")
        seeded.commit("a", task.version, {"status": S.IN_PROGRESS})
        received = []

        async def on_transition(message):
            received.append(message.payload["to"])

        await bus.subscribe(Topic.TASK_TRANSITION, on_transition)
        assert await lifecycle.replay_unpublished() == 1
        await bus.drain()
        assert received == ["in_progress"]
        assert seeded.unpublished() == []
