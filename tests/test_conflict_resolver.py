"""Tests for devmind.orchestration.conflict_resolver."""

import pytest

from devmind.exceptions_unified import ConflictUnresolvedError
from devmind.interfaces.task import TaskStatus
from devmind.orchestration.conflict_resolver import ConflictResolver, same_subject_validator
from devmind.scheduling.dependency_resolver import TaskGraphManager
from helpers import spec


@pytest.fixture
def seeded(store):
    TaskGraphManager(store).submit(
        [
            spec("hi", priority="high", subject="schema"),
            spec("lo", priority="low", subject="schema"),
            spec("mid-1", subject="api"),
            spec("mid-2", subject="api"),
            spec("other", subject="docs"),
        ],
        batch_id="b1",
    )
    return store


def _finish(store, task_id, result):
    store.commit(task_id, 1, {"status": TaskStatus.IN_PROGRESS})
    store.commit(task_id, 2, {"status": TaskStatus.COMPLETED, "result": result})
    return store.get_task(task_id)


def test_validator_requires_same_subject_and_different_result(seeded):
    hi, lo, other = seeded.get_task("hi"), seeded.get_task("lo"), seeded.get_task("other")
    assert same_subject_validator(hi, 1, lo, 2) is not None
    assert same_subject_validator(hi, 1, lo, 1) is None
    assert same_subject_validator(hi, 1, other, 2) is None


def test_detect_against_completed_tasks_only(seeded):
    resolver = ConflictResolver(seeded)
    _finish(seeded, "hi", {"tables": 3})
    conflicts = resolver.detect(seeded.get_task("lo"), {"tables": 4})
    assert [t.task_id for t, _ in conflicts] == ["hi"]
    assert resolver.detect(seeded.get_task("lo"), {"tables": 3}) == []
    assert resolver.detect(seeded.get_task("mid-1"), "anything") == []


def test_detect_uses_reported_subject(seeded):
    resolver = ConflictResolver(seeded)
    _finish(seeded, "other", "v1")
    conflicts = resolver.detect(seeded.get_task("mid-1"), "v2", subject="docs")
    assert [t.task_id for t, _ in conflicts] == ["other"]


def test_superseded_tasks_ignored(seeded):
    resolver = ConflictResolver(seeded)
    _finish(seeded, "hi", 1)
    task = seeded.get_task("hi")
    seeded.commit("hi", task.version, {"superseded_by": "lo"})
    assert resolver.detect(seeded.get_task("lo"), 2) == []


def test_higher_priority_wins_and_decision_recorded(seeded, clock):
    resolver = ConflictResolver(seeded, clock=clock)
    hi = _finish(seeded, "hi", 1)
    resolution = resolver.resolve(hi, seeded.get_task("lo"), "schema differs")

    assert resolution.winner == "hi"
    assert resolution.loser == "lo"
    decisions = seeded.decisions(task_id="lo")
    assert len(decisions) == 1
    assert decisions[0].kind == "conflict"
    assert decisions[0].timestamp == clock()
    assert "schema differs" in decisions[0].rationale


def test_winner_independent_of_argument_order(seeded):
    resolver = ConflictResolver(seeded)
    resolution = resolver.resolve(seeded.get_task("lo"), seeded.get_task("hi"), "x")
    assert (resolution.winner, resolution.loser) == ("hi", "lo")


def test_equal_priority_needs_review(seeded):
    resolver = ConflictResolver(seeded)
    with pytest.raises(ConflictUnresolvedError) as exc:
        resolver.resolve(seeded.get_task("mid-1"), seeded.get_task("mid-2"), "api differs")
    assert exc.value.task_id == "mid-2"
    assert exc.value.details["tasks"] == ["mid-1", "mid-2"]
    assert seeded.decisions() == []
