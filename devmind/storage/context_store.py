"""Context store: the single owner of tasks, batches and the decision log.

Every mutation is appended to the write-ahead journal before it is applied
in memory, and the same ``_apply`` path replays the journal on recovery.
Task writes use per-record optimistic versions; there is no global lock.
"""

from __future__ import annotations

import bisect
import json
import logging
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from devmind.exceptions_unified import (
    BatchNotFoundError,
    DuplicateTaskError,
    StorageWriteConflict,
    TaskNotFoundError,
)
from devmind.interfaces.task import (
    Batch,
    Checkpoint,
    DecisionRecord,
    TaskRecord,
    TaskStatus,
)
from devmind.storage.checkpoints import CheckpointManager, JournalFile

logger = logging.getLogger(__name__)

# Entry kinds
SUBMIT = "submit"
TRANSITION = "transition"
UPDATE = "update"
DECISION = "decision"

# States that must not wait on an unfinished dependency at a checkpoint
_ACTIVE = (TaskStatus.IN_PROGRESS, TaskStatus.REVIEW, TaskStatus.BLOCKED)


@dataclass
class JournalEntry:
    seq: int
    kind: str
    at: float
    data: Dict[str, Any] = field(default_factory=dict)
    published: bool = False

    @property
    def batch_id(self) -> Optional[str]:
        if self.kind == SUBMIT:
            return self.data["batch"]["batch_id"]
        if self.kind == DECISION:
            return self.data["decision"].get("batch_id")
        return self.data["task"]["batch_id"]

    @property
    def task_id(self) -> Optional[str]:
        if self.kind == DECISION:
            return self.data["decision"]["task_id"]
        if self.kind in (TRANSITION, UPDATE):
            return self.data["task"]["task_id"]
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "kind": self.kind,
            "at": self.at,
            "data": self.data,
            "published": self.published,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JournalEntry":
        return cls(
            seq=data["seq"],
            kind=data["kind"],
            at=data.get("at", 0.0),
            data=data.get("data", {}),
            published=data.get("published", False),
        )


Listener = Callable[[JournalEntry], None]


class ContextStore:
    """Authoritative state with a JSONL write-ahead journal and checkpoints.

    With ``state_dir=None`` the store is memory-only; checkpoints are still
    produced but not written. ``journal_path`` and ``checkpoint_dir`` default
    to ``journal.jsonl`` and ``checkpoints/`` under ``state_dir``.

    The journal is never truncated: checkpoints only shorten replay, and
    event streams can always resume from sequence 0.
    """

    def __init__(
        self,
        state_dir: Optional[Union[str, Path]] = None,
        clock: Callable[[], float] = time.time,
        fsync: bool = False,
        journal_path: Optional[Union[str, Path]] = None,
        checkpoint_dir: Optional[Union[str, Path]] = None,
    ) -> None:
        self.state_dir = Path(state_dir) if state_dir is not None else None
        self._clock = clock
        self.journal_path: Optional[Path] = None
        self.checkpoint_dir: Optional[Path] = None
        self._journal_file = None
        self._checkpoints = None
        if self.state_dir is not None:
            self.journal_path = Path(journal_path or self.state_dir / "journal.jsonl")
            self.checkpoint_dir = Path(checkpoint_dir or self.state_dir / "checkpoints")
            self._journal_file = JournalFile(self.journal_path, fsync=fsync)
            self._checkpoints = CheckpointManager(self.checkpoint_dir)
        self._listeners: List[Listener] = []
        self._reset()

    def _reset(self) -> None:
        self._tasks: Dict[str, TaskRecord] = {}
        self._batches: Dict[str, Batch] = {}
        self._decisions: List[DecisionRecord] = []
        self._entries: List[JournalEntry] = []
        self._entry_seqs: List[int] = []
        self._unpublished: Dict[int, JournalEntry] = {}
        self._seq = 0
        self._next_created_seq = 0
        self._checkpoint_seq = 0
        self._decision_mark = 0
        self._transitions_since_checkpoint = 0
        self.last_checkpoint: Optional[Checkpoint] = None

    # ── Reads ────────────────────────────────────────────────────────

    @property
    def sequence(self) -> int:
        """Sequence number of the latest journal entry."""
        return self._seq

    @property
    def transitions_since_checkpoint(self) -> int:
        return self._transitions_since_checkpoint

    def find_task(self, task_id: str) -> Optional[TaskRecord]:
        return self._tasks.get(task_id)

    def get_task(self, task_id: str) -> TaskRecord:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Unknown task: {task_id}", task_id=task_id)
        return task

    def get_batch(self, batch_id: str) -> Batch:
        batch = self._batches.get(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Unknown batch: {batch_id}", details={"batch_id": batch_id})
        return batch

    def list_batches(self) -> List[Batch]:
        return sorted(self._batches.values(), key=lambda b: b.created_at)

    def list_tasks(
        self,
        batch_id: Optional[str] = None,
        statuses: Optional[Iterable[TaskStatus]] = None,
    ) -> List[TaskRecord]:
        wanted = set(statuses) if statuses is not None else None
        if batch_id is not None:
            tasks: Iterable[TaskRecord] = (
                self._tasks[tid] for tid in self.get_batch(batch_id).task_ids
            )
        else:
            tasks = self._tasks.values()
        selected = [t for t in tasks if wanted is None or t.status in wanted]
        return sorted(selected, key=lambda t: t.created_seq)

    def decisions(self, batch_id: Optional[str] = None, task_id: Optional[str] = None) -> List[DecisionRecord]:
        return [
            d for d in self._decisions
            if (batch_id is None or d.batch_id == batch_id)
            and (task_id is None or d.task_id == task_id)
        ]

    def journal(self, after_seq: int = 0, batch_id: Optional[str] = None) -> List[JournalEntry]:
        start = bisect.bisect_right(self._entry_seqs, after_seq)
        entries = self._entries[start:]
        if batch_id is not None:
            entries = [e for e in entries if e.batch_id == batch_id]
        return entries

    def unpublished(self) -> List[JournalEntry]:
        return [self._unpublished[seq] for seq in sorted(self._unpublished)]

    # ── Writes ───────────────────────────────────────────────────────

    def create_batch(self, batch: Batch, tasks: List[TaskRecord]) -> Batch:
        """Persist a validated batch and its tasks as one journal entry."""
        if batch.batch_id in self._batches:
            raise DuplicateTaskError(
                f"Batch already exists: {batch.batch_id}", details={"batch_id": batch.batch_id}
            )
        for task in tasks:
            if task.task_id in self._tasks:
                raise DuplicateTaskError(f"Task already exists: {task.task_id}", task_id=task.task_id)

        now = self._clock()
        stored = []
        for offset, task in enumerate(tasks):
            stored.append(task.evolve(
                batch_id=batch.batch_id,
                created_seq=self._next_created_seq + offset,
                created_at=now,
                updated_at=now,
                version=1,
            ))
        batch = replace(batch, task_ids=tuple(t.task_id for t in stored), created_at=now, invocations=0)
        self._append(
            SUBMIT,
            {"batch": batch.to_dict(), "tasks": [t.to_dict() for t in stored]},
            published=True,
        )
        logger.info("Batch %s submitted with %d tasks", batch.batch_id, len(stored))
        return self._batches[batch.batch_id]

    def commit(
        self,
        task_id: str,
        expected_version: int,
        changes: Dict[str, Any],
        reason: str = "",
        detail: Optional[Dict[str, Any]] = None,
    ) -> Tuple[TaskRecord, JournalEntry]:
        """Write ``changes`` to a task if it is still at ``expected_version``.

        A status change is journaled as an unpublished ``transition`` entry;
        anything else as a published ``update`` entry.
        """
        current = self.get_task(task_id)
        if current.version != expected_version:
            raise StorageWriteConflict(
                f"Stale write to {task_id}: expected version {expected_version}, found {current.version}",
                task_id=task_id,
                details={"expected": expected_version, "actual": current.version},
            )
        updated = current.evolve(
            **changes, version=current.version + 1, updated_at=self._clock()
        )
        is_transition = updated.status != current.status
        entry = self._append(
            TRANSITION if is_transition else UPDATE,
            {
                "task": updated.to_dict(),
                "from": current.status.value,
                "to": updated.status.value,
                "reason": reason,
                "detail": detail or {},
            },
            published=not is_transition,
        )
        return self._tasks[task_id], entry

    def append_decision(self, record: DecisionRecord) -> JournalEntry:
        return self._append(DECISION, {"decision": record.to_dict()}, published=True)

    def mark_published(self, seq: int) -> None:
        entry = self._unpublished.pop(seq, None)
        if entry is None:
            return
        entry.published = True
        if self._journal_file is not None:
            self._journal_file.append({"ack": seq})

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _append(self, kind: str, data: Dict[str, Any], published: bool) -> JournalEntry:
        # Normalise through JSON so live state matches what recovery rebuilds.
        data = json.loads(json.dumps(data, default=str))
        entry = JournalEntry(
            seq=self._seq + 1, kind=kind, at=self._clock(), data=data, published=published
        )
        if self._journal_file is not None:
            self._journal_file.append(entry.to_dict())
        self._seq = entry.seq
        self._record(entry)
        self._apply(entry)
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception:
                logger.exception("Journal listener failed on seq %d", entry.seq)
        return entry

    def _record(self, entry: JournalEntry) -> None:
        self._entries.append(entry)
        self._entry_seqs.append(entry.seq)
        if not entry.published:
            self._unpublished[entry.seq] = entry

    def _apply(self, entry: JournalEntry) -> None:
        if entry.kind == SUBMIT:
            batch = Batch.from_dict(entry.data["batch"])
            self._batches[batch.batch_id] = batch
            for raw in entry.data["tasks"]:
                task = TaskRecord.from_dict(raw)
                self._tasks[task.task_id] = task
                self._next_created_seq = max(self._next_created_seq, task.created_seq + 1)
        elif entry.kind in (TRANSITION, UPDATE):
            task = TaskRecord.from_dict(entry.data["task"])
            self._tasks[task.task_id] = task
            if entry.kind == TRANSITION:
                self._transitions_since_checkpoint += 1
                if task.status == TaskStatus.IN_PROGRESS:
                    batch = self._batches[task.batch_id]
                    self._batches[task.batch_id] = replace(batch, invocations=batch.invocations + 1)
        elif entry.kind == DECISION:
            self._decisions.append(DecisionRecord.from_dict(entry.data["decision"]))
        else:
            logger.warning("Unknown journal entry kind %r at seq %d", entry.kind, entry.seq)

    # ── Checkpoints & recovery ───────────────────────────────────────

    def is_consistent_cut(self) -> bool:
        """No active task is waiting on a dependency that has not completed."""
        for task in self._tasks.values():
            if task.status not in _ACTIVE:
                continue
            for dep in task.depends_on:
                upstream = self._tasks.get(dep)
                if upstream is None or upstream.status != TaskStatus.COMPLETED:
                    return False
        return True

    def checkpoint(self) -> Optional[Checkpoint]:
        """Snapshot the store; returns None if the current state is not a consistent cut."""
        if not self.is_consistent_cut():
            logger.warning("Skipping checkpoint at seq %d: not a consistent cut", self._seq)
            return None
        checkpoint = Checkpoint(
            sequence=self._checkpoint_seq + 1,
            journal_sequence=self._seq,
            tasks=dict(self._tasks),
            batches=dict(self._batches),
            decision_log=list(self._decisions[self._decision_mark:]),
            timestamp=self._clock(),
        )
        if self._checkpoints is not None:
            self._checkpoints.write(checkpoint)
        self._checkpoint_seq = checkpoint.sequence
        self._decision_mark = len(self._decisions)
        self._transitions_since_checkpoint = 0
        self.last_checkpoint = checkpoint
        return checkpoint

    def load(self) -> "ContextStore":
        """Rebuild state: highest checkpoint, then journal entries after it.

        A memory-only store keeps its state. Raises StorageCorruption on
        unreadable checkpoints or journal lines.
        """
        if self.state_dir is None:
            return self
        self._reset()

        checkpoints = self._checkpoints.load_all()
        replay_after = 0
        if checkpoints:
            latest = checkpoints[-1]
            self._tasks = dict(latest.tasks)
            self._batches = dict(latest.batches)
            for checkpoint in checkpoints:
                self._decisions.extend(checkpoint.decision_log)
            self._decision_mark = len(self._decisions)
            self._checkpoint_seq = latest.sequence
            self._seq = latest.journal_sequence
            self.last_checkpoint = latest
            replay_after = latest.journal_sequence
            self._next_created_seq = max((t.created_seq + 1 for t in self._tasks.values()), default=0)

        acks: Set[int] = set()
        replayed = 0
        for record in self._journal_file.read():
            if "ack" in record:
                acks.add(record["ack"])
                continue
            entry = JournalEntry.from_dict(record)
            self._record(entry)
            if entry.seq > replay_after:
                self._apply(entry)
                replayed += 1
            self._seq = max(self._seq, entry.seq)

        for seq in acks:
            entry = self._unpublished.pop(seq, None)
            if entry is not None:
                entry.published = True

        logger.info(
            "Context store loaded: checkpoint %d, %d journal entries replayed, %d unpublished",
            self._checkpoint_seq, replayed, len(self._unpublished),
        )
        return self

    def close(self) -> None:
        if self._journal_file is not None:
            self._journal_file.close()
