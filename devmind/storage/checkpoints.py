"""Checkpoint files and the write-ahead journal on disk.

Layout under ``state_dir``::

    journal.jsonl                  one JSON object per line, strictly increasing "seq"
    checkpoints/000000000003.json  {sequence, journal_sequence, tasks, batches, decisionLog, timestamp}

Publication acknowledgements are appended to the journal as ``{"ack": seq}``
lines so a crash between commit and publish can be detected on restart.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from devmind.exceptions_unified import StorageCorruption, StorageError
from devmind.interfaces.task import Checkpoint

logger = logging.getLogger(__name__)


class CheckpointManager:
    """Writes and reads numbered checkpoint files atomically."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def path_for(self, sequence: int) -> Path:
        return self.directory / f"{sequence:012d}.json"

    def sequences(self) -> List[int]:
        if not self.directory.exists():
            return []
        found = []
        for path in self.directory.glob("*.json"):
            try:
                found.append(int(path.stem))
            except ValueError:
                logger.warning("Ignoring stray file in checkpoint dir: %s", path.name)
        return sorted(found)

    def write(self, checkpoint: Checkpoint) -> Path:
        existing = self.sequences()
        if existing and checkpoint.sequence <= existing[-1]:
            raise StorageError(
                f"Checkpoint sequence {checkpoint.sequence} is not above {existing[-1]}"
            )
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(checkpoint.sequence)
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(checkpoint.to_dict(), f, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
        logger.info(
            "Checkpoint %d written (journal seq %d, %d tasks)",
            checkpoint.sequence, checkpoint.journal_sequence, len(checkpoint.tasks),
        )
        return path

    def load(self, sequence: int) -> Checkpoint:
        path = self.path_for(sequence)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            checkpoint = Checkpoint.from_dict(data)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise StorageCorruption(
                f"Checkpoint {path.name} is unreadable: {e}", details={"path": str(path)}
            ) from e
        if checkpoint.sequence != sequence:
            raise StorageCorruption(
                f"Checkpoint {path.name} claims sequence {checkpoint.sequence}",
                details={"path": str(path)},
            )
        return checkpoint

    def load_all(self) -> List[Checkpoint]:
        """Every checkpoint, oldest first. Decision slices concatenate in this order."""
        return [self.load(seq) for seq in self.sequences()]

    def latest(self) -> Optional[Checkpoint]:
        sequences = self.sequences()
        return self.load(sequences[-1]) if sequences else None


class JournalFile:
    """Append-only JSONL write-ahead log."""

    def __init__(self, path: Path, fsync: bool = False) -> None:
        self.path = Path(path)
        self.fsync = fsync
        self._handle = None

    def append(self, record: Dict[str, Any]) -> None:
        if self._handle is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = open(self.path, "a", encoding="utf-8")
        self._handle.write(json.dumps(record, default=str) + "\n")
        self._handle.flush()
        if self.fsync:
            os.fsync(self._handle.fileno())

    def read(self) -> Iterator[Dict[str, Any]]:
        """Yield journal records; raise StorageCorruption on bad lines or ordering."""
        if not self.path.exists():
            return
        last_seq = 0
        with open(self.path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError as e:
                    raise StorageCorruption(
                        f"Journal line {lineno} is not valid JSON: {e}",
                        details={"path": str(self.path), "line": lineno},
                    ) from e
                if "ack" in record:
                    yield record
                    continue
                seq = record.get("seq")
                if not isinstance(seq, int) or seq <= last_seq:
                    raise StorageCorruption(
                        f"Journal line {lineno} has non-increasing sequence {seq!r} after {last_seq}",
                        details={"path": str(self.path), "line": lineno},
                    )
                last_seq = seq
                yield record

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None
