"""Persistence: context store, journal and checkpoints."""
from devmind.storage.checkpoints import CheckpointManager, JournalFile
from devmind.storage.context_store import ContextStore, JournalEntry

__all__ = ["CheckpointManager", "ContextStore", "JournalEntry", "JournalFile"]
