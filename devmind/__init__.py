"""DevMind orchestration core: task graphs, scheduling and agent dispatch."""

__version__ = "0.2.0"
