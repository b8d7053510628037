"""Test doubles shared across test modules."""

import asyncio

from devmind.interfaces.task import TaskSpec
from devmind.interfaces.worker import WorkerResult


class FakeClock:
    """Manually advanced clock for deterministic aging and backoff."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedWorker:
    """Worker whose behaviour per invocation is scripted.

    ``script`` items: a value (returned as output), an exception instance
    (raised), or the string "hang" (sleep until cancelled).
    """

    def __init__(self, *script, subject=None, default="ok"):
        self.script = list(script)
        self.subject = subject
        self.default = default
        self.calls = []

    async def invoke(self, payload, cancel_token):
        self.calls.append(payload)
        step = self.script.pop(0) if self.script else self.default
        if isinstance(step, str) and step == "hang":
            await asyncio.sleep(3600)
        if isinstance(step, BaseException):
            raise step
        return WorkerResult(output=step, subject=self.subject)


def spec(task_id, capability="code", depends_on=(), **kwargs):
    return TaskSpec(task_id=task_id, capability=capability, depends_on=frozenset(depends_on), **kwargs)
