"""Tests for slot reservation and worker invocation (devmind/agents/dispatcher.py)."""

import asyncio

import pytest

from devmind.agents.dispatcher import Dispatcher
from devmind.exceptions_unified import (
    AgentBusyError,
    AgentUnavailableError,
    CapabilityError,
    CapabilityTimeoutError,
    PreconditionMissingError,
)
from devmind.interfaces.event_bus import Topic
from devmind.scheduling.dependency_resolver import TaskGraphManager
from helpers import ScriptedWorker, spec


@pytest.fixture
def seeded(store):
    TaskGraphManager(store).submit([spec("a"), spec("b"), spec("c")], batch_id="b1")
    return store


@pytest.fixture
def dispatcher(seeded, registry, bus):
    return Dispatcher(seeded, registry, bus, default_timeout=1.0, cancel_grace_period=0.05)


@pytest.fixture
async def results(bus):
    received = []

    async def on_result(message):
        received.append(message.payload)

    await bus.subscribe(Topic.TASK_RESULT, on_result)
    return received


# ========================================================================
# RESERVATION
# ========================================================================


class TestReservation:

    def test_agent_limit(self, registry, dispatcher):
        registry.register_worker("coder", ScriptedWorker(), ["code"], concurrency_limit=1)
        dispatcher.dispatch("a", "coder")
        with pytest.raises(AgentBusyError):
            dispatcher.dispatch("b", "coder")
        assert registry.get("coder").in_flight == 1

    def test_unknown_agent_or_capability(self, registry, dispatcher):
        registry.register_worker("writer", ScriptedWorker(), ["doc"])
        with pytest.raises(AgentUnavailableError):
            dispatcher.dispatch("a", "ghost")
        with pytest.raises(AgentUnavailableError):
            dispatcher.dispatch("a", "writer")

    def test_task_reserved_once(self, registry, dispatcher):
        registry.register_worker("coder", ScriptedWorker(), ["code"], concurrency_limit=3)
        dispatcher.dispatch("a", "coder")
        with pytest.raises(AgentBusyError):
            dispatcher.dispatch("a", "coder")

    def test_release_is_idempotent(self, registry, dispatcher):
        registry.register_worker("coder", ScriptedWorker(), ["code"], concurrency_limit=1)
        registry.set_capability_limit("code", 1)
        reserved = dispatcher.dispatch("a", "coder")
        dispatcher.release(reserved)
        dispatcher.release(reserved)
        assert registry.get("coder").in_flight == 0
        assert registry.get_concurrency_status()["code"]["active"] == 0
        assert dispatcher.in_flight() == 0

    def test_release_after_unregister(self, registry, dispatcher):
        registry.register_worker("coder", ScriptedWorker(), ["code"])
        reserved = dispatcher.dispatch("a", "coder")
        registry.unregister("coder")
        dispatcher.release(reserved)
        assert dispatcher.in_flight() == 0


# ========================================================================
# INVOCATION
# ========================================================================


class TestInvoke:

    @pytest.mark.asyncio
    async def test_success_publishes_completed(self, registry, dispatcher, bus, results):
        worker = ScriptedWorker({"lines": 3}, subject="module.py")
        registry.register_worker("coder", worker, ["code"])
        outcome = await dispatcher.invoke(dispatcher.dispatch("a", "coder"))
        await bus.drain()

        assert outcome["outcome"] == "completed"
        assert outcome["result"] == {"lines": 3}
        assert outcome["subject"] == "module.py"
        assert results == [outcome]
        assert worker.calls[0].task_id == "a"
        assert worker.calls[0].batch_id == "b1"
        assert registry.get("coder").in_flight == 0

    @pytest.mark.asyncio
    async def test_timeout_enforced_by_dispatcher(self, registry, seeded, bus):
        registry.register_worker("coder", ScriptedWorker("hang"), ["code"])
        dispatcher = Dispatcher(seeded, registry, bus, default_timeout=5.0, capability_timeouts={"code": 0.05})
        outcome = await dispatcher.invoke(dispatcher.dispatch("a", "coder"))

        assert outcome["outcome"] == "error"
        assert outcome["error"]["kind"] == "timeout"
        assert outcome["error"]["details"] == {"timeout": 0.05, "task_id": "a"}
        assert not dispatcher.is_running("a")
        assert dispatcher.in_flight() == 0

    @pytest.mark.asyncio
    async def test_precondition_missing_is_blocked(self, registry, dispatcher):
        missing = PreconditionMissingError("needs API key", details={"secret": "API_KEY"})
        registry.register_worker("coder", ScriptedWorker(missing), ["code"])
        outcome = await dispatcher.invoke(dispatcher.dispatch("a", "coder"))
        assert outcome["outcome"] == "blocked"
        assert outcome["error"]["kind"] == "precondition"
        assert outcome["error"]["details"]["secret"] == "API_KEY"

    @pytest.mark.asyncio
    async def test_worker_reported_timeout_keeps_timeout_kind(self, registry, dispatcher):
        upstream = CapabilityTimeoutError("model API timed out", details={"provider": "llm"})
        registry.register_worker("coder", ScriptedWorker(upstream), ["code"])
        outcome = await dispatcher.invoke(dispatcher.dispatch("a", "coder"))
        assert outcome["outcome"] == "error"
        assert outcome["error"] == {"kind": "timeout", "message": "model API timed out", "details": {"provider": "llm"}}

    @pytest.mark.asyncio
    async def test_capability_error_is_worker_error(self, registry, dispatcher):
        registry.register_worker("coder", ScriptedWorker(CapabilityError("bad output")), ["code"])
        outcome = await dispatcher.invoke(dispatcher.dispatch("a", "coder"))
        assert outcome["outcome"] == "error"
        assert outcome["error"] == {"kind": "worker", "message": "bad output", "details": {}}

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_worker_error(self, registry, dispatcher):
        registry.register_worker("coder", ScriptedWorker(KeyError("x")), ["code"])
        outcome = await dispatcher.invoke(dispatcher.dispatch("a", "coder"))
        assert outcome["error"]["kind"] == "worker"
        assert "KeyError" in outcome["error"]["message"]

    @pytest.mark.asyncio
    async def test_broken_factory_reported(self, registry, dispatcher):
        def factory():
            raise RuntimeError("cannot build")

        registry.register_factory("code", factory)
        outcome = await dispatcher.invoke(dispatcher.dispatch("a", "code-agent"))
        assert outcome["outcome"] == "error"
        assert "cannot build" in outcome["error"]["message"]

    @pytest.mark.asyncio
    async def test_cancel_after_grace_period(self, registry, dispatcher):
        registry.register_worker("coder", ScriptedWorker("hang"), ["code"])
        running = asyncio.create_task(dispatcher.invoke(dispatcher.dispatch("a", "coder")))
        await asyncio.sleep(0.01)
        assert dispatcher.is_running("a")
        assert dispatcher.cancel("a", "operator stop")

        outcome = await asyncio.wait_for(running, timeout=1.0)
        assert outcome["outcome"] == "cancelled"
        assert outcome["error"]["message"] == "operator stop"
        assert not dispatcher.cancel("a")

    @pytest.mark.asyncio
    async def test_concurrent_invocations_share_worker(self, registry, dispatcher):
        worker = ScriptedWorker()
        registry.register_worker("coder", worker, ["code"], concurrency_limit=3)
        outcomes = await asyncio.gather(*(
            dispatcher.invoke(dispatcher.dispatch(tid, "coder")) for tid in ("a", "b", "c")
        ))
        assert [o["outcome"] for o in outcomes] == ["completed"] * 3
        assert sorted(p.task_id for p in worker.calls) == ["a", "b", "c"]
