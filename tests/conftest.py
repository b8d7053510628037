"""Shared fixtures for the DevMind test suite."""

import pytest

from devmind.agents.registry import AgentRegistry
from devmind.config.settings import Settings
from devmind.event_bus import MessageBus
from devmind.orchestration.orchestrator import Orchestrator
from devmind.scheduling.retry_strategies import RetryPolicy
from devmind.storage.context_store import ContextStore

from helpers import FakeClock


@pytest.fixture(autouse=True)
def _reset_container():
    from devmind import di_container
    di_container._container = None
    yield
    di_container._container = None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        state_dir=str(tmp_path / "state"),
        environment="test",
        tick_interval=0.01,
        default_capability_timeout=5.0,
        cancel_grace_period=0.05,
        checkpoint_every=0,
        retry_base_delay=0.0,
        retry_jitter=False,
        simulated_mode=False,
    )


@pytest.fixture
def store():
    return ContextStore()


@pytest.fixture
async def bus():
    message_bus = MessageBus(queue_size=16)
    yield message_bus
    await message_bus.close()


@pytest.fixture
def registry():
    return AgentRegistry(default_concurrency_limit=2)


@pytest.fixture
def make_orchestrator(store, bus, registry, settings):
    """Build an orchestrator over the shared store, bus and registry."""

    def _make(**overrides):
        kwargs = dict(
            store=store,
            bus=bus,
            registry=registry,
            settings=settings,
            retry_policy=RetryPolicy(base_delay=0.0, jitter=False),
        )
        kwargs.update(overrides)
        return Orchestrator(**kwargs)

    return _make
