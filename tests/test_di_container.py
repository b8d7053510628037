"""Tests for devmind.di_container."""

import pytest

from devmind import di_container
from devmind.di_container import DevMindContainer, get_container, init_container, shutdown_container


def test_get_container_is_singleton():
    assert get_container() is get_container()


def test_init_container_replaces_global(settings):
    first = get_container()
    second = init_container(settings)
    assert second is not first
    assert get_container() is second
    assert second.settings is settings


def test_services_are_lazy(settings):
    container = DevMindContainer(settings)
    assert container.status() == {
        "store": False,
        "bus": False,
        "registry": False,
        "orchestrator": False,
        "recovered": False,
    }
    assert container.orchestrator.store is container.store
    assert all(container.status()[name] for name in ("store", "bus", "registry", "orchestrator"))


def test_store_uses_state_dir(settings):
    container = DevMindContainer(settings)
    assert str(container.store.state_dir) == settings.state_dir
    assert settings.checkpoint_dir.is_dir()
    assert container.store.journal_path == settings.journal_path
    assert container.store.checkpoint_dir == settings.checkpoint_dir


def test_simulated_mode_registers_template_agents(settings):
    container = DevMindContainer(settings.model_copy(update={"simulated_mode": True}))
    assert container.registry.capabilities() == ["architect", "doc", "refactor", "vision"]
    assert DevMindContainer(settings).registry.list_agents() == []


def test_worker_plugins_registered(settings):
    plugins = {"code": "devmind.agents.workers:SimulatedWorker"}
    container = DevMindContainer(settings.model_copy(update={"worker_plugins": plugins}))
    assert [a.agent_id for a in container.registry.list_agents()] == ["code-agent"]


@pytest.mark.asyncio
async def test_ready_orchestrator_recovers_once(settings):
    container = init_container(settings)
    orchestrator = await container.ready_orchestrator()
    assert container.status()["recovered"]
    assert await container.ready_orchestrator() is orchestrator
    await shutdown_container()
    assert di_container._container is None
    assert container.bus.closed
