"""Dependency injection container for DevMind.

Lightweight wiring of core services at application startup.
Uses lazy initialization: services are created on first access.
"""

import logging
from typing import Any, Dict, Optional

from devmind.config.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class DevMindContainer:
    """Central service container for the orchestration core."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings
        self._store = None
        self._bus = None
        self._registry = None
        self._orchestrator = None
        self._recovered = False

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def store(self):
        if self._store is None:
            from devmind.storage.context_store import ContextStore
            self.settings.ensure_directories()
            self._store = ContextStore(
                self.settings.state_dir,
                journal_path=self.settings.journal_path,
                checkpoint_dir=self.settings.checkpoint_dir,
            )
            logger.info("ContextStore initialized at %s", self.settings.state_dir)
        return self._store

    @property
    def bus(self):
        if self._bus is None:
            from devmind.event_bus import MessageBus
            self._bus = MessageBus(
                queue_size=self.settings.bus_queue_size,
                max_redeliveries=self.settings.bus_max_redeliveries,
                history_size=self.settings.bus_history_size,
            )
        return self._bus

    @property
    def registry(self):
        if self._registry is None:
            from devmind.agents.registry import AgentRegistry
            from devmind.agents.workers import load_worker_plugins, register_simulated_workers
            self._registry = AgentRegistry(
                default_concurrency_limit=self.settings.default_concurrency_limit,
                capability_limits=self.settings.capability_limits,
            )
            loaded = load_worker_plugins(
                self._registry, self.settings.worker_plugins, self.settings.capability_limits
            )
            if self.settings.simulated_mode:
                register_simulated_workers(self._registry)
            logger.info(
                "AgentRegistry initialized (%d plugins, simulated=%s)", loaded, self.settings.simulated_mode
            )
        return self._registry

    @property
    def orchestrator(self):
        if self._orchestrator is None:
            from devmind.orchestration.orchestrator import Orchestrator
            self._orchestrator = Orchestrator(
                store=self.store,
                bus=self.bus,
                registry=self.registry,
                settings=self.settings,
            )
            logger.info("Orchestrator initialized")
        return self._orchestrator

    async def ready_orchestrator(self):
        """The orchestrator with persisted state recovered (once per container)."""
        orchestrator = self.orchestrator
        if not self._recovered:
            await orchestrator.recover()
            self._recovered = True
        return orchestrator

    async def close(self) -> None:
        if self._orchestrator is not None:
            await self._orchestrator.stop()
            self._orchestrator.events.close()
        if self._bus is not None:
            await self._bus.close()
        if self._store is not None:
            self._store.close()

    def status(self) -> Dict[str, Any]:
        """Report which services are initialized."""
        return {
            "store": self._store is not None,
            "bus": self._bus is not None,
            "registry": self._registry is not None,
            "orchestrator": self._orchestrator is not None,
            "recovered": self._recovered,
        }


# Global container
_container: Optional[DevMindContainer] = None


def get_container() -> DevMindContainer:
    global _container
    if _container is None:
        _container = DevMindContainer()
    return _container


def init_container(settings: Optional[Settings] = None) -> DevMindContainer:
    global _container
    _container = DevMindContainer(settings)
    return _container


async def shutdown_container() -> None:
    global _container
    if _container is not None:
        await _container.close()
    _container = None
