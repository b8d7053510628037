from devmind.agents.dispatcher import Dispatcher
from devmind.agents.registry import AgentRegistry, ConcurrencySlot
from devmind.agents.workers import SimulatedWorker, load_worker_plugins, register_simulated_workers

__all__ = [
    "AgentRegistry",
    "ConcurrencySlot",
    "Dispatcher",
    "SimulatedWorker",
    "load_worker_plugins",
    "register_simulated_workers",
]
