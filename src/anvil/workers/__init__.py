"""Worker pool — registry, assignment, heartbeat and auto-scale loops."""

from anvil.workers.events import PoolEvent
from anvil.workers.pool import WorkerPool, WorkerPoolOptions, WorkerLauncher
from anvil.workers.agent import WorkerAgent

__all__ = ["PoolEvent", "WorkerPool", "WorkerPoolOptions", "WorkerLauncher", "WorkerAgent"]
