"""Anvil — build-orchestration core: worker pool, auto-scaling and realtime gateway."""

__version__ = "0.1.0"

from anvil.workers.pool import WorkerPool, WorkerPoolOptions
from anvil.realtime.gateway import RealtimeGateway

__all__ = ["WorkerPool", "WorkerPoolOptions", "RealtimeGateway", "__version__"]
