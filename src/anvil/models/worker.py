"""Worker model — in-memory record of one execution slot provider."""

from __future__ import annotations

import copy
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

DEFAULT_CAPABILITIES = ("build", "test", "lint", "deploy")


class WorkerType(str, enum.Enum):
    LOCAL = "local"
    REMOTE = "remote"
    CONTAINER = "container"
    KUBERNETES = "kubernetes"


class WorkerStatus(str, enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"  # Stopped; only seen on records that already left the registry
    BUSY = "busy"  # At capacity
    DRAINING = "draining"  # Finishing current work, not accepting new
    ERROR = "error"  # Missed heartbeat


@dataclass
class NetworkInfo:
    bandwidth: int = 100
    latency: int = 1
    region: str = "us-east-1"


@dataclass
class WorkerResources:
    """Declared capacity. Informational only, the pool does not enforce it."""

    cpu: int = 100
    memory: int = 1024
    disk: int = 10240
    network: NetworkInfo = field(default_factory=NetworkInfo)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass
class Worker:
    id: str
    name: str = ""
    type: WorkerType = WorkerType.LOCAL
    status: WorkerStatus = WorkerStatus.ONLINE
    capabilities: set[str] = field(default_factory=lambda: set(DEFAULT_CAPABILITIES))
    resources: WorkerResources = field(default_factory=WorkerResources)
    current_tasks: list[str] = field(default_factory=list)
    last_heartbeat: datetime = field(default_factory=_utcnow)
    registered_at: datetime = field(default_factory=_utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)
    # Launched by the pool itself; liveness comes from the launcher, not heartbeats
    managed: bool = False

    def __post_init__(self):
        if not self.name:
            self.name = f"Worker {self.id}"

    @property
    def load(self) -> int:
        return len(self.current_tasks)

    def snapshot(self) -> Worker:
        """Detached copy, safe to hand to callers outside the pool."""
        return copy.deepcopy(self)

    def info(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "status": self.status.value,
            "capabilities": sorted(self.capabilities),
            "resources": {
                "cpu": self.resources.cpu,
                "memory": self.resources.memory,
                "disk": self.resources.disk,
                "network": {
                    "bandwidth": self.resources.network.bandwidth,
                    "latency": self.resources.network.latency,
                    "region": self.resources.network.region,
                },
            },
            "current_tasks": list(self.current_tasks),
            "last_heartbeat": self.last_heartbeat.isoformat(),
            "registered_at": self.registered_at.isoformat(),
            "metadata": dict(self.metadata),
            "managed": self.managed,
        }
