"""Worker agent — runs beside a remote or container worker and keeps it registered."""

from __future__ import annotations
import asyncio
import logging
import socket
from typing import Iterable

import httpx

from anvil.models.worker import DEFAULT_CAPABILITIES, WorkerType

logger = logging.getLogger("anvil.workers.agent")


class WorkerAgent:
    """Registers a worker with an Anvil daemon and pushes heartbeats.

    For distributed deployments:
    - Each remote host runs one agent (`anvil agent --host http://coordinator:3000`)
    - Communication via HTTP (same API the CLI uses)
    - The coordinator marks the worker unhealthy if heartbeats stop
    - A heartbeat answered with 404 means the coordinator forgot us
      (restart, forced removal), so the agent registers again
    """

    def __init__(
        self,
        host: str,
        api_key: str,
        worker_id: str | None = None,
        worker_type: WorkerType | str = WorkerType.REMOTE,
        capabilities: Iterable[str] | None = None,
        name: str | None = None,
        heartbeat_interval: float = 5.0,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.host = host.rstrip("/")
        self.api_key = api_key
        self.worker_id = worker_id or f"{socket.gethostname()}-agent"
        self.worker_type = WorkerType(worker_type)
        self.capabilities = list(capabilities or DEFAULT_CAPABILITIES)
        self.name = name
        self.heartbeat_interval = heartbeat_interval
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._registered = False

    @property
    def registered(self) -> bool:
        return self._registered

    async def connect(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self.host,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self._timeout,
            transport=self._transport,
        )
        try:
            resp = await self._client.get("/health")
            resp.raise_for_status()
        except httpx.HTTPError as e:
            await self._client.aclose()
            self._client = None
            raise ConnectionError(f"Cannot reach coordinator at {self.host}: {e}") from e
        logger.info(f"[{self.worker_id}] Connected to {self.host}")

    async def disconnect(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        await self.connect()
        await self.register()
        return self

    async def __aexit__(self, *args):
        try:
            await self.deregister()
        finally:
            await self.disconnect()

    def _require_client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError(f"Agent {self.worker_id} not connected")
        return self._client

    async def register(self) -> dict:
        client = self._require_client()
        resp = await client.post(
            "/api/v1/workers/register",
            json={
                "worker_id": self.worker_id,
                "type": self.worker_type.value,
                "capabilities": self.capabilities,
                "name": self.name,
            },
        )
        resp.raise_for_status()
        self._registered = True
        logger.info(f"[{self.worker_id}] Registered with {self.host}")
        return resp.json()

    async def heartbeat(self) -> dict:
        client = self._require_client()
        resp = await client.post(f"/api/v1/workers/{self.worker_id}/heartbeat")
        if resp.status_code == 404:
            logger.warning(f"[{self.worker_id}] Coordinator does not know us, re-registering")
            self._registered = False
            return await self.register()
        resp.raise_for_status()
        return resp.json()

    async def deregister(self) -> None:
        if not self._client or not self._registered:
            return
        resp = await self._client.delete(f"/api/v1/workers/{self.worker_id}")
        if resp.status_code not in (200, 404):
            resp.raise_for_status()
        self._registered = False
        logger.info(f"[{self.worker_id}] Deregistered from {self.host}")

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Heartbeat until ``stop`` is set. Transient HTTP errors are logged and retried."""
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await self.heartbeat()
            except httpx.HTTPError as e:
                logger.error(f"[{self.worker_id}] Heartbeat failed: {e}")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.heartbeat_interval)
            except asyncio.TimeoutError:
                pass
