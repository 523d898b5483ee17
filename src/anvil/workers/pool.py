"""Worker pool — registry of workers, least-loaded assignment, heartbeat and auto-scale loops."""

from __future__ import annotations
import asyncio
import logging
import secrets
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable

from anvil.daemon.scheduler import ControlLoops
from anvil.models.worker import Worker, WorkerResources, WorkerStatus, WorkerType
from anvil.workers.events import EventEmitter, Listener, PoolEvent

logger = logging.getLogger("anvil.workers.pool")

HEARTBEAT_JOB = "heartbeat-monitor"
AUTOSCALE_JOB = "auto-scale"


@dataclass
class WorkerPoolOptions:
    min_workers: int = 2
    max_workers: int = 10
    worker_timeout: float = 300.0  # seconds
    auto_scale: bool = False
    scale_threshold: float = 0.8
    capacity: int = 5  # concurrent tasks per worker
    heartbeat_interval: float = 5.0
    scale_interval: float = 30.0

    def __post_init__(self):
        if self.min_workers < 0 or self.max_workers < self.min_workers:
            raise ValueError(
                f"Invalid worker bounds: min={self.min_workers}, max={self.max_workers}"
            )
        if self.capacity < 1:
            raise ValueError(f"Worker capacity must be at least 1, got {self.capacity}")
        if not 0.0 <= self.scale_threshold <= 1.0:
            raise ValueError(f"scale_threshold must be within [0, 1], got {self.scale_threshold}")

    @classmethod
    def from_settings(cls, settings) -> WorkerPoolOptions:
        return cls(
            min_workers=settings.min_workers,
            max_workers=settings.max_workers,
            worker_timeout=(
                settings.worker_timeout_ms / 1000.0
                if settings.worker_timeout_ms is not None
                else settings.worker_timeout
            ),
            auto_scale=settings.auto_scale,
            scale_threshold=settings.scale_threshold,
            capacity=settings.worker_capacity,
            heartbeat_interval=settings.heartbeat_interval,
            scale_interval=settings.scale_interval,
        )


class WorkerLauncher:
    """Brings the process behind a worker up and down.

    The base launcher runs workers in-process, so both hooks are no-ops
    and its workers are alive for as long as the daemon is. Container or
    cluster backends override them; an exception from ``launch`` keeps the
    worker out of the registry, and an exception from ``terminate`` leaves
    it registered.

    ``is_alive`` is only asked about workers the pool launched itself.
    Workers announced by an agent prove liveness with heartbeats.
    """

    async def launch(self, worker: Worker) -> None:
        return None

    async def terminate(self, worker: Worker) -> None:
        return None

    async def is_alive(self, worker: Worker) -> bool:
        return True


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _generate_worker_id() -> str:
    return f"worker-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


class WorkerPool:
    """Owns every Worker record and hands out task slots.

        pool = WorkerPool(WorkerPoolOptions(min_workers=2, max_workers=4, auto_scale=True))
        await pool.start()
        worker_id = pool.assign_task("task-1")   # None when no capacity
        ...
        pool.release_task(worker_id, "task-1")
        await pool.stop()

    Callers get snapshots from ``get_worker``/``get_workers``; state only
    changes through the pool's own operations.
    """

    def __init__(
        self,
        options: WorkerPoolOptions | None = None,
        launcher: WorkerLauncher | None = None,
    ):
        self.options = options or WorkerPoolOptions()
        self._launcher = launcher or WorkerLauncher()
        self._workers: dict[str, Worker] = {}
        self._events = EventEmitter()
        self._loops = ControlLoops("worker-pool")
        self._running = False
        self._pending_spawns = 0
        self._draining: set[str] = set()
        self._drain_waiters: dict[str, asyncio.Event] = {}

    @property
    def running(self) -> bool:
        return self._running

    @property
    def size(self) -> int:
        return len(self._workers)

    @property
    def capacity(self) -> int:
        return self.options.capacity

    # ─── Events ───

    def on(self, event: PoolEvent | str, listener: Listener) -> None:
        self._events.on(event, listener)

    def off(self, event: PoolEvent | str, listener: Listener) -> None:
        self._events.off(event, listener)

    # ─── Lifecycle ───

    async def start(self) -> None:
        if self._running:
            return

        self._running = True
        logger.info(
            f"Starting worker pool (min={self.options.min_workers}, "
            f"max={self.options.max_workers}, auto_scale={self.options.auto_scale})"
        )

        await self.spawn_workers(self.options.min_workers)

        self._loops.start()
        self._loops.add_interval_job(
            HEARTBEAT_JOB, self.check_heartbeats, seconds=self.options.heartbeat_interval
        )
        if self.options.auto_scale:
            self._loops.add_interval_job(
                AUTOSCALE_JOB, self.autoscale, seconds=self.options.scale_interval
            )

        await self._events.emit(PoolEvent.POOL_STARTED, {"workers": self.size})

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        logger.info("Stopping worker pool")

        # Loops go first so a scale-up cannot race the teardown
        self._loops.stop()

        worker_ids = list(self._workers)
        results = await asyncio.gather(
            *(self.stop_worker(worker_id) for worker_id in worker_ids),
            return_exceptions=True,
        )
        for worker_id, result in zip(worker_ids, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to stop worker {worker_id}: {result}")

        await self._events.emit(PoolEvent.POOL_STOPPED, {"workers": self.size})

    def list_jobs(self) -> list[dict]:
        return self._loops.list_jobs()

    # ─── Registry ───

    async def spawn_workers(self, count: int) -> list[Worker]:
        """Spawn ``count`` workers concurrently. Failures are logged, not raised."""
        results = await asyncio.gather(
            *(self.spawn_worker() for _ in range(count)),
            return_exceptions=True,
        )
        spawned = []
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Failed to spawn worker: {result}")
            else:
                spawned.append(result)
        return spawned

    async def spawn_worker(
        self,
        worker_type: WorkerType | str = WorkerType.LOCAL,
        capabilities: Iterable[str] | None = None,
        resources: WorkerResources | None = None,
        name: str | None = None,
        worker_id: str | None = None,
        metadata: dict | None = None,
    ) -> Worker:
        """Create and register a worker; returns a snapshot of it.

        Registering an id that is already present refreshes its heartbeat
        instead of creating a second record.
        """
        if worker_id and worker_id in self._workers:
            await self.update_heartbeat(worker_id)
            return self._workers[worker_id].snapshot()

        worker = Worker(
            id=worker_id or _generate_worker_id(),
            name=name or "",
            type=WorkerType(worker_type),
            resources=resources or WorkerResources(),
            metadata=dict(metadata or {}),
            managed=worker_id is None,
        )
        if capabilities is not None:
            worker.capabilities = set(capabilities)

        self._pending_spawns += 1
        try:
            await self._launcher.launch(worker)
        finally:
            self._pending_spawns -= 1

        existing = self._workers.get(worker.id)
        if existing is not None:
            # Registered by someone else while we were launching
            await self._launcher.terminate(worker)
            return existing.snapshot()

        worker.status = WorkerStatus.ONLINE
        worker.last_heartbeat = _utcnow()
        self._workers[worker.id] = worker
        logger.info(f"Spawned worker {worker.id} ({worker.type.value})")
        await self._events.emit(PoolEvent.WORKER_SPAWNED, {"worker": worker.info()})
        return worker.snapshot()

    async def stop_worker(self, worker_id: str) -> list[str]:
        """Stop and remove a worker. Returns the task ids it was still holding.

        Held tasks are force-failed: the record leaves the registry with an
        empty task list and the ids are reported in the ``worker:stopped``
        event so the orchestrator can requeue or fail them.
        """
        worker = self._workers.get(worker_id)
        if worker is None:
            return []

        await self._launcher.terminate(worker)

        worker = self._workers.pop(worker_id, None)
        if worker is None:
            return []

        worker.status = WorkerStatus.OFFLINE
        failed_tasks = list(worker.current_tasks)
        worker.current_tasks.clear()
        self._finish_drain(worker_id)

        if failed_tasks:
            logger.warning(
                f"Worker {worker_id} stopped with {len(failed_tasks)} task(s) in flight: "
                f"{', '.join(failed_tasks)}"
            )
        logger.info(f"Stopped worker {worker_id}")
        await self._events.emit(
            PoolEvent.WORKER_STOPPED,
            {"worker": worker.info(), "failed_tasks": failed_tasks},
        )
        return failed_tasks

    async def drain_worker(self, worker_id: str, timeout: float | None = None) -> list[str]:
        """Stop handing tasks to a worker, wait for it to empty, then stop it.

        Returns the task ids still held when ``timeout`` ran out (empty on a
        clean drain).
        """
        worker = self._workers.get(worker_id)
        if worker is None:
            return []

        try:
            if worker.current_tasks:
                self._draining.add(worker_id)
                if worker.status != WorkerStatus.ERROR:
                    worker.status = WorkerStatus.DRAINING
                waiter = self._drain_waiters.setdefault(worker_id, asyncio.Event())
                logger.info(f"Draining worker {worker_id} ({len(worker.current_tasks)} task(s) left)")
                try:
                    await asyncio.wait_for(waiter.wait(), timeout)
                except asyncio.TimeoutError:
                    remaining = self._workers.get(worker_id)
                    left = len(remaining.current_tasks) if remaining else 0
                    logger.warning(f"Drain of worker {worker_id} timed out with {left} task(s) left")

            return await self.stop_worker(worker_id)
        except (Exception, asyncio.CancelledError):
            self._abort_drain(worker_id)
            raise

    def get_worker(self, worker_id: str) -> Worker | None:
        worker = self._workers.get(worker_id)
        return worker.snapshot() if worker else None

    def get_workers(
        self,
        status: WorkerStatus | str | None = None,
        worker_type: WorkerType | str | None = None,
    ) -> list[Worker]:
        workers = list(self._workers.values())
        if status is not None:
            workers = [w for w in workers if w.status == WorkerStatus(status)]
        if worker_type is not None:
            workers = [w for w in workers if w.type == WorkerType(worker_type)]
        return [w.snapshot() for w in workers]

    # ─── Assignment ───

    def assign_task(self, task_id: str) -> str | None:
        """Give ``task_id`` to the least-loaded online worker.

        Returns the worker id, or None when no online worker has a free slot.
        Ties go to the lowest worker id.
        """
        candidates = [
            w for w in self._workers.values()
            if w.status == WorkerStatus.ONLINE and w.load < self.capacity
        ]
        if not candidates:
            logger.warning(f"No available workers for task {task_id}")
            return None

        worker = min(candidates, key=lambda w: (w.load, w.id))
        worker.current_tasks.append(task_id)
        if worker.load >= self.capacity:
            worker.status = WorkerStatus.BUSY

        logger.debug(f"Assigned task {task_id} to worker {worker.id}")
        return worker.id

    def release_task(self, worker_id: str, task_id: str) -> bool:
        """Free a task slot. Returns True if the worker was holding the task."""
        worker = self._workers.get(worker_id)
        if worker is None:
            return False

        held = task_id in worker.current_tasks
        worker.current_tasks = [t for t in worker.current_tasks if t != task_id]

        if worker.status == WorkerStatus.BUSY and worker.load < self.capacity:
            worker.status = WorkerStatus.ONLINE

        if worker_id in self._draining and not worker.current_tasks:
            self._drain_waiters.setdefault(worker_id, asyncio.Event()).set()

        logger.debug(f"Released task {task_id} from worker {worker_id}")
        return held

    # ─── Health ───

    async def update_heartbeat(self, worker_id: str) -> bool:
        """Record a liveness signal. Returns False for unknown workers."""
        worker = self._workers.get(worker_id)
        if worker is None:
            return False

        worker.last_heartbeat = _utcnow()
        if worker.status == WorkerStatus.ERROR:
            worker.status = self._settled_status(worker)
            logger.info(f"Worker {worker_id} recovered ({worker.status.value})")
            await self._events.emit(PoolEvent.WORKER_RECOVERED, {"worker": worker.info()})
        return True

    async def check_heartbeats(self, now: datetime | None = None) -> list[str]:
        """One heartbeat-monitor tick. Returns ids that just became unhealthy.

        Workers the pool launched are asked about through the launcher and
        get their heartbeat refreshed while it reports them alive. Everyone
        else must have heartbeated within ``worker_timeout``. A worker
        already in error is skipped, so ``worker:unhealthy`` fires once per
        transition rather than once per tick.
        """
        now = now or _utcnow()
        timeout = timedelta(seconds=self.options.worker_timeout)
        probes = await self._probe_managed_workers()

        unhealthy = []
        recovered = []
        for worker in self._workers.values():
            alive = probes.get(worker.id)
            if alive:
                worker.last_heartbeat = now
                if worker.status == WorkerStatus.ERROR:
                    worker.status = self._settled_status(worker)
                    logger.info(f"Worker {worker.id} recovered ({worker.status.value})")
                    recovered.append(worker)
                continue
            if worker.status == WorkerStatus.ERROR:
                continue
            if alive is False:
                logger.warning(f"Worker {worker.id} reported dead by its launcher")
                worker.status = WorkerStatus.ERROR
                unhealthy.append(worker)
            elif now - worker.last_heartbeat > timeout:
                logger.warning(f"Worker {worker.id} missed heartbeat")
                worker.status = WorkerStatus.ERROR
                unhealthy.append(worker)

        for worker in recovered:
            await self._events.emit(PoolEvent.WORKER_RECOVERED, {"worker": worker.info()})
        for worker in unhealthy:
            await self._events.emit(PoolEvent.WORKER_UNHEALTHY, {"worker": worker.info()})
        return [w.id for w in unhealthy]

    async def _probe_managed_workers(self) -> dict[str, bool]:
        managed = [w for w in self._workers.values() if w.managed]
        results = await asyncio.gather(
            *(self._launcher.is_alive(w) for w in managed),
            return_exceptions=True,
        )
        probes = {}
        for worker, result in zip(managed, results):
            if isinstance(result, Exception):
                logger.error(f"Liveness check for worker {worker.id} failed: {result}")
                result = False
            probes[worker.id] = bool(result)
        return probes

    # ─── Scaling ───

    async def autoscale(self) -> str | None:
        """One auto-scale tick: at most one worker added or removed.

        Returns "up", "down" or None. Spawn and stop failures are logged and
        swallowed so the loop keeps running.
        """
        stats = self.get_stats()
        utilization = stats["utilization"]
        threshold = self.options.scale_threshold
        size = self.size + self._pending_spawns

        if utilization > threshold and size < self.options.max_workers:
            try:
                worker = await self.spawn_worker()
            except Exception:
                logger.exception("Failed to spawn worker during auto-scaling")
                return None
            logger.info(
                f"Scaled up: spawned {worker.id} (utilization={utilization:.2f}, workers={self.size})"
            )
            return "up"

        if utilization < threshold * 0.5 and self.size > self.options.min_workers:
            idle = self._find_idle_worker()
            if idle is None:
                return None
            try:
                await self.stop_worker(idle.id)
            except Exception:
                logger.exception(f"Failed to stop worker {idle.id} during auto-scaling")
                return None
            logger.info(
                f"Scaled down: stopped {idle.id} (utilization={utilization:.2f}, workers={self.size})"
            )
            return "down"

        return None

    def _find_idle_worker(self) -> Worker | None:
        for worker in self._workers.values():
            if worker.status == WorkerStatus.ONLINE and not worker.current_tasks:
                return worker
        return None

    # ─── Stats ───

    def get_stats(self) -> dict:
        counts = Counter(w.status for w in self._workers.values())
        total_tasks = sum(w.load for w in self._workers.values())
        total_capacity = self.size * self.capacity
        return {
            "total": self.size,
            "online": counts[WorkerStatus.ONLINE],
            "busy": counts[WorkerStatus.BUSY],
            "error": counts[WorkerStatus.ERROR],
            "draining": counts[WorkerStatus.DRAINING],
            "utilization": total_tasks / total_capacity if total_capacity else 0.0,
        }

    def info(self) -> dict:
        return {
            "running": self._running,
            "capacity_per_worker": self.capacity,
            "stats": self.get_stats(),
            "workers": [w.info() for w in self._workers.values()],
        }

    # ─── Internals ───

    def _settled_status(self, worker: Worker) -> WorkerStatus:
        if worker.id in self._draining:
            return WorkerStatus.DRAINING
        if worker.load >= self.capacity:
            return WorkerStatus.BUSY
        return WorkerStatus.ONLINE

    def _abort_drain(self, worker_id: str) -> None:
        # Worker is still registered; make it assignable again
        self._finish_drain(worker_id)
        worker = self._workers.get(worker_id)
        if worker is not None and worker.status == WorkerStatus.DRAINING:
            worker.status = self._settled_status(worker)
            logger.warning(f"Drain of worker {worker_id} failed, back to {worker.status.value}")

    def _finish_drain(self, worker_id: str) -> None:
        self._draining.discard(worker_id)
        waiter = self._drain_waiters.pop(worker_id, None)
        if waiter is not None:
            waiter.set()
