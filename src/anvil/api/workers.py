"""Worker API endpoints — worker pool management and task slots."""

import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from anvil.api.deps import ApiKey, Pool
from anvil.models.worker import WorkerStatus, WorkerType

logger = logging.getLogger("anvil.api.workers")

router = APIRouter(prefix="/workers", tags=["workers"])


class WorkerRegister(BaseModel):
    worker_id: str | None = None
    name: str | None = None
    type: WorkerType = WorkerType.LOCAL
    capabilities: list[str] | None = None
    metadata: dict = Field(default_factory=dict)


class TaskAssign(BaseModel):
    task_id: str = Field(min_length=1)


class TaskRelease(BaseModel):
    task_id: str = Field(min_length=1)


@router.get("")
async def list_workers(
    pool: Pool,
    _: ApiKey,
    status: WorkerStatus | None = None,
    type: WorkerType | None = None,
):
    """List workers, optionally filtered by status and type."""
    workers = pool.get_workers(status=status, worker_type=type)
    return {
        "workers": [w.info() for w in workers],
        "total": len(workers),
        "stats": pool.get_stats(),
    }


@router.get("/stats")
async def worker_stats(pool: Pool, _: ApiKey):
    """Aggregate counts and utilization."""
    return pool.get_stats()


@router.post("/register")
async def register_worker(data: WorkerRegister, pool: Pool, _: ApiKey):
    """Spawn a pool worker, or register one announced by a worker agent."""
    try:
        worker = await pool.spawn_worker(
            worker_type=data.type,
            capabilities=data.capabilities,
            name=data.name,
            worker_id=data.worker_id,
            metadata=data.metadata,
        )
    except Exception as e:
        logger.error(f"Failed to register worker {data.worker_id or '(new)'}: {e}")
        raise HTTPException(502, f"Worker launch failed: {e}")

    return {"status": "registered", "worker": worker.info()}


@router.post("/assign")
async def assign_task(data: TaskAssign, pool: Pool, _: ApiKey):
    """Reserve a slot for a task. ``pending`` means no capacity: queue and retry."""
    worker_id = pool.assign_task(data.task_id)
    return {
        "task_id": data.task_id,
        "worker_id": worker_id,
        "status": "assigned" if worker_id else "pending",
    }


@router.get("/{worker_id}")
async def get_worker(worker_id: str, pool: Pool, _: ApiKey):
    worker = pool.get_worker(worker_id)
    if worker is None:
        raise HTTPException(404, f"Worker '{worker_id}' not found")
    return worker.info()


@router.post("/{worker_id}/heartbeat")
async def heartbeat(worker_id: str, pool: Pool, _: ApiKey):
    """Record a liveness signal from a worker."""
    if not await pool.update_heartbeat(worker_id):
        raise HTTPException(404, f"Worker '{worker_id}' not found")
    worker = pool.get_worker(worker_id)
    return {"status": "ok", "worker_id": worker_id, "worker_status": worker.status.value}


@router.post("/{worker_id}/release")
async def release_task(worker_id: str, data: TaskRelease, pool: Pool, _: ApiKey):
    if pool.get_worker(worker_id) is None:
        raise HTTPException(404, f"Worker '{worker_id}' not found")
    released = pool.release_task(worker_id, data.task_id)
    return {"worker_id": worker_id, "task_id": data.task_id, "released": released}


@router.post("/{worker_id}/drain")
async def drain_worker(worker_id: str, pool: Pool, _: ApiKey, timeout: float = 60.0):
    """Stop assigning to a worker, wait for its tasks, then remove it."""
    if pool.get_worker(worker_id) is None:
        raise HTTPException(404, f"Worker '{worker_id}' not found")
    try:
        failed_tasks = await pool.drain_worker(worker_id, timeout=timeout)
    except Exception as e:
        logger.error(f"Failed to drain worker {worker_id}: {e}")
        raise HTTPException(502, f"Worker drain failed: {e}")
    return {"status": "removed", "worker_id": worker_id, "failed_tasks": failed_tasks}


@router.delete("/{worker_id}")
async def remove_worker(worker_id: str, pool: Pool, _: ApiKey):
    """Stop a worker now. Tasks it still held are reported as failed."""
    if pool.get_worker(worker_id) is None:
        raise HTTPException(404, f"Worker '{worker_id}' not found")
    try:
        failed_tasks = await pool.stop_worker(worker_id)
    except Exception as e:
        logger.error(f"Failed to stop worker {worker_id}: {e}")
        raise HTTPException(502, f"Worker stop failed: {e}")
    return {"status": "removed", "worker_id": worker_id, "failed_tasks": failed_tasks}
