"""FastAPI dependency injection."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from anvil.core.auth import verify_api_key
from anvil.realtime.gateway import RealtimeGateway
from anvil.workers.pool import WorkerPool


def _get_pool(request: Request) -> WorkerPool:
    pool = getattr(request.app.state, "pool", None)
    if pool is None:
        raise HTTPException(503, "Worker pool not initialized")
    return pool


def _get_gateway(request: Request) -> RealtimeGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(503, "Realtime gateway not enabled")
    return gateway


Pool = Annotated[WorkerPool, Depends(_get_pool)]
Gateway = Annotated[RealtimeGateway, Depends(_get_gateway)]
ApiKey = Annotated[str, Depends(verify_api_key)]
