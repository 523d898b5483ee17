"""Anvil daemon — FastAPI app with worker pool, control loops, and realtime gateway."""

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from anvil import __version__
from anvil.core.config import AnvilSettings, get_settings
from anvil.api.router import api_router
from anvil.api.realtime import ws_router
from anvil.realtime.gateway import RealtimeGateway
from anvil.workers.events import ALL_EVENTS, PoolEvent
from anvil.workers.pool import WorkerPool, WorkerPoolOptions

logger = logging.getLogger("anvil")

# Realtime channel that carries pool lifecycle events
POOL_CHANNEL = "workers"


def _forward_pool_events(gateway: RealtimeGateway):
    async def forward(event: PoolEvent, data: dict):
        await gateway.broadcast(POOL_CHANNEL, {"event": event.value, **data})
    return forward


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown."""
    settings: AnvilSettings = app.state.settings

    pool = WorkerPool(WorkerPoolOptions.from_settings(settings))
    app.state.pool = pool

    gateway = None
    if settings.enable_websocket:
        gateway = RealtimeGateway(
            jwt_secret=settings.jwt_secret,
            jwt_algorithm=settings.jwt_algorithm,
            ping_interval=settings.ws_ping_interval,
        )
        app.state.gateway = gateway
        pool.on(ALL_EVENTS, _forward_pool_events(gateway))
        gateway.start()
        logger.info("WebSocket enabled at /ws")

    await pool.start()
    logger.info(f"Worker pool started ({pool.size} workers)")

    yield

    # Shutdown
    if gateway is not None:
        await gateway.stop()
    await pool.stop()
    logger.info("Anvil daemon stopped")


def create_app(settings: AnvilSettings | None = None) -> FastAPI:
    settings = settings or get_settings()
    started = time.monotonic()

    app = FastAPI(
        title="Anvil",
        description="Build-orchestration daemon: worker pool and realtime gateway",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.pool = None
    app.state.gateway = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def enforce_origin_allow_list(request: Request, call_next):
        # Non-browser clients send no Origin and are let through
        origin = request.headers.get("origin")
        if origin and origin not in settings.cors_origins:
            logger.warning(f"Rejected request from origin {origin}")
            return JSONResponse(status_code=403, content={"detail": "Not allowed by CORS"})
        return await call_next(request)

    @app.get("/health")
    async def health(request: Request):
        pool = request.app.state.pool
        gateway = request.app.state.gateway
        return {
            "status": "healthy",
            "version": __version__,
            "timestamp": datetime.now(tz=timezone.utc).isoformat(),
            "uptime": round(time.monotonic() - started, 3),
            "workers": pool.get_stats() if pool else None,
            "realtime_clients": gateway.client_count if gateway else None,
        }

    if settings.enable_rest:
        app.include_router(api_router)
    if settings.enable_websocket:
        app.include_router(ws_router)

    return app


def main():
    """Entry point for `anvild` command."""
    import sys

    settings = get_settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    host = settings.host
    port = settings.port

    # Parse CLI args (simple, no dep on typer for daemon)
    args = sys.argv[1:]
    for i, arg in enumerate(args):
        if arg == "--port" and i + 1 < len(args):
            port = int(args[i + 1])
        if arg == "--host" and i + 1 < len(args):
            host = args[i + 1]

    logger.info(f"Starting Anvil daemon v{__version__} on {host}:{port}")

    app = create_app(settings)
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level)


if __name__ == "__main__":
    main()
