"""Main API router."""

from fastapi import APIRouter
from anvil.api.workers import router as workers_router
from anvil.api.realtime import router as realtime_router

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(workers_router)
api_router.include_router(realtime_router)
