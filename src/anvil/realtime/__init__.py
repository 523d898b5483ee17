"""Realtime gateway — WebSocket hub for pool and build events."""

from anvil.realtime.gateway import RealtimeClient, RealtimeGateway

__all__ = ["RealtimeClient", "RealtimeGateway"]
