"""Pool lifecycle events and the observer list that delivers them."""

from __future__ import annotations

import enum
import inspect
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger("anvil.workers.events")


class PoolEvent(str, enum.Enum):
    POOL_STARTED = "pool:started"
    POOL_STOPPED = "pool:stopped"
    WORKER_SPAWNED = "worker:spawned"
    WORKER_STOPPED = "worker:stopped"
    WORKER_UNHEALTHY = "worker:unhealthy"
    WORKER_RECOVERED = "worker:recovered"


Listener = Callable[[PoolEvent, dict], Union[None, Awaitable[None]]]

ALL_EVENTS = "*"


class EventEmitter:
    """Explicit observer list keyed by PoolEvent.

    Listeners are called as ``listener(event, data)`` and may be plain
    functions or coroutine functions. Registering under ``"*"`` receives
    every event.
    """

    def __init__(self):
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, event: PoolEvent | str, listener: Listener) -> None:
        key = ALL_EVENTS if event == ALL_EVENTS else PoolEvent(event).value
        self._listeners[key].append(listener)

    def off(self, event: PoolEvent | str, listener: Listener) -> None:
        key = ALL_EVENTS if event == ALL_EVENTS else PoolEvent(event).value
        try:
            self._listeners[key].remove(listener)
        except ValueError:
            pass

    def listener_count(self, event: PoolEvent | str) -> int:
        key = ALL_EVENTS if event == ALL_EVENTS else PoolEvent(event).value
        return len(self._listeners.get(key, []))

    async def emit(self, event: PoolEvent, data: dict[str, Any] | None = None) -> None:
        data = data or {}
        targets = list(self._listeners.get(event.value, [])) + list(self._listeners.get(ALL_EVENTS, []))
        for listener in targets:
            try:
                result = listener(event, data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Listener for {event.value} failed")
