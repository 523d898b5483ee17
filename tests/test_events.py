"""Tests for the pool event observer list."""

import logging

import pytest

from anvil.workers.events import EventEmitter, PoolEvent
from tests.conftest import EventRecorder


class TestEventEmitter:
    @pytest.mark.asyncio
    async def test_sync_and_async_listeners(self):
        emitter = EventEmitter()
        seen = []

        def sync_listener(event, data):
            seen.append(("sync", event, data["n"]))

        async def async_listener(event, data):
            seen.append(("async", event, data["n"]))

        emitter.on(PoolEvent.WORKER_SPAWNED, sync_listener)
        emitter.on("worker:spawned", async_listener)
        await emitter.emit(PoolEvent.WORKER_SPAWNED, {"n": 1})

        assert seen == [
            ("sync", PoolEvent.WORKER_SPAWNED, 1),
            ("async", PoolEvent.WORKER_SPAWNED, 1),
        ]

    @pytest.mark.asyncio
    async def test_only_matching_listeners_fire(self):
        emitter = EventEmitter()
        recorder = EventRecorder()
        emitter.on(PoolEvent.WORKER_STOPPED, recorder)

        await emitter.emit(PoolEvent.WORKER_SPAWNED)
        await emitter.emit(PoolEvent.WORKER_STOPPED)

        assert recorder.names() == ["worker:stopped"]

    @pytest.mark.asyncio
    async def test_wildcard_receives_everything(self):
        emitter = EventEmitter()
        recorder = EventRecorder()
        emitter.on("*", recorder)

        for event in PoolEvent:
            await emitter.emit(event)

        assert recorder.names() == [e.value for e in PoolEvent]

    @pytest.mark.asyncio
    async def test_failing_listener_is_isolated(self, caplog):
        emitter = EventEmitter()
        recorder = EventRecorder()

        def broken(event, data):
            raise RuntimeError("listener bug")

        emitter.on(PoolEvent.POOL_STARTED, broken)
        emitter.on(PoolEvent.POOL_STARTED, recorder)

        with caplog.at_level(logging.ERROR, logger="anvil.workers.events"):
            await emitter.emit(PoolEvent.POOL_STARTED)

        assert recorder.names() == ["pool:started"]
        assert "Listener for pool:started failed" in caplog.text

    @pytest.mark.asyncio
    async def test_off(self):
        emitter = EventEmitter()
        recorder = EventRecorder()
        emitter.on(PoolEvent.POOL_STOPPED, recorder)
        emitter.off(PoolEvent.POOL_STOPPED, recorder)
        emitter.off(PoolEvent.POOL_STOPPED, recorder)

        await emitter.emit(PoolEvent.POOL_STOPPED)

        assert recorder.events == []
        assert emitter.listener_count(PoolEvent.POOL_STOPPED) == 0

    def test_unknown_event_name_rejected(self):
        emitter = EventEmitter()
        with pytest.raises(ValueError):
            emitter.on("worker:exploded", lambda event, data: None)
