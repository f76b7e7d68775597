"""Unit tests for EventEmitter."""

import pytest

from src.infrastructure import events
from src.infrastructure.events import EventEmitter


class TestEventEmitter:
    """Test suite for EventEmitter."""

    @pytest.mark.asyncio
    async def test_delivers_to_type_and_wildcard_subscribers(self):
        emitter = EventEmitter()
        saves, everything = [], []
        emitter.subscribe(events.SAVE, saves.append)
        emitter.subscribe(events.ALL_EVENTS, everything.append)

        event = await emitter.emit(events.SAVE, record_id="abc123")
        await emitter.emit(events.DELETE, record_id="abc123")

        assert saves == [event]
        assert event.data == {"record_id": "abc123"}
        assert [e.type for e in everything] == [events.SAVE, events.DELETE]
        assert emitter.emitted_count == 2

    @pytest.mark.asyncio
    async def test_async_handlers_are_awaited(self):
        emitter = EventEmitter()
        seen = []

        async def handler(event):
            seen.append(event.type)

        emitter.subscribe(events.LOAD, handler)
        await emitter.emit(events.LOAD)
        assert seen == [events.LOAD]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_delivery(self):
        emitter = EventEmitter()
        seen = []

        def broken(event):
            raise RuntimeError("subscriber bug")

        emitter.subscribe(events.ERROR, broken)
        emitter.subscribe(events.ERROR, seen.append)

        await emitter.emit(events.ERROR, error_code="STORAGE_ERROR")
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        emitter = EventEmitter()
        seen = []
        unsubscribe = emitter.subscribe(events.SAVE, seen.append)
        assert emitter.subscriber_count(events.SAVE) == 1

        unsubscribe()
        unsubscribe()
        await emitter.emit(events.SAVE)

        assert seen == []
        assert emitter.subscriber_count(events.SAVE) == 0
