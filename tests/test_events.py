"""Tests for the event channel: subscribers and pollable bounded channels."""

from __future__ import annotations

import asyncio

import pydantic
import pytest

from evidence_engine.events import (
    emit,
    emit_nowait,
    open_channel,
    start_event_system,
    stop_event_system,
    subscribe,
    unsubscribe,
)
from evidence_engine.schemas.events import EventType, SystemEvent


def _event(event_type: EventType = EventType.JOB_ADDED, **data) -> SystemEvent:
    return SystemEvent(event_type=event_type, data=data, source_module="tests")


class TestChannels:
    def test_poll_empty(self):
        assert open_channel().poll() is None

    def test_filtered_channel(self):
        channel = open_channel([EventType.JOB_FAILED])
        emit_nowait(_event(EventType.JOB_ADDED))
        emit_nowait(_event(EventType.JOB_FAILED))

        events = channel.drain()
        assert [e.event_type for e in events] == [EventType.JOB_FAILED]

    def test_emit_without_loop_feeds_channels(self):
        channel = open_channel()
        emit_nowait(_event(n=1))
        assert channel.poll().data == {"n": 1}

    def test_full_channel_drops_oldest(self):
        channel = open_channel(maxsize=2)
        for n in range(3):
            emit_nowait(_event(n=n))

        assert [e.data["n"] for e in channel.drain()] == [1, 2]
        assert channel.dropped == 1

    def test_closed_channel_stops_receiving(self):
        channel = open_channel()
        channel.close()
        emit_nowait(_event())
        assert channel.poll() is None

    @pytest.mark.asyncio()
    async def test_get_waits_for_event(self):
        channel = open_channel()

        async def later():
            await asyncio.sleep(0.01)
            await emit(_event(n=7))

        task = asyncio.create_task(later())
        event = await channel.get(timeout=1)
        await task
        assert event.data == {"n": 7}

    @pytest.mark.asyncio()
    async def test_get_timeout(self):
        assert await open_channel().get(timeout=0.01) is None

    def test_events_are_immutable(self):
        event = _event()
        with pytest.raises(pydantic.ValidationError):
            event.data = {}  # type: ignore[misc]


class TestSubscribers:
    @pytest.mark.asyncio()
    async def test_handlers_receive_events(self):
        received: list[SystemEvent] = []
        typed: list[SystemEvent] = []

        async def on_any(event: SystemEvent) -> None:
            received.append(event)

        async def on_failed(event: SystemEvent) -> None:
            typed.append(event)

        subscribe(on_any)
        subscribe(on_failed, [EventType.JOB_FAILED])
        await start_event_system()

        await emit(_event(EventType.JOB_ADDED))
        await emit(_event(EventType.JOB_FAILED))
        await stop_event_system()

        assert [e.event_type for e in received] == [EventType.JOB_ADDED, EventType.JOB_FAILED]
        assert [e.event_type for e in typed] == [EventType.JOB_FAILED]

    @pytest.mark.asyncio()
    async def test_failing_handler_is_isolated(self):
        received: list[SystemEvent] = []

        async def broken(event: SystemEvent) -> None:
            raise RuntimeError("handler bug")

        async def healthy(event: SystemEvent) -> None:
            received.append(event)

        subscribe(broken)
        subscribe(healthy)
        await emit(_event())
        await emit(_event())
        await stop_event_system()

        assert len(received) == 2

    @pytest.mark.asyncio()
    async def test_unsubscribe(self):
        received: list[SystemEvent] = []

        async def handler(event: SystemEvent) -> None:
            received.append(event)

        subscribe(handler, [EventType.JOB_ADDED])
        unsubscribe(handler)
        await emit(_event())
        await stop_event_system()

        assert received == []
