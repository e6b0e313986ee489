"""Event channel — async pub/sub plus pollable bounded channels.

Producers publish SystemEvents; nothing in the core waits on a consumer.
Consumers either subscribe a coroutine handler or open a bounded channel
and poll it.

Usage:
    from evidence_engine.events import emit, open_channel

    await emit(SystemEvent(event_type=EventType.JOB_ADDED, job_id=job.id))

    channel = open_channel([EventType.JOB_COMPLETED, EventType.JOB_FAILED])
    event = channel.poll()  # None when empty
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from evidence_engine.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

# Type alias for event handler functions
EventHandler = Callable[[SystemEvent], Coroutine[Any, Any, None]]

DEFAULT_CHANNEL_SIZE = 256

# ── Internal state ───────────────────────────────────────────────────

_subscribers: list[EventHandler] = []
_type_subscribers: dict[EventType, list[EventHandler]] = {}
_channels: list[EventChannel] = []
_queue: asyncio.Queue[SystemEvent] | None = None
_worker_task: asyncio.Task[None] | None = None


class EventChannel:
    """Bounded per-consumer buffer. When full, the oldest event is dropped."""

    def __init__(self, event_types: list[EventType] | None = None, maxsize: int = DEFAULT_CHANNEL_SIZE) -> None:
        self._types = frozenset(event_types) if event_types else None
        self._buffer: asyncio.Queue[SystemEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def accepts(self, event: SystemEvent) -> bool:
        return self._types is None or event.event_type in self._types

    def offer(self, event: SystemEvent) -> None:
        if self._buffer.full():
            self._buffer.get_nowait()
            self.dropped += 1
        self._buffer.put_nowait(event)

    def poll(self) -> SystemEvent | None:
        """Return the next buffered event, or None."""
        try:
            return self._buffer.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> list[SystemEvent]:
        events: list[SystemEvent] = []
        while (event := self.poll()) is not None:
            events.append(event)
        return events

    async def get(self, timeout: float | None = None) -> SystemEvent | None:
        """Wait for the next event; None on timeout."""
        try:
            async with asyncio.timeout(timeout):
                return await self._buffer.get()
        except TimeoutError:
            return None

    def close(self) -> None:
        if self in _channels:
            _channels.remove(self)


# ── Public API ───────────────────────────────────────────────────────


def subscribe(handler: EventHandler, event_types: list[EventType] | None = None) -> None:
    """Register an event handler.

    Args:
        handler: Async function that accepts a SystemEvent.
        event_types: If provided, handler only receives these event types.
                     If None, handler receives ALL events.
    """
    if event_types is None:
        _subscribers.append(handler)
        logger.info("Registered global event subscriber: %s", handler.__name__)
    else:
        for et in event_types:
            _type_subscribers.setdefault(et, []).append(handler)
        logger.info(
            "Registered event subscriber %s for types: %s",
            handler.__name__,
            [t.value for t in event_types],
        )


def unsubscribe(handler: EventHandler) -> None:
    """Remove a previously registered handler."""
    if handler in _subscribers:
        _subscribers.remove(handler)
    for handlers in _type_subscribers.values():
        if handler in handlers:
            handlers.remove(handler)


def open_channel(event_types: list[EventType] | None = None, maxsize: int = DEFAULT_CHANNEL_SIZE) -> EventChannel:
    """Open a pollable channel receiving the given event types (all when None)."""
    channel = EventChannel(event_types, maxsize)
    _channels.append(channel)
    return channel


async def emit(event: SystemEvent) -> None:
    """Publish a SystemEvent.

    Channels are fed immediately; handlers run on a background worker so the
    emitter is never blocked by slow subscribers.
    """
    emit_nowait(event)


def emit_nowait(event: SystemEvent) -> None:
    """Synchronous publish for code that must not yield (queue admission)."""
    for channel in list(_channels):
        if channel.accepts(event):
            channel.offer(event)

    if not _subscribers and event.event_type not in _type_subscribers:
        return

    try:
        queue = _ensure_queue()
    except RuntimeError:
        # No running loop: channels were fed, handlers are skipped
        logger.debug("No event loop — handlers skipped for %s", event.event_type.value)
        return
    queue.put_nowait(event)
    logger.debug("Event emitted: %s", event.event_type.value)


# ── Background worker ────────────────────────────────────────────────


def _ensure_queue() -> asyncio.Queue[SystemEvent]:
    """Create the queue and worker bound to the running loop if needed."""
    global _queue, _worker_task
    loop = asyncio.get_running_loop()
    if _queue is None or _worker_task is None or _worker_task.done() or _worker_task.get_loop() is not loop:
        _queue = asyncio.Queue()
        _worker_task = loop.create_task(_event_worker(_queue))
        logger.info("Event worker started")
    return _queue


async def _event_worker(queue: asyncio.Queue[SystemEvent]) -> None:
    """Background task that drains the event queue and dispatches to subscribers."""
    while True:
        try:
            event = await queue.get()
        except asyncio.CancelledError:
            logger.info("Event worker shutting down")
            break
        try:
            await _dispatch(event)
        except asyncio.CancelledError:
            queue.task_done()
            logger.info("Event worker shutting down")
            break
        except Exception:
            logger.exception("Error in event worker")
        queue.task_done()


async def _dispatch(event: SystemEvent) -> None:
    """Dispatch a single event to all matching subscribers."""
    handlers: list[EventHandler] = list(_subscribers)

    if event.event_type in _type_subscribers:
        handlers.extend(_type_subscribers[event.event_type])

    if not handlers:
        return

    # Run all handlers concurrently; isolate failures
    results = await asyncio.gather(
        *[_safe_call(handler, event) for handler in handlers],
        return_exceptions=True,
    )
    for result in results:
        if isinstance(result, Exception):
            logger.error("Event handler failed for %s: %s", event.event_type.value, result)


async def _safe_call(handler: EventHandler, event: SystemEvent) -> None:
    """Call a handler with error isolation."""
    try:
        await handler(event)
    except Exception:
        logger.exception("Handler %s failed for event %s", handler.__name__, event.event_type.value)
        raise


# ── Lifecycle ────────────────────────────────────────────────────────


async def start_event_system() -> None:
    """Initialize the event system. Call during FastAPI lifespan startup."""
    _ensure_queue()
    logger.info(
        "Event system started with %d global + %d typed subscribers, %d channels",
        len(_subscribers),
        sum(len(v) for v in _type_subscribers.values()),
        len(_channels),
    )


async def stop_event_system() -> None:
    """Drain pending events and stop the worker. Call during lifespan shutdown."""
    global _worker_task, _queue

    if _queue is not None and _worker_task is not None and not _worker_task.done():
        await _queue.join()

    if _worker_task is not None and not _worker_task.done():
        _worker_task.cancel()
        try:
            await _worker_task
        except asyncio.CancelledError:
            pass

    _worker_task = None
    _queue = None
    logger.info("Event system stopped")


def reset_event_system() -> None:
    """Forget all subscribers and channels (used between tests)."""
    global _worker_task, _queue
    _subscribers.clear()
    _type_subscribers.clear()
    _channels.clear()
    if _worker_task is not None and not _worker_task.done():
        _worker_task.cancel()
    _worker_task = None
    _queue = None
