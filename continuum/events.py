"""In-process async event bus for Continuum.

This is the observability channel: the engine reports every step and every
failure here. Events are dispatched to registered handlers asynchronously.
Handlers run concurrently but errors are isolated -- one broken handler
never crashes the bus, blocks other handlers, or reaches the reasoning loop.

emit() never blocks the reasoning loop. When the queue is full the event
is dropped and counted; failure reports are logged at ERROR with their
payload so an overloaded bus cannot hide why a conversation stopped.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# Handler type: async function taking an Event
EventHandler = Callable[["Event"], Awaitable[None]]

# Handlers registered under this type receive every event
ALL_EVENTS = "*"

# Event types that report a failure (gateway errors, failed conversations)
FAILURE_EVENTS = frozenset({"error", "conversation_failed"})


@dataclass
class Event:
    """A typed event flowing through the bus."""

    type: str
    conversation_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_failure(self) -> bool:
        return self.type in FAILURE_EVENTS

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "conversation_id": self.conversation_id,
            "timestamp": self.timestamp.isoformat(),
            **self.data,
        }


class EventBus:
    """Bounded queue of events drained by one background task.

    Handlers registered via on() are called concurrently for each event.
    Handler errors are logged but never propagate. ``dropped`` counts the
    events lost to a full queue, by type.
    """

    def __init__(self, max_queue: int = 1000, drain_timeout: float = 5.0):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._drain_timeout = drain_timeout
        self._task: asyncio.Task | None = None
        self.dropped: Counter[str] = Counter()

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for an event type (or ALL_EVENTS). Can register multiple."""
        self._handlers[event_type].append(handler)
        logger.debug("Registered handler for '%s': %s", event_type, handler.__qualname__)

    async def emit(self, event: Event) -> None:
        """Queue an event for dispatch, dropping it if the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._drop(event)

    async def start(self) -> None:
        """Start the background processing loop."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._process_loop(), name="event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop the bus.

        Gives the loop up to drain_timeout seconds to deliver what is
        queued, then cancels it and dispatches any leftovers inline.
        """
        if self._task is not None:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=self._drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Event bus still busy after %.1fs, cancelling with %d queued",
                    self._drain_timeout,
                    self._queue.qsize(),
                )
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._drain_queue()
        if self.dropped:
            logger.warning("Event bus dropped %d events: %s", self.dropped.total(), dict(self.dropped))
        logger.info("Event bus stopped")

    @property
    def pending(self) -> int:
        """Number of events waiting in queue."""
        return self._queue.qsize()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _drop(self, event: Event) -> None:
        self.dropped[event.type] += 1
        if event.is_failure:
            logger.error(
                "Event bus queue full, dropping %s event for %s: %s",
                event.type,
                event.conversation_id,
                event.data,
            )
        else:
            logger.warning("Event bus queue full, dropping event: %s", event.type)

    async def _process_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._dispatch(event)
            except Exception:
                logger.exception("Unexpected error dispatching %s", event.type)
            finally:
                self._queue.task_done()

    async def _drain_queue(self) -> None:
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await self._dispatch(event)
            finally:
                self._queue.task_done()

    async def _dispatch(self, event: Event) -> None:
        """Dispatch event to type-specific and wildcard handlers."""
        handlers = [*self._handlers.get(event.type, []), *self._handlers.get(ALL_EVENTS, [])]
        if not handlers:
            return
        await asyncio.gather(*(self._safe_handle(h, event) for h in handlers))

    async def _safe_handle(self, handler: EventHandler, event: Event) -> None:
        """Run handler with error isolation. Never propagates (except CancelledError)."""
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except BaseException:
            logger.exception(
                "Handler %s failed for event %s",
                handler.__qualname__,
                event.type,
            )
