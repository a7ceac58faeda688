"""Message inbox -- single-consumer mailbox for inbound conversation signals.

Two signal kinds arrive from outside the reasoning loop: a user turn and
an exit request. Signals only ever touch the inbox; the orchestrator is the
sole consumer and drains it at its own suspension points, so the
transcript and usage ledger never need a lock.

Callers on other threads hand signals over with deliver_threadsafe(). A
delivery counts as in flight from the moment it is handed over until the
event loop has applied it, which is what wait_handlers_finished() waits on
before a continuation snapshot is taken.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from collections.abc import Callable, Iterable
from typing import Any

from continuum.engine.schemas import PendingTurn

logger = logging.getLogger(__name__)


class MessageInbox:
    """FIFO buffer of pending turns plus a sticky exit flag."""

    def __init__(
        self,
        pending: Iterable[PendingTurn] | None = None,
        exit_requested: bool = False,
    ) -> None:
        self._pending: deque[PendingTurn] = deque(pending or [])
        self._exit_requested = exit_requested
        self._changed = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._in_flight = 0
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Signals (event loop thread)
    # ------------------------------------------------------------------

    def enqueue_turn(self, turn: PendingTurn) -> None:
        self._pending.append(turn)
        self._changed.set()
        logger.debug("Turn from %s enqueued (%d pending)", turn.name, len(self._pending))

    def request_exit(self) -> None:
        """Idempotent."""
        if not self._exit_requested:
            logger.debug("Exit requested")
        self._exit_requested = True
        self._changed.set()

    # ------------------------------------------------------------------
    # Thread-safe hand-off
    # ------------------------------------------------------------------

    def deliver_threadsafe(
        self,
        loop: asyncio.AbstractEventLoop,
        fn: Callable[..., Any],
        *args: Any,
    ) -> None:
        """Schedule ``fn(*args)`` on ``loop`` from any thread, tracking it as in flight."""
        with self._lock:
            self._in_flight += 1
        loop.call_soon_threadsafe(self._apply, fn, args)

    def _apply(self, fn: Callable[..., Any], args: tuple[Any, ...]) -> None:
        try:
            fn(*args)
        finally:
            with self._lock:
                self._in_flight -= 1
                idle = self._in_flight == 0
            if idle:
                self._idle.set()

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    async def wait_handlers_finished(self) -> None:
        """Suspend until every handed-over delivery has been applied."""
        while self.in_flight:
            self._idle.clear()
            await self._idle.wait()

    # ------------------------------------------------------------------
    # Consumer side (orchestrator)
    # ------------------------------------------------------------------

    @property
    def exit_requested(self) -> bool:
        return self._exit_requested

    def has_pending(self) -> bool:
        return bool(self._pending)

    def has_work(self) -> bool:
        return bool(self._pending) or self._exit_requested

    def peek(self) -> PendingTurn | None:
        return self._pending[0] if self._pending else None

    def pop(self) -> PendingTurn:
        return self._pending.popleft()

    def pending(self) -> list[PendingTurn]:
        return list(self._pending)

    async def wait_for_work(self) -> None:
        """Suspend until a turn is pending or exit has been requested."""
        while not self.has_work():
            self._changed.clear()
            await self._changed.wait()
