"""Conversation host -- runs many long-lived conversations side by side.

Each conversation is an asyncio task that runs orchestrator epochs back to
back. When an epoch ends in a continuation, the host saves the condensed
snapshot and starts a fresh orchestrator from it under the same
conversation id, so no single orchestrator's record grows without bound.

Conversations share nothing mutable: each has its own inbox, gateway,
transcript and ledger. Signals for a conversation only touch its inbox.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from continuum.config import Settings
from continuum.engine.capabilities import CapabilityRegistry
from continuum.engine.errors import ContinuumError, ConversationStateError
from continuum.engine.gateway import OperationGateway, Persister, ReasoningOperations, RetryPolicy
from continuum.engine.inbox import MessageInbox
from continuum.engine.orchestrator import (
    ContinuationOutcome,
    ConversationOrchestrator,
    Phase,
)
from continuum.engine.schemas import ConversationSnapshot, EpochInfo, PendingTurn, Usage
from continuum.events import Event, EventBus
from continuum.runtime.snapshots import InMemorySnapshotStore, SnapshotStore

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# History advisory
# ------------------------------------------------------------------


class HistoryAdvisor(Protocol):
    def __call__(self, info: EpochInfo) -> bool: ...


class OperationCountAdvisor:
    """Advises a continuation once an epoch's recorded history is large.

    Large means the epoch has issued ``operation_limit`` operations, or the
    transcript is estimated at ``token_limit`` tokens or more (when
    token_limit is non-zero). Both are epoch-local counts, so the advice
    is the same on every replay.
    """

    def __init__(self, operation_limit: int, token_limit: int = 0) -> None:
        self.operation_limit = operation_limit
        self.token_limit = token_limit

    @classmethod
    def from_settings(cls, settings: Settings) -> OperationCountAdvisor:
        return cls(settings.history_operation_limit, settings.history_token_limit)

    def __call__(self, info: EpochInfo) -> bool:
        if info.operations >= self.operation_limit:
            return True
        return bool(self.token_limit) and info.transcript_tokens >= self.token_limit


# ------------------------------------------------------------------
# Host
# ------------------------------------------------------------------


@dataclass
class _Conversation:
    conversation_id: str
    inbox: MessageInbox
    snapshot: ConversationSnapshot
    task: asyncio.Task | None = None
    orchestrator: ConversationOrchestrator | None = None


class ConversationHost:
    """Starts, signals, continues and resumes conversations."""

    def __init__(
        self,
        operations: ReasoningOperations,
        registry: CapabilityRegistry,
        settings: Settings,
        *,
        persister: Persister | None = None,
        store: SnapshotStore | None = None,
        bus: EventBus | None = None,
        advisor: HistoryAdvisor | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._operations = operations
        self._registry = registry
        self._settings = settings
        self._persister = persister
        self._store = store or InMemorySnapshotStore()
        self._bus = bus
        self._advisor = advisor or OperationCountAdvisor.from_settings(settings)
        self._policy = policy or RetryPolicy.from_settings(settings)
        self._conversations: dict[str, _Conversation] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def store(self) -> SnapshotStore:
        return self._store

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, conversation_id: str) -> None:
        """Start a conversation, resuming from its stored snapshot if there is one."""
        if self.is_running(conversation_id):
            raise ConversationStateError(f"Conversation {conversation_id} is already running")

        self._loop = asyncio.get_running_loop()
        snapshot = await self._store.load(conversation_id)
        if snapshot is None:
            snapshot = ConversationSnapshot(conversation_id=conversation_id)
        else:
            logger.info(
                "Resuming conversation %s at epoch %d (%d entries, %d pending)",
                conversation_id,
                snapshot.epoch,
                len(snapshot.transcript),
                len(snapshot.pending),
            )

        conv = _Conversation(
            conversation_id=conversation_id,
            inbox=MessageInbox(snapshot.pending, snapshot.exit_requested),
            snapshot=snapshot,
        )
        self._conversations[conversation_id] = conv
        conv.task = asyncio.create_task(
            self._run(conv, snapshot),
            name=f"conversation-{conversation_id}",
        )

    async def result(self, conversation_id: str) -> Usage:
        """Wait for the conversation to end and return its usage total.

        Re-raises the step failure if the conversation failed.
        """
        conv = self._get(conversation_id)
        if conv.task is None:
            raise ConversationStateError(f"Conversation {conversation_id} was never started")
        return await conv.task

    async def stop(self) -> None:
        """Cancel every running conversation, keeping its state in the store.

        A conversation whose task has not run yet never built an
        orchestrator, so its loaded snapshot is saved with whatever was
        delivered to its inbox since.
        """
        running = [c for c in self._conversations.values() if c.task and not c.task.done()]
        unstarted = [c for c in running if c.orchestrator is None]
        for conv in running:
            conv.task.cancel()
        await asyncio.gather(*(c.task for c in running), return_exceptions=True)

        for conv in unstarted:
            await self._store.save(conv.snapshot.model_copy(update={
                "pending": conv.inbox.pending(),
                "exit_requested": conv.inbox.exit_requested,
            }))
        logger.info("Conversation host stopped (%d cancelled)", len(running))

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def enqueue_turn(self, conversation_id: str, name: str, message: str, timestamp: str) -> None:
        turn = PendingTurn(name=name, message=message, timestamp=timestamp)
        self._running(conversation_id).inbox.enqueue_turn(turn)

    def request_exit(self, conversation_id: str) -> None:
        self._running(conversation_id).inbox.request_exit()

    def enqueue_turn_threadsafe(
        self, conversation_id: str, name: str, message: str, timestamp: str
    ) -> None:
        """enqueue_turn() for callers outside the event loop thread."""
        inbox = self._running(conversation_id).inbox
        turn = PendingTurn(name=name, message=message, timestamp=timestamp)
        inbox.deliver_threadsafe(self._require_loop(), inbox.enqueue_turn, turn)

    def request_exit_threadsafe(self, conversation_id: str) -> None:
        inbox = self._running(conversation_id).inbox
        inbox.deliver_threadsafe(self._require_loop(), inbox.request_exit)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def is_running(self, conversation_id: str) -> bool:
        conv = self._conversations.get(conversation_id)
        return bool(conv and conv.task and not conv.task.done())

    def phase(self, conversation_id: str) -> Phase | None:
        orchestrator = self._get(conversation_id).orchestrator
        return orchestrator.phase if orchestrator else None

    def orchestrator(self, conversation_id: str) -> ConversationOrchestrator | None:
        return self._get(conversation_id).orchestrator

    async def snapshot(self, conversation_id: str) -> ConversationSnapshot | None:
        """Latest stored snapshot (None once the conversation has exited)."""
        return await self._store.load(conversation_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run(self, conv: _Conversation, snapshot: ConversationSnapshot) -> Usage:
        cid = conv.conversation_id
        gateway = OperationGateway(
            cid,
            self._operations,
            self._registry,
            persister=self._persister,
            policy=self._policy,
            bus=self._bus,
        )

        while True:
            orchestrator = ConversationOrchestrator(
                gateway,
                conv.inbox,
                snapshot,
                history_large=self._advisor,
                max_context_tokens=self._settings.max_context_tokens,
                keep_recent=self._settings.compaction_keep_recent,
                bus=self._bus,
            )
            conv.orchestrator = orchestrator

            try:
                outcome = await orchestrator.run()
            except ContinuumError as e:
                await self._store.save(orchestrator.snapshot(round_open=True))
                await self._emit("conversation_failed", cid, message=str(e), epoch=orchestrator.epoch)
                raise
            except asyncio.CancelledError:
                # The orchestrator has already rolled back to its last commit point
                await self._store.save(orchestrator.snapshot())
                logger.info(
                    "Conversation %s cancelled at epoch %d, state saved",
                    cid,
                    orchestrator.epoch,
                )
                raise

            if isinstance(outcome, ContinuationOutcome):
                snapshot = outcome.snapshot
                await self._store.save(snapshot)
                await self._emit(
                    "continued", cid, epoch=snapshot.epoch, entries=len(snapshot.transcript)
                )
                continue

            await self._store.delete(cid)
            await self._emit(
                "conversation_exited", cid, total_tokens=outcome.usage.total_tokens
            )
            return outcome.usage

    def _get(self, conversation_id: str) -> _Conversation:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            raise ConversationStateError(f"Unknown conversation {conversation_id}")
        return conv

    def _running(self, conversation_id: str) -> _Conversation:
        conv = self._get(conversation_id)
        if not self.is_running(conversation_id):
            raise ConversationStateError(f"Conversation {conversation_id} is not running")
        return conv

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise ConversationStateError("Host has not started any conversation yet")
        return self._loop

    async def _emit(self, event_type: str, conversation_id: str, **data: Any) -> None:
        if self._bus is None:
            return
        await self._bus.emit(Event(type=event_type, conversation_id=conversation_id, data=data))
