"""Conversation orchestrator -- the think/act/observe state machine.

One orchestrator runs one epoch of one conversation:

  AWAITING_TURN -> DRAINING -> THINKING -> ANSWERING -> AWAITING_TURN
                                        -> ACTING -> OBSERVING -> COMPACTION_CHECK
                                                                  -> DRAINING
                                                                  -> CONTINUING

An epoch ends either with an exit (EXITED, usage total returned) or with a
continuation: the transcript is compacted and the condensed state comes
back as a snapshot for a fresh orchestrator to pick up.

All reasoning operations are awaited one at a time. Inbound signals only
touch the inbox and are looked at at the top of each iteration and at the
two suspension points (waiting for work, waiting for in-flight deliveries
before a continuation). Decisions depend only on the transcript, the inbox
and the host advisory, never on wall-clock time, so an epoch rebuilt from
a snapshot behaves the same way.

Failure and cancellation roll the transcript back to the last commit
point. A round commits after act (the act result is kept until it has been
observed), after the observation, and after the answer, so a completed act
is never lost and never repeated.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from continuum.engine.context import (
    DEFAULT_KEEP_RECENT,
    TokenEstimator,
    render_action,
    render_answer,
    render_observation,
    render_thought,
    render_user_turn,
    splice_compacted,
    truncate_context,
)
from continuum.engine.errors import ContinuumError
from continuum.engine.gateway import OperationGateway
from continuum.engine.inbox import MessageInbox
from continuum.engine.schemas import (
    ActionStep,
    AnswerStep,
    AssistantMessage,
    ConversationSnapshot,
    EpochInfo,
    Usage,
    UserMessage,
)
from continuum.engine.usage import UsageLedger
from continuum.events import Event, EventBus

logger = logging.getLogger(__name__)

# Host-provided "history is large" advisory
HistoryAdvice = Callable[[EpochInfo], bool]


class Phase(StrEnum):
    AWAITING_TURN = "awaiting_turn"
    DRAINING = "draining"
    THINKING = "thinking"
    ANSWERING = "answering"
    ACTING = "acting"
    OBSERVING = "observing"
    COMPACTION_CHECK = "compaction_check"
    CONTINUING = "continuing"
    EXITED = "exited"
    FAILED = "failed"


@dataclass
class ExitOutcome:
    """The conversation ended on an exit request."""

    usage: Usage
    transcript: list[str]


@dataclass
class ContinuationOutcome:
    """The epoch handed off its condensed state."""

    snapshot: ConversationSnapshot


def _never_large(info: EpochInfo) -> bool:
    return False


class ConversationOrchestrator:
    """Runs the reasoning loop for one epoch of a conversation."""

    def __init__(
        self,
        gateway: OperationGateway,
        inbox: MessageInbox,
        snapshot: ConversationSnapshot,
        *,
        history_large: HistoryAdvice | None = None,
        max_context_tokens: int = 12000,
        keep_recent: int = DEFAULT_KEEP_RECENT,
        estimator: TokenEstimator | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._gateway = gateway
        self._inbox = inbox
        self._conversation_id = snapshot.conversation_id
        self._epoch = snapshot.epoch
        self._transcript: list[str] = list(snapshot.transcript)
        self._ledger = UsageLedger(snapshot.usage)
        self._round_open = snapshot.round_open
        self._pending_observation = snapshot.pending_observation
        self._compaction_due = snapshot.compaction_due
        self._commit = len(self._transcript)
        self._history_large = history_large or _never_large
        self._max_context_tokens = max_context_tokens
        self._keep_recent = keep_recent
        self._estimator = estimator or TokenEstimator()
        self._bus = bus
        self._operations_at_start = gateway.operations_issued
        self.phase = Phase.AWAITING_TURN

    # ------------------------------------------------------------------
    # State inspection
    # ------------------------------------------------------------------

    @property
    def conversation_id(self) -> str:
        return self._conversation_id

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def transcript(self) -> list[str]:
        return list(self._transcript)

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    @property
    def round_open(self) -> bool:
        return self._round_open

    def snapshot(self, *, round_open: bool | None = None) -> ConversationSnapshot:
        """Current state as a snapshot of this epoch."""
        return ConversationSnapshot(
            conversation_id=self._conversation_id,
            epoch=self._epoch,
            transcript=list(self._transcript),
            usage=self._ledger.records,
            pending=self._inbox.pending(),
            exit_requested=self._inbox.exit_requested,
            round_open=self._round_open if round_open is None else round_open,
            pending_observation=self._pending_observation,
            compaction_due=self._compaction_due,
        )

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> ExitOutcome | ContinuationOutcome:
        """Run until exit or continuation.

        Fatal step failures propagate after the transcript is rolled back
        to the last commit point. Cancellation rolls back the same way.
        """
        if self._pending_observation is not None or self._compaction_due:
            outcome = await self._guarded(self._finish_round)
            if outcome is not None:
                return outcome
        elif not self._round_open:
            await self._await_work()

        while True:
            if self._inbox.exit_requested and not self._inbox.has_pending():
                return await self._exit()

            # Drained turns are committed, so from here on the round is open
            self._round_open = True
            await self._drain()

            outcome = await self._guarded(self._step)
            if outcome is not None:
                return outcome

    async def _guarded(
        self, step: Callable[[], Awaitable[ContinuationOutcome | None]]
    ) -> ContinuationOutcome | None:
        self._commit = len(self._transcript)
        try:
            return await step()
        except ContinuumError as e:
            self._rollback()
            self.phase = Phase.FAILED
            logger.error(
                "Step failed for %s (epoch %d): %s",
                self._conversation_id,
                self._epoch,
                e,
            )
            raise
        except asyncio.CancelledError:
            self._rollback()
            raise

    def _rollback(self) -> None:
        del self._transcript[self._commit:]

    def _mark_committed(self) -> None:
        self._commit = len(self._transcript)

    async def _step(self) -> ContinuationOutcome | None:
        """One think and, if it asked for one, act/observe/compaction check."""
        self.phase = Phase.THINKING
        step = await self._gateway.think(self._context())
        self._ledger.record(step.usage)
        await self._emit("thought", message=step.thought)

        if isinstance(step, AnswerStep):
            await self._answer(step)
            return None

        await self._act(step)
        return await self._finish_round()

    async def _finish_round(self) -> ContinuationOutcome | None:
        """Observe an outstanding act result, then run the compaction check."""
        if self._pending_observation is not None:
            await self._observe()

        self.phase = Phase.COMPACTION_CHECK
        if not self._compaction_due and self._history_large(self._epoch_info()):
            self._compaction_due = True
        if self._compaction_due:
            return await self._continue_as_new()
        return None

    async def _await_work(self) -> None:
        self.phase = Phase.AWAITING_TURN
        await self._inbox.wait_for_work()

    async def _drain(self) -> None:
        """Fold pending turns into the transcript in arrival order."""
        self.phase = Phase.DRAINING
        while (turn := self._inbox.peek()) is not None:
            await self._gateway.persist([
                UserMessage(name=turn.name, message=turn.message, date=turn.timestamp)
            ])
            self._inbox.pop()
            self._transcript.append(render_user_turn(turn))
            await self._emit("turn_received", name=turn.name, message=turn.message)

    async def _answer(self, step: AnswerStep) -> None:
        self.phase = Phase.ANSWERING
        await self._gateway.persist([AssistantMessage(message=step.answer)])
        self._transcript.append(render_answer(step.answer))
        self._round_open = False
        self._mark_committed()
        await self._emit("answer", message=step.answer)
        await self._await_work()

    async def _act(self, step: ActionStep) -> None:
        self.phase = Phase.ACTING
        action = step.action
        self._transcript.append(render_thought(step.thought))
        self._transcript.append(render_action(action))
        result = await self._gateway.act(action.name, action.input)
        # The capability has run: keep the request and hold the result until observed
        self._pending_observation = result
        self._mark_committed()
        await self._emit("action", name=action.name, message=f"Invoked capability {action.name}")

    async def _observe(self) -> None:
        self.phase = Phase.OBSERVING
        observation = await self._gateway.observe(self._context(), self._pending_observation)
        self._ledger.record(observation.usage)
        self._transcript.append(render_observation(observation.observation))
        self._pending_observation = None
        self._mark_committed()
        await self._emit("observation", message=observation.observation)

    async def _continue_as_new(self) -> ContinuationOutcome:
        """Compact the full transcript and hand the condensed state off."""
        self.phase = Phase.CONTINUING
        compaction = await self._gateway.compact(self._transcript)
        self._ledger.record(compaction.usage)
        await self._emit("compacted", entries=len(self._transcript))

        # Turns delivered while compaction ran must make it into the snapshot
        await self._inbox.wait_handlers_finished()

        snapshot = ConversationSnapshot(
            conversation_id=self._conversation_id,
            epoch=self._epoch + 1,
            transcript=splice_compacted(self._transcript, compaction.summary, self._keep_recent),
            usage=self._ledger.records,
            pending=self._inbox.pending(),
            exit_requested=self._inbox.exit_requested,
            round_open=True,
        )
        logger.info(
            "Conversation %s continuing as epoch %d (%d -> %d entries)",
            self._conversation_id,
            snapshot.epoch,
            len(self._transcript),
            len(snapshot.transcript),
        )
        return ContinuationOutcome(snapshot=snapshot)

    async def _exit(self) -> ExitOutcome:
        self.phase = Phase.EXITED
        total = self._ledger.total()
        logger.info(
            "Conversation %s exited (total_tokens=%d)",
            self._conversation_id,
            total.total_tokens,
        )
        await self._emit("exited", usage=total.model_dump())
        return ExitOutcome(usage=total, transcript=list(self._transcript))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _context(self) -> list[str]:
        return truncate_context(self._transcript, self._max_context_tokens, self._estimator)

    def _epoch_info(self) -> EpochInfo:
        return EpochInfo(
            conversation_id=self._conversation_id,
            epoch=self._epoch,
            operations=self._gateway.operations_issued - self._operations_at_start,
            transcript_entries=len(self._transcript),
            transcript_tokens=self._estimator.estimate_entries(self._transcript),
        )

    async def _emit(self, event_type: str, **data: Any) -> None:
        if self._bus is None:
            return
        await self._bus.emit(Event(
            type=event_type,
            conversation_id=self._conversation_id,
            data=data,
        ))
