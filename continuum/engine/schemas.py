"""Pydantic DTOs for the orchestration engine.

These models define the data contract between the orchestrator and its
collaborators (think/observe/compact/persist) and the state that crosses a
continuation boundary.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from continuum.engine.errors import ContractViolationError


class Usage(BaseModel):
    """Token accounting reported by one reasoning operation."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class PendingTurn(BaseModel):
    """A user turn delivered to the inbox but not yet folded into the transcript."""

    name: str
    message: str
    timestamp: str


class ActionRequest(BaseModel):
    name: str
    reason: str = ""
    input: dict[str, Any] | str = Field(default_factory=dict)


class AnswerStep(BaseModel):
    kind: Literal["answer"] = "answer"
    thought: str
    answer: str
    usage: Usage | None = None


class ActionStep(BaseModel):
    kind: Literal["action"] = "action"
    thought: str
    action: ActionRequest
    usage: Usage | None = None


StepResult = AnswerStep | ActionStep


class ObservationResult(BaseModel):
    observation: str
    usage: Usage | None = None


class CompactionResult(BaseModel):
    """Condensed rendition of a transcript. The engine splices recent entries back in."""

    summary: str
    usage: Usage | None = None


class UserMessage(BaseModel):
    role: Literal["user"] = "user"
    name: str
    message: str
    date: str


class AssistantMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    message: str


PersistMessage = UserMessage | AssistantMessage


class EpochInfo(BaseModel):
    """What the history advisory gets to look at."""

    conversation_id: str
    epoch: int
    operations: int  # gateway operations issued during this epoch
    transcript_entries: int
    transcript_tokens: int


class ConversationSnapshot(BaseModel):
    """Conversation state handed across a continuation boundary.

    round_open marks a snapshot taken in the middle of a reasoning round
    (after an observation or a failed step), so the resumed orchestrator
    keeps reasoning without waiting for a new turn.

    pending_observation holds an act result that was never observed, and
    compaction_due marks a finished round whose compaction did not
    complete. A resumed orchestrator finishes those first and never
    repeats the act.
    """

    conversation_id: str
    epoch: int = 0
    transcript: list[str] = Field(default_factory=list)
    usage: list[Usage] = Field(default_factory=list)
    pending: list[PendingTurn] = Field(default_factory=list)
    exit_requested: bool = False
    round_open: bool = False
    pending_observation: str | None = None
    compaction_due: bool = False


def parse_thought(payload: Mapping[str, Any] | StepResult) -> StepResult:
    """Turn a raw think payload into an AnswerStep or ActionStep.

    Exactly one of "answer" and "action" must be present; anything else is
    a contract violation and must fail the step rather than be guessed at.
    """
    if isinstance(payload, (AnswerStep, ActionStep)):
        return payload
    if not isinstance(payload, Mapping):
        raise ContractViolationError(
            f"think returned {type(payload).__name__}, expected a mapping"
        )

    has_answer = payload.get("answer") is not None
    has_action = payload.get("action") is not None
    if has_answer == has_action:
        which = "both" if has_answer else "neither"
        raise ContractViolationError(
            f"think result must carry exactly one of 'answer' or 'action' (got {which})"
        )

    data = {k: v for k, v in payload.items() if k != "kind"}
    try:
        if has_answer:
            return AnswerStep.model_validate(data)
        return ActionStep.model_validate(data)
    except ValidationError as e:
        raise ContractViolationError(f"Malformed think result: {e}") from e
