"""Orchestration engine -- the think/act/observe loop and its parts.

Context management, the message inbox, the usage ledger, the operation
gateway and the orchestrator state machine that composes them.
"""

from continuum.engine.capabilities import Capability, CapabilityRegistry
from continuum.engine.context import TokenEstimator, splice_compacted, truncate_context
from continuum.engine.errors import (
    ContinuumError,
    ContractViolationError,
    ConversationStateError,
    OperationFailedError,
)
from continuum.engine.gateway import OperationGateway, Persister, ReasoningOperations, RetryPolicy
from continuum.engine.inbox import MessageInbox
from continuum.engine.orchestrator import (
    ContinuationOutcome,
    ConversationOrchestrator,
    ExitOutcome,
    Phase,
)
from continuum.engine.schemas import (
    ActionRequest,
    ActionStep,
    AnswerStep,
    AssistantMessage,
    CompactionResult,
    ConversationSnapshot,
    EpochInfo,
    ObservationResult,
    PendingTurn,
    Usage,
    UserMessage,
    parse_thought,
)
from continuum.engine.usage import UsageLedger, sum_usage

__all__ = [
    "ActionRequest",
    "ActionStep",
    "AnswerStep",
    "AssistantMessage",
    "Capability",
    "CapabilityRegistry",
    "CompactionResult",
    "ContinuationOutcome",
    "ContinuumError",
    "ContractViolationError",
    "ConversationOrchestrator",
    "ConversationSnapshot",
    "ConversationStateError",
    "EpochInfo",
    "ExitOutcome",
    "MessageInbox",
    "ObservationResult",
    "OperationFailedError",
    "OperationGateway",
    "PendingTurn",
    "Persister",
    "Phase",
    "ReasoningOperations",
    "RetryPolicy",
    "TokenEstimator",
    "Usage",
    "UsageLedger",
    "UserMessage",
    "parse_thought",
    "splice_compacted",
    "sum_usage",
    "truncate_context",
]
