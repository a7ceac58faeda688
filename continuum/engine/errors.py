"""Failure taxonomy for the orchestration engine.

- OperationFailedError: an operation kept failing (timeout, unavailable
  backend) until the retry policy gave up. Fatal for the current step.
- ContractViolationError: think produced a result that is neither an
  answer nor an action. Fatal, never retried.

Capability failures (unknown capability, capability raised) have no
exception type: the capability registry turns them into an error payload
that flows into the next observation.
"""

from __future__ import annotations


class ContinuumError(Exception):
    """Base class for engine errors."""


class OperationFailedError(ContinuumError):
    """An operation exhausted its retry policy."""

    def __init__(self, operation: str, attempts: int, message: str = "") -> None:
        self.operation = operation
        self.attempts = attempts
        detail = f": {message}" if message else ""
        super().__init__(f"Operation '{operation}' failed after {attempts} attempt(s){detail}")


class ContractViolationError(ContinuumError):
    """A think result carried neither (or both) of answer and action."""


class ConversationStateError(ContinuumError):
    """A host call referenced an unknown conversation or a running one twice."""
