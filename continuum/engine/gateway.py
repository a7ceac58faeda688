"""Operation gateway -- bounded-retry invocation of the reasoning operations.

Wraps the externally implemented operations (think, act, observe, compact,
persist) behind one retry policy: a per-attempt timeout, a fixed delay
between attempts, and a capped attempt count. The same policy applies to
every operation.

Two failure paths are kept apart:
  - the call itself failed (timeout, backend down): retried here, then
    surfaced as OperationFailedError
  - the requested capability failed: handled by the CapabilityRegistry,
    returned as an error payload, never retried
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from continuum.config import Settings
from continuum.engine.capabilities import CapabilityRegistry
from continuum.engine.errors import ContractViolationError, OperationFailedError
from continuum.engine.schemas import (
    CompactionResult,
    ObservationResult,
    PersistMessage,
    StepResult,
    parse_thought,
)
from continuum.events import Event, EventBus

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ------------------------------------------------------------------
# Collaborator protocols
# ------------------------------------------------------------------


class ReasoningOperations(Protocol):
    """The model-backed operations, implemented outside the engine."""

    async def think(
        self,
        transcript: list[str],
        catalog: list[dict[str, Any]],
    ) -> Mapping[str, Any] | StepResult: ...

    async def observe(self, transcript: list[str], action_result: str) -> ObservationResult: ...

    async def compact(self, transcript: list[str]) -> CompactionResult: ...


class Persister(Protocol):
    """Durable record of the user-visible conversation."""

    async def persist(self, messages: list[PersistMessage]) -> None: ...


# ------------------------------------------------------------------
# Retry policy
# ------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-backoff retry policy shared by all operations."""

    max_attempts: int = 5
    interval: float = 3.0  # seconds between attempts
    timeout: float = 60.0  # seconds per attempt

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            interval=settings.retry_interval,
            timeout=settings.operation_timeout,
        )


# ------------------------------------------------------------------
# Gateway
# ------------------------------------------------------------------


class OperationGateway:
    """Invokes reasoning operations for one conversation.

    Every failure is reported on the event bus before it is retried,
    recovered, or raised.
    """

    def __init__(
        self,
        conversation_id: str,
        operations: ReasoningOperations,
        registry: CapabilityRegistry,
        persister: Persister | None = None,
        policy: RetryPolicy | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._conversation_id = conversation_id
        self._operations = operations
        self._registry = registry
        self._persister = persister
        self._policy = policy or RetryPolicy()
        self._bus = bus
        self.operations_issued = 0

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def think(self, transcript: Sequence[str]) -> StepResult:
        """Ask for the next step. The capability catalog is looked up fresh."""

        async def call() -> StepResult:
            catalog = await self._registry.catalog()
            return parse_thought(await self._operations.think(list(transcript), catalog))

        try:
            return await self._call("think", call)
        except ContractViolationError as e:
            logger.error("Contract violation from think (%s): %s", self._conversation_id, e)
            await self._report("contract_violation", "think", str(e))
            raise

    async def act(self, name: str, input: Mapping[str, Any] | str) -> str:
        """Invoke a capability. Capability failures come back as an error payload."""
        text, is_error = await self._call("act", lambda: self._registry.invoke(name, input))
        if is_error:
            await self._report("capability", "act", text, capability=name)
        return text

    async def observe(self, transcript: Sequence[str], action_result: str) -> ObservationResult:
        return await self._call(
            "observe",
            lambda: self._operations.observe(list(transcript), action_result),
        )

    async def compact(self, transcript: Sequence[str]) -> CompactionResult:
        return await self._call("compact", lambda: self._operations.compact(list(transcript)))

    async def persist(self, messages: list[PersistMessage]) -> bool:
        """Best-effort persistence. Returns False when retries ran out."""
        if self._persister is None:
            return True
        try:
            await self._call("persist", lambda: self._persister.persist(messages))
        except OperationFailedError as e:
            logger.error("Persist failed for %s, continuing: %s", self._conversation_id, e)
            await self._report("persist", "persist", str(e))
            return False
        return True

    async def _call(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run ``call`` under the retry policy.

        ContractViolationError is not retried: asking the same
        non-deterministic model again will not reliably fix a malformed
        result.
        """
        policy = self._policy
        self.operations_issued += 1
        last_error: BaseException | None = None
        message = ""

        for attempt in range(1, policy.max_attempts + 1):
            try:
                return await asyncio.wait_for(call(), timeout=policy.timeout)
            except ContractViolationError:
                raise
            except TimeoutError as e:
                last_error = e
                message = f"timed out after {policy.timeout:.1f}s"
            except Exception as e:
                last_error = e
                message = str(e) or type(e).__name__

            logger.warning(
                "%s attempt %d/%d failed for %s: %s",
                operation,
                attempt,
                policy.max_attempts,
                self._conversation_id,
                message,
            )
            await self._report("transient", operation, message, attempt=attempt)
            if attempt < policy.max_attempts:
                await asyncio.sleep(policy.interval)

        raise OperationFailedError(operation, policy.max_attempts, message) from last_error

    async def _report(self, kind: str, operation: str, message: str, **extra: Any) -> None:
        if self._bus is None:
            return
        await self._bus.emit(Event(
            type="error",
            conversation_id=self._conversation_id,
            data={"kind": kind, "operation": operation, "message": message, **extra},
        ))
