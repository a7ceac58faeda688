"""Shared fakes for engine and runtime tests.

ScriptedOperations stands in for the model-backed operations: think
returns queued results in order, observe and compact return canned text.
RecordingPersister records every persist call.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from continuum.config import Settings
from continuum.engine.gateway import RetryPolicy
from continuum.engine.schemas import CompactionResult, ObservationResult, Usage

# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def usage(input_tokens: int = 10, output_tokens: int = 5) -> dict[str, int]:
    return {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
    }


def answer(answer_text: str, thought: str = "done", tokens: dict | None = None) -> dict[str, Any]:
    result: dict[str, Any] = {"thought": thought, "answer": answer_text}
    if tokens is not None:
        result["usage"] = tokens
    return result


def action(
    name: str,
    input: dict[str, Any] | str | None = None,
    thought: str = "need a capability",
    reason: str = "look it up",
    tokens: dict | None = None,
) -> dict[str, Any]:
    result: dict[str, Any] = {
        "thought": thought,
        "action": {"name": name, "reason": reason, "input": input if input is not None else {}},
    }
    if tokens is not None:
        result["usage"] = tokens
    return result


def fast_policy(max_attempts: int = 3, timeout: float = 1.0) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, interval=0, timeout=timeout)


def mock_bus() -> MagicMock:
    bus = MagicMock()
    bus.emit = AsyncMock()
    return bus


def emitted(bus: MagicMock, event_type: str) -> list:
    """Events of one type passed to a mock bus."""
    return [c.args[0] for c in bus.emit.await_args_list if c.args[0].type == event_type]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until predicate() holds."""

    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class ScriptedOperations:
    """ReasoningOperations fake. Queued items that are exceptions are raised."""

    def __init__(
        self,
        thoughts: list[Any] | None = None,
        *,
        observe_usage: dict | None = None,
        summary: str = "C",
        compact_usage: dict | None = None,
    ) -> None:
        self.thoughts: list[Any] = list(thoughts or [])
        self.observe_usage = observe_usage
        self.summary = summary
        self.compact_usage = compact_usage
        self.observe_error: BaseException | None = None
        self.compact_error: BaseException | None = None
        self.on_compact: Callable[[], None] | None = None
        self.think_calls: list[tuple[list[str], list[dict[str, Any]]]] = []
        self.observe_calls: list[tuple[list[str], str]] = []
        self.compact_calls: list[list[str]] = []

    async def think(self, transcript: list[str], catalog: list[dict[str, Any]]) -> Any:
        self.think_calls.append((list(transcript), catalog))
        if not self.thoughts:
            raise RuntimeError("no scripted thought left")
        item = self.thoughts.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def observe(self, transcript: list[str], action_result: str) -> ObservationResult:
        self.observe_calls.append((list(transcript), action_result))
        if self.observe_error is not None:
            raise self.observe_error
        return ObservationResult(
            observation=f"observed: {action_result}",
            usage=Usage(**self.observe_usage) if self.observe_usage else None,
        )

    async def compact(self, transcript: list[str]) -> CompactionResult:
        self.compact_calls.append(list(transcript))
        if self.on_compact is not None:
            self.on_compact()
        if self.compact_error is not None:
            raise self.compact_error
        return CompactionResult(
            summary=self.summary,
            usage=Usage(**self.compact_usage) if self.compact_usage else None,
        )


class RecordingPersister:
    def __init__(self, fail: bool = False) -> None:
        self.calls: list[list[Any]] = []
        self.fail = fail

    async def persist(self, messages: list[Any]) -> None:
        if self.fail:
            raise ConnectionError("transcript store unavailable")
        self.calls.append(list(messages))

    @property
    def messages(self) -> list[Any]:
        return [m for call in self.calls for m in call]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings with instant retries for tests."""
    return Settings(
        retry_max_attempts=2,
        retry_interval=0,
        operation_timeout=1.0,
        event_bus_enabled=False,
    )


@pytest.fixture
def persister() -> RecordingPersister:
    return RecordingPersister()
