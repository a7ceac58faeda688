"""Context management -- token-budget truncation and transcript rendering.

The transcript is an ordered list of rendered entries (user turns,
answers, thoughts, actions, observations). Order is the reasoning context,
so nothing here ever reorders entries.

Compaction itself is an external operation; this module only splices its
summary back in front of the most recent raw entries.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from continuum.engine.schemas import ActionRequest, PendingTurn

DEFAULT_KEEP_RECENT = 3


# ------------------------------------------------------------------
# Token Estimator
# ------------------------------------------------------------------


class TokenEstimator:
    """Estimates token counts with a chars/4 heuristic.

    A budget heuristic, not an accounting guarantee. The ratio is fixed
    for the life of the estimator so truncation decisions replay the same
    way after a restart.
    """

    def __init__(self, ratio: float = 0.25) -> None:
        self._ratio = ratio  # tokens per char

    @property
    def ratio(self) -> float:
        """Current tokens-per-char ratio."""
        return self._ratio

    def estimate(self, text: str | Any) -> int:
        """Estimate token count for text content."""
        if isinstance(text, str):
            return max(1, int(len(text) * self._ratio))
        return max(1, int(len(str(text)) * self._ratio))

    def estimate_entries(self, entries: Sequence[str]) -> int:
        """Estimate total tokens for a transcript."""
        return sum(self.estimate(e) for e in entries)


_DEFAULT_ESTIMATOR = TokenEstimator()


def truncate_context(
    transcript: Sequence[str],
    budget: int,
    estimator: TokenEstimator | None = None,
) -> list[str]:
    """Keep the most recent entries that fit in ``budget`` estimated tokens.

    Walks newest to oldest and stops at the first entry that would push
    the running total over budget. The newest entry is always kept, even
    when it alone exceeds the budget, so a non-empty transcript never
    truncates to nothing.
    """
    if budget < 0:
        raise ValueError(f"budget must be >= 0, got {budget}")
    if not transcript:
        return []

    est = estimator or _DEFAULT_ESTIMATOR
    kept = 0
    used = 0
    for entry in reversed(transcript):
        cost = est.estimate(entry)
        if kept and used + cost > budget:
            break
        used += cost
        kept += 1
    return list(transcript[len(transcript) - kept:])


def splice_compacted(
    transcript: Sequence[str],
    summary: str,
    keep_recent: int = DEFAULT_KEEP_RECENT,
) -> list[str]:
    """Replace a transcript with its summary followed by the last raw entries."""
    if keep_recent <= 0:
        return [summary]
    return [summary, *transcript[-keep_recent:]]


# ------------------------------------------------------------------
# Entry renderers
# ------------------------------------------------------------------


def render_user_turn(turn: PendingTurn) -> str:
    return (
        f'<user_message name="{turn.name}" date="{turn.timestamp}">\n'
        f"{turn.message}\n</user_message>"
    )


def render_answer(answer: str) -> str:
    return f"<answer>\n{answer}\n</answer>"


def render_thought(thought: str) -> str:
    return f"<thought>\n{thought}\n</thought>"


def render_action(action: ActionRequest) -> str:
    return (
        f"<action><reason>\n{action.reason}\n</reason>"
        f"<name>{action.name}</name>"
        f"<input>{json.dumps(action.input)}</input></action>"
    )


def render_observation(observation: str) -> str:
    return f"<observation>\n{observation}\n</observation>"
