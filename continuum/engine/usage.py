"""Usage ledger -- running token accounting for one conversation.

Records are kept as a list rather than a running sum so the ledger can be
handed across a continuation boundary as-is. Totals are field-wise sums,
so record order never changes the result.
"""

from __future__ import annotations

from collections.abc import Iterable

from continuum.engine.schemas import Usage


def sum_usage(records: Iterable[Usage]) -> Usage:
    """Field-wise sum of usage records."""
    total = Usage()
    for record in records:
        total = total + record
    return total


class UsageLedger:
    """Append-only list of usage records."""

    def __init__(self, records: Iterable[Usage] | None = None) -> None:
        self._records: list[Usage] = list(records or [])

    def record(self, usage: Usage | None) -> None:
        """Append a record. Operations that report no usage are skipped."""
        if usage is None:
            return
        self._records.append(usage)

    @property
    def records(self) -> list[Usage]:
        return list(self._records)

    def total(self) -> Usage:
        return sum_usage(self._records)

    def __len__(self) -> int:
        return len(self._records)
