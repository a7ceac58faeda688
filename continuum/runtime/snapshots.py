"""Snapshot stores -- where conversation state waits between epochs.

A snapshot is written at every continuation boundary and whenever a step
fails, and removed when the conversation exits. Stores hold serialized
JSON so whatever comes back out is exactly what a restarted process would
see.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

from continuum.engine.schemas import ConversationSnapshot

logger = logging.getLogger(__name__)


class SnapshotStore(Protocol):
    async def save(self, snapshot: ConversationSnapshot) -> None: ...

    async def load(self, conversation_id: str) -> ConversationSnapshot | None: ...

    async def delete(self, conversation_id: str) -> None: ...


class InMemorySnapshotStore:
    """Process-local store. Snapshots still go through JSON."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def save(self, snapshot: ConversationSnapshot) -> None:
        self._data[snapshot.conversation_id] = snapshot.model_dump_json()

    async def load(self, conversation_id: str) -> ConversationSnapshot | None:
        raw = self._data.get(conversation_id)
        if raw is None:
            return None
        return ConversationSnapshot.model_validate_json(raw)

    async def delete(self, conversation_id: str) -> None:
        self._data.pop(conversation_id, None)

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._data


class FileSnapshotStore:
    """One JSON file per conversation under ``directory``.

    Writes go to a temp file that is then renamed over the target, so a
    crash mid-write leaves the previous snapshot intact.
    """

    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, conversation_id: str) -> Path:
        return self._dir / f"{quote(conversation_id, safe='')}.json"

    async def save(self, snapshot: ConversationSnapshot) -> None:
        await asyncio.to_thread(self._write, snapshot)

    async def load(self, conversation_id: str) -> ConversationSnapshot | None:
        return await asyncio.to_thread(self._read, conversation_id)

    async def delete(self, conversation_id: str) -> None:
        await asyncio.to_thread(self.path_for(conversation_id).unlink, missing_ok=True)

    def _write(self, snapshot: ConversationSnapshot) -> None:
        target = self.path_for(snapshot.conversation_id)
        tmp = target.with_suffix(".json.tmp")
        tmp.write_text(snapshot.model_dump_json(), encoding="utf-8")
        os.replace(tmp, target)
        logger.debug("Saved snapshot %s (epoch %d)", target.name, snapshot.epoch)

    def _read(self, conversation_id: str) -> ConversationSnapshot | None:
        path = self.path_for(conversation_id)
        if not path.exists():
            return None
        return ConversationSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
