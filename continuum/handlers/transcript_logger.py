"""Log-only persister.

Stands in for a real transcript store: writes each persisted message to
the log and keeps nothing. Useful for local runs and as the default when
no persister is wired in.
"""

from __future__ import annotations

import logging

from continuum.engine.schemas import PersistMessage, UserMessage

logger = logging.getLogger(__name__)


class TranscriptLogger:
    async def persist(self, messages: list[PersistMessage]) -> None:
        for msg in messages:
            if isinstance(msg, UserMessage):
                logger.info("%s (%s): %s", msg.name, msg.date, msg.message)
            else:
                logger.info("%s: %s", msg.role, msg.message)
