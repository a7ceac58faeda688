"""Event forwarder -- ships bus events to an external event sink over HTTP.

The sink (a live event stream, a dashboard) runs in another process.
Forwarding is fire-and-forget: a sink that is down or slow costs a debug
log line, never a reasoning step.
"""

from __future__ import annotations

import logging

import httpx

from continuum.config import Settings
from continuum.events import ALL_EVENTS, Event, EventBus

logger = logging.getLogger(__name__)

EMIT_PATH = "/api/emit-event"


class EventForwarder:
    """POSTs every bus event as JSON to ``{event_sink_url}/api/emit-event``."""

    def __init__(self, bus: EventBus, settings: Settings, http: httpx.AsyncClient) -> None:
        self._url = settings.event_sink_url.rstrip("/") + EMIT_PATH
        self._http = http
        self.sent = 0
        self.failed = 0

        bus.on(ALL_EVENTS, self.forward)

    async def forward(self, event: Event) -> None:
        payload = event.to_dict()
        payload.setdefault("message", "")
        try:
            response = await self._http.post(self._url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            self.failed += 1
            logger.debug("Failed to emit event %s to sink: %s", event.type, e)
            return
        self.sent += 1
