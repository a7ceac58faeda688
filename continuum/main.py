"""Continuum component wiring.

Initializes components in dependency order:
  Settings -> EventBus (+ EventForwarder) -> SnapshotStore -> ConversationHost

The reasoning operations and capabilities are supplied by the embedding
application; this module only assembles the orchestration side around them.
"""

from __future__ import annotations

import logging

import httpx

from continuum.config import Settings
from continuum.engine.capabilities import CapabilityRegistry
from continuum.engine.gateway import Persister, ReasoningOperations
from continuum.events import EventBus
from continuum.handlers.event_forwarder import EventForwarder
from continuum.handlers.transcript_logger import TranscriptLogger
from continuum.runtime.host import ConversationHost
from continuum.runtime.snapshots import FileSnapshotStore, InMemorySnapshotStore, SnapshotStore

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


async def create_components(
    settings: Settings,
    operations: ReasoningOperations,
    *,
    registry: CapabilityRegistry | None = None,
    persister: Persister | None = None,
) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components so shutdown_components() can tear
    them down in reverse.

    1. EventBus - optional (None if event_bus_enabled is off)
    2. EventForwarder - optional (needs the bus and an event_sink_url)
    3. SnapshotStore - file-backed when snapshot_dir is set
    4. ConversationHost
    """
    bus = None
    sink_http = None
    forwarder = None
    if settings.event_bus_enabled:
        bus = EventBus(
            max_queue=settings.event_queue_size,
            drain_timeout=settings.event_drain_timeout,
        )
        if settings.event_sink_url:
            sink_http = httpx.AsyncClient(
                timeout=httpx.Timeout(settings.event_sink_timeout),
            )
            forwarder = EventForwarder(bus, settings, sink_http)
            logger.info("Forwarding events to %s", settings.event_sink_url)
        await bus.start()

    store: SnapshotStore
    if settings.snapshot_dir:
        store = FileSnapshotStore(settings.snapshot_dir)
    else:
        store = InMemorySnapshotStore()
        logger.warning("snapshot_dir not set -- snapshots are kept in memory only")

    registry = registry or CapabilityRegistry()
    host = ConversationHost(
        operations,
        registry,
        settings,
        persister=persister or TranscriptLogger(),
        store=store,
        bus=bus,
    )

    logger.info(
        "Continuum ready: max_context_tokens=%d, retry=%dx%.1fs, timeout=%.1fs",
        settings.max_context_tokens,
        settings.retry_max_attempts,
        settings.retry_interval,
        settings.operation_timeout,
    )

    return {
        "bus": bus,
        "sink_http": sink_http,
        "forwarder": forwarder,
        "store": store,
        "registry": registry,
        "host": host,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Continuum...")

    host = components.get("host")
    if host:
        await host.stop()

    bus = components.get("bus")
    if bus:
        await bus.stop()

    sink_http = components.get("sink_http")
    if sink_http:
        await sink_http.aclose()

    logger.info("Continuum shutdown complete.")
