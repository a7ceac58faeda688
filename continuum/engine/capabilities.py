"""Capability registry -- catalog lookup and invocation for the act step.

Provides:
- Capability: a named, externally implemented operation plus its schema
- CapabilityRegistry: registers capabilities and providers, lists the
  catalog, and invokes capabilities by name

The registry is the capability layer of the act operation. An unknown
capability or a capability that raises is a logical failure, not an
infrastructure one: it comes back as a JSON error payload so the next
observation can react to it.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

CapabilityHandler = Callable[..., Awaitable[Any]]

# Async source of capabilities queried on every lookup (e.g. a remote tool server)
CapabilityProvider = Callable[[], Awaitable[list["Capability"]]]


@dataclass
class Capability:
    """A named operation the reasoning step may ask to invoke."""

    name: str
    handler: CapabilityHandler
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


def error_payload(name: str, input: Mapping[str, Any] | str, error: str) -> str:
    """Structured error string returned in place of a capability result."""
    return json.dumps(
        {"name": name, "input": input, "error": error},
        default=str,
    )


class CapabilityRegistry:
    """Registers capabilities and dispatches act calls to them.

    Static capabilities come from register(); providers added with
    add_provider() are queried fresh on every catalog or invoke call, so
    the catalog always reflects what is reachable right now. Zero
    capabilities is a valid catalog.
    """

    def __init__(self) -> None:
        self._capabilities: dict[str, Capability] = {}
        self._providers: list[CapabilityProvider] = []

    def register(
        self,
        name: str,
        handler: CapabilityHandler,
        schema: dict[str, Any] | None = None,
    ) -> None:
        """Register a capability handler with its JSON schema."""
        schema = schema or {}
        self._capabilities[name] = Capability(
            name=name,
            handler=handler,
            description=schema.get("description", ""),
            input_schema=schema,
        )

    def add_provider(self, provider: CapabilityProvider) -> None:
        self._providers.append(provider)

    async def capabilities(self) -> list[Capability]:
        """Static capabilities followed by whatever the providers return now.

        Provider errors propagate: a capability source being unreachable is
        an infrastructure failure the gateway retries.
        """
        result = list(self._capabilities.values())
        for provider in self._providers:
            result.extend(await provider())
        return result

    async def catalog(self) -> list[dict[str, Any]]:
        """Return {name, description, input_schema} for every capability."""
        return [c.describe() for c in await self.capabilities()]

    async def invoke(self, name: str, input: Mapping[str, Any] | str) -> tuple[str, bool]:
        """Invoke a capability and return (result_text, is_error).

        Mapping input is unpacked as keyword arguments, string input is
        passed positionally. Non-string results are JSON-encoded.
        """
        capability = next((c for c in await self.capabilities() if c.name == name), None)
        if capability is None:
            logger.warning("Capability with name %s not found", name)
            return error_payload(name, input, f"Capability with name {name} not found."), True

        try:
            if isinstance(input, Mapping):
                result = await capability.handler(**input)
            else:
                result = await capability.handler(input)
        except Exception as e:
            logger.exception("Error invoking capability %s", name)
            return error_payload(name, input, f"Error invoking capability {name}: {e}"), True

        logger.info("Invoked capability %s", name)
        if isinstance(result, str):
            return result, False
        return json.dumps(result, default=str), False
