"""Provider lookup by id.

Factories rather than instances so every engine run gets providers with
their own bookkeeping of running executions.
"""

from __future__ import annotations

from collections.abc import Callable

from oac.core.errors import ErrorCode, ErrorSeverity, OacError
from oac.execution.agents.base import AgentProvider
from oac.execution.agents.cli import ClaudeCodeProvider, CodexProvider, GeminiProvider

AdapterFactory = Callable[[], AgentProvider]


class AdapterRegistry:
    """Factories keyed by canonical provider id, plus aliases."""

    def __init__(self) -> None:
        self._factories: dict[str, AdapterFactory] = {}
        # Legacy ids kept working
        self._aliases: dict[str, str] = {"codex-cli": "codex"}

    def register(self, provider_id: str, factory: AdapterFactory) -> None:
        """Add a factory. Replaces any previous factory for the same id."""
        self._factories[provider_id] = factory

    def alias(self, alias: str, canonical_id: str) -> None:
        self._aliases[alias] = canonical_id

    def resolve_id(self, raw_id: str) -> str:
        return self._aliases.get(raw_id, raw_id)

    def get(self, raw_id: str) -> AdapterFactory | None:
        return self._factories.get(self.resolve_id(raw_id))

    def create(self, raw_id: str) -> AgentProvider:
        """Instantiate a provider, raising AGENT_NOT_AVAILABLE for unknown ids."""
        factory = self.get(raw_id)
        if factory is None:
            raise OacError(
                f"Unknown agent provider '{raw_id}'. Registered: {', '.join(self.registered_ids())}",
                ErrorCode.AGENT_NOT_AVAILABLE,
                ErrorSeverity.FATAL,
                {"providerId": raw_id},
            )
        return factory()

    def registered_ids(self) -> list[str]:
        return list(self._factories)


def default_registry() -> AdapterRegistry:
    """Registry with the built-in CLI providers."""
    registry = AdapterRegistry()
    registry.register(ClaudeCodeProvider.id, ClaudeCodeProvider)
    registry.register(CodexProvider.id, CodexProvider)
    registry.register(GeminiProvider.id, GeminiProvider)
    return registry
