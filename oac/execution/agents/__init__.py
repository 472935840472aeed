"""Agent provider contract and the built-in CLI integrations."""

from oac.execution.agents.base import (
    AgentAvailability,
    AgentExecuteParams,
    AgentExecution,
    AgentProvider,
    TokenEstimateParams,
)
from oac.execution.agents.cli import (
    CliAgentProvider,
    ClaudeCodeProvider,
    CodexProvider,
    GeminiProvider,
)
from oac.execution.agents.registry import AdapterRegistry, default_registry

__all__ = [
    "AdapterRegistry",
    "AgentAvailability",
    "AgentExecuteParams",
    "AgentExecution",
    "AgentProvider",
    "ClaudeCodeProvider",
    "CliAgentProvider",
    "CodexProvider",
    "GeminiProvider",
    "TokenEstimateParams",
    "default_registry",
]
