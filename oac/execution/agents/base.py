"""Uniform contract every coding-agent integration implements.

The engine and worker only talk to agents through AgentProvider. A provider
starts an execution and hands back an AgentExecution: a live stream of
AgentEvents plus an awaitable that settles once with the AgentResult.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from dataclasses import dataclass, field
from pathlib import Path

from oac.core.models import AgentEvent, AgentResult, TokenEstimate
from oac.execution.channel import EventChannel

DEFAULT_TOKEN_BUDGET = 50_000
DEFAULT_TIMEOUT_MS = 300_000


@dataclass
class AgentAvailability:
    """Result of probing whether an agent tool can be used."""

    available: bool
    version: str | None = None
    error: str | None = None
    remaining_budget: int | None = None


@dataclass
class AgentExecuteParams:
    """Everything a provider needs to run one attempt."""

    execution_id: str
    working_directory: Path
    prompt: str
    target_files: list[str] = field(default_factory=list)
    token_budget: int = DEFAULT_TOKEN_BUDGET
    allow_commits: bool = True
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class TokenEstimateParams:
    task_id: str
    prompt: str
    target_files: list[str] = field(default_factory=list)
    context_tokens: int | None = None
    expected_output_tokens: int | None = None


@dataclass
class AgentExecution:
    """Handle for an in-flight agent run.

    ``events`` is single-pass and ends when the run ends. ``outcome``
    resolves to the AgentResult or raises an OacError.
    """

    execution_id: str
    provider_id: str
    events: EventChannel[AgentEvent]
    outcome: Awaitable[AgentResult]
    pid: int | None = None


def estimate_text_tokens(text: str) -> int:
    """Rough token count: ~4 characters per token."""
    if not text:
        return 0
    return max(1, math.ceil(len(text) / 4))


class AgentProvider(ABC):
    """Base class for coding-agent integrations.

    Subclasses set ``id`` and ``name``. ``context_window`` (tokens) bounds
    what estimate_tokens() reports as feasible; None means unbounded.
    """

    id: str
    name: str
    context_window: int | None = None

    @abstractmethod
    async def check_availability(self) -> AgentAvailability:
        """Check whether the tool can run. Must report problems in the result, never raise."""
        pass

    @abstractmethod
    def execute(self, params: AgentExecuteParams) -> AgentExecution:
        """Start a run and return its handle immediately.

        Must be called from a running event loop.
        """
        pass

    @abstractmethod
    async def abort(self, execution_id: str) -> None:
        """Stop a running execution. Unknown ids are ignored."""
        pass

    async def estimate_tokens(self, params: TokenEstimateParams) -> TokenEstimate:
        """Heuristic estimate from the prompt length and target file list."""
        context_tokens = params.context_tokens
        if context_tokens is None:
            context_tokens = len(params.target_files) * 80 + len("\n".join(params.target_files))
        prompt_tokens = estimate_text_tokens(params.prompt)
        expected_output = params.expected_output_tokens
        if expected_output is None:
            expected_output = max(128, math.ceil(prompt_tokens * 0.6))
        total = context_tokens + prompt_tokens + expected_output

        return TokenEstimate(
            task_id=params.task_id,
            provider_id=self.id,
            context_tokens=context_tokens,
            prompt_tokens=prompt_tokens,
            expected_output_tokens=expected_output,
            total_estimated_tokens=total,
            confidence=0.6,
            feasible=self.context_window is None or total <= self.context_window,
        )
