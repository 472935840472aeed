# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the OAC test suite.

This module provides foundational fixtures used across all test modules:
- Task, estimate and plan factories
- A scripted in-memory agent provider
- Sandbox managers backed by a mock git backend
- Real git repositories with an ``origin`` remote (marked ``git``)

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
"""

from __future__ import annotations

import asyncio
import subprocess
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import Mock

import pytest

from oac.core.config import ExecutionConfig
from oac.core.events import Event, EventBus
from oac.core.models import (
    AgentEvent,
    AgentResult,
    ExecutionPlan,
    PlannedTask,
    Task,
    TokenEstimate,
)
from oac.execution.agents.base import (
    AgentAvailability,
    AgentExecuteParams,
    AgentExecution,
    AgentProvider,
)
from oac.execution.channel import EventChannel
from oac.execution.sandbox import SandboxManager

# =============================================================================
# Scripted agent provider
# =============================================================================


def ok_result(tokens: int = 100, files: list[str] | None = None) -> AgentResult:
    return AgentResult(
        success=True,
        exit_code=0,
        total_tokens_used=tokens,
        files_changed=files or [],
        duration=0.5,
    )


class ScriptedProvider(AgentProvider):
    """In-memory provider whose executions follow a script.

    Each execute() consumes the next step:
    - AgentResult: returned as the outcome
    - BaseException instance: raised from the outcome
    Once the script is exhausted every run succeeds.

    ``events`` are pushed on every run before the outcome settles. With
    ``hold=True`` runs block until abort() is called for them.
    """

    def __init__(
        self,
        provider_id: str = "fake",
        steps: list[AgentResult | BaseException] | None = None,
        events: list[AgentEvent] | None = None,
        hold: bool = False,
        delay: float = 0.0,
    ):
        self.id = provider_id
        self.name = f"Scripted {provider_id}"
        self.steps = list(steps or [])
        self.events = list(events or [])
        self.hold = hold
        self.delay = delay
        self.calls: list[AgentExecuteParams] = []
        self.aborted: list[str] = []
        self.active = 0
        self.peak = 0
        self.started = asyncio.Event()
        self._gates: dict[str, asyncio.Event] = {}

    async def check_availability(self) -> AgentAvailability:
        return AgentAvailability(available=True, version="1.0.0")

    def execute(self, params: AgentExecuteParams) -> AgentExecution:
        self.calls.append(params)
        step = self.steps.pop(0) if self.steps else ok_result()
        channel: EventChannel[AgentEvent] = EventChannel()
        gate = asyncio.Event()
        self._gates[params.execution_id] = gate

        async def outcome() -> AgentResult:
            self.active += 1
            self.peak = max(self.peak, self.active)
            self.started.set()
            try:
                for event in self.events:
                    channel.push(event)
                    await asyncio.sleep(0)
                if self.delay:
                    await asyncio.sleep(self.delay)
                if self.hold:
                    await gate.wait()
                    return AgentResult(success=False, exit_code=143, error="terminated")
                if isinstance(step, BaseException):
                    raise step
                return step
            finally:
                self.active -= 1
                self._gates.pop(params.execution_id, None)
                channel.close()

        return AgentExecution(
            execution_id=params.execution_id,
            provider_id=self.id,
            events=channel,
            outcome=asyncio.ensure_future(outcome()),
        )

    async def abort(self, execution_id: str) -> None:
        self.aborted.append(execution_id)
        gate = self._gates.get(execution_id)
        if gate is not None:
            gate.set()


@pytest.fixture
def scripted_provider() -> Callable[..., ScriptedProvider]:
    """Factory for ScriptedProvider instances."""
    return ScriptedProvider


# =============================================================================
# Task / plan factories
# =============================================================================


@pytest.fixture
def make_task() -> Callable[..., Task]:
    """Factory for Task models with sensible defaults."""

    def _make(task_id: str = "task-1", **overrides: Any) -> Task:
        fields: dict[str, Any] = {
            "id": task_id,
            "title": f"Fix {task_id}",
            "description": "Replace the deprecated call.",
            "target_files": ["src/app.py"],
        }
        fields.update(overrides)
        return Task(**fields)

    return _make


@pytest.fixture
def make_plan(make_task: Callable[..., Task]) -> Callable[..., ExecutionPlan]:
    """Factory for an ExecutionPlan selecting the given task ids."""

    def _make(*task_ids: str, tokens: int = 1_000) -> ExecutionPlan:
        selected = [
            PlannedTask(
                task=make_task(task_id),
                estimate=TokenEstimate(
                    task_id=task_id, provider_id="fake", total_estimated_tokens=tokens
                ),
                cumulative_budget_used=tokens * (i + 1),
            )
            for i, task_id in enumerate(task_ids)
        ]
        return ExecutionPlan(
            total_budget=tokens * len(task_ids) * 2,
            selected_tasks=selected,
            remaining_tokens=tokens * len(task_ids),
        )

    return _make


# =============================================================================
# Engine plumbing
# =============================================================================


@pytest.fixture
def mock_git() -> Mock:
    """GitBackend double; every operation succeeds."""
    return Mock()


@pytest.fixture
def sandbox_manager(mock_git: Mock) -> SandboxManager:
    """SandboxManager that never touches a real repository."""
    return SandboxManager(git=mock_git)


@pytest.fixture
def engine_config(tmp_path: Path) -> ExecutionConfig:
    repo = tmp_path / "repo"
    repo.mkdir()
    return ExecutionConfig(repo_path=repo, concurrency=2, max_attempts=2)


@pytest.fixture
def recorded_bus() -> tuple[EventBus, list[Event]]:
    """EventBus plus the list every published event is appended to."""
    bus = EventBus()
    events: list[Event] = []
    bus.subscribe(None, events.append)
    return bus, events


@pytest.fixture
def no_backoff(monkeypatch: pytest.MonkeyPatch) -> list[int]:
    """Make retries immediate; returns the attempts backoff was asked for."""
    requested: list[int] = []

    def fake_backoff(attempt: int, rng: Any = None) -> float:
        requested.append(attempt)
        return 0.0

    monkeypatch.setattr("oac.execution.engine.calculate_backoff", fake_backoff)
    return requested


# =============================================================================
# Real git fixtures
# =============================================================================


def _git(cwd: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True)


@pytest.fixture
def repo_with_origin(tmp_path: Path) -> Path:
    """Create a git repository whose ``origin`` remote has a ``main`` branch.

    WARNING: Runs actual git commands. Only use for real worktree tests.

    Layout:
        tmp_path/origin.git   bare remote
        tmp_path/work/repo    clone; worktrees land in tmp_path/work/.oac-worktrees
    """
    origin = tmp_path / "origin.git"
    repo = tmp_path / "work" / "repo"
    repo.mkdir(parents=True)
    try:
        _git(tmp_path, "init", "--bare", str(origin))
        _git(repo, "init")
        _git(repo, "config", "user.email", "test@example.com")
        _git(repo, "config", "user.name", "Test User")
        (repo / "README.md").write_text("# Test Project\n")
        _git(repo, "add", ".")
        _git(repo, "commit", "-m", "Initial commit")
        _git(repo, "branch", "-M", "main")
        _git(repo, "remote", "add", "origin", str(origin))
        _git(repo, "push", "origin", "main")
        _git(repo, "fetch", "origin")
    except (subprocess.CalledProcessError, FileNotFoundError):
        pytest.skip("Git not available")
    return repo
