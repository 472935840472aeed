"""Data models for the OAC execution engine.

Uses Pydantic for schema-enforced records shared with the discovery and
budgeting collaborators.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from oac.core.errors import OacError


def _utc_now() -> datetime:
    return datetime.now(UTC)


# --- Task / plan models (produced by collaborators) ---


class TaskSource(str, Enum):
    """Where a task was discovered."""

    LINT = "lint"
    TODO = "todo"
    TEST_GAP = "test-gap"
    DEAD_CODE = "dead-code"
    GITHUB_ISSUE = "github-issue"
    SECURITY = "security"
    CUSTOM = "custom"


class TaskComplexity(str, Enum):
    TRIVIAL = "trivial"
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class ExecutionMode(str, Enum):
    NEW_PR = "new-pr"
    UPDATE_PR = "update-pr"
    DIRECT_COMMIT = "direct-commit"


class LinkedIssue(BaseModel):
    """Issue on the hosting service a task resolves."""

    number: int
    url: str
    labels: list[str] = Field(default_factory=list)


class Task(BaseModel):
    """A unit of work found by discovery."""

    id: str
    source: TaskSource = TaskSource.CUSTOM
    title: str
    description: str = ""
    target_files: list[str] = Field(default_factory=list)
    priority: int = Field(default=50, ge=0, le=100)
    complexity: TaskComplexity = TaskComplexity.SIMPLE
    execution_mode: ExecutionMode = ExecutionMode.NEW_PR
    linked_issue: LinkedIssue | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    discovered_at: datetime = Field(default_factory=_utc_now)
    parent_epic_id: str | None = None


class EpicStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class Epic(BaseModel):
    """Related tasks executed together in one agent session.

    ``scope`` names the module the subtasks live in ("budget", "root", ...).
    ``context_files`` is the wider set of files the agent should read but
    is not asked to change.
    """

    id: str
    title: str
    description: str = ""
    scope: str = "root"
    subtasks: list[Task] = Field(default_factory=list)
    context_files: list[str] = Field(default_factory=list)
    status: EpicStatus = EpicStatus.PENDING
    priority: int = Field(default=50, ge=0, le=100)
    estimated_tokens: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=_utc_now)
    completed_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class TokenEstimate(BaseModel):
    """Token estimate for one task on one provider."""

    task_id: str
    provider_id: str
    context_tokens: int = Field(default=0, ge=0)
    prompt_tokens: int = Field(default=0, ge=0)
    expected_output_tokens: int = Field(default=0, ge=0)
    total_estimated_tokens: int = Field(default=0, ge=0)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    feasible: bool = True
    estimated_cost_usd: float | None = None


class PlannedTask(BaseModel):
    task: Task
    estimate: TokenEstimate
    cumulative_budget_used: int = 0


class DeferredTask(BaseModel):
    task: Task
    estimate: TokenEstimate
    reason: Literal["budget_exceeded", "low_confidence", "too_complex"]


class ExecutionPlan(BaseModel):
    """Budgeted plan handed to the engine by the planner."""

    total_budget: int = 0
    selected_tasks: list[PlannedTask] = Field(default_factory=list)
    deferred_tasks: list[DeferredTask] = Field(default_factory=list)
    reserve_tokens: int = 0
    remaining_tokens: int = 0


# --- Agent execution models ---


class AgentResult(BaseModel):
    """Final outcome of one agent execution."""

    success: bool
    exit_code: int
    total_tokens_used: int = 0
    files_changed: list[str] = Field(default_factory=list)
    duration: float = 0.0  # seconds
    error: str | None = None


class OutputEvent(BaseModel):
    type: Literal["output"] = "output"
    content: str
    stream: Literal["stdout", "stderr"] = "stdout"


class TokensEvent(BaseModel):
    type: Literal["tokens"] = "tokens"
    input_tokens: int = 0
    output_tokens: int = 0
    cumulative_tokens: int = 0


class FileEditEvent(BaseModel):
    type: Literal["file_edit"] = "file_edit"
    path: str
    action: Literal["create", "modify", "delete"]


class ToolUseEvent(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    tool: str
    input: Any = None


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str
    recoverable: bool = True


AgentEvent = Annotated[
    OutputEvent | TokensEvent | FileEditEvent | ToolUseEvent | ErrorEvent,
    Field(discriminator="type"),
]


# --- Job models ---


class JobStatus(str, Enum):
    """Status of a scheduled job."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ABORTED)


class JobStateError(Exception):
    """A job was moved to a second terminal status."""

    pass


class Job(BaseModel):
    """One attempt-tracked unit of scheduled work."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    task: Task
    estimate: TokenEstimate
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    max_attempts: int = Field(default=2, ge=1)
    worker_id: str | None = None
    created_at: float = Field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    error: OacError | None = None
    result: AgentResult | None = None

    def finish(
        self,
        status: JobStatus,
        *,
        error: OacError | None = None,
        result: AgentResult | None = None,
    ) -> None:
        """Move the job to a terminal status. Allowed exactly once."""
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        if self.status.is_terminal:
            raise JobStateError(
                f"Job {self.id} is already {self.status.value}, cannot mark {status.value}"
            )
        self.status = status
        self.completed_at = time.time()
        if error is not None:
            self.error = error
        if result is not None:
            self.result = result


class RunResult(BaseModel):
    """Everything one run() produced, grouped by terminal status."""

    jobs: list[Job] = Field(default_factory=list)
    completed: list[Job] = Field(default_factory=list)
    failed: list[Job] = Field(default_factory=list)
    aborted: list[Job] = Field(default_factory=list)

    @classmethod
    def from_jobs(cls, jobs: list[Job]) -> "RunResult":
        return cls(
            jobs=jobs,
            completed=[j for j in jobs if j.status == JobStatus.COMPLETED],
            failed=[j for j in jobs if j.status == JobStatus.FAILED],
            aborted=[j for j in jobs if j.status == JobStatus.ABORTED],
        )
