"""Run one task attempt on one provider inside a sandbox.

The worker renders the task prompt, starts the provider, turns the
provider's event stream into ``job.progress`` notifications while the run
is in flight, and merges what it observed with the provider's final result.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from pathlib import Path
from typing import Any

from jinja2 import FileSystemLoader, StrictUndefined
from jinja2.sandbox import SandboxedEnvironment

from oac.core.errors import normalize_execution_error
from oac.core.events import EventBus, EventType
from oac.core.models import (
    AgentEvent,
    AgentResult,
    Epic,
    ErrorEvent,
    ExecutionMode,
    FileEditEvent,
    OutputEvent,
    Task,
    TaskComplexity,
    TaskSource,
    TokensEvent,
    ToolUseEvent,
)
from oac.execution.agents.base import (
    DEFAULT_TIMEOUT_MS,
    DEFAULT_TOKEN_BUDGET,
    AgentExecuteParams,
    AgentProvider,
)
from oac.execution.sandbox import SandboxContext

logger = logging.getLogger(__name__)

TASK_TEMPLATE = "task.j2"
EPIC_TEMPLATE = "epic.j2"

# Template directory is package-internal, not user-controlled
_jinja_env = SandboxedEnvironment(
    loader=FileSystemLoader(Path(__file__).parent.parent / "prompts"),
    undefined=StrictUndefined,
    autoescape=False,
    trim_blocks=True,
    lstrip_blocks=True,
)


def build_task_prompt(task: Task) -> str:
    """Render the agent prompt for a task. Same task, same prompt."""
    return _jinja_env.get_template(TASK_TEMPLATE).render(task=task)


def build_epic_prompt(epic: Epic) -> str:
    """Render one prompt covering every subtask of an epic."""
    return _jinja_env.get_template(EPIC_TEMPLATE).render(epic=epic)


def epic_as_task(epic: Epic) -> Task:
    """Flatten an epic into a single Task so it runs through execute_task().

    Target files are the de-duplicated union of the subtasks' files, and the
    description is the full epic prompt.
    """
    target_files = list(
        dict.fromkeys(path for subtask in epic.subtasks for path in subtask.target_files)
    )
    count = len(epic.subtasks)
    if count >= 7:
        complexity = TaskComplexity.COMPLEX
    elif count >= 4:
        complexity = TaskComplexity.MODERATE
    else:
        complexity = TaskComplexity.SIMPLE

    return Task(
        id=epic.id,
        source=epic.subtasks[0].source if epic.subtasks else TaskSource.CUSTOM,
        title=epic.title,
        description=build_epic_prompt(epic),
        target_files=target_files,
        priority=epic.priority,
        complexity=complexity,
        execution_mode=ExecutionMode.NEW_PR,
        metadata={"epicId": epic.id, "subtaskCount": count},
        discovered_at=epic.created_at,
    )


def stage_for_event(event: AgentEvent) -> str:
    if isinstance(event, OutputEvent):
        return event.stream
    if isinstance(event, TokensEvent):
        return "tokens"
    if isinstance(event, FileEditEvent):
        return f"file:{event.action}"
    if isinstance(event, ToolUseEvent):
        return f"tool:{event.tool}"
    if isinstance(event, ErrorEvent):
        return "agent-warning" if event.recoverable else "agent-error"
    return "running"


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return None
    return int(value)


def _merge_result(
    result: AgentResult,
    observed_tokens: int,
    observed_files: dict[str, None],
    started_at: float,
) -> AgentResult:
    files = dict(observed_files)
    for path in result.files_changed:
        files.setdefault(path, None)

    return AgentResult(
        success=result.success,
        exit_code=result.exit_code,
        total_tokens_used=max(result.total_tokens_used, observed_tokens),
        files_changed=list(files),
        duration=result.duration if result.duration > 0 else time.monotonic() - started_at,
        error=result.error,
    )


async def execute_task(
    provider: AgentProvider,
    task: Task,
    sandbox: SandboxContext,
    event_bus: EventBus,
    *,
    execution_id: str | None = None,
    token_budget: int | None = None,
    timeout_ms: int | None = None,
    allow_commits: bool = True,
    env: dict[str, str] | None = None,
    job_id: str | None = None,
) -> AgentResult:
    """Execute one task attempt and return the merged AgentResult.

    Args:
        provider: Agent that does the work
        task: Task to implement
        sandbox: Worktree the agent runs in
        event_bus: Receives a job.progress event per agent event
        execution_id: Id handed to the provider (also used for abort)
        token_budget: Falls back to task.metadata["tokenBudget"], then 50000
        timeout_ms: Falls back to task.metadata["timeoutMs"], then 300000
        allow_commits: Whether the agent may commit in the sandbox
        env: Extra environment for the agent process
        job_id: Job the progress events belong to (defaults to execution_id)

    Raises:
        OacError: normalized failure, original exception as __cause__
    """
    execution_id = execution_id or str(uuid.uuid4())
    job_id = job_id or execution_id
    budget = (
        token_budget
        or _positive_int(task.metadata.get("tokenBudget"))
        or DEFAULT_TOKEN_BUDGET
    )
    timeout = timeout_ms or _positive_int(task.metadata.get("timeoutMs")) or DEFAULT_TIMEOUT_MS

    started_at = time.monotonic()
    observed_tokens = 0
    observed_files: dict[str, None] = {}

    try:
        execution = provider.execute(
            AgentExecuteParams(
                execution_id=execution_id,
                working_directory=sandbox.path,
                prompt=build_task_prompt(task),
                target_files=list(task.target_files),
                token_budget=budget,
                allow_commits=allow_commits,
                timeout_ms=timeout,
                env=dict(env or {}),
            )
        )
    except Exception as e:
        normalized = normalize_execution_error(
            e, task_id=task.id, job_id=job_id, execution_id=execution_id
        )
        if normalized is e:
            raise
        raise normalized from e

    async def consume_events() -> None:
        nonlocal observed_tokens
        async for event in execution.events:
            if isinstance(event, TokensEvent):
                # Providers report a running total; latest value wins
                observed_tokens = event.cumulative_tokens
            elif isinstance(event, FileEditEvent):
                observed_files.setdefault(event.path, None)
            event_bus.emit(
                EventType.JOB_PROGRESS,
                job_id=job_id,
                task_id=task.id,
                tokens_used=observed_tokens,
                stage=stage_for_event(event),
            )

    consumer = asyncio.ensure_future(consume_events())
    try:
        result = await execution.outcome
        execution.events.close()
        await consumer
    except Exception as e:
        # The provider is done; let the stream end and drain what it buffered
        execution.events.close()
        await asyncio.gather(consumer, return_exceptions=True)
        normalized = normalize_execution_error(
            e, task_id=task.id, job_id=job_id, execution_id=execution_id
        )
        logger.debug(f"Task {task.id} attempt {execution_id} failed: {normalized.message}")
        if normalized is e:
            raise
        raise normalized from e
    except BaseException:
        consumer.cancel()
        raise

    return _merge_result(result, observed_tokens, observed_files, started_at)
