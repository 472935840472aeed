"""Job scheduling, worktree sandboxes and agent execution."""

from oac.execution.engine import ExecutionEngine
from oac.execution.sandbox import SandboxContext, SandboxManager
from oac.execution.worker import build_epic_prompt, epic_as_task, execute_task

__all__ = [
    "ExecutionEngine",
    "SandboxContext",
    "SandboxManager",
    "build_epic_prompt",
    "epic_as_task",
    "execute_task",
]
