"""Core types shared by the OAC execution engine."""

from oac.core.config import ExecutionConfig, load_config
from oac.core.errors import ErrorCode, ErrorSeverity, OacError, normalize_execution_error
from oac.core.events import Event, EventBus, EventType
from oac.core.models import (
    AgentResult,
    Epic,
    ExecutionPlan,
    Job,
    JobStatus,
    RunResult,
    Task,
    TokenEstimate,
)

__all__ = [
    "AgentResult",
    "Epic",
    "ErrorCode",
    "ErrorSeverity",
    "Event",
    "EventBus",
    "EventType",
    "ExecutionConfig",
    "ExecutionPlan",
    "Job",
    "JobStatus",
    "OacError",
    "RunResult",
    "Task",
    "TokenEstimate",
    "load_config",
    "normalize_execution_error",
]
