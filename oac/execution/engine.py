"""Bounded-concurrency scheduler for task jobs.

ExecutionEngine turns an ExecutionPlan into Jobs and drains them through a
fixed number of worker coroutines. Each attempt picks a provider round
robin, runs the task in a fresh worktree sandbox, and either finalizes the
job or retries it after a backoff when the failure is transient.

Per-job failures are recorded on the job and never escape run().
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import time
import uuid
from collections import deque
from collections.abc import Sequence
from datetime import UTC, datetime

from oac.core.config import ExecutionConfig
from oac.core.errors import (
    ErrorCode,
    ErrorSeverity,
    OacError,
    execution_error,
    normalize_execution_error,
)
from oac.core.events import EventBus, EventType
from oac.core.models import AgentResult, ExecutionPlan, Job, JobStatus, RunResult
from oac.execution.agents.base import AgentProvider
from oac.execution.resilience import (
    CircuitBreaker,
    CircuitOpenError,
    calculate_backoff,
    is_transient_error,
)
from oac.execution.sandbox import SandboxManager
from oac.execution.worker import execute_task

logger = logging.getLogger(__name__)

_UNSAFE_BRANCH_CHARS = re.compile(r"[^a-z0-9/_-]+")
MAX_SLUG_LENGTH = 48


def sanitize_branch_segment(value: str) -> str:
    """Lowercase slug safe to embed in a branch name. Never empty."""
    slug = _UNSAFE_BRANCH_CHARS.sub("-", value.lower())
    slug = re.sub(r"-{2,}", "-", slug)
    slug = re.sub(r"/{2,}", "/", slug)
    slug = slug[:MAX_SLUG_LENGTH].strip("-/")
    return slug or "task"


class ExecutionEngine:
    """Schedules jobs across agent providers with bounded concurrency.

    Usage:
        engine = ExecutionEngine([ClaudeCodeProvider()], config=load_config())
        engine.enqueue(plan)
        result = await engine.run()
    """

    def __init__(
        self,
        providers: Sequence[AgentProvider],
        event_bus: EventBus | None = None,
        config: ExecutionConfig | None = None,
        sandbox_manager: SandboxManager | None = None,
        use_circuit_breaker: bool = False,
    ):
        if not providers:
            raise OacError(
                "ExecutionEngine requires at least one agent provider",
                ErrorCode.AGENT_NOT_AVAILABLE,
                ErrorSeverity.FATAL,
            )
        self.providers = list(providers)
        self.event_bus = event_bus or EventBus()
        self.config = config or ExecutionConfig()
        self.sandbox_manager = sandbox_manager or SandboxManager()
        # One breaker per provider slot, aligned with self.providers
        self.breakers: list[CircuitBreaker] | None = (
            [CircuitBreaker() for _ in self.providers] if use_circuit_breaker else None
        )

        self._jobs: dict[str, Job] = {}
        self._pending: deque[Job] = deque()
        self._active: dict[str, tuple[Job, AgentProvider]] = {}
        self._abort_event = asyncio.Event()
        self._cursor = 0

    @property
    def jobs(self) -> list[Job]:
        return list(self._jobs.values())

    # =========================================================================
    # Public API
    # =========================================================================

    def enqueue(self, plan: ExecutionPlan) -> list[Job]:
        """Create one queued job per selected task, in plan order."""
        jobs = []
        for planned in plan.selected_tasks:
            job = Job(
                id=str(uuid.uuid4()),
                task=planned.task,
                estimate=planned.estimate,
                max_attempts=self.config.max_attempts,
            )
            self._jobs[job.id] = job
            self._pending.append(job)
            jobs.append(job)
        logger.debug(f"Enqueued {len(jobs)} job(s)")
        return jobs

    async def run(self) -> RunResult:
        """Drain the queue and return every job grouped by terminal status."""
        self._abort_event.clear()
        workers = min(self.config.concurrency, len(self._pending))
        if workers:
            logger.info(f"Running {len(self._pending)} job(s) with {workers} worker(s)")
            await asyncio.gather(*(self._worker_loop() for _ in range(workers)))

        result = RunResult.from_jobs(self.jobs)
        self.event_bus.emit(
            EventType.RUN_COMPLETED,
            completed=len(result.completed),
            failed=len(result.failed),
            aborted=len(result.aborted),
        )
        return result

    async def abort(self) -> None:
        """Abort queued jobs now and ask providers to stop running ones.

        Running jobs become aborted when their provider unwinds; run() still
        returns normally.
        """
        self._abort_event.set()
        abort_error = self._abort_error()

        for job in self._jobs.values():
            if job.status == JobStatus.QUEUED:
                job.finish(JobStatus.ABORTED, error=abort_error)
                self._emit_terminal(job)
        self._pending.clear()

        active = list(self._active.values())
        if active:
            logger.info(f"Aborting {len(active)} running job(s)")
        outcomes = await asyncio.gather(
            *(provider.abort(job.id) for job, provider in active),
            return_exceptions=True,
        )
        for (job, provider), outcome in zip(active, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"Provider {provider.id} failed to abort job {job.id}: {outcome}")

    def create_branch_name(self, job: Job) -> str:
        """<prefix>/<YYYYMMDD>/<task-slug>-<hash>-a<attempt>"""
        date_segment = datetime.now(UTC).strftime("%Y%m%d")
        slug = sanitize_branch_segment(job.task.id)
        digest = hashlib.sha1(f"{job.task.id}:{job.id}".encode()).hexdigest()[:8]
        return f"{self.config.branch_prefix}/{date_segment}/{slug}-{digest}-a{job.attempts}"

    # =========================================================================
    # Scheduling
    # =========================================================================

    async def _worker_loop(self) -> None:
        while self._pending and not self._abort_event.is_set():
            job = self._pending.popleft()
            if job.status != JobStatus.QUEUED:
                continue
            try:
                await self._run_job(job)
            except Exception as e:
                # Last line of defense: a job failure must not take down the pool
                logger.error(f"Job {job.id} crashed: {e}")
                if not job.status.is_terminal:
                    job.finish(JobStatus.FAILED, error=self._normalize(e, job))
                    self._emit_terminal(job)

    def _select_provider(self) -> int:
        """Index of the next provider, round robin.

        With breakers enabled, providers whose circuit is open are skipped.
        """
        count = len(self.providers)
        if self.breakers is None:
            index = self._cursor % count
            self._cursor = (self._cursor + 1) % count
            return index

        for _ in range(count):
            index = self._cursor % count
            self._cursor = (self._cursor + 1) % count
            if not self.breakers[index].is_open():
                return index
        raise CircuitOpenError(
            "All agent providers have open circuits",
            context={"providers": [p.id for p in self.providers]},
        )

    async def _run_job(self, job: Job) -> None:
        job.status = JobStatus.RUNNING
        job.started_at = time.time()

        while True:
            try:
                index = self._select_provider()
            except CircuitOpenError as e:
                self._finish_failed(job, e)
                return
            provider = self.providers[index]

            job.attempts += 1
            job.worker_id = provider.id
            logger.info(
                f"Job {job.id} ({job.task.id}) attempt {job.attempts}/{job.max_attempts} "
                f"on {provider.id}"
            )
            self.event_bus.emit(
                EventType.JOB_STARTED,
                job_id=job.id,
                task_id=job.task.id,
                attempt=job.attempts,
                provider=provider.id,
            )

            result: AgentResult | None = None
            error: OacError | None = None
            self._active[job.id] = (job, provider)
            try:
                result = await self._attempt(job, provider)
            except Exception as e:
                error = self._normalize(e, job)
            finally:
                self._active.pop(job.id, None)

            if self._abort_event.is_set():
                self._finish_aborted(job, result)
                return

            if result is not None and result.success:
                self._record_outcome(index, success=True)
                job.finish(JobStatus.COMPLETED, result=result)
                logger.info(f"Job {job.id} completed in {job.attempts} attempt(s)")
                self._emit_terminal(job)
                return

            if result is not None:
                job.result = result
                error = execution_error(
                    ErrorCode.AGENT_EXECUTION_FAILED,
                    result.error or f"Task {job.task.id} exited with code {result.exit_code}.",
                    {
                        "taskId": job.task.id,
                        "jobId": job.id,
                        "exitCode": result.exit_code,
                        "attempt": job.attempts,
                    },
                )
            self._record_outcome(index, success=False)

            if job.attempts < job.max_attempts and is_transient_error(error):
                delay = calculate_backoff(job.attempts)
                logger.warning(
                    f"Job {job.id} attempt {job.attempts} failed ({error.code.value}), "
                    f"retrying in {delay:.1f}s"
                )
                self.event_bus.emit(
                    EventType.JOB_RETRYING,
                    job_id=job.id,
                    task_id=job.task.id,
                    attempt=job.attempts,
                    delay=delay,
                    error=error.to_dict(),
                )
                if await self._wait_backoff(delay):
                    self._finish_aborted(job, result)
                    return
                continue

            self._finish_failed(job, error)
            return

    async def _attempt(self, job: Job, provider: AgentProvider) -> AgentResult | None:
        """One sandboxed execution. None means abort arrived before the agent started."""
        branch_name = self.create_branch_name(job)
        token_budget = job.estimate.total_estimated_tokens or self.config.default_token_budget
        async with self.sandbox_manager.sandbox(
            self.config.repo_path, branch_name, self.config.base_branch
        ) as sandbox:
            if self._abort_event.is_set():
                return None
            return await execute_task(
                provider,
                job.task,
                sandbox,
                self.event_bus,
                execution_id=job.id,
                job_id=job.id,
                token_budget=token_budget,
                timeout_ms=self.config.task_timeout_ms,
                allow_commits=True,
            )

    async def _wait_backoff(self, delay: float) -> bool:
        """Sleep for delay seconds. True if abort() interrupted the wait."""
        try:
            await asyncio.wait_for(self._abort_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    # =========================================================================
    # Outcomes
    # =========================================================================

    def _record_outcome(self, index: int, success: bool) -> None:
        if self.breakers is None:
            return
        if success:
            self.breakers[index].record_success()
        else:
            self.breakers[index].record_failure()

    def _finish_failed(self, job: Job, error: OacError) -> None:
        job.finish(JobStatus.FAILED, error=error)
        logger.error(f"Job {job.id} failed after {job.attempts} attempt(s): {error.message}")
        self._emit_terminal(job)

    def _finish_aborted(self, job: Job, result: AgentResult | None) -> None:
        job.finish(JobStatus.ABORTED, error=self._abort_error(), result=result)
        logger.info(f"Job {job.id} aborted")
        self._emit_terminal(job)

    def _emit_terminal(self, job: Job) -> None:
        event_type = {
            JobStatus.COMPLETED: EventType.JOB_COMPLETED,
            JobStatus.FAILED: EventType.JOB_FAILED,
            JobStatus.ABORTED: EventType.JOB_ABORTED,
        }[job.status]
        payload: dict = {"attempts": job.attempts}
        if job.result is not None:
            payload["result"] = job.result.model_dump()
        if job.error is not None and job.status != JobStatus.COMPLETED:
            payload["error"] = job.error.to_dict()
        self.event_bus.emit(event_type, job_id=job.id, task_id=job.task.id, **payload)

    def _normalize(self, error: BaseException, job: Job) -> OacError:
        return normalize_execution_error(
            error, task_id=job.task.id, job_id=job.id, attempt=job.attempts
        )

    @staticmethod
    def _abort_error() -> OacError:
        return execution_error(ErrorCode.AGENT_EXECUTION_FAILED, "Execution aborted by user.")
