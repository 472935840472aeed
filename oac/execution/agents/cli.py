"""Providers that drive command-line coding agents as subprocesses.

CliAgentProvider owns the process plumbing: spawn in the sandbox, stream
stdout/stderr line by line, turn lines into AgentEvents, enforce the
timeout, and stop the process on abort. Subclasses only say which command
to run and how to read their tool's output.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import re
import shutil
import time
from abc import abstractmethod
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from oac.core.errors import ErrorCode, ErrorSeverity, OacError, execution_error, normalize_execution_error
from oac.core.models import (
    AgentEvent,
    AgentResult,
    ErrorEvent,
    FileEditEvent,
    OutputEvent,
    TokenEstimate,
    TokensEvent,
    ToolUseEvent,
)
from oac.execution.agents.base import (
    AgentAvailability,
    AgentExecuteParams,
    AgentExecution,
    AgentProvider,
    TokenEstimateParams,
    estimate_text_tokens,
)
from oac.execution.channel import EventChannel

logger = logging.getLogger(__name__)

# StreamReader line limit; agent JSON lines can be large
MAX_LINE_BYTES = 10 * 1024 * 1024
VERSION_TIMEOUT = 5.0
OUTPUT_TAIL_LINES = 50

_INPUT_KEYS = ("inputTokens", "input_tokens", "promptTokens", "prompt_tokens")
_OUTPUT_KEYS = ("outputTokens", "output_tokens", "completionTokens", "completion_tokens")
_TOTAL_KEYS = ("cumulativeTokens", "cumulative_tokens", "totalTokens", "total_tokens")

_INPUT_LINE_RE = re.compile(r"(?:input|prompt)\s*tokens?\s*[:=]\s*(\d+)", re.IGNORECASE)
_OUTPUT_LINE_RE = re.compile(r"(?:output|completion)\s*tokens?\s*[:=]\s*(\d+)", re.IGNORECASE)
_TOTAL_LINE_RE = re.compile(r"(?:total|cumulative|used)\s*tokens?\s*[:=]\s*(\d+)", re.IGNORECASE)
_FILE_LINE_RE = re.compile(r"\b(created|modified|deleted)\s+(?:file\s+)?([^\s\"'`]+)", re.IGNORECASE)
_STDERR_ERROR_RE = re.compile(r"error|failed|exception", re.IGNORECASE)
_VERSION_RE = re.compile(r"(\d+\.\d+\.\d+)")

_LINE_ACTIONS = {"created": "create", "modified": "modify", "deleted": "delete"}
_TOOL_ACTIONS = {
    "create_file": "create",
    "delete_file": "delete",
    "write_file": "modify",
    "edit_file": "modify",
    "replace_file": "modify",
}


# =============================================================================
# Line parsing
# =============================================================================


def parse_json_payload(line: str, allow_fragment: bool = True) -> dict[str, Any] | None:
    """Parse a JSON object from a line of agent output.

    With allow_fragment, a ``{...}`` span embedded in surrounding text is
    tried as well (log prefixes, progress markers).
    """
    trimmed = line.strip()
    if not trimmed:
        return None

    candidates = [trimmed]
    start, end = trimmed.find("{"), trimmed.rfind("}")
    if allow_fragment and start >= 0 and end > start:
        fragment = trimmed[start : end + 1]
        if fragment != trimmed:
            candidates.append(fragment)

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _read_number(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return max(0, math.floor(value))


def _read_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _lookup(payload: dict[str, Any], keys: tuple[str, ...]) -> Any:
    usage = payload.get("usage")
    sources = [payload, usage] if isinstance(usage, dict) else [payload]
    for source in sources:
        for key in keys:
            if source.get(key) is not None:
                return source[key]
    return None


def token_patch_from_payload(payload: dict[str, Any]) -> dict[str, int | None]:
    return {
        "input_tokens": _read_number(_lookup(payload, _INPUT_KEYS)),
        "output_tokens": _read_number(_lookup(payload, _OUTPUT_KEYS)),
        "cumulative_tokens": _read_number(_lookup(payload, _TOTAL_KEYS)),
    }


def token_patch_from_line(line: str) -> dict[str, int | None]:
    def grab(pattern: re.Pattern[str]) -> int | None:
        match = pattern.search(line)
        return int(match.group(1)) if match else None

    return {
        "input_tokens": grab(_INPUT_LINE_RE),
        "output_tokens": grab(_OUTPUT_LINE_RE),
        "cumulative_tokens": grab(_TOTAL_LINE_RE),
    }


@dataclass
class TokenCounter:
    """Running token totals for one execution. Cumulative never decreases."""

    input_tokens: int = 0
    output_tokens: int = 0
    cumulative_tokens: int = 0

    def apply(
        self,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        cumulative_tokens: int | None = None,
    ) -> TokensEvent | None:
        if input_tokens is None and output_tokens is None and cumulative_tokens is None:
            return None
        if input_tokens is not None:
            self.input_tokens = input_tokens
        if output_tokens is not None:
            self.output_tokens = output_tokens
        computed = self.input_tokens + self.output_tokens
        self.cumulative_tokens = max(
            self.cumulative_tokens,
            cumulative_tokens if cumulative_tokens is not None else computed,
        )
        return TokensEvent(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cumulative_tokens=self.cumulative_tokens,
        )

    @property
    def total(self) -> int:
        return max(self.cumulative_tokens, self.input_tokens + self.output_tokens)


def file_edit_from_payload(payload: dict[str, Any]) -> FileEditEvent | None:
    if payload.get("type") == "file_edit":
        action = payload.get("action")
        path = _read_string(payload.get("path"))
        if action in ("create", "modify", "delete") and path:
            return FileEditEvent(path=path, action=action)

    tool = _read_string(payload.get("tool") or payload.get("tool_name") or payload.get("name"))
    tool_input = payload.get("input")
    if not tool or not isinstance(tool_input, dict):
        return None
    path = _read_string(
        tool_input.get("path") or tool_input.get("file_path") or tool_input.get("filePath")
    )
    action = _TOOL_ACTIONS.get(tool)
    if not path or action is None:
        return None
    return FileEditEvent(path=path, action=action)


def file_edit_from_line(line: str) -> FileEditEvent | None:
    match = _FILE_LINE_RE.search(line)
    if not match:
        return None
    path = match.group(2).strip().rstrip(".,:;!?")
    if not path:
        return None
    return FileEditEvent(path=path, action=_LINE_ACTIONS[match.group(1).lower()])


def tool_use_from_payload(payload: dict[str, Any]) -> ToolUseEvent | None:
    tool = _read_string(payload.get("tool") or payload.get("tool_name") or payload.get("name"))
    if not tool:
        return None
    return ToolUseEvent(tool=tool, input=payload.get("input"))


def error_from_payload(payload: dict[str, Any], default_message: str) -> ErrorEvent | None:
    if payload.get("type") != "error":
        return None
    return ErrorEvent(
        message=_read_string(payload.get("message")) or default_message,
        recoverable=payload.get("recoverable") is not False,
    )


def stderr_error(line: str) -> ErrorEvent | None:
    if not _STDERR_ERROR_RE.search(line):
        return None
    return ErrorEvent(message=line.strip(), recoverable=True)


# =============================================================================
# Base subprocess provider
# =============================================================================


class CliAgentProvider(AgentProvider):
    """AgentProvider backed by an external CLI process."""

    executable: str
    # Environment variables removed before spawning the tool
    strip_env: tuple[str, ...] = ()
    # Seconds between SIGTERM and SIGKILL on abort/timeout
    abort_grace: float = 5.0
    # When False, a failing ``--version`` still counts as available if the
    # binary is on PATH
    require_version: bool = True

    def __init__(self) -> None:
        self._executions: dict[str, AgentExecution] = {}
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._abort_requested: set[str] = set()

    @abstractmethod
    def build_command(self, params: AgentExecuteParams) -> list[str]:
        """argv for one run."""
        pass

    def parse_line(self, line: str, stream: str, tokens: TokenCounter) -> list[AgentEvent]:
        """Structured events (besides the raw output event) for one line."""
        payload = parse_json_payload(line)
        if payload is not None:
            token_event = tokens.apply(**token_patch_from_payload(payload))
            file_event = file_edit_from_payload(payload)
            tool_event = tool_use_from_payload(payload)
            error_event = error_from_payload(payload, f"Unknown {self.name} error")
        else:
            token_event = tokens.apply(**token_patch_from_line(line))
            file_event = file_edit_from_line(line)
            tool_event = None
            error_event = None
        if error_event is None and stream == "stderr":
            error_event = stderr_error(line)
        return [e for e in (token_event, file_event, tool_event, error_event) if e is not None]

    def parse_version(self, output: str) -> str | None:
        first_line = output.strip().splitlines()[0] if output.strip() else ""
        return first_line or None

    def build_env(self, params: AgentExecuteParams) -> dict[str, str]:
        env = {k: v for k, v in os.environ.items() if k not in self.strip_env}
        env.update(params.env)
        env["OAC_TOKEN_BUDGET"] = str(params.token_budget)
        env["OAC_ALLOW_COMMITS"] = "true" if params.allow_commits else "false"
        return env

    # -------------------------------------------------------------------------
    # AgentProvider
    # -------------------------------------------------------------------------

    async def check_availability(self) -> AgentAvailability:
        if shutil.which(self.executable) is None:
            return AgentAvailability(
                available=False, error=f"{self.executable} is not installed or not in PATH."
            )
        try:
            proc = await asyncio.create_subprocess_exec(
                self.executable,
                "--version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return AgentAvailability(available=False, error=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=VERSION_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            # Binary exists but won't answer --version headlessly
            return AgentAvailability(available=True)

        if proc.returncode == 0:
            return AgentAvailability(
                available=True, version=self.parse_version(stdout.decode(errors="replace"))
            )
        if not self.require_version:
            return AgentAvailability(available=True)
        message = stderr.decode(errors="replace").strip()
        return AgentAvailability(
            available=False,
            error=message or f"{self.executable} --version exited with code {proc.returncode}",
        )

    def execute(self, params: AgentExecuteParams) -> AgentExecution:
        channel: EventChannel[AgentEvent] = EventChannel()
        task = asyncio.get_running_loop().create_task(self._run(params, channel))
        execution = AgentExecution(
            execution_id=params.execution_id,
            provider_id=self.id,
            events=channel,
            outcome=task,
        )
        self._executions[params.execution_id] = execution
        return execution

    async def abort(self, execution_id: str) -> None:
        if execution_id not in self._executions:
            return
        self._abort_requested.add(execution_id)
        proc = self._processes.get(execution_id)
        if proc is None:
            # Not spawned yet; _run checks the flag before and after spawning
            return
        logger.info(f"Aborting {self.name} execution {execution_id} (pid {proc.pid})")
        await self._terminate(proc)

    # -------------------------------------------------------------------------
    # Process handling
    # -------------------------------------------------------------------------

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL after abort_grace seconds."""
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.abort_grace)
        except asyncio.TimeoutError:
            logger.warning(f"{self.name} pid {proc.pid} ignored SIGTERM, sending SIGKILL")
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        name: str,
        channel: EventChannel[AgentEvent],
        tokens: TokenCounter,
        files: dict[str, None],
        tail: deque[str],
    ) -> None:
        if stream is None:
            return
        async for raw in stream:
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            tail.append(line)
            channel.push(OutputEvent(content=line, stream=name))
            for event in self.parse_line(line, name, tokens):
                if isinstance(event, FileEditEvent):
                    files.setdefault(event.path, None)
                channel.push(event)

    def _failure_message(self, stdout_tail: deque[str], stderr_tail: deque[str]) -> str:
        stderr = "\n".join(stderr_tail).strip()
        if stderr:
            return stderr
        stdout = "\n".join(stdout_tail).strip()
        if stdout:
            return stdout
        return f"{self.name} process exited with a non-zero status."

    async def _run(self, params: AgentExecuteParams, channel: EventChannel[AgentEvent]) -> AgentResult:
        execution_id = params.execution_id
        started = time.monotonic()
        tokens = TokenCounter()
        files: dict[str, None] = {}
        stdout_tail: deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        stderr_tail: deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        proc: asyncio.subprocess.Process | None = None

        def cancelled_result(exit_code: int) -> AgentResult:
            return AgentResult(
                success=False,
                exit_code=exit_code,
                total_tokens_used=tokens.total,
                files_changed=list(files),
                duration=time.monotonic() - started,
                error=f"{self.name} execution was cancelled.",
            )

        try:
            if execution_id in self._abort_requested:
                return cancelled_result(1)

            command = self.build_command(params)
            logger.debug(f"Spawning {self.executable} for {execution_id} in {params.working_directory}")
            try:
                proc = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=str(params.working_directory),
                    env=self.build_env(params),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    limit=MAX_LINE_BYTES,
                )
            except FileNotFoundError as e:
                raise OacError(
                    f"{self.executable} is not installed or not in PATH.",
                    ErrorCode.AGENT_NOT_AVAILABLE,
                    ErrorSeverity.FATAL,
                    {"executionId": execution_id, "providerId": self.id},
                    e,
                ) from e

            self._processes[execution_id] = proc
            execution = self._executions.get(execution_id)
            if execution is not None:
                execution.pid = proc.pid
            if execution_id in self._abort_requested:
                await self._terminate(proc)

            readers = asyncio.gather(
                self._pump(proc.stdout, "stdout", channel, tokens, files, stdout_tail),
                self._pump(proc.stderr, "stderr", channel, tokens, files, stderr_tail),
            )
            try:
                await asyncio.wait_for(
                    asyncio.gather(readers, proc.wait()), timeout=params.timeout_ms / 1000
                )
            except asyncio.TimeoutError as e:
                await self._terminate(proc)
                raise execution_error(
                    ErrorCode.AGENT_TIMEOUT,
                    f"{self.name} execution timed out for {execution_id}",
                    {"executionId": execution_id, "timeoutMs": params.timeout_ms},
                    e,
                ) from e

            exit_code = proc.returncode if proc.returncode is not None else 1
            if execution_id in self._abort_requested:
                return cancelled_result(exit_code)

            success = exit_code == 0
            return AgentResult(
                success=success,
                exit_code=exit_code,
                total_tokens_used=tokens.total,
                files_changed=list(files),
                duration=time.monotonic() - started,
                error=None if success else self._failure_message(stdout_tail, stderr_tail),
            )
        except Exception as e:
            normalized = normalize_execution_error(
                e, task_id=execution_id, execution_id=execution_id
            )
            channel.push(
                ErrorEvent(
                    message=normalized.message,
                    recoverable=normalized.severity != ErrorSeverity.FATAL,
                )
            )
            channel.fail(normalized)
            if normalized is e:
                raise
            raise normalized from e
        finally:
            if proc is not None and proc.returncode is None:
                # Task was cancelled mid-run
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            self._processes.pop(execution_id, None)
            self._executions.pop(execution_id, None)
            self._abort_requested.discard(execution_id)
            channel.close()


# =============================================================================
# Concrete tools
# =============================================================================


class ClaudeCodeProvider(CliAgentProvider):
    """Claude Code in print mode: ``claude -p <prompt>``."""

    id = "claude-code"
    name = "Claude Code"
    executable = "claude"
    # Session markers make claude refuse to start nested
    strip_env = ("CLAUDECODE", "CLAUDE_CODE_SESSION")

    def build_command(self, params: AgentExecuteParams) -> list[str]:
        return [self.executable, "-p", params.prompt]


def _file_context_tokens(paths: list[str]) -> int:
    total_bytes = 0
    for path in paths:
        try:
            p = Path(path)
            if p.is_file():
                total_bytes += p.stat().st_size
        except OSError:
            # Missing or unreadable files count as zero context
            continue
    return math.ceil(total_bytes / 4)


class CodexProvider(CliAgentProvider):
    """OpenAI Codex CLI: ``codex exec --full-auto -C <dir> <prompt>``."""

    id = "codex"
    name = "Codex CLI"
    executable = "codex"
    context_window = 200_000
    abort_grace = 2.0
    require_version = False

    def build_command(self, params: AgentExecuteParams) -> list[str]:
        return [
            self.executable,
            "exec",
            "--full-auto",
            "-C",
            str(params.working_directory),
            params.prompt,
        ]

    def parse_line(self, line: str, stream: str, tokens: TokenCounter) -> list[AgentEvent]:
        # Codex emits whole-line JSON on stdout; stderr is only checked for errors
        if stream == "stderr":
            error_event = stderr_error(line)
            return [error_event] if error_event else []

        payload = parse_json_payload(line, allow_fragment=False)
        if payload is None:
            token_event = tokens.apply(**token_patch_from_line(line))
            return [token_event] if token_event else []

        events = [
            tokens.apply(**token_patch_from_payload(payload)),
            file_edit_from_payload(payload),
            tool_use_from_payload(payload),
            error_from_payload(payload, "Unknown Codex CLI error"),
        ]
        return [e for e in events if e is not None]

    def parse_version(self, output: str) -> str | None:
        match = _VERSION_RE.search(output)
        return match.group(1) if match else None

    async def estimate_tokens(self, params: TokenEstimateParams) -> TokenEstimate:
        prompt_tokens = estimate_text_tokens(params.prompt)
        context_tokens = params.context_tokens
        if context_tokens is None:
            context_tokens = await asyncio.to_thread(_file_context_tokens, params.target_files)
        expected_output = params.expected_output_tokens
        if expected_output is None:
            expected_output = len(params.target_files) * 2_000
        total = context_tokens + prompt_tokens + expected_output

        return TokenEstimate(
            task_id=params.task_id,
            provider_id=self.id,
            context_tokens=context_tokens,
            prompt_tokens=prompt_tokens,
            expected_output_tokens=expected_output,
            total_estimated_tokens=total,
            confidence=0.6,
            feasible=total < self.context_window,
        )


_GEMINI_VERSION_RE = re.compile(r"(\d+\.\d+\.\d+(?:[-+][\w.]+)?)")


class GeminiProvider(CliAgentProvider):
    """Google Gemini CLI, headless: ``gemini -p <prompt> --yolo -o text``."""

    id = "gemini"
    name = "Gemini CLI"
    executable = "gemini"
    context_window = 1_000_000
    abort_grace = 2.0
    require_version = False

    def build_command(self, params: AgentExecuteParams) -> list[str]:
        return [self.executable, "-p", params.prompt, "--yolo", "-o", "text"]

    def parse_line(self, line: str, stream: str, tokens: TokenCounter) -> list[AgentEvent]:
        if stream == "stderr":
            payload = parse_json_payload(line)
            error_event = None
            if payload is not None:
                error_event = error_from_payload(payload, "Unknown Gemini CLI error")
            error_event = error_event or stderr_error(line)
            return [error_event] if error_event else []
        return super().parse_line(line, stream, tokens)

    def parse_version(self, output: str) -> str | None:
        match = _GEMINI_VERSION_RE.search(output)
        return match.group(1) if match else None

    async def estimate_tokens(self, params: TokenEstimateParams) -> TokenEstimate:
        prompt_tokens = estimate_text_tokens(params.prompt)
        context_tokens = params.context_tokens
        if context_tokens is None:
            context_tokens = await asyncio.to_thread(_file_context_tokens, params.target_files)
        expected_output = params.expected_output_tokens
        if expected_output is None:
            expected_output = max(len(params.target_files) * 1_800, math.ceil(prompt_tokens * 1.2))
        total = context_tokens + prompt_tokens + expected_output

        return TokenEstimate(
            task_id=params.task_id,
            provider_id=self.id,
            context_tokens=context_tokens,
            prompt_tokens=prompt_tokens,
            expected_output_tokens=expected_output,
            total_estimated_tokens=total,
            confidence=0.55,
            feasible=total < self.context_window,
        )
