"""Git worktree sandboxes for job attempts.

Each attempt gets its own worktree on a fresh branch, checked out from
``origin/<base>`` next to the repository:

    <repo parent>/.oac-worktrees/<branch name>

The primary working copy is never touched. Worktree add/remove/prune are
serialized: in-process with an asyncio lock, across processes with a file
lock, since concurrent ``git worktree`` calls race on ``.git/config``.
"""

from __future__ import annotations

import asyncio
import logging
import re
import subprocess
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from filelock import FileLock, Timeout

from oac.core.errors import ErrorCode, ErrorSeverity, OacError

logger = logging.getLogger(__name__)

WORKTREES_DIR = ".oac-worktrees"
LOCK_FILE = ".worktrees.lock"

# Allowed characters in branch names. Prevents injection of git options
# and path traversal through the worktree path.
_SAFE_REF_RE = re.compile(r"^[A-Za-z0-9._/-]+$")
_LOCK_CONFLICT_RE = re.compile(r"index\.lock|cannot lock ref|\.lock': File exists", re.IGNORECASE)


class WorktreeError(OacError):
    """A git worktree operation failed."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.AGENT_EXECUTION_FAILED, ErrorSeverity.RECOVERABLE, context)


class InvalidSandboxNameError(OacError):
    """Branch name failed validation. Raised before any side effect."""

    def __init__(self, message: str, name: str):
        super().__init__(
            message, ErrorCode.AGENT_EXECUTION_FAILED, ErrorSeverity.FATAL, {"name": name}
        )
        self.name = name


def validate_ref_name(name: str, label: str = "branch name") -> None:
    """Reject names that could escape the worktrees dir or smuggle git flags."""
    if not name or not _SAFE_REF_RE.match(name):
        raise InvalidSandboxNameError(f"Invalid {label}: {name!r}", name)
    if ".." in name or name.startswith(("/", "-")) or name.endswith("/") or "//" in name:
        raise InvalidSandboxNameError(f"Invalid {label} (path traversal): {name!r}", name)


class GitBackend(Protocol):
    """Version-control capability needed by the sandbox manager.

    Methods are blocking; the manager calls them off the event loop.
    """

    def worktree_add(self, repo_path: Path, worktree_path: Path, branch: str, start_point: str) -> None: ...

    def worktree_remove(self, repo_path: Path, worktree_path: Path, force: bool = True) -> None: ...

    def worktree_prune(self, repo_path: Path) -> None: ...

    def fetch(self, repo_path: Path, remote: str, ref: str) -> None: ...


class GitCli:
    """GitBackend that shells out to the ``git`` binary."""

    def __init__(self, timeout: int = 60):
        # Local worktree operations should be quick, but a corrupted repo
        # or busy filesystem can make them hang.
        self.timeout = timeout

    def _run(self, repo_path: Path, args: list[str]) -> str:
        logger.debug(f"git {' '.join(args)} (cwd={repo_path})")
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=repo_path,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise WorktreeError(
                f"git {args[0]} timed out after {self.timeout}s",
                context={"args": args},
            ) from e
        except FileNotFoundError as e:
            raise WorktreeError("git executable not found", context={"args": args}) from e

        if result.returncode != 0:
            stderr = result.stderr.strip()
            if _LOCK_CONFLICT_RE.search(stderr):
                raise OacError(
                    f"git {' '.join(args[:2])} hit a lock conflict: {stderr}",
                    ErrorCode.GIT_LOCK_FAILED,
                    ErrorSeverity.RECOVERABLE,
                    {"args": args, "stderr": stderr},
                )
            raise WorktreeError(
                f"git {' '.join(args[:2])} failed: {stderr}",
                context={"args": args, "returncode": result.returncode},
            )
        return result.stdout

    def worktree_add(self, repo_path: Path, worktree_path: Path, branch: str, start_point: str) -> None:
        self._run(repo_path, ["worktree", "add", str(worktree_path), "-b", branch, start_point])

    def worktree_remove(self, repo_path: Path, worktree_path: Path, force: bool = True) -> None:
        args = ["worktree", "remove", str(worktree_path)]
        if force:
            args.append("--force")
        self._run(repo_path, args)

    def worktree_prune(self, repo_path: Path) -> None:
        self._run(repo_path, ["worktree", "prune"])

    def fetch(self, repo_path: Path, remote: str, ref: str) -> None:
        self._run(repo_path, ["fetch", remote, ref])


@dataclass
class SandboxContext:
    """An isolated worktree for one job attempt."""

    path: Path
    branch_name: str
    _release: Callable[[], Awaitable[None]] = field(repr=False)
    cleaned_up: bool = field(default=False, init=False)

    async def cleanup(self) -> None:
        """Remove the worktree. Safe to call more than once."""
        if self.cleaned_up:
            return
        self.cleaned_up = True
        await self._release()


class SandboxManager:
    """Create and destroy worktree sandboxes.

    Usage:
        manager = SandboxManager()
        async with manager.sandbox(repo, "oac/20260101/fix-a1b2c3d4-a1", "main") as ctx:
            ...  # run the agent in ctx.path
    """

    def __init__(
        self,
        git: GitBackend | None = None,
        fetch_base: bool = False,
        lock_timeout: float = 120.0,
    ):
        self.git = git or GitCli()
        self.fetch_base = fetch_base
        self.lock_timeout = lock_timeout
        self._lock = asyncio.Lock()

    @staticmethod
    def worktree_root(repo_path: Path | str) -> Path:
        return Path(repo_path).resolve().parent / WORKTREES_DIR

    def _locked(self, root: Path, fn: Callable[..., None], *args: Any) -> None:
        """Run fn while holding the cross-process worktree lock (blocking)."""
        root.mkdir(parents=True, exist_ok=True)
        try:
            with FileLock(str(root / LOCK_FILE), timeout=self.lock_timeout):
                fn(*args)
        except Timeout as e:
            raise OacError(
                f"Timed out waiting for worktree lock in {root}",
                ErrorCode.GIT_LOCK_FAILED,
                ErrorSeverity.RECOVERABLE,
                {"lock": str(root / LOCK_FILE)},
            ) from e

    async def create_sandbox(
        self,
        repo_path: Path | str,
        branch_name: str,
        base_branch: str,
    ) -> SandboxContext:
        """Create a worktree on a new branch from origin/<base_branch>.

        Raises:
            InvalidSandboxNameError: before touching disk or git
            WorktreeError / OacError(GIT_LOCK_FAILED): if git fails
        """
        validate_ref_name(branch_name, "branch name")
        validate_ref_name(base_branch, "base branch name")

        repo = Path(repo_path).resolve()
        root = self.worktree_root(repo)
        worktree_path = root / branch_name

        def add() -> None:
            if self.fetch_base:
                self.git.fetch(repo, "origin", base_branch)
            self.git.worktree_add(repo, worktree_path, branch_name, f"origin/{base_branch}")

        async with self._lock:
            await asyncio.to_thread(self._locked, root, add)
        logger.debug(f"Created sandbox {worktree_path} on {branch_name}")

        async def release() -> None:
            await self._remove(repo, root, worktree_path)

        return SandboxContext(path=worktree_path, branch_name=branch_name, _release=release)

    async def _remove(self, repo: Path, root: Path, worktree_path: Path) -> None:
        def remove() -> None:
            try:
                self.git.worktree_remove(repo, worktree_path, force=True)
            finally:
                # Prune even if remove failed so stale metadata never lingers
                try:
                    self.git.worktree_prune(repo)
                except Exception as e:
                    logger.warning(f"git worktree prune failed in {repo}: {e}")

        async with self._lock:
            await asyncio.to_thread(self._locked, root, remove)
        logger.debug(f"Removed sandbox {worktree_path}")

    @asynccontextmanager
    async def sandbox(
        self,
        repo_path: Path | str,
        branch_name: str,
        base_branch: str,
    ) -> AsyncIterator[SandboxContext]:
        """Acquire a sandbox for the duration of the block.

        Cleanup always runs. Cleanup failures are logged, not raised, so
        they never mask the block's own outcome.
        """
        ctx = await self.create_sandbox(repo_path, branch_name, base_branch)
        try:
            yield ctx
        finally:
            try:
                await ctx.cleanup()
            except Exception as e:
                logger.warning(f"Sandbox cleanup failed for {ctx.branch_name}: {e}")
