"""Execution configuration.

Settings live under the ``execution:`` key of ``.oac/config.yaml``:

    execution:
      concurrency: 2
      max_attempts: 2
      task_timeout: 300        # seconds
      default_token_budget: 50000
      base_branch: main
      branch_prefix: oac
      providers: [claude-code]

``${VAR}`` references are expanded from the environment before validation.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from oac.core.errors import ConfigError

CONFIG_DIR = ".oac"
CONFIG_FILE = "config.yaml"

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9._/-]+$")


class ExecutionConfig(BaseModel):
    """Knobs for the execution engine."""

    model_config = ConfigDict(extra="forbid")

    concurrency: int = Field(default=2, ge=1)
    max_attempts: int = Field(default=2, ge=1)
    task_timeout: int = Field(default=300, ge=1)  # seconds
    default_token_budget: int = Field(default=50_000, ge=1)
    repo_path: Path = Field(default_factory=Path.cwd)
    base_branch: str = "main"
    branch_prefix: str = "oac"
    providers: list[str] = Field(default_factory=lambda: ["claude-code"])
    use_circuit_breaker: bool = False

    @field_validator("base_branch", "branch_prefix")
    @classmethod
    def _check_ref_segment(cls, value: str) -> str:
        if (
            not _SAFE_SEGMENT.match(value)
            or ".." in value
            or value.startswith(("/", "-"))
            or value.endswith("/")
            or "//" in value
        ):
            raise ValueError(f"'{value}' is not a safe git ref segment")
        return value

    @property
    def task_timeout_ms(self) -> int:
        return self.task_timeout * 1000


def _expand_env(value: Any) -> Any:
    """Recursively expand ${VAR} in strings. Unset variables are an error."""
    if isinstance(value, str):

        def replace(match: re.Match[str]) -> str:
            name = match.group(1)
            if name not in os.environ:
                raise ConfigError(
                    f"Environment variable '{name}' referenced in config is not set",
                    context={"variable": name},
                )
            return os.environ[name]

        return _ENV_VAR_PATTERN.sub(replace, value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def load_config(path: Path | str | None = None, repo_path: Path | str | None = None) -> ExecutionConfig:
    """Load ExecutionConfig from YAML.

    Args:
        path: Explicit config file. Defaults to <repo_path>/.oac/config.yaml.
        repo_path: Repository root. Defaults to the current directory.

    A missing default file yields the defaults; a missing explicit file,
    bad YAML, unknown keys or invalid values raise ConfigError.
    """
    root = Path(repo_path) if repo_path else Path.cwd()
    explicit = path is not None
    config_path = Path(path) if path else root / CONFIG_DIR / CONFIG_FILE

    if not config_path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {config_path}")
        return ExecutionConfig(repo_path=root)

    try:
        raw = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")

    section = _expand_env(raw.get("execution") or {})
    if not isinstance(section, dict):
        raise ConfigError(f"'execution' in {config_path} must be a mapping")
    section.setdefault("repo_path", str(root))

    try:
        return ExecutionConfig.model_validate(section)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid execution config in {config_path}: {e}",
            context={"errors": e.errors(include_url=False)},
        ) from e
