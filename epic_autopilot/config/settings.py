"""
Configuration system using Pydantic for type-safe settings management.

Settings come from an optional YAML file (``.autopilot/config.yaml`` by
default) with ``${VAR}`` / ``${VAR:-default}`` interpolation. ``AUTOPILOT_*``
environment variables fill in values the file leaves unset, and CLI flags
override both.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from epic_autopilot.exceptions import ConfigurationError

DEFAULT_CONFIG_PATH = ".autopilot/config.yaml"


class RepositoryConfig(BaseModel):
    """Repository being worked on.

    ``owner``, ``name`` and ``base_branch`` are detected from git when left
    empty.
    """

    root: Path = Field(default=Path("."), description="Repository root")
    owner: str | None = Field(default=None, description="Repository owner/organization")
    name: str | None = Field(default=None, description="Repository name")
    base_branch: str | None = Field(default=None, description="Branch requests are merged into")
    branch_prefix: str = Field(default="feature/epic-", description="Prefix of per-item branches")

    @field_validator("branch_prefix")
    @classmethod
    def _prefix_not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("branch_prefix must not be empty")
        return value


class PathsConfig(BaseModel):
    """Where the orchestrator keeps its files, relative to the repository root."""

    autopilot_dir: Path = Field(default=Path(".autopilot"), description="State, logs and workspaces")
    backlog_dir: Path = Field(default=Path("_bmad-output"), description="Directory holding epics*.md")

    @property
    def state_file(self) -> Path:
        return self.autopilot_dir / "state.json"

    @property
    def worktrees_dir(self) -> Path:
        return self.autopilot_dir / "worktrees"

    @property
    def log_file(self) -> Path:
        return self.autopilot_dir / "autopilot.log"


class GitHubConfig(BaseModel):
    """Review service connection."""

    api_url: str = Field(default="https://api.github.com", description="REST API base URL")
    token: SecretStr | None = Field(default=None, description="API token, e.g. ${GITHUB_TOKEN}")
    request_labels: list[str] = Field(default_factory=list, description="Labels added to new requests")

    @property
    def graphql_url(self) -> str:
        base = self.api_url.rstrip("/")
        if base.endswith("/api/v3"):
            return base[: -len("/v3")] + "/graphql"
        return f"{base}/graphql"


class AgentConfig(BaseModel):
    """Development agent CLI."""

    command: str = Field(default="claude", description="Agent executable")
    max_turns: int = Field(default=80, ge=1, description="Turn budget for develop and review runs")
    fix_max_turns: int = Field(default=30, ge=1, description="Turn budget for fix runs")
    allowed_tools: list[str] = Field(
        default_factory=lambda: ["Bash", "Read", "Write", "Edit", "Grep", "Glob"],
        description="Tools the agent may use",
    )
    permission_mode: Literal["default", "acceptEdits", "bypassPermissions", "plan"] = Field(
        default="acceptEdits", description="Agent permission mode"
    )
    timeout: float | None = Field(default=None, gt=0, description="Seconds before an agent run is killed")


class WorkflowConfig(BaseModel):
    """State machine and polling behavior."""

    concurrent: bool = Field(default=False, description="Hand submitted items to the pending queue")
    max_pending: int = Field(default=2, ge=1, description="Maximum items waiting in the pending queue")
    pending_check_interval: float = Field(default=60, ge=0, description="Seconds between pending-queue rounds")
    check_interval: float = Field(default=30, ge=0, description="Seconds between polls in wait phases")
    max_check_wait: int = Field(default=60, ge=1, description="Poll iterations before WAIT_CHECKS gives up")
    max_review_wait: int | None = Field(
        default=None, ge=1, description="Poll iterations before WAIT_EXTERNAL_REVIEW gives up"
    )
    review_retries: int = Field(default=3, ge=1, description="Local review attempts before blocking")
    require_approval: bool = Field(default=True, description="Merge only approved requests")
    loop_delay: float = Field(default=2, ge=0, description="Seconds between loop iterations")
    eager_workspaces: bool = Field(default=False, description="Create worktrees when items are queued")

    @property
    def review_wait_iterations(self) -> int:
        return self.max_review_wait or self.max_check_wait


class ChecksConfig(BaseModel):
    """Local check suite."""

    commands: list[str] = Field(default_factory=list, description="Shell commands; empty means auto-detect")
    timeout: float | None = Field(default=1800, gt=0, description="Seconds per command")


class AutopilotSettings(BaseSettings):
    """Main orchestrator settings.

    Combines all configuration sections and loads them from YAML with
    environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTOPILOT_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    repository: RepositoryConfig = Field(default_factory=RepositoryConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    checks: ChecksConfig = Field(default_factory=ChecksConfig)

    @property
    def root(self) -> Path:
        return self.repository.root.resolve()

    @property
    def autopilot_dir(self) -> Path:
        return self.root / self.paths.autopilot_dir

    @property
    def state_file(self) -> Path:
        return self.root / self.paths.state_file

    @property
    def worktrees_dir(self) -> Path:
        return self.root / self.paths.worktrees_dir

    @property
    def log_file(self) -> Path:
        return self.root / self.paths.log_file

    @property
    def backlog_dir(self) -> Path:
        return self.root / self.paths.backlog_dir

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> AutopilotSettings:
        """Load settings from a YAML file.

        A missing file yields the defaults (plus environment overrides).

        Raises:
            ConfigurationError: If the file is unreadable, not a mapping, or
                fails validation
        """
        config_file = Path(config_path)
        if not config_file.exists():
            try:
                return cls()
            except Exception as e:
                raise ConfigurationError(f"Failed to validate configuration: {e}") from e

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Replace ``${VAR}`` and ``${VAR:-default}`` with environment values.

        Comment lines are left untouched.

        Raises:
            ValueError: If a variable without default is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name, default_value = match.group(1), match.group(2)
            value = os.getenv(var_name)
            if value is not None:
                return value
            if default_value is not None:
                return default_value
            raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
