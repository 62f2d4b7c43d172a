"""Configuration for the checkpoint orchestrator.

Configuration is loaded from:
- environment variables prefixed with `CHECKPOINT_ORCHESTRATOR_`
- and a local `.env` file (if present)
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

APP_DIR_NAME = "checkpoint-orchestrator"


def default_state_dir() -> Path:
    """Per-user state directory for the current platform."""

    if sys.platform == "win32":
        base = os.environ.get("LOCALAPPDATA")
        if base:
            return Path(base) / APP_DIR_NAME
        return Path.home() / "AppData" / "Local" / APP_DIR_NAME

    xdg = os.environ.get("XDG_STATE_HOME")
    if xdg:
        return Path(xdg) / APP_DIR_NAME
    return Path.home() / ".local" / "state" / APP_DIR_NAME


class OrchestratorSettings(BaseSettings):
    """Settings for a workflow run.

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `OrchestratorSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(default="INFO", description="Root logging level")
    log_file: Path | None = Field(
        default=None,
        description="Optional JSON-lines run log written alongside stdout",
    )

    state_dir: Path = Field(
        default_factory=default_state_dir,
        description="Owner-only directory holding the checkpoint, its lock and the state key",
    )
    checkpoint_file_name: str = Field(default="workflow_state.chk")
    key_file_name: str = Field(default="state.key")

    lock_timeout_seconds: float = Field(default=5.0, ge=0)
    secure_erase: bool = Field(
        default=True,
        description="Overwrite the checkpoint before unlinking it on completion or cancel",
    )
    checkpoint_after_each_task: bool = Field(
        default=False,
        description="Also checkpoint after every terminal task, not only before a suspend",
    )

    auto_progress: bool = Field(
        default=True,
        description="Derive progress from output lines until a task reports progress itself",
    )
    cancel_grace_seconds: float = Field(default=5.0, ge=0)
    sandbox_poll_interval_seconds: float = Field(default=0.05, gt=0)
    approval_seconds_per_minute: float = Field(
        default=60.0,
        gt=0,
        description="Length of one approval-timeout minute; lowered in tests",
    )

    model_config = SettingsConfigDict(
        env_prefix="CHECKPOINT_ORCHESTRATOR_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def _normalise_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value!r}")
        return level

    @field_validator("checkpoint_file_name", "key_file_name")
    @classmethod
    def _plain_file_name(cls, value: str) -> str:
        if not value or Path(value).name != value:
            raise ValueError(f"Expected a bare file name, got {value!r}")
        return value

    @property
    def checkpoint_file(self) -> Path:
        """Path of the encrypted checkpoint; its presence means a resume is available."""

        return self.state_dir / self.checkpoint_file_name

    @property
    def key_file(self) -> Path:
        return self.state_dir / self.key_file_name
