"""Configuration — Pydantic models for devflow settings."""

from __future__ import annotations

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ProcessConfig(BaseModel):
    """Piped agent process settings."""

    line_limit: int = Field(
        default=16 * 1024 * 1024,
        description=(
            "Maximum length in bytes of a single stdout/stderr line. "
            "stream-json agents emit whole conversation turns on one line."
        ),
    )


class PtyConfig(BaseModel):
    """Interactive terminal settings."""

    default_cols: int = Field(default=120, ge=1)
    default_rows: int = Field(default=24, ge=1)
    poll_interval: float = Field(
        default=0.1, gt=0, description="Seconds between child exit checks"
    )
    read_size: int = Field(default=4096, ge=1)
    drain_timeout: float = Field(
        default=2.0,
        ge=0,
        description="Seconds to wait for terminal output to reach EOF after exit",
    )
    term: str = Field(default="xterm-256color")


class DevflowConfig(BaseModel):
    """Top-level devflow configuration."""

    home: str = Field(default="~/.devflow", description="Application home directory")
    default_agent: str = Field(default="claude")
    process: ProcessConfig = Field(default_factory=ProcessConfig)
    pty: PtyConfig = Field(default_factory=PtyConfig)

    @property
    def home_path(self) -> Path:
        return Path(os.path.expanduser(self.home))

    @property
    def data_dir(self) -> Path:
        return self.home_path / "data"

    @property
    def tmp_dir(self) -> Path:
        """Root for per-invocation scratch directories."""
        return self.home_path / "tmp"

    @classmethod
    def load(cls, config_path: str | None = None) -> DevflowConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            DEVFLOW_HOME               - Override the application home directory
            DEVFLOW_DEFAULT_AGENT      - Agent used when a request names none
            DEVFLOW_PTY_POLL_INTERVAL  - Seconds between PTY exit checks
        """
        try:
            from dotenv import load_dotenv

            load_dotenv()
        except ImportError:
            pass

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        env_home = os.environ.get("DEVFLOW_HOME")
        if env_home:
            config_data["home"] = env_home

        env_agent = os.environ.get("DEVFLOW_DEFAULT_AGENT")
        if env_agent:
            config_data["default_agent"] = env_agent.strip().lower()

        env_poll = os.environ.get("DEVFLOW_PTY_POLL_INTERVAL")
        if env_poll:
            pty = config_data.get("pty", {})
            pty["poll_interval"] = float(env_poll)
            config_data["pty"] = pty

        return cls.model_validate(config_data)


def prepare_dirs(config: DevflowConfig) -> None:
    """Create the data directory and sweep scratch dirs left by a crashed run."""
    config.data_dir.mkdir(parents=True, exist_ok=True)
    logger.info("devflow data dir: %s", config.data_dir)

    if config.tmp_dir.exists():
        shutil.rmtree(config.tmp_dir, ignore_errors=True)
        logger.info("Cleaned up stale temp dir: %s", config.tmp_dir)
