"""
Process settings for the deployer.

All fields can be set through ``DEPLOYER_*`` environment variables or a
``.env`` file; CLI options are passed in as overrides and win over both.
The three connection settings have no default: a process started without
them fails fast with a :class:`~deployer.core.errors.ConfigError`.

Tags:
    deployer, configuration, settings, pydantic
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from deployer.core.errors import ConfigError


class DeployerSettings(BaseSettings):
    """Deployer configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DEPLOYER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Required ─────────────────────────────────────────────────
    config_file: Path = Field(..., description="Pipeline definition file (YAML)")
    broker_url: str = Field(..., min_length=1, description="Broker URL, e.g. redis://localhost:6379/0")
    queue: str = Field(..., min_length=1, description="Queue the deploy requests arrive on")

    # ── Behaviour ────────────────────────────────────────────────
    debug: bool = Field(default=False)
    config_watch: bool = Field(default=False, description="Reload the pipeline file when it changes")

    # ── Worker pool ──────────────────────────────────────────────
    max_workers: int = Field(default=4, ge=1, description="Pipelines running at the same time")
    max_pending: int = Field(default=64, ge=1, description="Accepted requests waiting for a worker")
    shutdown_timeout: float = Field(default=30.0, ge=0, description="Seconds to wait for running pipelines on exit")

    # ── Broker ───────────────────────────────────────────────────
    receive_timeout: int = Field(default=5, ge=1, description="Seconds per blocking receive")

    # ── Logging ──────────────────────────────────────────────────
    log_format: Literal["auto", "json", "console"] = Field(default="auto")

    @property
    def log_level(self) -> str:
        return "DEBUG" if self.debug else "INFO"

    @property
    def json_logs(self) -> bool:
        if self.log_format == "auto":
            return not self.debug
        return self.log_format == "json"


def load_settings(**overrides: Any) -> DeployerSettings:
    """Build settings from the environment plus explicit overrides.

    ``None`` overrides are dropped so that unset CLI options fall back to
    the environment.

    Raises:
        ConfigError: a required setting is missing or a value is invalid.
    """
    explicit = {key: value for key, value in overrides.items() if value is not None}
    try:
        return DeployerSettings(**explicit)
    except ValidationError as exc:
        problems = []
        for err in exc.errors():
            name = ".".join(str(part) for part in err["loc"]) or "settings"
            if err["type"] == "missing":
                problems.append(f"DEPLOYER_{name.upper()} is not set")
            else:
                problems.append(f"{name}: {err['msg']}")
        raise ConfigError("invalid settings: " + "; ".join(problems), cause=exc) from exc
