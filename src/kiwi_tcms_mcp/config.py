"""Configuration management for kiwi_tcms_mcp.

Loads settings from environment variables with sensible defaults.
"""

import logging
import os
import shlex
from typing import Literal

from pydantic import BaseModel, Field

from kiwi_tcms_mcp.errors import ConfigurationMissing

DEFAULT_WORKER_COMMAND = "node dist/index.js"

# Worker variables that must be present before the worker can be spawned
REQUIRED_WORKER_ENV = ("KIWI_BASE_URL", "KIWI_TOKEN")


def _env_float(name: str, default: float) -> float:
    """Parse a float from environment, falling back to default on empty values."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:  # Preserve clear error for invalid input
        raise ValueError(f"{name} must be numeric") from exc


def _env_choice(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower()


def _default_worker_command() -> list[str]:
    raw = os.getenv("KIWI_MCP_WORKER_COMMAND") or DEFAULT_WORKER_COMMAND
    return shlex.split(raw) or shlex.split(DEFAULT_WORKER_COMMAND)


def resolve_log_level(name: str) -> int:
    """Map a LOG_LEVEL value (DEBUG, INFO, WARN, ERROR, ...) to a logging level."""
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else logging.INFO


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    kiwi_base_url: str | None = Field(
        default_factory=lambda: os.getenv("KIWI_BASE_URL") or None,
        description="Base URL of the Kiwi TCMS instance, passed to the worker",
    )
    kiwi_token: str | None = Field(
        default_factory=lambda: os.getenv("KIWI_TOKEN") or None,
        description="Kiwi TCMS API token, passed to the worker",
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("LOG_LEVEL") or "INFO",
        description="Log level for the bridge and the worker",
    )
    worker_command: list[str] = Field(
        default_factory=_default_worker_command,
        description="Command line used to spawn the stdio MCP worker",
    )
    worker_cwd: str | None = Field(
        default_factory=lambda: os.getenv("KIWI_MCP_WORKER_CWD") or None,
        description="Working directory for the worker process",
    )
    request_timeout_seconds: float = Field(
        default_factory=lambda: _env_float("KIWI_MCP_REQUEST_TIMEOUT_S", 120.0),
        description="Deadline for each call, measured from registration",
    )
    ready_mode: Literal["probe", "delay"] = Field(
        default_factory=lambda: _env_choice("KIWI_MCP_READY_MODE", "probe"),
        validate_default=True,
        description="'probe' waits for a ping round-trip, 'delay' for a fixed warm-up",
    )
    ready_probe_method: str = Field(
        default="ping",
        description="JSON-RPC method used for the readiness round-trip",
    )
    ready_timeout_seconds: float = Field(
        default_factory=lambda: _env_float("KIWI_MCP_READY_TIMEOUT_S", 30.0),
        description="How long a new worker may take to answer the readiness probe",
    )
    warmup_seconds: float = Field(
        default_factory=lambda: _env_float("KIWI_MCP_WARMUP_S", 3.0),
        description="Fixed warm-up delay used when ready_mode is 'delay'",
    )
    restart_delay_seconds: float = Field(
        default_factory=lambda: _env_float("KIWI_MCP_RESTART_DELAY_S", 5.0),
        description="Delay before respawning a dead worker",
    )
    restart_backoff: Literal["fixed", "exponential"] = Field(
        default_factory=lambda: _env_choice("KIWI_MCP_RESTART_BACKOFF", "fixed"),
        validate_default=True,
        description="Restart delay strategy",
    )
    restart_max_delay_seconds: float = Field(
        default_factory=lambda: _env_float("KIWI_MCP_RESTART_MAX_DELAY_S", 60.0),
        description="Upper bound for exponential restart delays",
    )
    stop_timeout_seconds: float = Field(
        default_factory=lambda: _env_float("KIWI_MCP_STOP_TIMEOUT_S", 5.0),
        description="Grace period between SIGTERM and SIGKILL on shutdown",
    )

    model_config = {"frozen": True}

    def missing_worker_env(self) -> list[str]:
        """Names of required worker variables that are not configured."""
        values = {"KIWI_BASE_URL": self.kiwi_base_url, "KIWI_TOKEN": self.kiwi_token}
        return [name for name in REQUIRED_WORKER_ENV if not values[name]]

    def worker_env(self) -> dict[str, str]:
        """Build the environment for the worker process.

        Returns:
            The inherited environment with the Kiwi TCMS variables applied.

        Raises:
            ConfigurationMissing: If KIWI_BASE_URL or KIWI_TOKEN is not set.
        """
        missing = self.missing_worker_env()
        if missing:
            raise ConfigurationMissing(missing)
        env = os.environ.copy()
        env["KIWI_BASE_URL"] = self.kiwi_base_url or ""
        env["KIWI_TOKEN"] = self.kiwi_token or ""
        env["LOG_LEVEL"] = self.log_level
        return env


def get_settings() -> Settings:
    """Create settings instance from current environment.

    Returns:
        Settings instance with values from environment variables.
    """
    return Settings()
