"""Runtime configuration for command execution and the retry loop."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

MIN_MAX_ATTEMPTS = 1
MAX_MAX_ATTEMPTS = 100
MIN_DELAY_SECONDS = 0.0
MAX_DELAY_SECONDS = 60.0


@dataclass(slots=True)
class ExecutionSettings:
    """Per-attempt execution settings."""

    timeout_seconds: float = 30.0
    working_directory: Path | None = None
    max_output_bytes: int = 500_000
    terminate_grace_seconds: float = 2.0
    output_drain_seconds: float = 2.0


@dataclass(slots=True)
class RetrySettings:
    """Auto-retry loop defaults."""

    max_attempts: int = 5
    delay_seconds: float = 2.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults suitable for local use."""

        working_directory = os.getenv("FIXLOOP_WORKING_DIRECTORY", "").strip()
        return cls(
            execution=ExecutionSettings(
                timeout_seconds=_env_float("FIXLOOP_TIMEOUT_SECONDS", 30.0),
                working_directory=Path(working_directory).expanduser()
                if working_directory
                else None,
                max_output_bytes=_env_int("FIXLOOP_MAX_OUTPUT_BYTES", 500_000),
                terminate_grace_seconds=_env_float("FIXLOOP_TERMINATE_GRACE_SECONDS", 2.0),
                output_drain_seconds=_env_float("FIXLOOP_OUTPUT_DRAIN_SECONDS", 2.0),
            ),
            retry=RetrySettings(
                max_attempts=clamp_max_attempts(_env_int("FIXLOOP_MAX_ATTEMPTS", 5)),
                delay_seconds=clamp_delay_seconds(_env_float("FIXLOOP_DELAY_SECONDS", 2.0)),
            ),
            log_level=os.getenv("FIXLOOP_LOG_LEVEL", "WARNING").strip().upper() or "WARNING",
        )

    def validate(self) -> None:
        """Raise configuration error for values the runner cannot work with."""

        execution = self.execution
        if execution.timeout_seconds <= 0:
            raise ValueError("FIXLOOP_TIMEOUT_SECONDS must be > 0.")
        if execution.max_output_bytes <= 0:
            raise ValueError("FIXLOOP_MAX_OUTPUT_BYTES must be > 0.")
        if execution.terminate_grace_seconds < 0:
            raise ValueError("FIXLOOP_TERMINATE_GRACE_SECONDS must be >= 0.")
        if execution.output_drain_seconds < 0:
            raise ValueError("FIXLOOP_OUTPUT_DRAIN_SECONDS must be >= 0.")
        if execution.working_directory is not None and not execution.working_directory.is_dir():
            raise ValueError(
                "FIXLOOP_WORKING_DIRECTORY must point to an existing directory: "
                f"{str(execution.working_directory)!r}",
            )
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Invalid FIXLOOP_LOG_LEVEL: {self.log_level!r}")


def clamp_max_attempts(value: int) -> int:
    return max(MIN_MAX_ATTEMPTS, min(MAX_MAX_ATTEMPTS, value))


def clamp_delay_seconds(value: float) -> float:
    return max(MIN_DELAY_SECONDS, min(MAX_DELAY_SECONDS, value))


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {raw!r}") from error
