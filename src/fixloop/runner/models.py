"""Value types exchanged between the executor, the retry loop and drivers."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

NOT_COMPLETED_EXIT_CODE = -1

LineCallback = Callable[[str], None]


class ConcurrentRunError(RuntimeError):
    """Raised when a second operation is started on a busy component."""


class FailureKind(str, Enum):
    """Single reason that explains a non-success execution result."""

    START_FAILURE = "start_failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    COMMAND_FAILURE = "command_failure"


class LoopOutcome(str, Enum):
    """Terminal states of one retry loop invocation."""

    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


@dataclass(slots=True, frozen=True)
class ExecutionConfig:
    """Inputs required to execute one command attempt."""

    command: str
    working_directory: Path | None = None
    timeout_seconds: float = 30.0


@dataclass(slots=True, frozen=True)
class ExecutionResult:
    """Outcome of one command attempt."""

    success: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    elapsed_seconds: float = 0.0
    timed_out: bool = False
    cancelled: bool = False
    started: bool = True

    @property
    def failure_kind(self) -> FailureKind | None:
        if self.success:
            return None
        if not self.started:
            return FailureKind.START_FAILURE
        if self.timed_out:
            return FailureKind.TIMEOUT
        if self.cancelled:
            return FailureKind.CANCELLED
        return FailureKind.COMMAND_FAILURE

    def to_summary(self) -> dict[str, object]:
        """Serialize result metadata without the captured output."""

        kind = self.failure_kind
        return {
            "success": self.success,
            "exit_code": self.exit_code,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "timed_out": self.timed_out,
            "cancelled": self.cancelled,
            "failure_kind": kind.value if kind is not None else None,
            "stdout_chars": len(self.stdout),
            "stderr_chars": len(self.stderr),
        }


@dataclass(slots=True, frozen=True)
class AttemptRecord:
    """One finished attempt as seen by a driver."""

    attempt: int
    result: ExecutionResult
