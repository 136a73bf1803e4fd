"""Command execution core: process executor, bounded output and retry loop."""

from fixloop.runner.cancellation import CancellationSignal
from fixloop.runner.executor import ProcessExecutor
from fixloop.runner.models import (
    AttemptRecord,
    ConcurrentRunError,
    ExecutionConfig,
    ExecutionResult,
    FailureKind,
    LoopOutcome,
)
from fixloop.runner.output_buffer import TRUNCATION_MARKER, BoundedOutputBuffer
from fixloop.runner.retry_loop import RetryLoopController
from fixloop.runner.session import RunMode, RunnerSession, SessionReport, SessionStatus

__all__ = [
    "TRUNCATION_MARKER",
    "AttemptRecord",
    "BoundedOutputBuffer",
    "CancellationSignal",
    "ConcurrentRunError",
    "ExecutionConfig",
    "ExecutionResult",
    "FailureKind",
    "LoopOutcome",
    "ProcessExecutor",
    "RetryLoopController",
    "RunMode",
    "RunnerSession",
    "SessionReport",
    "SessionStatus",
]
