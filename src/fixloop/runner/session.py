"""Driver-facing runner: busy guard, stop requests and the accumulated transcript."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from enum import Enum

from fixloop.config import ExecutionSettings, clamp_delay_seconds, clamp_max_attempts
from fixloop.runner.cancellation import CancellationSignal
from fixloop.runner.executor import ProcessExecutor
from fixloop.runner.models import (
    AttemptRecord,
    ConcurrentRunError,
    ExecutionConfig,
    ExecutionResult,
    LineCallback,
    LoopOutcome,
)
from fixloop.runner.output_buffer import BoundedOutputBuffer
from fixloop.runner.retry_loop import RetryLoopController

STDERR_PREFIX = "[ERR] "
SEPARATOR = "-" * 50
ANALYSIS_HINT = "Copy the output above and send it to an AI assistant for analysis."


class RunMode(str, Enum):
    """How the last operation was started."""

    SINGLE = "single"
    LOOP = "loop"


class SessionStatus(str, Enum):
    """User-facing status of the session."""

    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    START_FAILED = "start_failed"
    CANCELLED = "cancelled"
    LOOP_SUCCEEDED = "loop_succeeded"
    LOOP_EXHAUSTED = "loop_exhausted"
    LOOP_CANCELLED = "loop_cancelled"


@dataclass(slots=True)
class SessionReport:
    """Exportable snapshot of the last operation."""

    command: str
    mode: RunMode
    status: SessionStatus
    attempts: int
    max_attempts: int
    elapsed_seconds: float
    results: list[dict[str, object]] = field(default_factory=list)
    output: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "command": self.command,
            "mode": self.mode.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "results": self.results,
            "output": self.output,
        }


class RunnerSession:
    """Runs commands once or in an auto-fix loop for one driver (CLI or UI).

    Only one operation may run at a time; starting another while busy raises
    :class:`ConcurrentRunError`. Every operation gets its own cancellation
    signal, and :meth:`stop` only ever reaches the operation that is running.
    Output from all attempts accumulates in one bounded transcript.
    """

    def __init__(
        self,
        *,
        settings: ExecutionSettings | None = None,
        executor: ProcessExecutor | None = None,
        on_output: LineCallback | None = None,
    ) -> None:
        self.settings = settings or ExecutionSettings()
        self.executor = executor or ProcessExecutor(
            max_output_bytes=self.settings.max_output_bytes,
            terminate_grace_seconds=self.settings.terminate_grace_seconds,
            output_drain_seconds=self.settings.output_drain_seconds,
        )
        self.on_output = on_output
        self.status = SessionStatus.READY
        self.mode = RunMode.SINGLE
        self.command = ""
        self.current_attempt = 0
        self.max_attempts = 1
        self.elapsed_seconds = 0.0
        self.attempts: list[AttemptRecord] = []
        self._output = BoundedOutputBuffer(self.settings.max_output_bytes)
        self._busy = threading.Lock()
        self._cancel_lock = threading.Lock()
        self._cancel: CancellationSignal | None = None
        self._started_at = 0.0

    @property
    def is_running(self) -> bool:
        return self._busy.locked()

    @property
    def output(self) -> str:
        return self._output.snapshot()

    def stop(self) -> bool:
        """Request cancellation of the running operation; False when idle."""

        with self._cancel_lock:
            cancel = self._cancel
        if cancel is None:
            return False
        cancel.cancel()
        return True

    def run_once(self, command: str) -> ExecutionResult:
        cancel = self._begin(command, mode=RunMode.SINGLE, max_attempts=1)
        try:
            self._emit(f"$ {command}")
            self._emit("")
            self.current_attempt = 1
            result = self.executor.execute(
                self._config(command),
                self._emit,
                self._emit_stderr,
                cancel,
            )
            self.attempts.append(AttemptRecord(attempt=1, result=result))
            self._emit_result_footer(result)
            self.status = _single_run_status(result)
            return result
        finally:
            self._finish()

    def run_loop(self, command: str, max_attempts: int, delay_seconds: float) -> LoopOutcome:
        max_attempts = clamp_max_attempts(max_attempts)
        delay_seconds = clamp_delay_seconds(delay_seconds)
        cancel = self._begin(command, mode=RunMode.LOOP, max_attempts=max_attempts)
        try:
            self._emit(f"Starting auto-fix loop (max {max_attempts} attempts)")
            self._emit(f"   Command: {command}")
            self._emit(SEPARATOR)
            self._emit("")
            controller = RetryLoopController(
                self.executor,
                working_directory=self.settings.working_directory,
                timeout_seconds=self.settings.timeout_seconds,
                on_stdout_line=self._emit,
                on_stderr_line=self._emit_stderr,
                on_delay=self._on_delay,
            )
            outcome = controller.run(
                command,
                max_attempts,
                delay_seconds,
                cancel,
                self._on_attempt_start,
                self._on_attempt_result,
            )
            self._emit("")
            if outcome is LoopOutcome.SUCCEEDED:
                self._emit(f"SUCCESS on attempt {self.current_attempt}!")
                self.status = SessionStatus.LOOP_SUCCEEDED
            elif outcome is LoopOutcome.EXHAUSTED:
                self._emit(f"All {max_attempts} attempts failed.")
                self._emit("")
                self._emit(ANALYSIS_HINT)
                self.status = SessionStatus.LOOP_EXHAUSTED
            else:
                self._emit("[Loop cancelled by user]")
                self.status = SessionStatus.LOOP_CANCELLED
            return outcome
        finally:
            self._finish()

    def build_report(self) -> SessionReport:
        return SessionReport(
            command=self.command,
            mode=self.mode,
            status=self.status,
            attempts=len(self.attempts),
            max_attempts=self.max_attempts,
            elapsed_seconds=self.elapsed_seconds,
            results=[
                {"attempt": record.attempt, **record.result.to_summary()}
                for record in self.attempts
            ],
            output=self.output,
        )

    def report_json(self) -> str:
        return json.dumps(self.build_report().to_dict(), indent=2, ensure_ascii=False)

    def _begin(self, command: str, *, mode: RunMode, max_attempts: int) -> CancellationSignal:
        if not command.strip():
            raise ValueError("Command must not be empty.")
        if not self._busy.acquire(blocking=False):
            raise ConcurrentRunError(
                "A command is already running; stop it before starting another.",
            )
        cancel = CancellationSignal()
        with self._cancel_lock:
            previous, self._cancel = self._cancel, cancel
        if previous is not None:
            previous.cancel()
        self.command = command
        self.mode = mode
        self.max_attempts = max_attempts
        self.current_attempt = 0
        self.elapsed_seconds = 0.0
        self.attempts = []
        self.status = SessionStatus.RUNNING
        self._output.clear()
        self._started_at = time.monotonic()
        return cancel

    def _finish(self) -> None:
        self.elapsed_seconds = time.monotonic() - self._started_at
        with self._cancel_lock:
            self._cancel = None
        if self.status is SessionStatus.RUNNING:
            self.status = SessionStatus.FAILED
        self._busy.release()

    def _config(self, command: str) -> ExecutionConfig:
        return ExecutionConfig(
            command=command,
            working_directory=self.settings.working_directory,
            timeout_seconds=self.settings.timeout_seconds,
        )

    def _emit(self, line: str) -> None:
        self._output.append(line)
        if self.on_output is not None:
            self.on_output(line)

    def _emit_stderr(self, line: str) -> None:
        self._emit(f"{STDERR_PREFIX}{line}")

    def _emit_result_footer(self, result: ExecutionResult) -> None:
        if result.cancelled:
            self._emit("")
            self._emit("[Cancelled]")
        elif result.timed_out:
            self._emit("")
            self._emit(f"[Timed out after {self.settings.timeout_seconds:g}s]")
        elif result.started:
            self._emit("")
            self._emit(f"[Exit: {result.exit_code}, {result.elapsed_seconds:.1f}s]")

    def _on_attempt_start(self, attempt: int) -> None:
        self.current_attempt = attempt
        self._emit(f"Attempt {attempt}/{self.max_attempts}")

    def _on_attempt_result(self, attempt: int, result: ExecutionResult) -> None:
        self.attempts.append(AttemptRecord(attempt=attempt, result=result))
        if result.timed_out:
            self._emit(f"[Timed out after {self.settings.timeout_seconds:g}s]")
        elif result.started and not result.cancelled:
            self._emit(f"[Exit: {result.exit_code}, {result.elapsed_seconds:.1f}s]")

    def _on_delay(self, attempt: int, delay_seconds: float) -> None:
        self._emit("")
        self._emit(f"Failed. Waiting {delay_seconds:g}s before retry...")
        self._emit("")


def _single_run_status(result: ExecutionResult) -> SessionStatus:
    if result.success:
        return SessionStatus.COMPLETED
    if not result.started:
        return SessionStatus.START_FAILED
    if result.timed_out:
        return SessionStatus.TIMED_OUT
    if result.cancelled:
        return SessionStatus.CANCELLED
    return SessionStatus.FAILED
