"""Sequential auto-retry loop on top of :class:`ProcessExecutor`."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from fixloop.runner.cancellation import CancellationSignal
from fixloop.runner.executor import ProcessExecutor
from fixloop.runner.models import (
    ConcurrentRunError,
    ExecutionConfig,
    ExecutionResult,
    LineCallback,
    LoopOutcome,
)

logger = logging.getLogger(__name__)

AttemptStartCallback = Callable[[int], None]
AttemptResultCallback = Callable[[int, ExecutionResult], None]
DelayCallback = Callable[[int, float], None]


@dataclass(slots=True)
class RetryState:
    """Mutable loop state, private to one ``run`` invocation."""

    max_attempts: int
    delay_seconds: float
    attempt: int = 0
    running: bool = False
    attempt_signal: CancellationSignal | None = None


class RetryLoopController:
    """Runs a command up to ``max_attempts`` times until one attempt succeeds.

    At most one attempt is in flight. Every attempt executes under a fresh
    child of the caller's cancellation signal, so cancelling the loop stops
    the running process while an attempt scope never outlives its attempt.
    """

    def __init__(  # noqa: PLR0913
        self,
        executor: ProcessExecutor,
        *,
        working_directory: Path | None = None,
        timeout_seconds: float = 30.0,
        on_stdout_line: LineCallback | None = None,
        on_stderr_line: LineCallback | None = None,
        on_delay: DelayCallback | None = None,
    ) -> None:
        self.executor = executor
        self.working_directory = working_directory
        self.timeout_seconds = timeout_seconds
        self.on_stdout_line = on_stdout_line
        self.on_stderr_line = on_stderr_line
        self.on_delay = on_delay
        self._active = threading.Lock()

    def run(  # noqa: PLR0913
        self,
        command: str,
        max_attempts: int,
        delay_seconds: float,
        cancel_signal: CancellationSignal,
        on_attempt_start: AttemptStartCallback | None = None,
        on_attempt_result: AttemptResultCallback | None = None,
    ) -> LoopOutcome:
        if not self._active.acquire(blocking=False):
            raise ConcurrentRunError("Retry loop is already running.")
        state = RetryState(max_attempts=max_attempts, delay_seconds=delay_seconds, running=True)
        try:
            outcome = self._run(
                command,
                state,
                cancel_signal,
                on_attempt_start,
                on_attempt_result,
            )
        finally:
            state.running = False
            self._active.release()
        logger.info(
            "Retry loop finished: outcome=%s attempts=%d/%d",
            outcome.value,
            state.attempt,
            state.max_attempts,
        )
        return outcome

    def _run(
        self,
        command: str,
        state: RetryState,
        cancel_signal: CancellationSignal,
        on_attempt_start: AttemptStartCallback | None,
        on_attempt_result: AttemptResultCallback | None,
    ) -> LoopOutcome:
        config = ExecutionConfig(
            command=command,
            working_directory=self.working_directory,
            timeout_seconds=self.timeout_seconds,
        )
        while state.attempt < state.max_attempts:
            if cancel_signal.cancelled:
                return LoopOutcome.CANCELLED

            state.attempt += 1
            logger.debug("Attempt %d/%d: %s", state.attempt, state.max_attempts, command)
            if on_attempt_start is not None:
                on_attempt_start(state.attempt)

            result = self._execute_attempt(config, state, cancel_signal)
            if on_attempt_result is not None:
                on_attempt_result(state.attempt, result)

            if result.success:
                return LoopOutcome.SUCCEEDED
            if result.cancelled or cancel_signal.cancelled:
                return LoopOutcome.CANCELLED
            if state.attempt >= state.max_attempts:
                return LoopOutcome.EXHAUSTED

            logger.info(
                "Attempt %d/%d failed (%s), retrying in %.1fs",
                state.attempt,
                state.max_attempts,
                result.failure_kind.value if result.failure_kind else "unknown",
                state.delay_seconds,
            )
            if self.on_delay is not None:
                self.on_delay(state.attempt, state.delay_seconds)
            if state.delay_seconds > 0 and cancel_signal.wait(state.delay_seconds):
                return LoopOutcome.CANCELLED
        return LoopOutcome.EXHAUSTED

    def _execute_attempt(
        self,
        config: ExecutionConfig,
        state: RetryState,
        cancel_signal: CancellationSignal,
    ) -> ExecutionResult:
        attempt_signal = cancel_signal.child()
        state.attempt_signal = attempt_signal
        try:
            return self.executor.execute(
                config,
                self.on_stdout_line,
                self.on_stderr_line,
                attempt_signal,
            )
        finally:
            attempt_signal.detach()
            state.attempt_signal = None
