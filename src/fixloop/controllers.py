"""Controllers for runner CLI commands."""

from __future__ import annotations

import logging
import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path

from fixloop.config import ExecutionSettings, Settings
from fixloop.runner import LoopOutcome, RunnerSession, SessionStatus

logger = logging.getLogger(__name__)

Emit = Callable[[str], None]


@dataclass(slots=True)
class RunCommand:
    """CLI input for a single command run."""

    command: str
    working_directory: Path | None = None
    timeout_seconds: float | None = None
    max_output_bytes: int | None = None
    report_path: Path | None = None


@dataclass(slots=True)
class LoopCommand:
    """CLI input for the auto-fix retry loop."""

    command: str
    max_attempts: int | None = None
    delay_seconds: float | None = None
    working_directory: Path | None = None
    timeout_seconds: float | None = None
    max_output_bytes: int | None = None
    report_path: Path | None = None


@dataclass(slots=True)
class RunnerCliResult:
    """Run summary to render in CLI."""

    lines: list[str]
    success: bool
    cancelled: bool = False


class RunnerCliController:
    """Runs commands for the CLI, streaming transcript lines as they arrive."""

    def __init__(self, settings_loader: Callable[[], Settings] = Settings.from_env) -> None:
        self._settings_loader = settings_loader

    def run_once(self, command: RunCommand, emit: Emit) -> RunnerCliResult:
        execution = self._execution_settings(
            working_directory=command.working_directory,
            timeout_seconds=command.timeout_seconds,
            max_output_bytes=command.max_output_bytes,
        )
        session = RunnerSession(settings=execution, on_output=emit)
        with _stop_on_signals(session):
            result = session.run_once(command.command)

        lines = [
            f"Status: {session.status.value} "
            f"(exit code {result.exit_code}, {result.elapsed_seconds:.1f}s)",
        ]
        lines.extend(_write_report(session, command.report_path))
        return RunnerCliResult(
            lines=lines,
            success=result.success,
            cancelled=session.status is SessionStatus.CANCELLED,
        )

    def run_loop(self, command: LoopCommand, emit: Emit) -> RunnerCliResult:
        settings = self._settings_loader()
        execution = self._execution_settings(
            working_directory=command.working_directory,
            timeout_seconds=command.timeout_seconds,
            max_output_bytes=command.max_output_bytes,
            settings=settings,
        )
        max_attempts = (
            command.max_attempts
            if command.max_attempts is not None
            else settings.retry.max_attempts
        )
        delay_seconds = (
            command.delay_seconds
            if command.delay_seconds is not None
            else settings.retry.delay_seconds
        )
        session = RunnerSession(settings=execution, on_output=emit)
        with _stop_on_signals(session):
            outcome = session.run_loop(command.command, max_attempts, delay_seconds)

        lines = [
            f"Loop finished: outcome={outcome.value} "
            f"attempts={session.current_attempt}/{session.max_attempts} "
            f"elapsed={session.elapsed_seconds:.1f}s",
        ]
        lines.extend(_write_report(session, command.report_path))
        return RunnerCliResult(
            lines=lines,
            success=outcome is LoopOutcome.SUCCEEDED,
            cancelled=outcome is LoopOutcome.CANCELLED,
        )

    def _execution_settings(
        self,
        *,
        working_directory: Path | None,
        timeout_seconds: float | None,
        max_output_bytes: int | None,
        settings: Settings | None = None,
    ) -> ExecutionSettings:
        resolved = settings or self._settings_loader()
        execution = resolved.execution
        if working_directory is not None:
            execution = replace(
                execution,
                working_directory=working_directory.expanduser().resolve(),
            )
        if timeout_seconds is not None:
            execution = replace(execution, timeout_seconds=timeout_seconds)
        if max_output_bytes is not None:
            execution = replace(execution, max_output_bytes=max_output_bytes)
        replace(resolved, execution=execution).validate()
        return execution


def _write_report(session: RunnerSession, report_path: Path | None) -> list[str]:
    if report_path is None:
        return []
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(session.report_json() + "\n", "utf-8")
    return [f"Report written: {report_path}"]


@contextmanager
def _stop_on_signals(session: RunnerSession) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.info("Received %s, stopping the running command", name)
        session.stop()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
