"""Run one external command with streamed output, a hard timeout and cancellation."""

from __future__ import annotations

import logging
import queue
import subprocess
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import IO

from fixloop.runner.cancellation import CancellationSignal
from fixloop.runner.models import (
    NOT_COMPLETED_EXIT_CODE,
    ConcurrentRunError,
    ExecutionConfig,
    ExecutionResult,
    LineCallback,
)
from fixloop.runner.output_buffer import DEFAULT_MAX_OUTPUT_BYTES, BoundedOutputBuffer
from fixloop.runner.process_tree import TreeKiller, kill_process_tree, spawn

logger = logging.getLogger(__name__)

Spawner = Callable[..., subprocess.Popen[str]]

_STDOUT = "stdout"
_STDERR = "stderr"

StreamItem = tuple[str, str | None]


class ProcessExecutor:
    """Owns the lifecycle of a single command invocation.

    ``execute`` blocks until the attempt is over. Output is read by one
    thread per stream and handed to the calling thread through a queue, so
    line callbacks run on the caller's thread, one at a time, in the order
    each stream produced them. Nothing is kept between invocations.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        terminate_grace_seconds: float = 2.0,
        output_drain_seconds: float = 2.0,
        poll_interval_seconds: float = 0.05,
        spawner: Spawner = spawn,
        kill_tree: TreeKiller = kill_process_tree,
    ) -> None:
        self.max_output_bytes = max_output_bytes
        self.terminate_grace_seconds = terminate_grace_seconds
        self.output_drain_seconds = output_drain_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._spawner = spawner
        self._kill_tree = kill_tree
        self._active = threading.Lock()

    def execute(
        self,
        config: ExecutionConfig,
        on_stdout_line: LineCallback | None = None,
        on_stderr_line: LineCallback | None = None,
        cancel_signal: CancellationSignal | None = None,
    ) -> ExecutionResult:
        if not config.command.strip():
            raise ValueError("Command must not be empty.")
        if not self._active.acquire(blocking=False):
            raise ConcurrentRunError("Executor is already running a command.")
        try:
            return self._execute(config, on_stdout_line, on_stderr_line, cancel_signal)
        finally:
            self._active.release()

    def execute_captured(
        self,
        config: ExecutionConfig,
        cancel_signal: CancellationSignal | None = None,
    ) -> ExecutionResult:
        """Run without live callbacks and return the captured output only."""

        return self.execute(config, cancel_signal=cancel_signal)

    def _execute(  # noqa: C901
        self,
        config: ExecutionConfig,
        on_stdout_line: LineCallback | None,
        on_stderr_line: LineCallback | None,
        cancel_signal: CancellationSignal | None,
    ) -> ExecutionResult:
        started = time.monotonic()
        if cancel_signal is not None and cancel_signal.cancelled:
            logger.info("Command cancelled before start: %s", config.command)
            return ExecutionResult(
                success=False,
                exit_code=NOT_COMPLETED_EXIT_CODE,
                elapsed_seconds=time.monotonic() - started,
                cancelled=True,
            )

        try:
            process = self._spawner(config.command, working_directory=config.working_directory)
        except (OSError, ValueError) as error:
            message = f"Failed to start command: {error}"
            logger.warning("Failed to start %r in %s: %s", config.command, _cwd(config), error)
            if on_stderr_line is not None:
                on_stderr_line(message)
            return ExecutionResult(
                success=False,
                exit_code=NOT_COMPLETED_EXIT_CODE,
                stderr=message,
                elapsed_seconds=time.monotonic() - started,
                started=False,
            )

        logger.debug("Started pid %d: %s", process.pid, config.command)
        stdout_capture = BoundedOutputBuffer(self.max_output_bytes)
        stderr_capture = BoundedOutputBuffer(self.max_output_bytes)
        lines: queue.Queue[StreamItem] = queue.Queue()
        open_streams = {_STDOUT, _STDERR}
        _start_reader(process.stdout, _STDOUT, lines)
        _start_reader(process.stderr, _STDERR, lines)

        def _dispatch(item: StreamItem) -> None:
            stream, line = item
            if line is None:
                open_streams.discard(stream)
                return
            if stream == _STDOUT:
                stdout_capture.append(line)
                if on_stdout_line is not None:
                    on_stdout_line(line)
            else:
                stderr_capture.append(line)
                if on_stderr_line is not None:
                    on_stderr_line(line)

        deadline = started + config.timeout_seconds
        timed_out = False
        cancelled = False
        try:
            while process.poll() is None:
                if cancel_signal is not None and cancel_signal.cancelled:
                    cancelled = True
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    timed_out = True
                    break
                try:
                    item = lines.get(timeout=min(self.poll_interval_seconds, remaining))
                except queue.Empty:
                    continue
                _dispatch(item)

            if timed_out or cancelled:
                if timed_out:
                    logger.warning(
                        "Command timed out after %.1fs, killing pid %d",
                        config.timeout_seconds,
                        process.pid,
                    )
                else:
                    logger.info("Command cancelled, killing pid %d", process.pid)
                self._kill_tree(process, grace_seconds=self.terminate_grace_seconds)
                self._drain(lines, open_streams, _dispatch)
                exit_code = NOT_COMPLETED_EXIT_CODE
            else:
                exit_code = process.returncode
                self._drain(
                    lines,
                    open_streams,
                    _dispatch,
                    until=max(deadline, time.monotonic() + self.output_drain_seconds),
                )
                if open_streams:
                    logger.warning(
                        "Output of pid %d still open after exit, killing leftover processes",
                        process.pid,
                    )
                    self._kill_tree(process, grace_seconds=0.0)
                    self._drain(lines, open_streams, _dispatch)
        except BaseException:
            self._kill_tree(process, grace_seconds=0.0)
            raise

        result = ExecutionResult(
            success=exit_code == 0 and not (timed_out or cancelled),
            exit_code=exit_code,
            stdout=stdout_capture.snapshot(),
            stderr=stderr_capture.snapshot(),
            elapsed_seconds=time.monotonic() - started,
            timed_out=timed_out,
            cancelled=cancelled,
        )
        logger.info(
            "Command finished: exit_code=%d success=%s timed_out=%s cancelled=%s elapsed=%.2fs",
            result.exit_code,
            result.success,
            result.timed_out,
            result.cancelled,
            result.elapsed_seconds,
        )
        return result

    def _drain(
        self,
        lines: queue.Queue[StreamItem],
        open_streams: set[str],
        dispatch: Callable[[StreamItem], None],
        *,
        until: float | None = None,
    ) -> None:
        """Deliver buffered lines until both streams reach EOF.

        Gives up when no line arrives for ``output_drain_seconds`` or, with
        ``until`` set, once that moment has passed.
        """

        while open_streams:
            idle_timeout = self.output_drain_seconds
            if until is not None:
                remaining = until - time.monotonic()
                if remaining <= 0:
                    return
                idle_timeout = min(idle_timeout, remaining)
            try:
                item = lines.get(timeout=idle_timeout)
            except queue.Empty:
                return
            dispatch(item)


def _start_reader(
    stream: IO[str] | None,
    name: str,
    lines: queue.Queue[StreamItem],
) -> threading.Thread:
    thread = threading.Thread(
        target=_read_lines,
        args=(stream, name, lines),
        daemon=True,
        name=f"fixloop-{name}-reader",
    )
    thread.start()
    return thread


def _read_lines(stream: IO[str] | None, name: str, lines: queue.Queue[StreamItem]) -> None:
    if stream is None:
        lines.put((name, None))
        return
    try:
        for raw in iter(stream.readline, ""):
            lines.put((name, raw.rstrip("\r\n")))
    except (OSError, ValueError):
        logger.debug("Reading %s stopped early", name, exc_info=True)
    finally:
        try:
            stream.close()
        except OSError:
            pass
        lines.put((name, None))


def _cwd(config: ExecutionConfig) -> Path | str:
    return config.working_directory if config.working_directory is not None else "."
