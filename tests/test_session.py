from __future__ import annotations

import json
import threading
from pathlib import Path

import allure
import pytest

from fixloop.config import ExecutionSettings
from fixloop.runner.models import ConcurrentRunError, LoopOutcome
from fixloop.runner.session import (
    ANALYSIS_HINT,
    RunMode,
    RunnerSession,
    SessionStatus,
)

pytestmark = [
    allure.epic("Command Runner"),
    allure.feature("Runner Session"),
]


def _session(**overrides) -> RunnerSession:
    settings = ExecutionSettings(
        timeout_seconds=overrides.pop("timeout_seconds", 30.0),
        terminate_grace_seconds=1.0,
        output_drain_seconds=1.0,
        **overrides,
    )
    return RunnerSession(settings=settings)


def test_run_once_success_writes_header_output_and_exit_line(script_command) -> None:
    command = script_command("ok", "print('compiled 3 files')")
    session = _session()

    result = session.run_once(command)

    assert result.success is True
    assert session.status is SessionStatus.COMPLETED
    assert session.is_running is False
    lines = session.output.splitlines()
    assert lines[0] == f"$ {command}"
    assert "compiled 3 files" in lines
    assert lines[-1].startswith("[Exit: 0,")


def test_stderr_lines_are_prefixed(script_command) -> None:
    command = script_command(
        "warn",
        """
        import sys
        print("warning: unused variable", file=sys.stderr)
        sys.exit(2)
        """,
    )
    session = _session()

    session.run_once(command)

    assert session.status is SessionStatus.FAILED
    assert "[ERR] warning: unused variable" in session.output.splitlines()


def test_output_is_streamed_to_listener(script_command) -> None:
    command = script_command("stream", "print('one')\nprint('two')")
    received: list[str] = []
    session = RunnerSession(on_output=received.append)

    session.run_once(command)

    assert "one" in received
    assert "two" in received
    assert received.index("one") < received.index("two")


def test_start_failure_status(tmp_path: Path) -> None:
    session = _session(working_directory=tmp_path / "missing")

    result = session.run_once("echo hi")

    assert result.started is False
    assert session.status is SessionStatus.START_FAILED
    assert "[ERR] Failed to start command:" in session.output


def test_timeout_status_and_footer(script_command) -> None:
    command = script_command("slow", "import time\ntime.sleep(60)")
    session = _session(timeout_seconds=0.5)

    result = session.run_once(command)

    assert result.timed_out is True
    assert session.status is SessionStatus.TIMED_OUT
    assert session.output.splitlines()[-1] == "[Timed out after 0.5s]"


def test_loop_exhaustion_keeps_output_of_every_attempt(script_command) -> None:
    command = script_command(
        "broken",
        """
        import sys
        print("error CS1002: ; expected", file=sys.stderr)
        sys.exit(1)
        """,
    )
    session = _session()

    outcome = session.run_loop(command, max_attempts=3, delay_seconds=0)

    assert outcome is LoopOutcome.EXHAUSTED
    assert session.status is SessionStatus.LOOP_EXHAUSTED
    output = session.output
    assert "Starting auto-fix loop (max 3 attempts)" in output
    for attempt in (1, 2, 3):
        assert f"Attempt {attempt}/3" in output
    assert output.count("[ERR] error CS1002: ; expected") == 3
    assert output.count("Failed. Waiting 0s before retry...") == 2
    assert "All 3 attempts failed." in output
    assert output.rstrip().endswith(ANALYSIS_HINT)
    assert [record.attempt for record in session.attempts] == [1, 2, 3]


def test_loop_success_reports_attempt(script_command, tmp_path: Path) -> None:
    counter = tmp_path / "count.txt"
    command = script_command(
        "second_time_lucky",
        f"""
        import sys
        from pathlib import Path
        counter = Path({str(counter)!r})
        count = int(counter.read_text()) + 1 if counter.exists() else 1
        counter.write_text(str(count))
        sys.exit(0 if count == 2 else 1)
        """,
    )
    session = _session()

    outcome = session.run_loop(command, max_attempts=5, delay_seconds=0)

    assert outcome is LoopOutcome.SUCCEEDED
    assert session.status is SessionStatus.LOOP_SUCCEEDED
    assert session.current_attempt == 2
    assert "SUCCESS on attempt 2!" in session.output


def test_loop_bounds_are_clamped(script_command) -> None:
    command = script_command("fine", "pass")
    session = _session()

    session.run_loop(command, max_attempts=0, delay_seconds=-3)
    assert session.max_attempts == 1

    session.run_loop(command, max_attempts=1_000, delay_seconds=0)
    assert session.max_attempts == 100


def test_stop_during_delay_cancels_loop(script_command) -> None:
    command = script_command("nope", "import sys\nsys.exit(1)")
    session_holder: list[RunnerSession] = []

    def _stop_on_wait(line: str) -> None:
        if line.startswith("Failed. Waiting"):
            session_holder[0].stop()

    session = RunnerSession(
        settings=ExecutionSettings(output_drain_seconds=1.0),
        on_output=_stop_on_wait,
    )
    session_holder.append(session)

    outcome = session.run_loop(command, max_attempts=5, delay_seconds=60)

    assert outcome is LoopOutcome.CANCELLED
    assert session.status is SessionStatus.LOOP_CANCELLED
    assert session.current_attempt == 1
    assert session.output.rstrip().endswith("[Loop cancelled by user]")


def test_second_start_while_running_is_rejected_and_stop_cancels(script_command) -> None:
    command = script_command(
        "busy",
        """
        import time
        print("running", flush=True)
        time.sleep(60)
        """,
    )
    running = threading.Event()
    session = RunnerSession(
        settings=ExecutionSettings(terminate_grace_seconds=1.0, output_drain_seconds=1.0),
        on_output=lambda line: running.set() if line == "running" else None,
    )
    results = []
    thread = threading.Thread(target=lambda: results.append(session.run_once(command)))
    thread.start()
    assert running.wait(10)
    assert session.is_running is True

    with pytest.raises(ConcurrentRunError):
        session.run_loop(command, max_attempts=2, delay_seconds=0)

    assert session.stop() is True
    thread.join(timeout=10)
    assert thread.is_alive() is False
    assert results[0].cancelled is True
    assert session.status is SessionStatus.CANCELLED
    assert session.output.rstrip().endswith("[Cancelled]")


def test_stop_when_idle_is_noop() -> None:
    assert RunnerSession().stop() is False


def test_empty_command_is_rejected_without_marking_busy() -> None:
    session = RunnerSession()

    with pytest.raises(ValueError, match="must not be empty"):
        session.run_once("  ")

    assert session.is_running is False
    assert session.status is SessionStatus.READY


def test_new_run_resets_transcript(script_command) -> None:
    session = _session()
    session.run_once(script_command("first", "print('first run')"))

    session.run_once(script_command("second", "print('second run')"))

    assert "first run" not in session.output
    assert "second run" in session.output


def test_report_json_contains_attempt_summaries(script_command) -> None:
    command = script_command("bad", "import sys\nprint('oops')\nsys.exit(4)")
    session = _session()
    session.run_loop(command, max_attempts=2, delay_seconds=0)

    report = json.loads(session.report_json())

    assert report["command"] == command
    assert report["mode"] == RunMode.LOOP.value
    assert report["status"] == "loop_exhausted"
    assert report["attempts"] == 2
    assert report["max_attempts"] == 2
    assert [item["attempt"] for item in report["results"]] == [1, 2]
    assert {item["failure_kind"] for item in report["results"]} == {"command_failure"}
    assert {item["exit_code"] for item in report["results"]} == {4}
    assert "oops" in report["output"]
