"""CLI entrypoint for fixloop."""

import logging
from pathlib import Path

import rich_click as click

from fixloop import __version__
from fixloop.config import (
    MAX_DELAY_SECONDS,
    MAX_MAX_ATTEMPTS,
    MIN_DELAY_SECONDS,
    MIN_MAX_ATTEMPTS,
    Settings,
)
from fixloop.controllers import LoopCommand, RunCommand, RunnerCliController, RunnerCliResult

click.rich_click.USE_MARKDOWN = True
RUNNER_CONTROLLER = RunnerCliController()

_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def _execution_options(func):
    options = [
        click.option(
            "--cwd",
            "working_directory",
            type=click.Path(path_type=Path, file_okay=False),
            default=None,
            help="Working directory for the command. Defaults to FIXLOOP_WORKING_DIRECTORY "
            "or the current directory.",
        ),
        click.option(
            "--timeout-seconds",
            type=click.FloatRange(min=0, min_open=True),
            default=None,
            help="Per-attempt timeout. Defaults to FIXLOOP_TIMEOUT_SECONDS (30).",
        ),
        click.option(
            "--max-output-bytes",
            type=click.IntRange(min=1),
            default=None,
            help="Transcript size cap; older output is truncated beyond it.",
        ),
        click.option(
            "--report",
            "report_path",
            type=click.Path(path_type=Path, dir_okay=False),
            default=None,
            help="Write a JSON report with status, attempts and output to this file.",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
@click.version_option(version=__version__, prog_name="fixloop")
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Logging level. Defaults to FIXLOOP_LOG_LEVEL (WARNING).",
)
def fixloop(log_level: str | None) -> None:
    """Run shell commands with live output, timeouts and an auto-fix retry loop."""

    if log_level is None:
        log_level = _invoke(Settings.from_env).log_level
    level = log_level.upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@fixloop.command("run")
@click.argument("command")
@_execution_options
def run(
    command: str,
    working_directory: Path | None,
    timeout_seconds: float | None,
    max_output_bytes: int | None,
    report_path: Path | None,
) -> None:
    """Run COMMAND once and stream its output."""

    result = _invoke(
        lambda: RUNNER_CONTROLLER.run_once(
            RunCommand(
                command=command,
                working_directory=working_directory,
                timeout_seconds=timeout_seconds,
                max_output_bytes=max_output_bytes,
                report_path=report_path,
            ),
            emit=click.echo,
        ),
    )
    _finish(result, failure_message="Command failed.")


@fixloop.command("loop")
@click.argument("command")
@click.option(
    "--max-attempts",
    type=click.IntRange(min=MIN_MAX_ATTEMPTS, max=MAX_MAX_ATTEMPTS, clamp=True),
    default=None,
    help="Attempts before giving up. Defaults to FIXLOOP_MAX_ATTEMPTS (5).",
)
@click.option(
    "--delay-seconds",
    type=click.FloatRange(min=MIN_DELAY_SECONDS, max=MAX_DELAY_SECONDS, clamp=True),
    default=None,
    help="Pause between failed attempts. Defaults to FIXLOOP_DELAY_SECONDS (2).",
)
@_execution_options
def loop(  # noqa: PLR0913
    command: str,
    max_attempts: int | None,
    delay_seconds: float | None,
    working_directory: Path | None,
    timeout_seconds: float | None,
    max_output_bytes: int | None,
    report_path: Path | None,
) -> None:
    """Re-run COMMAND until it succeeds or the attempts run out."""

    result = _invoke(
        lambda: RUNNER_CONTROLLER.run_loop(
            LoopCommand(
                command=command,
                max_attempts=max_attempts,
                delay_seconds=delay_seconds,
                working_directory=working_directory,
                timeout_seconds=timeout_seconds,
                max_output_bytes=max_output_bytes,
                report_path=report_path,
            ),
            emit=click.echo,
        ),
    )
    _finish(result, failure_message="All attempts failed.")


def _invoke(call):
    try:
        return call()
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _finish(result: RunnerCliResult, *, failure_message: str) -> None:
    _emit_lines(result.lines)
    if result.cancelled:
        raise click.ClickException("Stopped by user.")
    if not result.success:
        raise click.ClickException(failure_message)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    fixloop()
