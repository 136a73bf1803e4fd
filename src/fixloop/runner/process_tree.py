"""Platform services: spawning a command in its own process group and killing the tree."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

POSIX_SHELL = "/bin/sh"
WINDOWS_UTF8_PREFIX = "chcp 65001 >nul && "


class TreeKiller(Protocol):
    """Callable that terminates a process and all of its descendants."""

    def __call__(self, process: subprocess.Popen[str], *, grace_seconds: float) -> None:
        """Kill ``process`` and its tree; must not raise."""


def build_shell_args(command: str, *, os_name: str | None = None) -> str | list[str]:
    """Wrap a command line for the platform shell."""

    current_os_name = os_name or os.name
    if current_os_name == "nt":
        return f'cmd.exe /d /s /c "{WINDOWS_UTF8_PREFIX}{command}"'
    return [POSIX_SHELL, "-c", command]


def spawn(command: str, *, working_directory: Path | None) -> subprocess.Popen[str]:
    """Start ``command`` with piped output as the leader of a new process group."""

    popen_kwargs: dict[str, object] = {}
    if os.name == "nt":
        popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        popen_kwargs["start_new_session"] = True

    env = os.environ.copy()
    env.setdefault("PYTHONUNBUFFERED", "1")
    env.setdefault("PYTHONIOENCODING", "utf-8")

    return subprocess.Popen(  # noqa: S603
        build_shell_args(command),
        cwd=str(working_directory) if working_directory is not None else None,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        bufsize=1,
        **popen_kwargs,  # type: ignore[arg-type]
    )


def kill_process_tree(process: subprocess.Popen[str], *, grace_seconds: float = 2.0) -> None:
    """Terminate a spawned command and everything it started.

    Best effort: errors from already-exited processes are ignored, but the
    group is always escalated to a hard kill when the grace period runs out.
    """

    if os.name == "nt":
        _kill_windows_tree(process)
        return
    _kill_posix_group(process, grace_seconds=grace_seconds)


def _kill_posix_group(process: subprocess.Popen[str], *, grace_seconds: float) -> None:
    pgid = process.pid
    if not _signal_group(pgid, signal.SIGTERM):
        _reap(process, timeout=grace_seconds)
        return
    try:
        process.wait(timeout=max(0.0, grace_seconds))
    except subprocess.TimeoutExpired:
        logger.warning("Process group %d ignored SIGTERM, sending SIGKILL", pgid)
    # Descendants may outlive the leader; the group gets SIGKILL either way.
    _signal_group(pgid, signal.SIGKILL)
    _reap(process, timeout=5)


def _signal_group(pgid: int, signum: signal.Signals) -> bool:
    try:
        os.killpg(pgid, signum)
    except ProcessLookupError:
        return False
    except PermissionError:
        logger.debug("No permission to signal process group %d", pgid, exc_info=True)
        return False
    except OSError:
        logger.debug("Failed to signal process group %d", pgid, exc_info=True)
        return False
    return True


def _kill_windows_tree(process: subprocess.Popen[str]) -> None:
    try:
        subprocess.run(  # noqa: S603
            ["taskkill", "/F", "/T", "/PID", str(process.pid)],  # noqa: S607
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired):
        logger.debug("taskkill failed for pid %d", process.pid, exc_info=True)
    if process.poll() is None:
        try:
            process.kill()
        except OSError:
            return
    _reap(process, timeout=5)


def _reap(process: subprocess.Popen[str], *, timeout: float) -> None:
    try:
        process.wait(timeout=max(0.0, timeout))
    except subprocess.TimeoutExpired:
        logger.warning("pid %d did not exit after kill", process.pid)
