"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import subprocess
import sys
import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest

ScriptCommand = Callable[[str, str], str]


def _quote_args(*args: str) -> str:
    if os.name == "nt":
        return subprocess.list2cmdline(list(args))
    return " ".join(shlex.quote(arg) for arg in args)


@pytest.fixture()
def script_command(tmp_path: Path) -> ScriptCommand:
    """Write a Python script into tmp_path and return a shell command running it."""

    def _make(name: str, body: str) -> str:
        script = tmp_path / f"{name}.py"
        script.write_text(textwrap.dedent(body).strip() + "\n", "utf-8")
        return _quote_args(sys.executable, str(script))

    return _make


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    for name in list(os.environ):
        if name.startswith("FIXLOOP_"):
            monkeypatch.delenv(name, raising=False)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    stat_path = Path(f"/proc/{pid}/stat")
    try:
        stat = stat_path.read_text("utf-8")
    except OSError:
        return True
    state = stat.rsplit(")", 1)[-1].split()[0]
    return state != "Z"


@pytest.fixture()
def pid_alive() -> Callable[[int], bool]:
    """Return a checker that is True while a pid exists and is not a zombie."""

    return _pid_alive
