"""Pytest configuration and fixtures for evalbox tests."""

from __future__ import annotations

import os
import sys
import time
from pathlib import Path

import pytest

from evalbox.core.settings import Settings, load_settings
from evalbox.runners.base import RunnerRegistry
from evalbox.runners.python_runner import PythonRunner, build_registry
from evalbox.services.dispatcher import BatchDispatcher


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Fast-failing settings; the interpreter is the one running the tests."""
    return load_settings(
        tmp_path / "absent.yaml",
        max_concurrent_evaluations=4,
        max_timeout_secs=10.0,
        kill_grace_secs=0.5,
        runtimes={"python3": sys.executable},
    )


@pytest.fixture
def runner() -> PythonRunner:
    return PythonRunner(python_bin=sys.executable)


@pytest.fixture
def registry(settings: Settings) -> RunnerRegistry:
    return build_registry(settings.runtimes)


@pytest.fixture
def dispatcher(registry: RunnerRegistry, settings: Settings) -> BatchDispatcher:
    return BatchDispatcher(registry, settings)


def pid_alive(pid: int) -> bool:
    """True if `pid` exists and is not a zombie."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    try:
        with open(f"/proc/{pid}/stat", encoding="utf-8") as f:
            state = f.read().rsplit(")", 1)[1].split()[0]
    except FileNotFoundError:
        return False
    return state != "Z"


def wait_dead(pid: int, timeout: float = 3.0) -> bool:
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        if not pid_alive(pid):
            return True
        time.sleep(0.05)
    return not pid_alive(pid)


@pytest.fixture(name="wait_dead")
def wait_dead_fixture():
    return wait_dead
