"""Shared fixtures: isolated state home, task files, throwaway git repos."""

import os
import shutil
import stat
import subprocess
from pathlib import Path

import pytest

from ralph_loop.config import RunConfig

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
requires_posix = pytest.mark.skipif(os.name != "posix", reason="needs a POSIX shell")

TWO_OPEN_TASK = """---
task: Build a todo API
test_command: pytest -q
---
# Todo API

## Success Criteria

1. [ ] Create endpoint
2. [ ] List endpoint
"""


@pytest.fixture
def state_home(tmp_path: Path) -> Path:
    return tmp_path / "state-home"


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


@pytest.fixture
def make_config(state_home):
    """RunConfig factory with no delays and no retries unless asked."""
    def _make(**overrides) -> RunConfig:
        values = {
            "state_home": state_home,
            "iteration_delay": 0.0,
            "invoke_retries": 0,
        }
        values.update(overrides)
        return RunConfig(**values)
    return _make


@pytest.fixture
def write_task():
    def _write(ws: Path, text: str = TWO_OPEN_TASK, name: str = "RALPH_TASK.md") -> Path:
        path = ws / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path
    return _write


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


@pytest.fixture
def git_workspace(workspace, write_task) -> Path:
    """A git repo on branch main with RALPH_TASK.md committed."""
    git(workspace, "init", "-q")
    git(workspace, "config", "user.name", "Test User")
    git(workspace, "config", "user.email", "test@example.com")
    git(workspace, "config", "commit.gpgsign", "false")
    write_task(workspace)
    (workspace / "README.md").write_text("# demo\n", encoding="utf-8")
    git(workspace, "add", "-A")
    git(workspace, "commit", "-q", "-m", "initial")
    git(workspace, "branch", "-M", "main")
    return workspace


@pytest.fixture
def make_script(tmp_path):
    """Write an executable shell script and return its path."""
    def _make(name: str, body: str) -> Path:
        path = tmp_path / "bin" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path
    return _make
