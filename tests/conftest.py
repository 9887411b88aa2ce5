from __future__ import annotations

import io
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import pytest

from pipewright.executors import CommandExecutor, CommandOutcome
from pipewright.parser import parse_workflow_text
from pipewright.runner import run_workflow
from pipewright.settings import Settings
from pipewright.ui.console import Console, get_console, set_console

Behaviour = Union[int, tuple, Callable]


@dataclass
class Call:
    job: str
    command: str
    env: Dict[str, str] = field(default_factory=dict)


class FakeExecutor(CommandExecutor):
    """
    Scripted stand-in for LocalProcessExecutor.

    `script` maps a substring of the command to what running it does:
      - an int exit code
      - a (exit_code, output) tuple
      - a list of the above, consumed one per call (the last one repeats)
      - a callable (request, cancel) -> CommandOutcome
    Unmatched commands succeed with no output.
    """

    def __init__(self, script: Optional[Dict[str, Behaviour]] = None):
        self.script = dict(script or {})
        self.calls: List[Call] = []
        self._lock = threading.Lock()

    def _next(self, key: str):
        behaviour = self.script[key]
        if isinstance(behaviour, list):
            return behaviour.pop(0) if len(behaviour) > 1 else behaviour[0]
        return behaviour

    def run(self, request, cancel, on_output=None):
        command = request.argv[-1] if request.argv else ""
        with self._lock:
            self.calls.append(Call(request.env.get("PIPEWRIGHT_JOB", ""), command, dict(request.env)))
            key = next((k for k in self.script if k in command), None)
            behaviour = self._next(key) if key is not None else 0

        if callable(behaviour):
            return behaviour(request, cancel)
        exit_code, output = behaviour if isinstance(behaviour, tuple) else (behaviour, "")
        if on_output is not None:
            for line in output.splitlines(keepends=True):
                on_output(line)
        return CommandOutcome(exit_code=exit_code, output=output)

    def commands_for(self, job: str) -> List[str]:
        return [c.command for c in self.calls if c.job == job]

    def jobs_called(self) -> List[str]:
        seen: List[str] = []
        for c in self.calls:
            if c.job not in seen:
                seen.append(c.job)
        return seen


@pytest.fixture(autouse=True)
def quiet_console():
    previous = get_console()
    console = Console(quiet=True, stream=io.StringIO(), err_stream=io.StringIO())
    set_console(console)
    yield console
    set_console(previous)


@pytest.fixture
def source_dir(tmp_path) -> Path:
    src = tmp_path / "src"
    src.mkdir()
    (src / "README.md").write_text("hello\n")
    return src


@pytest.fixture
def settings(tmp_path, source_dir) -> Settings:
    return Settings(
        max_workers=1,
        fail_fast=False,
        run_dir=tmp_path / "runs",
        secret_prefix="PIPEWRIGHT_SECRET_",
        source_dir=source_dir,
    )


@pytest.fixture
def fake() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def run_yaml(settings, fake, quiet_console):
    """Parse a YAML workflow and run it with the fake executor."""
    def _run(text: str, **kwargs):
        kwargs.setdefault("settings", settings)
        kwargs.setdefault("executor", fake)
        kwargs.setdefault("console", quiet_console)
        return run_workflow(parse_workflow_text(text), **kwargs)
    return _run
