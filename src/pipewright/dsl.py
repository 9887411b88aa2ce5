# src/pipewright/dsl.py
from __future__ import annotations

import shlex
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .model import BuiltinAction, InputSpec, JobSpec, RemoteTransfer, ShellCommand, StepSpec, WorkflowSpec
from .parser import action_kind

StepLike = Union[StepSpec, Sequence[StepSpec]]


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    id: str | None = None,
    env: Optional[Dict[str, str]] = None,
    if_: str | None = None,
    shell: str | None = None,
    continue_on_error: bool = False,
    timeout_minutes: float | None = None,
) -> StepSpec:
    """Create a shell step."""
    return StepSpec(
        name=name,
        executable=ShellCommand(run=cmd, shell=shell),
        id=id,
        env={k: str(v) for k, v in (env or {}).items()},
        condition=if_,
        continue_on_error=continue_on_error,
        working_directory=cwd,
        timeout_minutes=timeout_minutes,
    )


def uses(
    ref: str,
    *,
    step_name: str | None = None,
    id: str | None = None,
    if_: str | None = None,
    continue_on_error: bool = False,
    **with_: Any,
) -> StepSpec:
    """
    A `uses:` step. Keyword arguments become its `with:` inputs, with
    underscores turned into dashes (`if_no_files_found` -> `if-no-files-found`),
    so `name=` is the artifact name. The step's display name is `step_name=`.
    """
    inputs = {k.replace("_", "-"): str(v) for k, v in with_.items()}
    return StepSpec(
        name=step_name or ref,
        executable=BuiltinAction(kind=action_kind(ref), ref=ref, inputs=inputs),
        id=id,
        condition=if_,
        continue_on_error=continue_on_error,
    )


def transfer(
    source: str,
    host: str,
    destination: str,
    *,
    name: str | None = None,
    user: str | None = None,
    identity_file: str | None = None,
    port: int | None = None,
    if_: str | None = None,
) -> StepSpec:
    """Copy a workspace path to a remote host."""
    return StepSpec(
        name=name or f"Transfer {source}",
        executable=RemoteTransfer(
            source=source,
            host=host,
            destination=destination,
            user=user,
            identity_file=identity_file,
            port=port,
        ),
        condition=if_,
    )


def lint(
    name: str,
    tool: str,
    args: str | None = None,
    *,
    cwd: str | None = None,
    files: List[str] | None = None,
) -> StepSpec:
    """Run a linting tool over `files` (default: the working directory)."""
    parts = [tool]
    if args:
        parts.extend(shlex.split(args))
    parts.extend(files or ["."])
    return sh(name, shlex.join(parts), cwd=cwd)


def test(
    name: str,
    framework: str,
    args: str = "",
    *,
    install: bool = True,
    cwd: str | None = None,
) -> List[StepSpec]:
    """
    Typed test step, expanded right away into the shell steps it stands for.
    """
    args = (args or "").strip()
    if framework == "pytest":
        out: List[StepSpec] = []
        if install:
            out.append(sh("Install (py)", "python -m pip install -r requirements.txt", cwd=cwd))
        out.append(sh(name, f"pytest {args}".strip(), cwd=cwd))
        return out

    if framework == "npm":
        out = []
        if install:
            out.append(sh("Install (js)", "npm ci", cwd=cwd))
        out.append(sh(name, f"npm test {args}".strip(), cwd=cwd))
        return out

    raise ValueError(f"Unknown framework: {framework!r}")


def _flatten(steps: Iterable[StepLike]) -> List[StepSpec]:
    out: List[StepSpec] = []
    for s in steps:
        if isinstance(s, StepSpec):
            out.append(s)
        else:
            out.extend(s)
    return out


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    id: str,
    *steps: StepLike,  # allow: job("x", sh(...), test(...))
    steps_list: Optional[List[StepSpec]] = None,
    needs: Optional[List[str]] = None,
    name: str | None = None,
    env: Optional[Dict[str, str]] = None,
    if_: str | None = None,
    container: str | None = None,
    retries: int = 0,
    continue_on_error: bool = False,
    timeout_minutes: float | None = None,
    outputs: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default working directory for steps without one
) -> JobSpec:
    steps_final = _flatten(steps_list or []) + _flatten(steps)
    if not steps_final:
        raise ValueError(f"job({id!r}) must have at least one step")
    if retries < 0:
        raise ValueError(f"job({id!r}) retries must be >= 0")

    if cwd is not None:
        steps_final = [s if s.working_directory is not None else replace(s, working_directory=cwd) for s in steps_final]

    return JobSpec(
        id=id,
        steps=tuple(steps_final),
        name=name,
        needs=tuple(needs or ()),
        condition=if_,
        container=container,
        env={k: str(v) for k, v in (env or {}).items()},
        outputs=dict(outputs or {}),
        retries=retries,
        continue_on_error=continue_on_error,
        timeout_minutes=timeout_minutes,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, id: str):
        self.id = id
        self._name: str | None = None
        self._needs: list[str] = []
        self._steps: list[StepSpec] = []
        self._env: dict[str, str] = {}
        self._outputs: dict[str, str] = {}
        self._condition: str | None = None
        self._container: str | None = None
        self._retries = 0
        self._continue_on_error = False
        self._timeout_minutes: float | None = None

    def named(self, name: str):
        self._name = name
        return self

    def depends_on(self, *job_ids: str):
        self._needs.extend(job_ids)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def add(self, *steps: StepLike):
        self._steps.extend(_flatten(steps))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_outputs(self, **outputs: str):
        self._outputs.update(outputs)
        return self

    def when(self, condition: str):
        self._condition = condition
        return self

    def in_container(self, image: str):
        self._container = image
        return self

    def with_retries(self, retries: int):
        self._retries = retries
        return self

    def allow_failure(self, allowed: bool = True):
        self._continue_on_error = allowed
        return self

    def with_timeout(self, minutes: float):
        self._timeout_minutes = minutes
        return self

    def build(self) -> JobSpec:
        if not self._steps:
            raise ValueError(f"Job '{self.id}' has no steps")
        return job(
            self.id,
            *self._steps,
            needs=self._needs,
            name=self._name,
            env=self._env,
            if_=self._condition,
            container=self._container,
            retries=self._retries,
            continue_on_error=self._continue_on_error,
            timeout_minutes=self._timeout_minutes,
            outputs=self._outputs,
        )


def build(id: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(id)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.10", "3.11"], group="test").jobs(
            lambda v: job(f"test-py{v}", sh("Test", f"python{v} -m pytest"))
        )

    Each built job gets `matrix.<key>` set; with `group`, other jobs can
    `needs=["test"]` to wait for every leg.
    """
    def __init__(self, key: str, values: Iterable[Any], group: str | None = None):
        self.key = key
        self.values = list(values)
        self.group = group

    def jobs(self, builder: Callable[[Any], JobSpec]) -> List[JobSpec]:
        out: List[JobSpec] = []
        for v in self.values:
            j = builder(v)
            out.append(replace(j, matrix={**j.matrix, self.key: v}, group=self.group or j.group))
        return out


def matrix(key: str, values: Iterable[Any], group: str | None = None) -> Matrix:
    return Matrix(key, values, group)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: Union[JobSpec, Sequence[JobSpec]],
    name: str = "workflow",
    env: Optional[Mapping[str, str]] = None,
    inputs: Optional[Mapping[str, InputSpec]] = None,
    fail_fast: Optional[bool] = None,
    max_parallel: Optional[int] = None,
) -> WorkflowSpec:
    """
    Workflow definition helper. Use this name so you can define your own
    `def workflow(): return wf(job(...), job(...))`.

    Matrix expansions (lists of jobs) are flattened in place.
    """
    flat: List[JobSpec] = []
    for j in jobs:
        if isinstance(j, JobSpec):
            flat.append(j)
        else:
            flat.extend(j)
    return WorkflowSpec(
        name=name,
        jobs=tuple(flat),
        env={k: str(v) for k, v in (env or {}).items()},
        inputs=dict(inputs or {}),
        fail_fast=fail_fast,
        max_parallel=max_parallel,
    )


workflow = wf  # alias (avoid naming your own function workflow if you use it)
