# context.py
from __future__ import annotations

import platform
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .artifacts import ArtifactStore
from .executors import CommandExecutor, RemoteTransport
from .expressions import EvalContext
from .logs import LogSink
from .model import JobSpec, Status

# ---------------------------------------------------------------------
# Per-job execution context
# ---------------------------------------------------------------------
# Nothing here is shared between jobs except the run services (artifacts,
# logs, executor, transport) and the cancellation signal. Env changes a
# step makes through $PIPEWRIGHT_ENV land in this job's `env` only.
# ---------------------------------------------------------------------

CONTROL_DIR = ".pipewright"

STATUS_WORDS = {
    Status.SUCCEEDED: "success",
    Status.FAILED: "failure",
    Status.SKIPPED: "skipped",
    Status.CANCELLED: "cancelled",
}


def status_word(status: Status) -> str:
    return STATUS_WORDS.get(status, status.value)


@dataclass
class JobContext:
    job: JobSpec
    run_id: str
    attempt: int
    workspace: Path
    source_dir: Path
    env: Dict[str, str]
    cancel: threading.Event
    artifacts: ArtifactStore
    logs: LogSink
    executor: CommandExecutor
    transport: RemoteTransport
    secrets: Dict[str, str] = field(default_factory=dict)
    inputs: Dict[str, Any] = field(default_factory=dict)
    github: Dict[str, Any] = field(default_factory=dict)
    needs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    steps: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    default_shell: str = "bash"
    job_status: str = "success"

    @property
    def control_dir(self) -> Path:
        return self.workspace / CONTROL_DIR

    @property
    def env_file(self) -> Path:
        return self.control_dir / "env"

    @property
    def output_file(self) -> Path:
        return self.control_dir / "output"

    def reset_command_files(self) -> None:
        self.control_dir.mkdir(parents=True, exist_ok=True)
        self.env_file.write_text("", encoding="utf-8")
        self.output_file.write_text("", encoding="utf-8")

    def command_file_env(self) -> Dict[str, str]:
        env_file = str(self.env_file)
        output_file = str(self.output_file)
        return {
            "PIPEWRIGHT_ENV": env_file,
            "PIPEWRIGHT_OUTPUT": output_file,
            "GITHUB_ENV": env_file,
            "GITHUB_OUTPUT": output_file,
        }

    def log(self, text: str) -> str:
        return self.logs.write(self.job.id, text)

    def eval_context(
        self,
        env: Optional[Mapping[str, str]] = None,
        status: Optional[Callable[[str], bool]] = None,
    ) -> EvalContext:
        values = run_contexts(
            env=self.env if env is None else env,
            inputs=self.inputs,
            secrets=self.secrets,
            github=self.github,
            needs=self.needs,
            matrix=dict(self.job.matrix),
        )
        values["steps"] = self.steps
        values["job"] = {"status": self.job_status}
        values["runner"]["temp"] = str(self.control_dir / "tmp")
        if status is None:
            return EvalContext(values)
        return EvalContext(values, status)


def run_contexts(
    *,
    env: Mapping[str, str],
    inputs: Mapping[str, Any],
    github: Mapping[str, Any],
    needs: Mapping[str, Any],
    secrets: Optional[Mapping[str, str]] = None,
    matrix: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "env": dict(env),
        "inputs": dict(inputs),
        "secrets": dict(secrets or {}),
        "github": dict(github),
        "needs": dict(needs),
        "matrix": dict(matrix or {}),
        "runner": {"os": platform.system(), "arch": platform.machine()},
    }


def parse_command_file(text: str) -> Dict[str, str]:
    """
    Parse $PIPEWRIGHT_ENV / $PIPEWRIGHT_OUTPUT contents:

        name=value
        name<<DELIM
        multi-line value
        DELIM
    """
    values: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        heredoc = line.find("<<")
        eq = line.find("=")
        if heredoc != -1 and (eq == -1 or heredoc < eq):
            name, delim = line[:heredoc].strip(), line[heredoc + 2:].strip()
            body: List[str] = []
            while i < len(lines) and lines[i] != delim:
                body.append(lines[i])
                i += 1
            i += 1  # closing delimiter
            values[name] = "\n".join(body)
        elif eq != -1:
            values[line[:eq].strip()] = line[eq + 1:]
    return values
