# executors.py
from __future__ import annotations

import os
import shlex
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .errors import StepExecutionError
from .model import RemoteTransfer
from .settings import DEFAULT_SECRET_PREFIX

OutputCallback = Callable[[str], None]

TOOL_HINTS = {
    "bash": "Install bash or set `shell: sh` on the step.",
    "docker": "Install Docker and ensure the daemon is running.",
    "scp": "Install an OpenSSH client (scp) or fix PATH.",
    "python3": "Install Python 3 or fix PATH (python3).",
}


@dataclass
class CommandRequest:
    """'Run this command with this environment': all the core ever asks."""
    argv: List[str]
    cwd: Path
    env: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None
    workspace: Optional[Path] = None


@dataclass
class CommandOutcome:
    exit_code: int
    output: str = ""
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


def shell_argv(shell: Optional[str], command: str) -> List[str]:
    shell = (shell or "bash").strip()
    if shell == "bash":
        return ["bash", "--noprofile", "--norc", "-e", "-o", "pipefail", "-c", command]
    if shell == "sh":
        return ["sh", "-e", "-c", command]
    if shell == "python":
        return [sys.executable, "-c", command]
    return [*shlex.split(shell), command]


# ---------------------------------------------------------------------
# Command executors
# ---------------------------------------------------------------------

class CommandExecutor:
    """Opaque process collaborator. Implementations must honour `cancel`."""

    def run(
        self,
        request: CommandRequest,
        cancel: threading.Event,
        on_output: Optional[OutputCallback] = None,
    ) -> CommandOutcome:
        raise NotImplementedError


def _terminate(proc: subprocess.Popen, grace: float = 5.0) -> None:
    if proc.poll() is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGTERM)
        else:
            proc.terminate()
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
        proc.wait()
    except ProcessLookupError:
        pass


class LocalProcessExecutor(CommandExecutor):
    """
    Runs commands as local subprocesses, streaming merged stdout/stderr.

    The inherited environment never carries `<secret_prefix>*` variables:
    a job sees a secret only through the `secrets` context.
    """

    def __init__(self, poll_interval: float = 0.1, inherit_env: bool = True, secret_prefix: Optional[str] = DEFAULT_SECRET_PREFIX):
        self.poll_interval = poll_interval
        self.inherit_env = inherit_env
        self.secret_prefix = secret_prefix

    def inherited_env(self) -> Dict[str, str]:
        if not self.inherit_env:
            return {}
        prefix = self.secret_prefix
        return {k: v for k, v in os.environ.items() if not (prefix and k.startswith(prefix))}

    def run(self, request, cancel, on_output=None):
        env = self.inherited_env()
        env.update(request.env)

        try:
            proc = subprocess.Popen(
                request.argv,
                cwd=str(request.cwd),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                start_new_session=(os.name == "posix"),
            )
        except FileNotFoundError:
            tool = request.argv[0] if request.argv else "?"
            raise StepExecutionError(
                f"Command not found: {tool}",
                details={"hint": TOOL_HINTS.get(Path(tool).name, "Install it or fix PATH.")},
            )

        chunks: List[str] = []

        def _pump() -> None:
            for line in proc.stdout:
                chunks.append(line)
                if on_output is not None:
                    on_output(line)

        reader = threading.Thread(target=_pump, daemon=True)
        reader.start()

        deadline = time.monotonic() + request.timeout if request.timeout else None
        timed_out = cancelled = False
        while True:
            try:
                proc.wait(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                pass
            if cancel.is_set():
                cancelled = True
                _terminate(proc)
                break
            if deadline is not None and time.monotonic() > deadline:
                timed_out = True
                _terminate(proc)
                break

        reader.join(timeout=5)
        return CommandOutcome(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            output="".join(chunks),
            timed_out=timed_out,
            cancelled=cancelled,
        )


# ---------------------------------------------------------------------
# Remote transfer
# ---------------------------------------------------------------------

class RemoteTransport:
    """Opaque 'copy this file to this host' collaborator."""

    def copy(
        self,
        transfer: RemoteTransfer,
        workspace: Path,
        cancel: threading.Event,
        on_output: Optional[OutputCallback] = None,
    ) -> CommandOutcome:
        raise NotImplementedError


class ScpTransport(RemoteTransport):
    """Copies over scp, through the same command executor jobs use."""

    def __init__(self, executor: Optional[CommandExecutor] = None, extra_options: Optional[List[str]] = None):
        self.executor = executor or LocalProcessExecutor()
        self.extra_options = list(extra_options or ["-o", "BatchMode=yes"])

    def argv(self, transfer: RemoteTransfer, workspace: Path) -> List[str]:
        cmd = ["scp", "-r", *self.extra_options]
        if transfer.port:
            cmd.extend(["-P", str(transfer.port)])
        if transfer.identity_file:
            cmd.extend(["-i", transfer.identity_file])
        source = Path(transfer.source)
        if not source.is_absolute():
            source = workspace / source
        target = f"{transfer.user}@{transfer.host}" if transfer.user else transfer.host
        cmd.extend([str(source), f"{target}:{transfer.destination}"])
        return cmd

    def copy(self, transfer, workspace, cancel, on_output=None):
        request = CommandRequest(argv=self.argv(transfer, workspace), cwd=workspace, workspace=workspace)
        return self.executor.run(request, cancel, on_output)


def with_timeout(request: CommandRequest, timeout_minutes: Optional[float]) -> CommandRequest:
    if not timeout_minutes:
        return request
    return replace(request, timeout=timeout_minutes * 60.0)
