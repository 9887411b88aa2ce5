# step_workflows/docker.py
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional

from ..errors import StepExecutionError
from ..executors import TOOL_HINTS, CommandExecutor, CommandRequest, LocalProcessExecutor

CONTAINER_WORKDIR = "/workspace"


# ---------------------------------------------------------------------
# Container job execution
# ---------------------------------------------------------------------

def _check_docker_available() -> None:
    """Check if Docker is available, raise helpful error if not."""
    try:
        subprocess.run(
            ["docker", "--version"],
            capture_output=True,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError):
        raise StepExecutionError(
            "Docker is not available",
            details={"hint": TOOL_HINTS["docker"]},
        )


class ContainerExecutor(CommandExecutor):
    """
    Runs each command in a throwaway container of the job's image.

    The job workspace is mounted at /workspace, so files persist between
    steps of the job exactly as they do for local jobs. Only the pipeline
    env (workflow/job/step env, defaults, secrets) is forwarded; the host
    environment stays on the host.
    """

    def __init__(
        self,
        image: str,
        *,
        inner: Optional[CommandExecutor] = None,
        volumes: Optional[List[str]] = None,
        user: Optional[str] = None,
        check_available: bool = True,
    ):
        self.image = image
        self.inner = inner or LocalProcessExecutor()
        self.volumes = list(volumes or [])
        self.user = user
        self._checked = not check_available

    def docker_argv(self, request: CommandRequest) -> List[str]:
        workspace = (request.workspace or request.cwd).resolve()
        cmd = ["docker", "run", "--rm"]

        # Volume mount: workspace -> /workspace
        cmd.extend(["-v", f"{workspace}:{CONTAINER_WORKDIR}"])
        for vol in self.volumes:
            cmd.extend(["-v", vol])

        # Working directory: /workspace/<relative cwd>
        try:
            rel = Path(request.cwd).resolve().relative_to(workspace).as_posix()
        except ValueError:
            rel = "."
        container_cwd = CONTAINER_WORKDIR if rel in ("", ".") else f"{CONTAINER_WORKDIR}/{rel}"
        cmd.extend(["-w", container_cwd])

        for key, value in request.env.items():
            # host paths handed out by the runner must point inside the container
            value = value.replace(str(workspace), CONTAINER_WORKDIR)
            cmd.extend(["-e", f"{key}={value}"])

        if self.user:
            cmd.extend(["--user", self.user])

        cmd.append(self.image)
        cmd.extend(request.argv)
        return cmd

    def run(self, request, cancel, on_output=None):
        if not self._checked:
            _check_docker_available()
            self._checked = True
        wrapped = CommandRequest(
            argv=self.docker_argv(request),
            cwd=request.workspace or request.cwd,
            env={},
            timeout=request.timeout,
            workspace=request.workspace,
        )
        return self.inner.run(wrapped, cancel, on_output)
