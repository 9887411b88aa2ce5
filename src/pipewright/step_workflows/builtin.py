# step_workflows/builtin.py
from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..artifacts import pack_paths, unpack
from ..context import CONTROL_DIR, JobContext
from ..errors import ArtifactNotFoundError, StepExecutionError
from ..executors import CommandRequest
from ..model import ActionKind, BuiltinAction, Status

# setup-<x> action -> executable to probe
SETUP_TOOLS = {
    "python": "python3",
    "node": "node",
    "java": "java",
    "go": "go",
    "dotnet": "dotnet",
    "ruby": "ruby",
}


@dataclass
class ActionOutcome:
    status: Status = Status.SUCCEEDED
    outputs: Dict[str, str] = field(default_factory=dict)
    note: Optional[str] = None


def _split_paths(value: str) -> List[str]:
    return [line.strip() for line in value.splitlines() if line.strip()]


def _inside(ctx: JobContext, rel: str) -> Path:
    target = (ctx.workspace / rel).resolve()
    if not target.is_relative_to(ctx.workspace.resolve()):
        raise StepExecutionError(f"Path escapes the job workspace: {rel}")
    return target


# ---------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------

def checkout(action: BuiltinAction, inputs: Dict[str, str], ctx: JobContext) -> ActionOutcome:
    """Copy the source tree into the job workspace."""
    dest = _inside(ctx, inputs.get("path", "."))
    source = ctx.source_dir.resolve()
    run_root = None
    try:
        run_root = ctx.workspace.resolve().relative_to(source).parts[0]
    except ValueError:
        pass

    def _ignore(directory: str, names: List[str]) -> List[str]:
        if Path(directory).resolve() != source:
            return []
        return [n for n in names if n in (".git", CONTROL_DIR, run_root)]

    shutil.copytree(source, dest, ignore=_ignore, dirs_exist_ok=True, symlinks=True)
    note = None
    repo = inputs.get("repository")
    if repo:
        note = f"checked out local source (repository '{repo}' is not fetched)"
    ctx.log(f"checkout: {source} -> {dest}")
    return ActionOutcome(outputs={"path": str(dest)}, note=note)


def setup_tool(action: BuiltinAction, inputs: Dict[str, str], ctx: JobContext) -> ActionOutcome:
    """Verify the tool an `actions/setup-<x>` step would install is present."""
    base = action.ref.split("@", 1)[0].rsplit("/", 1)[-1]
    lang = base[len("setup-"):] if base.startswith("setup-") else base
    tool = SETUP_TOOLS.get(lang, lang)

    request = CommandRequest(
        argv=[tool, "--version"],
        cwd=ctx.workspace,
        env=dict(ctx.env),
        workspace=ctx.workspace,
    )
    outcome = ctx.executor.run(request, ctx.cancel, ctx.log)
    if outcome.cancelled:
        return ActionOutcome(status=Status.CANCELLED)
    if not outcome.ok:
        raise StepExecutionError(
            f"{tool} is not available",
            exit_code=outcome.exit_code,
            details={"hint": f"Install {tool} or fix PATH; {action.ref} is not installed locally."},
        )
    version = " ".join(outcome.output.split())
    wanted = next((v for k, v in inputs.items() if k.endswith("-version")), None)
    note = f"{tool}: {version}"
    if wanted and wanted not in version:
        note += f" (workflow asks for {wanted})"
    return ActionOutcome(outputs={"version": version}, note=note)


def upload_artifact(action: BuiltinAction, inputs: Dict[str, str], ctx: JobContext) -> ActionOutcome:
    name = inputs.get("name") or "artifact"
    patterns = _split_paths(inputs.get("path", ""))
    if not patterns:
        raise StepExecutionError("upload-artifact requires 'path'")

    payload, files = pack_paths(ctx.workspace, patterns)
    if not files:
        policy = (inputs.get("if-no-files-found") or "warn").lower()
        if policy == "error":
            raise StepExecutionError(f"No files found for artifact '{name}'", details={"path": ", ".join(patterns)})
        if policy == "ignore":
            return ActionOutcome(note="no files found")
        ctx.log(f"warning: no files found for artifact '{name}'")
    try:
        ctx.artifacts.publish(ctx.job.id, name, payload)
    except ValueError as e:
        raise StepExecutionError(str(e), details={"name": name})
    ctx.log(f"upload-artifact: {name} ({len(files)} file(s))")
    return ActionOutcome(outputs={"artifact-name": name, "files": str(len(files))})


def download_artifact(action: BuiltinAction, inputs: Dict[str, str], ctx: JobContext) -> ActionOutcome:
    dest = _inside(ctx, inputs.get("path", "."))
    name = inputs.get("name")
    names = [name] if name else ctx.artifacts.names()
    restored = 0
    for n in names:
        try:
            payload = ctx.artifacts.fetch(n, job=ctx.job.id)
        except ArtifactNotFoundError as e:
            raise StepExecutionError(e.message, details=e.details)
        # without a name every artifact lands in its own directory
        target = dest if name else dest / n
        restored += len(unpack(payload, target))
        ctx.log(f"download-artifact: {n} -> {target}")
    return ActionOutcome(outputs={"download-path": str(dest), "files": str(restored)})


def external(action: BuiltinAction, inputs: Dict[str, str], ctx: JobContext) -> ActionOutcome:
    ctx.log(f"skipping {action.ref}: no local implementation")
    return ActionOutcome(status=Status.SKIPPED, note=f"{action.ref} has no local implementation")


HANDLERS: Dict[ActionKind, Callable[[BuiltinAction, Dict[str, str], JobContext], ActionOutcome]] = {
    ActionKind.CHECKOUT: checkout,
    ActionKind.SETUP_TOOL: setup_tool,
    ActionKind.UPLOAD_ARTIFACT: upload_artifact,
    ActionKind.DOWNLOAD_ARTIFACT: download_artifact,
    ActionKind.EXTERNAL: external,
}


def run_action(action: BuiltinAction, inputs: Dict[str, str], ctx: JobContext) -> ActionOutcome:
    return HANDLERS[action.kind](action, inputs, ctx)
