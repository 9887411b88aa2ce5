# step_workflows/transfer.py
from __future__ import annotations

from dataclasses import replace
from pathlib import Path

from ..context import JobContext
from ..errors import StepExecutionError
from ..executors import CommandOutcome
from ..expressions import EvalContext, render
from ..model import RemoteTransfer


def render_transfer(transfer: RemoteTransfer, ectx: EvalContext) -> RemoteTransfer:
    return replace(
        transfer,
        source=render(transfer.source, ectx),
        host=render(transfer.host, ectx),
        destination=render(transfer.destination, ectx),
        user=render(transfer.user, ectx) if transfer.user else None,
        identity_file=render(transfer.identity_file, ectx) if transfer.identity_file else None,
    )


def run_transfer(transfer: RemoteTransfer, ctx: JobContext) -> CommandOutcome:
    """Hand an already rendered transfer to the run's remote transport."""
    source = Path(transfer.source)
    if not source.is_absolute():
        source = ctx.workspace / source
    if not source.exists():
        raise StepExecutionError(
            f"Transfer source not found: {transfer.source}",
            details={"workspace": str(ctx.workspace)},
        )
    target = f"{transfer.user}@{transfer.host}" if transfer.user else transfer.host
    ctx.log(f"transfer: {transfer.source} -> {target}:{transfer.destination}")
    return ctx.transport.copy(transfer, ctx.workspace, ctx.cancel, ctx.log)
