# steps.py
from __future__ import annotations

import re
from typing import Callable, Dict, List, Optional, Tuple

from .context import JobContext, parse_command_file, status_word
from .errors import PipelineError, StepExecutionError
from .executors import CommandOutcome, CommandRequest, shell_argv, with_timeout
from .expressions import EvalContext, evaluate_condition, render, render_mapping
from .model import (
    AttemptResult,
    BuiltinAction,
    ErrorRecord,
    RemoteTransfer,
    ShellCommand,
    Status,
    StepResult,
    StepSpec,
    utcnow,
)
from .step_workflows.builtin import run_action
from .step_workflows.transfer import render_transfer, run_transfer
from .ui.console import get_console

# legacy workflow commands printed on stdout
_SET_OUTPUT_RE = re.compile(r"^::set-output name=([^:]+)::(.*)$")
_ADD_MASK_RE = re.compile(r"^::add-mask::(.*)$")

OUTPUT_TAIL_LINES = 20


class StepCancelled(Exception):
    """The run was cancelled while this step's process was running."""


class StepRunner:
    """
    Executes a job's steps, strictly in order, inside one JobContext.

    After a failed step the remaining steps only run if their `if:` calls a
    status function that holds (e.g. `if: failure()` or `if: always()`);
    the rest end Skipped. Once the run is cancelled every remaining step
    ends Cancelled.
    """

    def __init__(self, ctx: JobContext):
        self.ctx = ctx
        self.console = get_console()
        self.failed = False
        self._handlers: Dict[type, Callable[[StepSpec, object, Dict[str, str], EvalContext, StepResult], None]] = {
            ShellCommand: self._run_shell,
            BuiltinAction: self._run_action,
            RemoteTransfer: self._run_transfer,
        }

    # -----------------------------------------------------------------
    # status functions as seen by step conditions
    # -----------------------------------------------------------------

    def _status(self, name: str) -> bool:
        if name == "always":
            return True
        if name == "cancelled":
            return self.ctx.cancel.is_set()
        if name == "failure":
            return self.failed
        return not self.failed and not self.ctx.cancel.is_set()

    def run(self, attempt: AttemptResult) -> Status:
        job = self.ctx.job
        for step in job.steps:
            result = StepResult(name=step.name, id=step.id)
            attempt.steps.append(result)

            if self.ctx.cancel.is_set():
                self._finish(step, result, Status.CANCELLED, note="run cancelled")
                continue

            step_env = {**self.ctx.env}
            try:
                ectx = self.ctx.eval_context(env=step_env, status=self._status)
                step_env.update(render_mapping(step.env, ectx))
                ectx = self.ctx.eval_context(env=step_env, status=self._status)
                should_run = evaluate_condition(step.condition, ectx)
            except PipelineError as e:
                self._fail(step, result, e)
                continue

            if not should_run:
                note = "previous step failed" if self.failed else "condition is false"
                self._finish(step, result, Status.SKIPPED, note=note)
                continue

            self.console.print_step(job.id, step.name)
            result.started_at = utcnow()
            result.status = Status.RUNNING
            result.log_ref = self.ctx.log(f"##[step] {step.name}")
            try:
                self._handlers[type(step.executable)](step, step.executable, step_env, ectx, result)
            except StepCancelled:
                self._finish(step, result, Status.CANCELLED, note="run cancelled")
                continue
            except PipelineError as e:
                self._fail(step, result, e)
                continue

            if result.status is Status.RUNNING:
                result.status = Status.SUCCEEDED
            self._finish(step, result, result.status, note=result.note)

        if self.ctx.cancel.is_set() and any(s.status is Status.CANCELLED for s in attempt.steps):
            return Status.CANCELLED
        return Status.FAILED if self.failed else Status.SUCCEEDED

    # -----------------------------------------------------------------
    # bookkeeping
    # -----------------------------------------------------------------

    def _finish(self, step: StepSpec, result: StepResult, status: Status, note: Optional[str] = None) -> None:
        result.status = status
        result.note = note
        if result.started_at is None and status is not Status.SKIPPED:
            result.started_at = utcnow()
        result.finished_at = utcnow()
        if step.id:
            conclusion = status
            if status is Status.FAILED and step.continue_on_error:
                conclusion = Status.SUCCEEDED
            self.ctx.steps[step.id] = {
                "outputs": dict(result.outputs),
                "outcome": status_word(status),
                "conclusion": status_word(conclusion),
            }
        if status in (Status.SKIPPED, Status.CANCELLED):
            self.console.print_step_status(self.ctx.job.id, step.name, status.value, note)

    def _fail(self, step: StepSpec, result: StepResult, exc: PipelineError) -> None:
        redact = self.ctx.logs.redactor
        result.error = ErrorRecord.from_exception(exc, job=self.ctx.job.id, step=step.name, redactor=redact)
        result.exit_code = getattr(exc, "exit_code", None)
        self.ctx.log(f"##[error] {exc}")
        tail = self.ctx.logs.read(self.ctx.job.id).splitlines()[-OUTPUT_TAIL_LINES:]
        self.console.print_failure(
            f"{self.ctx.job.id} / {step.name}",
            result.error.message,
            exit_code=result.exit_code,
            hint=result.error.details.get("hint"),
            tail=tail if self.console.debug else None,
        )
        if step.continue_on_error:
            self._finish(step, result, Status.FAILED, note="continue-on-error")
            return
        self.failed = True
        self.ctx.job_status = "failure"
        self._finish(step, result, Status.FAILED)

    # -----------------------------------------------------------------
    # executables
    # -----------------------------------------------------------------

    def _on_output(self, result: StepResult) -> Callable[[str], None]:
        def handle(line: str) -> None:
            stripped = line.rstrip("\n")
            mask = _ADD_MASK_RE.match(stripped)
            if mask:
                self.ctx.logs.redactor.add(mask.group(1).strip())
                return
            m = _SET_OUTPUT_RE.match(stripped)
            if m:
                result.outputs[m.group(1).strip()] = m.group(2)
            self.ctx.log(stripped)
        return handle

    def _check_outcome(self, outcome: CommandOutcome, what: str) -> None:
        if outcome.cancelled:
            raise StepCancelled()
        if outcome.timed_out:
            raise StepExecutionError(f"{what} timed out", exit_code=outcome.exit_code)
        if outcome.exit_code != 0:
            raise StepExecutionError(f"{what} exited with code {outcome.exit_code}", exit_code=outcome.exit_code)

    def _collect_command_files(self, result: StepResult) -> None:
        if self.ctx.output_file.exists():
            result.outputs.update(parse_command_file(self.ctx.output_file.read_text(encoding="utf-8")))
        if self.ctx.env_file.exists():
            # visible to later steps of this job only
            self.ctx.env.update(parse_command_file(self.ctx.env_file.read_text(encoding="utf-8")))

    def _timeout(self, step: StepSpec) -> Optional[float]:
        return step.timeout_minutes or self.ctx.job.timeout_minutes

    def _run_shell(self, step, command: ShellCommand, env, ectx, result) -> None:
        script = render(command.run, ectx)
        cwd = self.ctx.workspace
        if step.working_directory:
            cwd = (self.ctx.workspace / render(step.working_directory, ectx)).resolve()
            if not cwd.is_dir():
                raise StepExecutionError(f"working-directory not found: {step.working_directory}")

        self.ctx.reset_command_files()
        request = CommandRequest(
            argv=shell_argv(command.shell or self.ctx.default_shell, script),
            cwd=cwd,
            env={**env, **self.ctx.command_file_env()},
            workspace=self.ctx.workspace,
        )
        outcome = self.ctx.executor.run(with_timeout(request, self._timeout(step)), self.ctx.cancel, self._on_output(result))
        result.exit_code = outcome.exit_code
        self._collect_command_files(result)
        self._check_outcome(outcome, "Command")

    def _run_action(self, step, action: BuiltinAction, env, ectx, result) -> None:
        inputs = render_mapping(action.inputs, ectx)
        outcome = run_action(action, inputs, self.ctx)
        if outcome.status is Status.CANCELLED:
            raise StepCancelled()
        result.outputs.update(outcome.outputs)
        result.note = outcome.note
        if outcome.status is not Status.SUCCEEDED:
            result.status = outcome.status

    def _run_transfer(self, step, transfer: RemoteTransfer, env, ectx, result) -> None:
        rendered = render_transfer(transfer, ectx)
        outcome = run_transfer(rendered, self.ctx)
        result.exit_code = outcome.exit_code
        self._check_outcome(outcome, "Transfer")


def job_outputs(ctx: JobContext) -> Tuple[Dict[str, str], List[str]]:
    """Render the job's `outputs:` templates once its steps are done."""
    ectx = ctx.eval_context()
    outputs: Dict[str, str] = {}
    for name, template in ctx.job.outputs.items():
        outputs[name] = render(template, ectx)
    return outputs, sorted(outputs)
