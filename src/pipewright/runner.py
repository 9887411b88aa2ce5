# runner.py
from __future__ import annotations

import runpy
import shutil
import threading
import time
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .artifacts import ArtifactStore
from .context import JobContext, run_contexts, status_word
from .dag import RunGraph, resolve
from .errors import MalformedSpecError, PipelineError, SecretResolutionError
from .executors import CommandExecutor, LocalProcessExecutor, RemoteTransport, ScpTransport
from .expressions import EvalContext, evaluate_condition, render_mapping, referenced
from .git_facts.git import git_facts
from .logs import LogSink, safe_name
from .model import (
    AttemptResult,
    BuiltinAction,
    ErrorRecord,
    JobSpec,
    RemoteTransfer,
    RunReport,
    ShellCommand,
    Status,
    WorkflowSpec,
    utcnow,
)
from .parser import parse_workflow
from .report import write_report
from .scheduler import JobOutcome, Scheduler
from .secrets import Redactor, SecretBroker
from .settings import Settings
from .status import StatusController
from .step_workflows.docker import ContainerExecutor
from .steps import StepRunner, job_outputs
from .ui.console import Console, get_console

# local checkout ---> pipewright run ---> report.json + logs/


# ----------------------------------------------------------------------
# Workflow loading (YAML document or python module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> WorkflowSpec:
    """
    Load a workflow from a YAML document or a python file.

    A python file must define either:
      - workflow() -> WorkflowSpec (or a list of JobSpec)
      - WORKFLOW = WorkflowSpec(...) / JOBS = [JobSpec, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise MalformedSpecError(f"Workflow file not found: {wf_path}", where=str(path))
    if wf_path.suffix != ".py":
        return parse_workflow(wf_path)

    from .dsl import wf

    module_name = f"pipewright_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    loaded: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        loaded = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        loaded = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        loaded = globals_dict["JOBS"]

    if isinstance(loaded, list) and all(isinstance(j, JobSpec) for j in loaded):
        loaded = wf(*loaded, name=wf_path.stem)
    if not isinstance(loaded, WorkflowSpec):
        raise MalformedSpecError(
            "Workflow module must return/define a WorkflowSpec. "
            "Define workflow() -> WorkflowSpec (see pipewright.dsl.wf) or JOBS = [JobSpec, ...].",
            where=str(wf_path),
        )
    if loaded.source is None:
        loaded = replace(loaded, source=str(wf_path))
    return loaded


# ----------------------------------------------------------------------
# Inputs
# ----------------------------------------------------------------------

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


def _coerce(name: str, kind: str, value: Any) -> Any:
    where = f"inputs.{name}"
    if kind == "boolean":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise MalformedSpecError(f"Input '{name}' must be a boolean, got {value!r}", where=where)
    if kind == "number":
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        try:
            number = float(str(value).strip())
        except ValueError:
            raise MalformedSpecError(f"Input '{name}' must be a number, got {value!r}", where=where)
        return int(number) if number.is_integer() else number
    return "" if value is None else str(value)


def coerce_inputs(workflow: WorkflowSpec, given: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Apply declared defaults and types to caller-supplied inputs."""
    given = dict(given or {})
    unknown = sorted(set(given) - set(workflow.inputs))
    if unknown:
        raise MalformedSpecError(
            f"Unknown input(s): {', '.join(unknown)}",
            where="inputs",
            details={"declared": ", ".join(sorted(workflow.inputs)) or "(none)"},
        )

    values: Dict[str, Any] = {}
    for name, spec in workflow.inputs.items():
        if name in given:
            values[name] = _coerce(name, spec.type, given[name])
        elif spec.default is not None:
            values[name] = _coerce(name, spec.type, spec.default)
        elif spec.required:
            raise MalformedSpecError(f"Missing required input '{name}'", where=f"inputs.{name}")
    return values


# ----------------------------------------------------------------------
# Secret references
# ----------------------------------------------------------------------

def _job_templates(workflow: WorkflowSpec, job: JobSpec) -> List[str]:
    texts: List[str] = [*workflow.env.values(), *job.env.values(), *job.outputs.values()]
    for step in job.steps:
        texts.extend(step.env.values())
        if step.working_directory:
            texts.append(step.working_directory)
        exe = step.executable
        if isinstance(exe, ShellCommand):
            texts.append(exe.run)
        elif isinstance(exe, BuiltinAction):
            texts.extend(exe.inputs.values())
        elif isinstance(exe, RemoteTransfer):
            texts.extend(v for v in (exe.source, exe.host, exe.destination, exe.user, exe.identity_file) if v)
    return texts


def secrets_for(workflow: WorkflowSpec, job: JobSpec) -> List[str]:
    """Names of the secrets a job reads anywhere in its expressions."""
    conditions = [job.condition, *(s.condition for s in job.steps)]
    return sorted(referenced(_job_templates(workflow, job), "secrets", conditions))


# ----------------------------------------------------------------------
# One run
# ----------------------------------------------------------------------

def new_run_id() -> str:
    return f"{time.strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


class WorkflowRun:
    """
    Everything that lives for exactly one run: the graph, the per-run
    services and the callbacks the scheduler drives.
    """

    def __init__(
        self,
        workflow: WorkflowSpec,
        graph: RunGraph,
        settings: Settings,
        *,
        inputs: Dict[str, Any],
        broker: SecretBroker,
        executor: CommandExecutor,
        transport: RemoteTransport,
        cancel: threading.Event,
        console: Console,
        run_id: Optional[str] = None,
    ):
        self.workflow = workflow
        self.graph = graph
        self.settings = settings
        self.inputs = inputs
        self.broker = broker
        self.redactor: Redactor = broker.redactor
        self.executor = executor
        self.transport = transport
        self.cancel = cancel
        self.console = console

        self.run_id = run_id or new_run_id()
        self.source_dir = Path(settings.source_dir).resolve()
        run_dir = Path(settings.run_dir)
        if not run_dir.is_absolute():
            run_dir = self.source_dir / run_dir
        self.root = run_dir / self.run_id
        self.workspaces = self.root / "workspaces"
        self.workspaces.mkdir(parents=True, exist_ok=True)

        self.artifacts = ArtifactStore(self.root / "artifacts")
        self.logs = LogSink(self.root / "logs", self.redactor)
        self.status = StatusController(graph.jobs[j] for j in graph.declared)

        facts = git_facts(self.source_dir)
        self.github: Dict[str, Any] = {
            "sha": facts["sha"] or "",
            "ref": facts["ref"] or "",
            "ref_name": facts["ref_name"] or "",
            "repository": facts["repository"] or self.source_dir.name,
            "run_id": self.run_id,
            "workflow": workflow.name,
            "event_name": "local",
        }

    # -----------------------------------------------------------------
    # contexts
    # -----------------------------------------------------------------

    def needs_context(self, job: JobSpec) -> Dict[str, Dict[str, Any]]:
        """`needs.<id>.result/outputs`; matrix legs are also merged under their declared id."""
        needs: Dict[str, Dict[str, Any]] = {}
        for dep in self.graph.dependencies(job.id):
            r = self.status.result(dep)
            entry = {"result": status_word(r.status), "outputs": dict(r.outputs)}
            needs[dep] = entry
            group = self.graph.job(dep).declared_id
            if group != dep:
                merged = needs.setdefault(group, {"result": "success", "outputs": {}})
                merged["outputs"].update(entry["outputs"])
                if merged["result"] == "success":
                    merged["result"] = entry["result"]
        return needs

    def default_env(self, job: JobSpec, workspace: Path) -> Dict[str, str]:
        env = {
            "CI": "true",
            "PIPEWRIGHT": "true",
            "PIPEWRIGHT_RUN_ID": self.run_id,
            "PIPEWRIGHT_JOB": job.id,
            "PIPEWRIGHT_WORKSPACE": str(workspace),
            "GITHUB_RUN_ID": self.run_id,
            "GITHUB_JOB": job.declared_id,
            "GITHUB_WORKSPACE": str(workspace),
            "GITHUB_WORKFLOW": self.workflow.name,
            "GITHUB_REPOSITORY": self.github["repository"],
            "RUNNER_TEMP": str(workspace / ".pipewright" / "tmp"),
        }
        if self.github["sha"]:
            env["PIPEWRIGHT_SHA"] = env["GITHUB_SHA"] = self.github["sha"]
        if self.github["ref"]:
            env["PIPEWRIGHT_REF"] = env["GITHUB_REF"] = self.github["ref"]
            env["GITHUB_REF_NAME"] = self.github["ref_name"]
        return env

    def job_condition(self, job: JobSpec) -> bool:
        deps = [self.status.status(d) for d in self.graph.dependencies(job.id)]

        def status_fn(name: str) -> bool:
            if name == "always":
                return True
            if name == "cancelled":
                return self.cancel.is_set()
            if name == "failure":
                return any(s is Status.FAILED for s in deps)
            return all(s is Status.SUCCEEDED for s in deps) and not self.cancel.is_set()

        values = run_contexts(
            env=self.workflow.env,
            inputs=self.inputs,
            github=self.github,
            needs=self.needs_context(job),
            matrix=dict(job.matrix),
        )
        return evaluate_condition(job.condition, EvalContext(values, status_fn))

    # -----------------------------------------------------------------
    # one attempt of one job (runs on a worker thread)
    # -----------------------------------------------------------------

    def _fresh_workspace(self, job: JobSpec) -> Path:
        workspace = self.workspaces / safe_name(job.id)
        if workspace.exists():
            shutil.rmtree(workspace)
        workspace.mkdir(parents=True)
        return workspace

    def run_job(self, job: JobSpec, attempt: AttemptResult) -> JobOutcome:
        self.logs.section(job.id, f"attempt {attempt.number}")
        try:
            secrets = self.broker.resolve(secrets_for(self.workflow, job), job=job.id)
        except SecretResolutionError as e:
            self.console.print_failure(job.id, e.message, is_job=True)
            return JobOutcome(Status.FAILED, error=ErrorRecord.from_exception(e, job=job.id), retry=False)

        workspace = self._fresh_workspace(job)
        needs = self.needs_context(job)
        github = {**self.github, "job": job.declared_id, "workspace": str(workspace)}
        env = self.default_env(job, workspace)

        executor = self.executor
        if job.container:
            executor = ContainerExecutor(job.container, inner=self.executor)

        ctx = JobContext(
            job=job,
            run_id=self.run_id,
            attempt=attempt.number,
            workspace=workspace,
            source_dir=self.source_dir,
            env=env,
            cancel=self.cancel,
            artifacts=self.artifacts,
            logs=self.logs,
            executor=executor,
            transport=self.transport,
            secrets=secrets,
            inputs=self.inputs,
            github=github,
            needs=needs,
            default_shell=self.settings.default_shell,
        )

        outputs: Dict[str, str] = {}
        try:
            # workflow env first, job env on top; both may use expressions
            ctx.env.update(render_mapping(self.workflow.env, ctx.eval_context()))
            ctx.env.update(render_mapping(job.env, ctx.eval_context()))
            status = StepRunner(ctx).run(attempt)
            if status is Status.SUCCEEDED:
                outputs, _ = job_outputs(ctx)
                outputs = {k: self.redactor.redact(v) for k, v in outputs.items()}
        except PipelineError as e:
            self.artifacts.discard(job.id)
            return JobOutcome(Status.FAILED, error=ErrorRecord.from_exception(e, job=job.id, redactor=self.redactor))

        if status is Status.SUCCEEDED:
            try:
                published = self.artifacts.commit(job.id)
            except OSError as e:
                self.artifacts.discard(job.id)
                return JobOutcome(Status.FAILED, error=ErrorRecord.from_exception(e, job=job.id, redactor=self.redactor))
            if published:
                self.logs.write(job.id, f"artifacts: {', '.join(published)}")
            return JobOutcome(status, outputs=outputs)

        self.artifacts.discard(job.id)
        error = next(
            (s.error for s in attempt.steps if s.status is Status.FAILED and s.note != "continue-on-error"),
            None,
        )
        return JobOutcome(status, error=error)

    # -----------------------------------------------------------------
    # whole run
    # -----------------------------------------------------------------

    def execute(self) -> RunReport:
        started = utcnow()
        self.console.print_run_started(
            self.workflow.name,
            self.run_id,
            len(self.graph.declared),
            source=self.workflow.source,
        )
        scheduler = Scheduler(
            self.graph,
            self.status,
            self.run_job,
            job_condition=self.job_condition,
            max_workers=self.settings.max_workers,
            fail_fast=self.settings.fail_fast,
            cancel=self.cancel,
            console=self.console,
        )
        scheduler.run()

        results = self.status.results(self.graph.declared)
        errors: List[ErrorRecord] = []
        for r in results:
            if r.error is not None:
                r.error = r.error.redacted(self.redactor)
                errors.append(r.error)
            for attempt in r.attempts:
                for step in attempt.steps:
                    step.outputs = {k: self.redactor.redact(v) for k, v in step.outputs.items()}

        report = RunReport(
            run_id=self.run_id,
            workflow=self.workflow.name,
            status=self.status.overall_status(),
            started_at=started,
            finished_at=utcnow(),
            jobs=results,
            errors=errors,
            artifacts=self.artifacts.names(),
            log_dir=str(self.logs.root),
            order=list(scheduler.order),
            interrupted=scheduler.interrupted,
        )
        write_report(report, self.root / "report.json")
        self.console.print_results(
            [(r.job_id, r.status.value, len(r.attempts)) for r in results],
            report.status.value,
        )
        return report


def run_workflow(
    workflow: WorkflowSpec,
    *,
    settings: Optional[Settings] = None,
    inputs: Optional[Mapping[str, Any]] = None,
    secrets: Optional[Mapping[str, str]] = None,
    secrets_file: str | Path | None = None,
    executor: Optional[CommandExecutor] = None,
    transport: Optional[RemoteTransport] = None,
    only: Optional[Iterable[str]] = None,
    cancel_event: Optional[threading.Event] = None,
    max_workers: Optional[int] = None,
    fail_fast: Optional[bool] = None,
    console: Optional[Console] = None,
) -> RunReport:
    """
    Run a workflow end to end and return its report.

    Definition problems (bad inputs, unknown needs, cycles) raise before
    any job starts. Everything that goes wrong inside a job ends up in the
    report instead.

    Precedence for worker count and fail-fast: settings (defaults and
    PIPEWRIGHT_* env) < workflow keys < the explicit arguments here.
    """
    settings = settings or Settings.from_env()
    settings = settings.override(fail_fast=workflow.fail_fast, max_workers=workflow.max_parallel)
    settings = settings.override(fail_fast=fail_fast, max_workers=max_workers)

    values = coerce_inputs(workflow, inputs)
    graph = resolve(workflow, only=only)

    broker = SecretBroker(secrets, secrets_file=secrets_file, env_prefix=settings.secret_prefix)
    executor = executor or LocalProcessExecutor(secret_prefix=settings.secret_prefix)
    run = WorkflowRun(
        workflow,
        graph,
        settings,
        inputs=values,
        broker=broker,
        executor=executor,
        transport=transport or ScpTransport(executor),
        cancel=cancel_event or threading.Event(),
        console=console or get_console(),
    )
    return run.execute()
