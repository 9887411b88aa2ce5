# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union


# ---------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------

class Status(Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {Status.SUCCEEDED, Status.FAILED, Status.SKIPPED, Status.CANCELLED}
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------
# Executables (what a step actually does)
# ---------------------------------------------------------------------

class ActionKind(Enum):
    CHECKOUT = "checkout"
    SETUP_TOOL = "setup-tool"
    UPLOAD_ARTIFACT = "upload-artifact"
    DOWNLOAD_ARTIFACT = "download-artifact"
    EXTERNAL = "external"


@dataclass(frozen=True)
class ShellCommand:
    """Inline command run through a shell."""
    run: str
    shell: Optional[str] = None


@dataclass(frozen=True)
class BuiltinAction:
    """A `uses:` reference, resolved to a closed set of kinds at parse time."""
    kind: ActionKind
    ref: str
    inputs: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RemoteTransfer:
    """Copy a file or directory from the job workspace to a remote host."""
    source: str
    host: str
    destination: str
    user: Optional[str] = None
    identity_file: Optional[str] = None
    port: Optional[int] = None


Executable = Union[ShellCommand, BuiltinAction, RemoteTransfer]


# ---------------------------------------------------------------------
# Workflow definition (immutable once parsed)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StepSpec:
    """A single action within a job."""
    name: str
    executable: Executable
    id: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    condition: Optional[str] = None
    continue_on_error: bool = False
    working_directory: Optional[str] = None
    timeout_minutes: Optional[float] = None
    outputs: Tuple[str, ...] = ()


@dataclass(frozen=True)
class JobSpec:
    """
    A named unit of work: ordered steps + dependencies + run policy.

    `group` is the job id as declared in the document. It differs from `id`
    only for matrix expansions, where one declared job becomes several.
    """
    id: str
    steps: Tuple[StepSpec, ...]
    name: Optional[str] = None
    needs: Tuple[str, ...] = ()
    condition: Optional[str] = None
    runs_on: str = "local"
    container: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    outputs: Mapping[str, str] = field(default_factory=dict)
    retries: int = 0
    continue_on_error: bool = False
    timeout_minutes: Optional[float] = None
    matrix: Mapping[str, Any] = field(default_factory=dict)
    group: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def declared_id(self) -> str:
        return self.group or self.id


@dataclass(frozen=True)
class InputSpec:
    name: str
    required: bool = False
    type: str = "string"
    default: Any = None
    description: str = ""


@dataclass(frozen=True)
class WorkflowSpec:
    name: str
    jobs: Tuple[JobSpec, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    triggers: Tuple[str, ...] = ()
    inputs: Mapping[str, InputSpec] = field(default_factory=dict)
    fail_fast: Optional[bool] = None
    max_parallel: Optional[int] = None
    source: Optional[str] = None

    def job(self, job_id: str) -> JobSpec:
        for j in self.jobs:
            if j.id == job_id:
                return j
        raise KeyError(job_id)

    @property
    def job_ids(self) -> List[str]:
        return [j.id for j in self.jobs]


# ---------------------------------------------------------------------
# Results (written by the executing component, read-only elsewhere)
# ---------------------------------------------------------------------

@dataclass
class ErrorRecord:
    kind: str
    message: str
    job: Optional[str] = None
    step: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException, *, job: str | None = None, step: str | None = None, redactor=None) -> ErrorRecord:
        kind = getattr(exc, "kind", type(exc).__name__)
        message = getattr(exc, "message", None) or str(exc)
        details = dict(getattr(exc, "details", {}) or {})
        rec = cls(
            kind=kind,
            message=message,
            job=getattr(exc, "job", None) or job,
            step=getattr(exc, "step", None) or step,
            details=details,
        )
        return rec.redacted(redactor) if redactor is not None else rec

    def redacted(self, redactor) -> ErrorRecord:
        return ErrorRecord(
            kind=self.kind,
            message=redactor.redact(self.message),
            job=self.job,
            step=self.step,
            details={k: redactor.redact(str(v)) for k, v in self.details.items()},
        )


@dataclass
class StepResult:
    name: str
    status: Status = Status.PENDING
    id: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    error: Optional[ErrorRecord] = None
    log_ref: Optional[str] = None
    note: Optional[str] = None

    @property
    def outcome(self) -> Status:
        return self.status


@dataclass
class AttemptResult:
    number: int
    status: Status = Status.RUNNING
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    steps: List[StepResult] = field(default_factory=list)
    error: Optional[ErrorRecord] = None
    outputs: Dict[str, str] = field(default_factory=dict)


@dataclass
class JobResult:
    job_id: str
    name: str
    status: Status = Status.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    attempts: List[AttemptResult] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)
    error: Optional[ErrorRecord] = None
    required: bool = True
    note: Optional[str] = None

    @property
    def steps(self) -> List[StepResult]:
        if not self.attempts:
            return []
        return self.attempts[-1].steps


@dataclass
class RunReport:
    run_id: str
    workflow: str
    status: Status
    started_at: datetime
    finished_at: datetime
    jobs: List[JobResult] = field(default_factory=list)
    errors: List[ErrorRecord] = field(default_factory=list)
    artifacts: List[str] = field(default_factory=list)
    log_dir: Optional[str] = None
    order: List[str] = field(default_factory=list)
    interrupted: bool = False

    def job(self, job_id: str) -> JobResult:
        for j in self.jobs:
            if j.job_id == job_id:
                return j
        raise KeyError(job_id)

    @property
    def ok(self) -> bool:
        return self.status is Status.SUCCEEDED
