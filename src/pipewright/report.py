# report.py
from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from .model import AttemptResult, ErrorRecord, JobResult, RunReport, StepResult

# -------------------- Schemas --------------------

class ErrorModel(BaseModel):
    kind: str
    message: str
    job: str | None = None
    step: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

class StepReportModel(BaseModel):
    name: str
    id: str | None = None
    status: str
    started_at: datetime | None = None
    finished_at: datetime | None = None
    exit_code: int | None = None
    outputs: dict[str, str] = Field(default_factory=dict)
    error: ErrorModel | None = None
    log_ref: str | None = None
    note: str | None = None

class AttemptReportModel(BaseModel):
    number: int
    status: str
    started_at: datetime
    finished_at: datetime | None = None
    steps: list[StepReportModel] = Field(default_factory=list)
    error: ErrorModel | None = None

class JobReportModel(BaseModel):
    id: str
    name: str
    status: str
    required: bool = True
    started_at: datetime | None = None
    finished_at: datetime | None = None
    attempts: list[AttemptReportModel] = Field(default_factory=list)
    outputs: dict[str, str] = Field(default_factory=dict)
    error: ErrorModel | None = None
    note: str | None = None

class RunReportModel(BaseModel):
    run_id: str
    workflow: str
    status: str
    started_at: datetime
    finished_at: datetime
    duration_seconds: float
    interrupted: bool = False
    order: list[str] = Field(default_factory=list)
    jobs: list[JobReportModel] = Field(default_factory=list)
    errors: list[ErrorModel] = Field(default_factory=list)
    artifacts: list[str] = Field(default_factory=list)
    log_dir: str | None = None

# -------------------- Conversion --------------------

def _error(rec: ErrorRecord | None) -> ErrorModel | None:
    if rec is None:
        return None
    return ErrorModel(
        kind=rec.kind,
        message=rec.message,
        job=rec.job,
        step=rec.step,
        details={k: str(v) for k, v in rec.details.items()},
    )


def _step(s: StepResult) -> StepReportModel:
    return StepReportModel(
        name=s.name,
        id=s.id,
        status=s.status.value,
        started_at=s.started_at,
        finished_at=s.finished_at,
        exit_code=s.exit_code,
        outputs=dict(s.outputs),
        error=_error(s.error),
        log_ref=s.log_ref,
        note=s.note,
    )


def _attempt(a: AttemptResult) -> AttemptReportModel:
    return AttemptReportModel(
        number=a.number,
        status=a.status.value,
        started_at=a.started_at,
        finished_at=a.finished_at,
        steps=[_step(s) for s in a.steps],
        error=_error(a.error),
    )


def _job(j: JobResult) -> JobReportModel:
    return JobReportModel(
        id=j.job_id,
        name=j.name,
        status=j.status.value,
        required=j.required,
        started_at=j.started_at,
        finished_at=j.finished_at,
        attempts=[_attempt(a) for a in j.attempts],
        outputs=dict(j.outputs),
        error=_error(j.error),
        note=j.note,
    )


def to_model(report: RunReport) -> RunReportModel:
    return RunReportModel(
        run_id=report.run_id,
        workflow=report.workflow,
        status=report.status.value,
        started_at=report.started_at,
        finished_at=report.finished_at,
        duration_seconds=round((report.finished_at - report.started_at).total_seconds(), 3),
        interrupted=report.interrupted,
        order=list(report.order),
        jobs=[_job(j) for j in report.jobs],
        errors=[_error(e) for e in report.errors],
        artifacts=list(report.artifacts),
        log_dir=report.log_dir,
    )


def write_report(report: RunReport, path: str | Path) -> Path:
    """Serialize the run report as JSON (secrets are already redacted)."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(to_model(report).model_dump_json(indent=2), encoding="utf-8")
    return target
