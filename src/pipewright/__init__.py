from .dsl import job, sh, uses, transfer, lint, matrix, wf, workflow, JobBuilder, build
from .dag import RunGraph, resolve
from .errors import (
    ArtifactNotFoundError,
    CycleDetectedError,
    DuplicateArtifactError,
    MalformedSpecError,
    PipelineError,
    SecretResolutionError,
    StepExecutionError,
    UnknownDependencyError,
)
from .model import JobSpec, RunReport, Status, StepSpec, WorkflowSpec
from .parser import parse_workflow, parse_workflow_text
from .runner import load_workflow, run_workflow

__all__ = [
    "job", "sh", "uses", "transfer", "lint", "matrix", "wf", "workflow", "JobBuilder", "build",
    "RunGraph", "resolve",
    "PipelineError", "MalformedSpecError", "CycleDetectedError", "UnknownDependencyError",
    "StepExecutionError", "ArtifactNotFoundError", "DuplicateArtifactError", "SecretResolutionError",
    "JobSpec", "StepSpec", "WorkflowSpec", "RunReport", "Status",
    "parse_workflow", "parse_workflow_text", "load_workflow", "run_workflow",
]
