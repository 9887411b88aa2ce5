# errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple


class PipelineError(Exception):
    """
    Structured pipeline error with enough context for:
      - clean CLI output
      - the run report (job, step, cause)
      - debugging without full tracebacks
    """

    kind = "pipeline_error"

    def __init__(
        self,
        message: str,
        *,
        job: Optional[str] = None,
        step: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.job = job
        self.step = step
        self.details = dict(details or {})

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Definition errors (fatal to the whole run)
# ----------------------------------------------------------------------

class MalformedSpecError(PipelineError):
    kind = "malformed_spec"

    def __init__(self, message: str, *, where: Optional[str] = None, **kwargs):
        details = dict(kwargs.pop("details", None) or {})
        if where:
            details.setdefault("where", where)
        super().__init__(message, details=details, **kwargs)
        self.where = where


class ExpressionError(MalformedSpecError):
    kind = "expression_error"


class CycleDetectedError(PipelineError):
    kind = "cycle_detected"

    def __init__(self, cycle: Sequence[str]):
        self.cycle: List[str] = list(cycle)
        path = " -> ".join(self.cycle)
        super().__init__(f"Dependency cycle between jobs: {path}", details={"cycle": path})

    @property
    def edges(self) -> List[Tuple[str, str]]:
        """(dependency, dependent) pairs along the cycle."""
        return list(zip(self.cycle, self.cycle[1:]))


class UnknownDependencyError(PipelineError):
    kind = "unknown_dependency"

    def __init__(self, job: str, dependency: str, known: Sequence[str]):
        self.dependency = dependency
        self.known = sorted(known)
        super().__init__(
            f"Job '{job}' needs unknown job '{dependency}'",
            job=job,
            details={"known_jobs": ", ".join(self.known)},
        )


# ----------------------------------------------------------------------
# Execution errors (local to a job)
# ----------------------------------------------------------------------

class StepExecutionError(PipelineError):
    kind = "step_execution"

    def __init__(self, message: str, *, exit_code: Optional[int] = None, **kwargs):
        details = dict(kwargs.pop("details", None) or {})
        if exit_code is not None:
            details.setdefault("exit_code", exit_code)
        super().__init__(message, details=details, **kwargs)
        self.exit_code = exit_code


class ArtifactNotFoundError(PipelineError):
    kind = "artifact_not_found"

    def __init__(self, name: str, **kwargs):
        self.name = name
        super().__init__(f"Artifact '{name}' is not available", **kwargs)


class DuplicateArtifactError(PipelineError):
    kind = "duplicate_artifact"

    def __init__(self, name: str, owner: str, **kwargs):
        self.name = name
        self.owner = owner
        super().__init__(
            f"Artifact '{name}' was already published by job '{owner}'",
            **kwargs,
        )


class SecretResolutionError(PipelineError):
    kind = "secret_resolution"

    def __init__(self, missing: Sequence[str], **kwargs):
        self.missing = sorted(missing)
        super().__init__(
            f"Could not resolve secret(s): {', '.join(self.missing)}",
            **kwargs,
        )


class InvalidTransitionError(PipelineError):
    kind = "invalid_transition"
