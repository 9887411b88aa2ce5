# status.py
from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Mapping, Optional

from .errors import InvalidTransitionError
from .model import AttemptResult, ErrorRecord, JobResult, JobSpec, Status, utcnow

# Legal moves of the per-job state machine. RUNNING -> READY is the retry path.
ALLOWED: Mapping[Status, frozenset] = {
    Status.PENDING: frozenset({Status.READY, Status.SKIPPED, Status.CANCELLED}),
    Status.READY: frozenset({Status.RUNNING, Status.SKIPPED, Status.CANCELLED}),
    Status.RUNNING: frozenset({Status.SUCCEEDED, Status.FAILED, Status.CANCELLED, Status.READY}),
    Status.SUCCEEDED: frozenset(),
    Status.FAILED: frozenset(),
    Status.SKIPPED: frozenset(),
    Status.CANCELLED: frozenset(),
}


class StatusController:
    """
    Owns the JobResult of every job in a run.

    Only this object changes job statuses; the scheduler asks it for
    transitions and everyone else reads the results.
    """

    def __init__(self, jobs: Iterable[JobSpec]):
        self._lock = threading.Lock()
        self._specs: Dict[str, JobSpec] = {}
        self._results: Dict[str, JobResult] = {}
        for job in jobs:
            self._specs[job.id] = job
            self._results[job.id] = JobResult(
                job_id=job.id,
                name=job.display_name,
                required=not job.continue_on_error,
            )
        self.cancelled = False

    # -----------------------------------------------------------------
    # transitions
    # -----------------------------------------------------------------

    def _move(self, job_id: str, status: Status) -> JobResult:
        result = self._results[job_id]
        if status not in ALLOWED[result.status]:
            raise InvalidTransitionError(
                f"Job '{job_id}' cannot go from {result.status.value} to {status.value}",
                job=job_id,
            )
        result.status = status
        return result

    def status(self, job_id: str) -> Status:
        return self._results[job_id].status

    def mark_ready(self, job_id: str) -> None:
        with self._lock:
            self._move(job_id, Status.READY)

    def begin_attempt(self, job_id: str) -> AttemptResult:
        with self._lock:
            result = self._move(job_id, Status.RUNNING)
            attempt = AttemptResult(number=len(result.attempts) + 1)
            result.attempts.append(attempt)
            if result.started_at is None:
                result.started_at = attempt.started_at
            return attempt

    def retries_left(self, job_id: str) -> int:
        return max(0, self._specs[job_id].retries + 1 - len(self._results[job_id].attempts))

    def finish_attempt(
        self,
        job_id: str,
        status: Status,
        *,
        error: Optional[ErrorRecord] = None,
        outputs: Optional[Dict[str, str]] = None,
        retry: bool = True,
    ) -> Status:
        """
        Close the current attempt. A failed attempt with retries left puts the
        job back to READY (returned) instead of FAILED.
        """
        with self._lock:
            result = self._results[job_id]
            attempt = result.attempts[-1]
            attempt.status = status
            attempt.finished_at = utcnow()
            attempt.error = error
            attempt.outputs = dict(outputs or {})

            if status is Status.FAILED and retry and not self.cancelled and self.retries_left(job_id) > 0:
                self._move(job_id, Status.READY)
                return Status.READY

            self._move(job_id, status)
            result.finished_at = attempt.finished_at
            result.error = error
            if status is Status.SUCCEEDED:
                result.outputs = dict(attempt.outputs)
            return status

    def skip(self, job_id: str, note: Optional[str] = None) -> None:
        with self._lock:
            result = self._move(job_id, Status.SKIPPED)
            result.note = note
            result.finished_at = utcnow()

    def cancel(self, job_id: str, note: Optional[str] = None) -> None:
        with self._lock:
            result = self._move(job_id, Status.CANCELLED)
            result.note = note
            result.finished_at = utcnow()

    def fail(self, job_id: str, error: ErrorRecord, note: Optional[str] = None) -> None:
        """Fail a job that never got to run its steps (e.g. unresolved secrets)."""
        with self._lock:
            result = self._results[job_id]
            if result.status is Status.PENDING:
                self._move(job_id, Status.READY)
            if result.status is Status.READY:
                self._move(job_id, Status.RUNNING)
            self._move(job_id, Status.FAILED)
            result.error = error
            result.note = note
            result.finished_at = utcnow()

    # -----------------------------------------------------------------
    # queries
    # -----------------------------------------------------------------

    def result(self, job_id: str) -> JobResult:
        return self._results[job_id]

    def results(self, order: Optional[Iterable[str]] = None) -> List[JobResult]:
        ids = list(order) if order is not None else list(self._results)
        return [self._results[j] for j in ids]

    def overall_status(self) -> Status:
        if self.cancelled:
            return Status.CANCELLED
        for result in self._results.values():
            if result.required and result.status is Status.FAILED:
                return Status.FAILED
        return Status.SUCCEEDED
