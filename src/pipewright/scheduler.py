# scheduler.py
from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional

from .dag import RunGraph
from .errors import PipelineError
from .expressions import condition_opts_into_failure
from .model import AttemptResult, ErrorRecord, JobSpec, Status
from .status import StatusController
from .ui.console import Console, get_console

# how often the dispatch loop wakes up to notice Ctrl-C
WAIT_INTERVAL = 0.5


@dataclass
class JobOutcome:
    """What one attempt of a job produced."""
    status: Status
    error: Optional[ErrorRecord] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    # False for failures a retry cannot fix (e.g. missing secrets)
    retry: bool = True


RunJob = Callable[[JobSpec, AttemptResult], JobOutcome]
JobCondition = Callable[[JobSpec], bool]


def _always(job: JobSpec) -> bool:
    return True


class Scheduler:
    """
    Runs a RunGraph on a bounded thread pool.

    Jobs are dispatched first-ready-first-dispatched; jobs that become ready
    at the same moment go in declaration order. A job whose dependencies did
    not all succeed is skipped unless its condition calls a status function,
    in which case `job_condition` decides.
    """

    def __init__(
        self,
        graph: RunGraph,
        status: StatusController,
        run_job: RunJob,
        *,
        job_condition: JobCondition = _always,
        max_workers: int = 1,
        fail_fast: bool = False,
        cancel: Optional[threading.Event] = None,
        console: Optional[Console] = None,
    ):
        self.graph = graph
        self.status = status
        self.run_job = run_job
        self.job_condition = job_condition
        self.max_workers = max(1, int(max_workers))
        self.fail_fast = fail_fast
        self.cancel = cancel or threading.Event()
        self.console = console or get_console()
        self.order: List[str] = []
        self.interrupted = False
        self._ready: Deque[str] = deque()

    # -----------------------------------------------------------------
    # readiness
    # -----------------------------------------------------------------

    def _settle(self, job_ids: List[str]) -> None:
        """
        Decide what happens to jobs whose dependencies may all be terminal:
        READY, SKIPPED or CANCELLED. Jobs that end without running settle
        their own dependents in turn.
        """
        queue = deque(sorted(job_ids, key=self.graph.index))
        while queue:
            job_id = queue.popleft()
            if self.status.status(job_id) is not Status.PENDING:
                continue
            deps = self.graph.dependencies(job_id)
            dep_status = {d: self.status.status(d) for d in deps}
            if not all(s.is_terminal for s in dep_status.values()):
                continue

            outcome = self._decide(job_id, dep_status)
            if outcome is Status.READY:
                self.status.mark_ready(job_id)
                self._ready.append(job_id)
            else:
                queue.extend(sorted(self.graph.dependents(job_id), key=self.graph.index))

    def _decide(self, job_id: str, dep_status: Dict[str, Status]) -> Status:
        job = self.graph.job(job_id)
        if self.cancel.is_set():
            self.status.cancel(job_id, "run cancelled")
            self.console.print_job_cancelled(job_id, "run cancelled")
            return Status.CANCELLED

        not_ok = [d for d, s in dep_status.items() if s is not Status.SUCCEEDED]
        if not_ok and not condition_opts_into_failure(job.condition):
            dep = not_ok[0]
            reason = f"dependency '{dep}' {dep_status[dep].value}"
            self.status.skip(job_id, reason)
            self.console.print_job_skipped(job_id, reason)
            return Status.SKIPPED

        try:
            should_run = self.job_condition(job)
        except PipelineError as e:
            self.status.fail(job_id, ErrorRecord.from_exception(e, job=job_id), "condition could not be evaluated")
            self.console.print_failure(job_id, e.message, is_job=True)
            self._after_failure(job)
            return Status.FAILED
        if not should_run:
            self.status.skip(job_id, "condition is false")
            self.console.print_job_skipped(job_id, "condition is false")
            return Status.SKIPPED
        return Status.READY

    def _after_failure(self, job: JobSpec) -> None:
        if self.fail_fast and not job.continue_on_error and not self.cancel.is_set():
            self.console.print_warning(f"fail-fast: cancelling run after '{job.id}' failed")
            self.cancel.set()

    # -----------------------------------------------------------------
    # main loop
    # -----------------------------------------------------------------

    def _drain_ready(self) -> None:
        while self._ready:
            job_id = self._ready.popleft()
            self.status.cancel(job_id, "run cancelled")
            self.console.print_job_cancelled(job_id, "run cancelled")

    def _complete(self, job: JobSpec, fut: Future) -> None:
        try:
            outcome: JobOutcome = fut.result()
        except Exception as e:
            # a bug in the job runner must not take the whole run down
            self.console.print_exception(e)
            outcome = JobOutcome(Status.FAILED, error=ErrorRecord.from_exception(e, job=job.id))

        final = self.status.finish_attempt(
            job.id,
            outcome.status,
            error=outcome.error,
            outputs=outcome.outputs,
            retry=outcome.retry,
        )
        if final is Status.READY:
            nxt = len(self.status.result(job.id).attempts) + 1
            self.console.print_retry(job.id, nxt, job.retries + 1)
            self._ready.append(job.id)
            return

        result = self.status.result(job.id)
        duration = None
        if result.started_at and result.finished_at:
            duration = (result.finished_at - result.started_at).total_seconds()
        self.console.print_job_finished(job.id, final.value, duration)
        if final is Status.FAILED:
            self._after_failure(job)
        self._settle(list(self.graph.dependents(job.id)))

    def run(self) -> StatusController:
        self._settle(list(self.graph.declared))
        in_flight: Dict[Future, JobSpec] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="pipewright-job") as pool:
            while self._ready or in_flight:
                try:
                    if self.cancel.is_set():
                        self.status.cancelled = True
                        self._drain_ready()

                    # dispatch in FIFO order while there is a free worker
                    while self._ready and len(in_flight) < self.max_workers and not self.cancel.is_set():
                        job_id = self._ready.popleft()
                        job = self.graph.job(job_id)
                        attempt = self.status.begin_attempt(job_id)
                        if attempt.number == 1:
                            self.order.append(job_id)
                        self.console.print_job_start(job_id, attempt.number)
                        in_flight[pool.submit(self.run_job, job, attempt)] = job

                    if not in_flight:
                        continue

                    done, _ = wait(list(in_flight), timeout=WAIT_INTERVAL, return_when=FIRST_COMPLETED)
                    for fut in sorted(done, key=lambda f: self.graph.index(in_flight[f].id)):
                        self._complete(in_flight.pop(fut), fut)
                except KeyboardInterrupt:
                    self.console.print_warning("interrupted: cancelling run")
                    self.interrupted = True
                    self.cancel.set()

        if self.cancel.is_set():
            self.status.cancelled = True
        # anything the loop never reached
        for job_id in self.graph.order:
            if not self.status.status(job_id).is_terminal:
                self.status.cancel(job_id, "run cancelled")
        return self.status
