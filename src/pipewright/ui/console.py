"""Console output formatting utilities for pipewright."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, List, Optional


class Console:
    """Centralized console output formatting.

    Jobs report from worker threads, so every write takes the same lock and
    job-scoped lines carry a `[job]` prefix.
    """

    def __init__(self, debug: bool = False, quiet: bool = False, stream=None, err_stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only errors and the final results are printed
            stream: Output stream (defaults to sys.stdout at write time)
            err_stream: Error stream (defaults to sys.stderr at write time)
        """
        self.debug = debug
        self.quiet = quiet
        self._stream = stream
        self._err_stream = err_stream
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False, force: bool = False) -> None:
        if self.quiet and not (err or force):
            return
        stream = (self._err_stream or sys.stderr) if err else (self._stream or sys.stdout)
        with self._lock:
            for line in lines:
                print(line, file=stream)
            stream.flush()

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        workflow: str,
        run_id: str,
        job_count: int,
        source: Optional[str] = None,
    ) -> None:
        """Print run start information."""
        lines = ["\nRUN STARTED", f"Workflow: {workflow}", f"Run ID: {run_id}", f"Jobs: {job_count}"]
        if source:
            lines.insert(2, f"Source: {source}")
        self._out(*lines, "")

    def print_job_start(self, job: str, attempt: int = 1) -> None:
        """Print job start message."""
        suffix = f" (attempt {attempt})" if attempt > 1 else ""
        self._out(f"[{job}] JOB STARTED{suffix}")

    def print_step(self, job: str, step: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] STEP: {step}")

    def print_step_status(self, job: str, step: str, status: str, note: Optional[str] = None) -> None:
        extra = f" ({note})" if note else ""
        self._out(f"[{job}] STEP {status.upper()}: {step}{extra}")

    def print_job_finished(self, job: str, status: str, duration: Optional[float] = None) -> None:
        took = f" in {duration:.1f}s" if duration is not None else ""
        self._out(f"[{job}] STATUS: {status}{took}")

    def print_job_skipped(self, job: str, reason: str) -> None:
        """Print job skipped message."""
        self._out(f"[{job}] STATUS: skipped ({reason})")

    def print_job_cancelled(self, job: str, reason: str) -> None:
        self._out(f"[{job}] STATUS: cancelled ({reason})")

    def print_retry(self, job: str, attempt: int, max_attempts: int) -> None:
        self._out(f"[{job}] RETRY: attempt {attempt} of {max_attempts}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
        tail: Optional[List[str]] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
            tail: Last lines of (already redacted) output
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        if tail:
            lines.append("Output (last lines):")
            lines.extend(f"  | {t.rstrip()}" for t in tail)
        self._out(*lines, err=True)

    def print_plan(self, levels: Iterable[Iterable[str]]) -> None:
        """Print the stages a workflow would run in."""
        self.print_header("PLAN")
        for idx, level in enumerate(levels, start=1):
            self._out(f"Stage {idx}: {', '.join(level)}", force=True)

    def print_results(self, rows: Iterable[tuple], status: str) -> None:
        """Print final results summary. rows: (job, status, attempts)."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job, job_status, attempts in rows:
            retried = f" after {attempts} attempts" if attempts > 1 else ""
            lines.append(f"  {job}: {job_status.upper()}{retried}")
        lines.append("-" * 40)
        lines.append(f"  RUN: {status.upper()}")
        self._out(*lines, force=True)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__, file=self._err_stream or sys.stderr)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_warning(self, message: str) -> None:
        self._out(f"⚠ Warning: {message}", err=True)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
