"""Console output formatting utilities for relayci."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional

from ..model import Job, JobResult, JobStatus, Run, Step
from ..scheduler import RunListener, RunReport


class Console:
    """Centralized console output formatting. Safe to call from job worker threads."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        pipeline: str,
        job_count: int,
        run_id: str,
        event: str = "",
        branch: str = "",
    ) -> None:
        """Print run start information."""
        lines = ["\nRUN STARTED", f"Run ID: {run_id}", f"Repository: {repository}", f"Pipeline: {pipeline}"]
        if event:
            lines.append(f"Event: {event}" + (f" on {branch}" if branch else ""))
        lines.extend([f"Jobs: {job_count}", ""])
        self._out(*lines)

    def print_plan(self, stages: Iterable[str]) -> None:
        self._out("PLAN", *(f"  {line}" for line in stages))

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._out(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] STEP: {name}")

    def print_success(self, name: str, duration: Optional[float] = None) -> None:
        suffix = f" in {duration:.1f}s" if duration is not None else ""
        self._out(f"[{name}] STATUS: success{suffix}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
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
            # first line only outside debug mode
            lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        self._out(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._out(f"\nJOB SKIPPED: {name}", f"STATUS: skipped ({reason})")

    def print_results(self, report: RunReport) -> None:
        """Print final results summary, with the stderr of every failing step."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for job in report.order:
            result = report.results.get(job)
            if result is None:
                continue
            status = "SUCCESS" if result.status is JobStatus.SUCCEEDED else result.status.value.upper()
            extra = ""
            if result.status is JobStatus.FAILED and result.continue_on_error:
                extra = " (allowed to fail)"
            elif result.status is JobStatus.SKIPPED and result.reason:
                extra = f" ({result.reason})"
            lines.append(f"  {job}: {status}{extra}")
        for failed in report.failures:
            lines.append("")
            step = f" at step '{failed.failed_step}'" if failed.failed_step else ""
            lines.append(f"FAILED: {failed.job}{step}")
            stderr = failed.failed_stderr.strip() or (failed.error or "").strip()
            for line in stderr.splitlines()[-20:]:
                lines.append(f"  | {line}")
        if report.cancelled:
            lines.append("\nRun cancelled")
        lines.append(f"\nExit code: {int(report.exit_code)}")
        self._out(*lines)

    def print_status(self, run) -> None:
        """Print a stored run (see relayci.store.RunRecord)."""
        lines = [
            f"Run {run.id}",
            f"Pipeline: {run.pipeline}",
            f"Event: {run.event} on {run.branch or run.ref or '-'}",
            f"Status: {run.status}" + (f" (exit {run.exit_code})" if run.exit_code is not None else ""),
            "",
        ]
        for job in run.jobs:
            detail = ""
            if job.status == JobStatus.FAILED.value and job.failed_step:
                detail = f" at step '{job.failed_step}'"
            elif job.reason:
                detail = f" ({job.reason})"
            lines.append(f"  {job.job_name}: {job.status}{detail}")
        self._out(*lines)

    def print_runs(self, runs) -> None:
        if not runs:
            self._out("No runs recorded")
            return
        for run in runs:
            self._out(f"{run.id[:12]}  {run.status:<10} {run.pipeline}  {run.event}/{run.branch or '-'}  {run.created_at:%Y-%m-%d %H:%M:%S}")

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
        lines.extend(f"  {d}" for d in details or [])
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exc()
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


class ConsoleReporter(RunListener):
    """Feeds scheduler progress into the console."""

    def __init__(self, console: Console):
        self.console = console

    def on_step(self, job: Job, step: Step) -> None:
        self.console.print_step(job.name, step.name)

    def on_job_started(self, run: Run, job: Job) -> None:
        self.console.print_job_start(job.title)

    def on_job_finished(self, run: Run, result: JobResult) -> None:
        if result.status is JobStatus.SUCCEEDED:
            self.console.print_success(result.job, result.duration)
        elif result.status is JobStatus.SKIPPED:
            self.console.print_job_skipped(result.job, result.reason or "skipped")
        else:
            self.console.print_failure(
                result.job,
                result.error or "failed",
                exit_code=result.exit_code,
                hint=_hint(result),
                is_job=True,
            )

    def on_run_finished(self, run: Run, report: RunReport) -> None:
        self.console.print_results(report)


def _hint(result: JobResult) -> Optional[str]:
    if result.exit_code == 127:
        return "A command was not found; install it or fix PATH."
    if result.exit_code == 124:
        return "The step timed out; raise timeout-minutes or speed it up."
    if result.continue_on_error:
        return "Job is marked continue-on-error; dependents still run."
    return None


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
