# errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional


class RelayError(Exception):
    """
    Base class for every error raised by the engine.

    Carries enough context for:
      - clean CLI output
      - the run report
      - debugging without full tracebacks
    """

    kind = "relay_error"
    hint: Optional[str] = None

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})
        if hint is not None:
            self.hint = hint

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Build-time (fatal: the run never starts)
# ----------------------------------------------------------------------

class PipelineDefinitionError(RelayError):
    kind = "pipeline_definition"


class DuplicateJobError(PipelineDefinitionError):
    kind = "duplicate_job"


class UnknownJobReferenceError(PipelineDefinitionError):
    kind = "unknown_job_reference"

    def __init__(self, job: str, missing: str, known: List[str]):
        super().__init__(
            f"Job '{job}' needs missing job '{missing}'",
            details={"job": job, "missing": missing, "known": sorted(known)},
            hint="Fix the `needs` entry or add the missing job.",
        )
        self.job = job
        self.missing = missing


class CyclicDependencyError(PipelineDefinitionError):
    kind = "cyclic_dependency"

    def __init__(self, cycle: List[str]):
        super().__init__(
            "Job dependencies form a cycle: " + " -> ".join(cycle),
            details={"cycle": cycle},
            hint="Remove one of the `needs` edges on the cycle.",
        )
        self.cycle = cycle


class ConditionSyntaxError(PipelineDefinitionError):
    kind = "condition_syntax"


# ----------------------------------------------------------------------
# Execution-time (converted into a failed JobResult)
# ----------------------------------------------------------------------

class StepExecutionError(RelayError):
    """A step exited non-zero (or could not be run at all)."""
    kind = "step_failed"

    def __init__(
        self,
        job: str,
        step: str,
        exit_code: int,
        *,
        cmd: str = "",
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(
            f"[{job}] step '{step}' failed (exit={exit_code})",
            details={"cmd": cmd} if cmd else None,
        )
        self.job = job
        self.step = step
        self.exit_code = exit_code
        self.cmd = cmd
        self.stdout = stdout
        self.stderr = stderr

    def __str__(self) -> str:
        if self.cmd:
            return f"{self.message}: {self.cmd}"
        return self.message


class UnknownActionError(RelayError):
    kind = "unknown_action"


class EnvironmentProvisionError(RelayError):
    kind = "environment_provision"


class ArtifactNotFoundError(RelayError):
    kind = "artifact_not_found"


class ArtifactExistsError(RelayError):
    kind = "artifact_exists"


class StepCancelledError(RelayError):
    kind = "cancelled"


# ----------------------------------------------------------------------
# Engine faults
# ----------------------------------------------------------------------

class OutputNotReadyError(RelayError):
    """
    Raised when a job output is read before the producing job succeeded.

    The scheduler only dispatches a job after its dependencies are finalized,
    so seeing this for a non-terminal producer indicates a scheduler bug.
    """
    kind = "output_not_ready"

    def __init__(self, job: str, key: Optional[str] = None, status: Optional[str] = None):
        where = f"{job}.{key}" if key else job
        super().__init__(
            f"Output '{where}' is not available (job status: {status or 'unknown'})",
            details={"job": job, "key": key, "status": status},
        )
        self.job = job
        self.key = key
        self.status = status


class RunStateError(RelayError):
    kind = "run_state"
