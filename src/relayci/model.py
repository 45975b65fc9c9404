# model.py
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from .errors import PipelineDefinitionError, RunStateError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED)


@dataclass(frozen=True)
class Step:
    """
    A single unit inside a CI job: either a shell command (`run`) or a
    reference to a reusable action (`uses`) with its inputs (`with_`).
    """
    name: str
    run: Optional[str] = None
    uses: Optional[str] = None
    id: Optional[str] = None
    with_: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    continue_on_error: bool = False
    retries: int = 0
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if (self.run is None) == (self.uses is None):
            raise PipelineDefinitionError(
                f"Step '{self.name}' must define exactly one of `run` or `uses`",
                details={"step": self.name},
            )
        if self.retries < 0:
            raise PipelineDefinitionError(f"Step '{self.name}' has negative retries")

    @property
    def key(self) -> str:
        """Identifier used for `steps.<id>` lookups."""
        return self.id or self.name

    @property
    def is_action(self) -> bool:
        return self.uses is not None

    def describe(self) -> str:
        return self.run if self.run is not None else f"uses: {self.uses}"


@dataclass
class Job:
    """
    A CI job: ordered steps + dependencies + gating and output metadata.

    Created at load time; the scheduler never mutates it, runtime state lives
    in the run's JobResult map.
    """
    name: str
    steps: List[Step]
    needs: List[str] = field(default_factory=list)
    display_name: Optional[str] = None
    condition: Optional[str] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    # env var name -> "<job>.<output_key>"
    inputs: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    container: Optional[str] = None
    artifacts: Dict[str, str] = field(default_factory=dict)
    downloads: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name or not str(self.name).strip():
            raise PipelineDefinitionError("Job name must be a non-empty string")
        if not self.steps:
            raise PipelineDefinitionError(f"Job '{self.name}' has no steps", details={"job": self.name})
        keys = [s.key for s in self.steps if s.id]
        if len(keys) != len(set(keys)):
            raise PipelineDefinitionError(f"Job '{self.name}' has duplicate step ids", details={"ids": keys})
        for env_name, ref in self.inputs.items():
            if "." not in ref:
                raise PipelineDefinitionError(
                    f"Job '{self.name}' input {env_name}={ref!r} must look like '<job>.<output_key>'"
                )
            source = ref.split(".", 1)[0]
            if source not in self.needs:
                raise PipelineDefinitionError(
                    f"Job '{self.name}' reads output of '{source}' without listing it in `needs`",
                    details={"job": self.name, "input": env_name},
                )

    @property
    def title(self) -> str:
        return self.display_name or self.name


@dataclass(frozen=True)
class Trigger:
    """One `on:` entry: an event plus its branch/path filters."""
    event: str
    branches: Tuple[str, ...] = ()
    branches_ignore: Tuple[str, ...] = ()
    paths: Tuple[str, ...] = ()
    paths_ignore: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Pipeline:
    name: str
    jobs: Tuple[Job, ...]
    triggers: Tuple[Trigger, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    source: Optional[str] = None

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    @property
    def job_names(self) -> List[str]:
        return [j.name for j in self.jobs]

    def is_triggered(self, event: str, branch: str, changed_files: Optional[List[str]] = None) -> bool:
        from .triggers import is_triggered

        return is_triggered(self, event, branch, changed_files)


# ----------------------------------------------------------------------
# Runtime records
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class RunContext:
    """Immutable run metadata handed to every step invocation."""
    run_id: str
    pipeline: str
    event: str = "push"
    ref: str = ""
    branch: str = ""
    sha: str = ""
    actor: str = ""
    repository: str = ""
    source_root: Path = Path(".")
    started_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(cls, pipeline: str, *, branch: str = "", **kwargs) -> "RunContext":
        ref = kwargs.pop("ref", "") or (f"refs/heads/{branch}" if branch else "")
        return cls(run_id=new_run_id(), pipeline=pipeline, branch=branch, ref=ref, **kwargs)

    def as_env(self) -> Dict[str, str]:
        return {
            "CI": "true",
            "RELAYCI": "true",
            "RELAYCI_RUN_ID": self.run_id,
            "RELAYCI_PIPELINE": self.pipeline,
            "RELAYCI_EVENT": self.event,
            "RELAYCI_REF": self.ref,
            "RELAYCI_BRANCH": self.branch,
            "RELAYCI_SHA": self.sha,
            "RELAYCI_ACTOR": self.actor,
            "RELAYCI_REPOSITORY": self.repository,
            # GitHub Actions spellings, so existing step scripts run unchanged
            "GITHUB_ACTIONS": "false",
            "GITHUB_RUN_ID": self.run_id,
            "GITHUB_WORKFLOW": self.pipeline,
            "GITHUB_EVENT_NAME": self.event,
            "GITHUB_REF": self.ref,
            "GITHUB_REF_NAME": self.branch,
            "GITHUB_SHA": self.sha,
            "GITHUB_ACTOR": self.actor,
            "GITHUB_REPOSITORY": self.repository,
        }


def new_run_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class StepResult:
    name: str
    key: str
    outcome: JobStatus
    # outcome after continue-on-error is applied
    conclusion: JobStatus
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    outputs: Mapping[str, str] = field(default_factory=dict)
    attempts: int = 1


@dataclass(frozen=True)
class JobResult:
    job: str
    status: JobStatus
    outputs: Mapping[str, str] = field(default_factory=dict)
    artifacts: Tuple[str, ...] = ()
    exit_code: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    steps: Tuple[StepResult, ...] = ()
    failed_step: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    continue_on_error: bool = False

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def failed_stderr(self) -> str:
        for s in self.steps:
            if s.key == self.failed_step or s.name == self.failed_step:
                return s.stderr
        return ""

    def finalized(self, **changes) -> "JobResult":
        changes.setdefault("finished_at", utcnow())
        return replace(self, **changes)


class Run:
    """
    One execution of a pipeline.

    The result map is append-only by job id: `start` creates the running
    entry, `finalize` replaces it exactly once with the terminal result.
    """

    def __init__(self, pipeline: Pipeline, context: RunContext):
        self.pipeline = pipeline
        self.context = context
        self._results: Dict[str, JobResult] = {}
        self._lock = threading.Lock()
        self.finished_at: Optional[datetime] = None
        self.cancelled = False

    @property
    def run_id(self) -> str:
        return self.context.run_id

    def start(self, job: str) -> JobResult:
        with self._lock:
            if job in self._results:
                raise RunStateError(f"Job '{job}' already has a result in run {self.run_id}")
            result = JobResult(job=job, status=JobStatus.RUNNING, started_at=utcnow())
            self._results[job] = result
            return result

    def finalize(self, result: JobResult) -> JobResult:
        if not result.status.terminal:
            raise RunStateError(f"Cannot finalize job '{result.job}' with status {result.status.value}")
        with self._lock:
            current = self._results.get(result.job)
            if current is not None and current.status.terminal:
                raise RunStateError(f"Job '{result.job}' is already finalized as {current.status.value}")
            if result.finished_at is None:
                result = replace(result, finished_at=utcnow())
            self._results[result.job] = result
            return result

    def result(self, job: str) -> Optional[JobResult]:
        with self._lock:
            return self._results.get(job)

    def status(self, job: str) -> JobStatus:
        r = self.result(job)
        return r.status if r is not None else JobStatus.PENDING

    @property
    def results(self) -> Dict[str, JobResult]:
        with self._lock:
            return dict(self._results)

    @property
    def done(self) -> bool:
        res = self.results
        return all(name in res and res[name].status.terminal for name in self.pipeline.job_names)

    @property
    def succeeded(self) -> bool:
        return self.done and not any(
            r.status is JobStatus.FAILED and not r.continue_on_error for r in self.results.values()
        )


def satisfies(result: Optional[JobResult], *, admit_continue_on_error: bool = True) -> bool:
    """True when `result` lets a dependent start under the default gate."""
    if result is None:
        return False
    if result.status is JobStatus.SUCCEEDED:
        return True
    return admit_continue_on_error and result.status is JobStatus.FAILED and result.continue_on_error
