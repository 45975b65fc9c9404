# executor.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .actions import ActionContext, get_action
from .artifacts import ArtifactStore, archive_path, unpack_archive
from .conditions import ConditionEvaluator, ContextBuilder, render
from .environments import Environment, Invocation, provision_for
from .errors import (
    RelayError,
    StepCancelledError,
    StepExecutionError,
)
from .model import Job, JobResult, JobStatus, RunContext, Step, StepResult, utcnow
from .outputs import OUTPUT_ENV_ALIASES, OUTPUT_ENV_VAR, OutputStore, collect_step_outputs

logger = logging.getLogger(__name__)


class BestEffortPolicy(str, Enum):
    """
    How `continue_on_error` steps are treated.

    SOFT: a failing best-effort step is recorded and the job continues.
    HARD: best-effort markers are ignored; any failing step fails the job.
    """
    SOFT = "soft"
    HARD = "hard"


StepListener = Callable[[Job, Step], None]


@dataclass
class ExecutorConfig:
    work_dir: Path = Path(".relayci/work")
    best_effort: BestEffortPolicy = BestEffortPolicy.SOFT
    keep_workspaces: bool = False


class JobExecutor:
    """
    Runs one job's steps, strictly in order, inside a freshly provisioned
    environment, and turns whatever happens into a finalized JobResult.
    """

    def __init__(
        self,
        artifacts: ArtifactStore,
        config: Optional[ExecutorConfig] = None,
        *,
        environment_factory: Callable[..., Environment] = provision_for,
        on_step: Optional[StepListener] = None,
    ):
        self.artifacts = artifacts
        self.config = config or ExecutorConfig()
        self.environment_factory = environment_factory
        self.on_step = on_step
        self.evaluator = ConditionEvaluator()
        self._active: Dict[str, Environment] = {}
        self._active_lock = threading.Lock()

    # ---- public ----

    def execute(
        self,
        job: Job,
        run: RunContext,
        outputs: OutputStore,
        needs: Mapping[str, Optional[JobResult]],
        *,
        cancel: Optional[threading.Event] = None,
        started_at=None,
        pipeline_env: Optional[Mapping[str, str]] = None,
    ) -> JobResult:
        cancel = cancel or threading.Event()
        base = JobResult(
            job=job.name,
            status=JobStatus.RUNNING,
            started_at=started_at or utcnow(),
            continue_on_error=job.continue_on_error,
        )
        steps: List[StepResult] = []
        try:
            job_env = self._job_env(job, run, outputs, needs, pipeline_env or {})
            scope = ContextBuilder().build(run, needs, outputs, env=job_env)
        except RelayError as e:
            return base.finalized(status=JobStatus.FAILED, error=str(e), reason=e.kind, exit_code=1)

        try:
            env = self._provision(job)
            self._download(job, run, env)
            failure = self._run_steps(job, run, job_env, scope, steps, cancel)
            if failure is not None:
                failed_step, exit_code, error = failure
                if isinstance(error, StepCancelledError):
                    return base.finalized(
                        status=JobStatus.SKIPPED,
                        steps=tuple(steps),
                        reason="cancelled",
                        error=str(error),
                    )
                return base.finalized(
                    status=JobStatus.FAILED,
                    steps=tuple(steps),
                    failed_step=failed_step,
                    exit_code=exit_code,
                    error=str(error),
                    reason=error.kind,
                )
            job_outputs = self._job_outputs(job, scope, steps)
            self._upload(job, run, self._current(job))
            return base.finalized(
                status=JobStatus.SUCCEEDED,
                steps=tuple(steps),
                outputs=job_outputs,
                exit_code=0,
                artifacts=self._produced(job, run),
            )
        except RelayError as e:
            return base.finalized(status=JobStatus.FAILED, steps=tuple(steps), error=str(e), reason=e.kind, exit_code=1)
        finally:
            self._release(job)

    def terminate(self, job: str) -> None:
        """Preempt the running command of `job`, if any."""
        with self._active_lock:
            env = self._active.get(job)
        if env is not None:
            env.terminate()

    # ---- lifecycle ----

    def _provision(self, job: Job) -> Environment:
        env = self.environment_factory(job, base_dir=self.config.work_dir, keep=self.config.keep_workspaces)
        env.provision()
        with self._active_lock:
            self._active[job.name] = env
        return env

    def _current(self, job: Job) -> Environment:
        with self._active_lock:
            return self._active[job.name]

    def _release(self, job: Job) -> None:
        with self._active_lock:
            env = self._active.pop(job.name, None)
        if env is not None:
            env.teardown()

    # ---- env / outputs ----

    def _job_env(
        self,
        job: Job,
        run: RunContext,
        outputs: OutputStore,
        needs: Mapping[str, Optional[JobResult]],
        pipeline_env: Mapping[str, str],
    ) -> Dict[str, str]:
        env = dict(run.as_env())
        ctx = ContextBuilder().build(run, needs, outputs, env=env)
        for key, value in pipeline_env.items():
            env[key] = render(str(value), ctx, self.evaluator)
        ctx["env"] = dict(env)
        for key, value in job.env.items():
            env[key] = render(str(value), ctx, self.evaluator)
        # typed channel: env var <- "<job>.<output_key>"
        env.update(outputs.view_for(job).inputs_env(job.inputs))
        return env

    def _job_outputs(self, job: Job, scope: Mapping[str, object], steps: List[StepResult]) -> Dict[str, str]:
        if not job.outputs:
            merged: Dict[str, str] = {}
            for s in steps:
                merged.update(s.outputs)
            return merged
        ctx = dict(scope, steps=_steps_context(steps))
        return {key: render(str(expr), ctx, self.evaluator) for key, expr in job.outputs.items()}

    # ---- artifacts ----

    def _download(self, job: Job, run: RunContext, env: Environment) -> None:
        for name, dest in job.downloads.items():
            handle = self.artifacts.find(run.run_id, name)
            self.artifacts.extract(handle, env.resolve_cwd(dest or "."))

    def _upload(self, job: Job, run: RunContext, env: Environment) -> None:
        for name, path in job.artifacts.items():
            self.artifacts.put_path(run.run_id, name, env.resolve_cwd(path), producer=job.name)

    def _produced(self, job: Job, run: RunContext) -> Tuple[str, ...]:
        return tuple(str(a.handle) for a in self.artifacts.list_artifacts(run.run_id) if a.producer == job.name)

    # ---- steps ----

    def _snapshot(self, job: Job) -> bytes:
        try:
            return archive_path(self._current(job).require_workspace(), defaults=False)
        except OSError as e:
            raise RelayError(f"Could not snapshot workspace of job '{job.name}': {e}") from e

    def _restore(self, env: Environment, snapshot: Optional[bytes]) -> None:
        if snapshot is None:
            return
        try:
            unpack_archive(snapshot, env.require_workspace())
        except OSError as e:
            raise RelayError(f"Could not restore workspace of job '{env.job}': {e}") from e

    def _run_steps(
        self,
        job: Job,
        run: RunContext,
        job_env: Mapping[str, str],
        scope: Mapping[str, object],
        results: List[StepResult],
        cancel: threading.Event,
    ) -> Optional[Tuple[str, Optional[int], RelayError]]:
        """
        Returns None when every step passed (or was forgiven), otherwise
        (failed_step, exit_code, error).
        """
        for index, step in enumerate(job.steps):
            if cancel.is_set():
                return step.key, None, StepCancelledError(f"[{job.name}] cancelled before step '{step.name}'")

            if self.on_step is not None:
                self.on_step(job, step)

            attempts = 0
            snapshot = self._snapshot(job) if step.retries else None
            while True:
                attempts += 1
                invocation, error = self._attempt(job, step, run, job_env, scope, results, index)
                if invocation.exit_code == 0 or attempts > step.retries or cancel.is_set():
                    break
                logger.debug("retrying step %s/%s (attempt %d)", job.name, step.key, attempts + 1)
                # a retry gets a fresh environment holding the workspace as it was before this step
                self._release(job)
                self._restore(self._provision(job), snapshot)

            if invocation.exit_code != 0 and cancel.is_set():
                results.append(_step_result(step, invocation, JobStatus.FAILED, JobStatus.FAILED, attempts))
                return step.key, invocation.exit_code, StepCancelledError(f"[{job.name}] cancelled during step '{step.name}'")

            if invocation.exit_code == 0:
                results.append(_step_result(step, invocation, JobStatus.SUCCEEDED, JobStatus.SUCCEEDED, attempts))
                continue
            if step.continue_on_error and self.config.best_effort is BestEffortPolicy.SOFT:
                results.append(_step_result(step, invocation, JobStatus.FAILED, JobStatus.SUCCEEDED, attempts))
                logger.debug("best-effort step %s/%s failed; continuing", job.name, step.key)
                continue

            results.append(_step_result(step, invocation, JobStatus.FAILED, JobStatus.FAILED, attempts))
            for rest in job.steps[index + 1:]:
                results.append(StepResult(name=rest.name, key=rest.key, outcome=JobStatus.SKIPPED, conclusion=JobStatus.SKIPPED, attempts=0))
            err = error or StepExecutionError(
                job.name,
                step.name,
                invocation.exit_code,
                cmd=step.describe(),
                stdout=invocation.stdout,
                stderr=invocation.stderr,
            )
            return step.key, invocation.exit_code, err
        return None

    def _attempt(
        self,
        job: Job,
        step: Step,
        run: RunContext,
        job_env: Mapping[str, str],
        scope: Mapping[str, object],
        results: List[StepResult],
        index: int,
    ) -> Tuple[Invocation, Optional[RelayError]]:
        env = self._current(job)
        output_file = env.require_workspace() / ".relayci" / f"output-{index}"

        try:
            output_file.parent.mkdir(parents=True, exist_ok=True)
            output_file.write_text("", encoding="utf-8")

            ctx = dict(scope, steps=_steps_context(results))
            step_env = dict(job_env)
            for key, value in step.env.items():
                step_env[key] = render(str(value), ctx, self.evaluator)
            for var in (OUTPUT_ENV_VAR, *OUTPUT_ENV_ALIASES):
                step_env[var] = str(output_file)

            if step.is_action:
                action = get_action(step.uses or "")
                inputs = {k: render(str(v), ctx, self.evaluator) for k, v in step.with_.items()}
                invocation = action(
                    ActionContext(
                        job=job,
                        step=step,
                        run=run,
                        inputs=inputs,
                        env=step_env,
                        environment=env,
                        artifacts=self.artifacts,
                    )
                )
                return invocation, None

            command = render(step.run or "", ctx, self.evaluator)
            invocation = env.invoke(command, step_env, step.cwd, step.timeout)
            outputs = collect_step_outputs(invocation.stdout, output_file)
            return Invocation(
                exit_code=invocation.exit_code,
                stdout=invocation.stdout,
                stderr=invocation.stderr,
                outputs=outputs,
                timed_out=invocation.timed_out,
            ), None
        except RelayError as e:
            return Invocation(exit_code=1, stderr=f"{e}\n"), e
        except OSError as e:
            return Invocation(exit_code=1, stderr=f"{e}\n"), RelayError(str(e))


def _step_result(step: Step, inv: Invocation, outcome: JobStatus, conclusion: JobStatus, attempts: int) -> StepResult:
    return StepResult(
        name=step.name,
        key=step.key,
        outcome=outcome,
        conclusion=conclusion,
        exit_code=inv.exit_code,
        stdout=inv.stdout,
        stderr=inv.stderr,
        outputs=dict(inv.outputs),
        attempts=attempts,
    )


_OUTCOME_NAMES = {
    JobStatus.SUCCEEDED: "success",
    JobStatus.FAILED: "failure",
    JobStatus.SKIPPED: "skipped",
}


def _steps_context(results: List[StepResult]) -> Dict[str, Dict[str, object]]:
    return {
        r.key: {
            "outcome": _OUTCOME_NAMES.get(r.outcome, r.outcome.value),
            "conclusion": _OUTCOME_NAMES.get(r.conclusion, r.conclusion.value),
            "outputs": dict(r.outputs),
        }
        for r in results
    }
