# scheduler.py
from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Iterable, List, Optional, Sequence

from .conditions import ConditionEvaluator, ContextBuilder, parse, uses_status_function
from .dag import DependencyGraph, build_graph
from .errors import RelayError, RunStateError
from .executor import JobExecutor
from .model import Job, JobResult, JobStatus, Pipeline, Run, RunContext, satisfies, utcnow
from .outputs import OutputStore

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    OK = 0
    JOB_FAILED = 1
    DEFINITION_ERROR = 2
    PROVISION_FAILED = 3
    ENGINE_ERROR = 4
    CANCELLED = 130


# failure reasons (JobResult.reason / RelayError.kind) that are the engine's fault
ENGINE_REASONS = frozenset({"output_not_ready", "run_state", "engine_error"})
PROVISION_REASONS = frozenset({"environment_provision"})


class RunListener:
    """Hooks called from the dispatch thread as a run progresses. All optional."""

    def on_run_started(self, run: Run) -> None:
        pass

    def on_job_started(self, run: Run, job: Job) -> None:
        pass

    def on_job_finished(self, run: Run, result: JobResult) -> None:
        pass

    def on_run_finished(self, run: Run, report: "RunReport") -> None:
        pass


@dataclass(frozen=True)
class RunReport:
    run_id: str
    pipeline: str
    results: Dict[str, JobResult]
    order: Sequence[str]
    cancelled: bool = False

    @classmethod
    def from_run(cls, run: Run, order: Optional[Sequence[str]] = None) -> "RunReport":
        return cls(
            run_id=run.run_id,
            pipeline=run.pipeline.name,
            results=run.results,
            order=tuple(order or run.pipeline.job_names),
            cancelled=run.cancelled,
        )

    @property
    def failures(self) -> List[JobResult]:
        return [
            self.results[n] for n in self.order
            if n in self.results
            and self.results[n].status is JobStatus.FAILED
            and not self.results[n].continue_on_error
        ]

    @property
    def succeeded(self) -> bool:
        return not self.cancelled and not self.failures

    @property
    def exit_code(self) -> ExitCode:
        if self.cancelled:
            return ExitCode.CANCELLED
        reasons = {r.reason for r in self.failures}
        if reasons & ENGINE_REASONS:
            return ExitCode.ENGINE_ERROR
        if reasons & PROVISION_REASONS:
            return ExitCode.PROVISION_FAILED
        if self.failures:
            return ExitCode.JOB_FAILED
        return ExitCode.OK

    def statuses(self) -> Dict[str, str]:
        return {n: self.results[n].status.value for n in self.order if n in self.results}


class Scheduler:
    """
    Drives one Run of a pipeline.

    The dispatch loop runs on the calling thread and is the only place
    that finalizes results, so readiness checks never race. Jobs execute
    on a bounded thread pool.
    """

    def __init__(
        self,
        graph: DependencyGraph,
        executor: JobExecutor,
        *,
        concurrency: Optional[int] = None,
        fail_fast: bool = False,
        admit_continue_on_error: bool = True,
        listeners: Iterable[RunListener] = (),
        env: Optional[Dict[str, str]] = None,
    ):
        if concurrency is None:
            c = os.cpu_count() or 2
            concurrency = max(1, c - 1)
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.graph = graph
        self.executor = executor
        self.concurrency = concurrency
        self.fail_fast = fail_fast
        self.admit_continue_on_error = admit_continue_on_error
        self.listeners = list(listeners)
        self.env = dict(env or {})
        self.evaluator = ConditionEvaluator()
        self._cancel = threading.Event()
        self._running: Dict[str, Future] = {}
        self._position = {n: i for i, n in enumerate(graph.order)}

    # ---- control ----

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Stop dispatching and preempt running jobs; safe from any thread."""
        if self._cancel.is_set():
            return
        logger.debug("cancel requested")
        self._cancel.set()
        for name in list(self._running):
            self.executor.terminate(name)

    # ---- run ----

    def run(self, pipeline: Pipeline, context: RunContext) -> Run:
        run = Run(pipeline, context)
        outputs = OutputStore()
        pending = dict(self.graph.indegree)
        ready: List[str] = list(self.graph.roots())
        failed = False

        self._emit("on_run_started", run)
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="relayci-job") as pool:
            in_flight: Dict[Future, str] = {}

            def finish(result: JobResult) -> None:
                nonlocal failed
                final = self._finalize(run, outputs, result)
                if final.status is JobStatus.FAILED and not final.continue_on_error:
                    failed = True
                for child in self.graph.dependents[final.job]:
                    pending[child] -= 1
                    if pending[child] == 0:
                        ready.append(child)

            while ready or in_flight:
                # dispatch everything that is ready, in declaration order
                while ready:
                    ready.sort(key=self._position.__getitem__)
                    name = ready.pop(0)
                    job = self.graph.jobs[name]
                    if self.cancelled:
                        finish(self._skipped(name, "cancelled"))
                        continue
                    if self.fail_fast and failed:
                        finish(self._skipped(name, "fail-fast: an earlier job failed"))
                        continue
                    blocked = self._gate(run, job, outputs)
                    if blocked is not None:
                        finish(blocked)
                        continue
                    self._check_dependencies(run, job)
                    started = run.start(name)
                    self._emit("on_job_started", run, job)
                    needs = {n: run.result(n) for n in job.needs}
                    fut = pool.submit(
                        self.executor.execute,
                        job,
                        context,
                        outputs,
                        needs,
                        cancel=self._cancel,
                        started_at=started.started_at,
                        pipeline_env=self.env,
                    )
                    in_flight[fut] = name
                    self._running[name] = fut

                if not in_flight:
                    break

                try:
                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    self.cancel()
                    continue

                for fut in sorted(done, key=lambda f: self._position[in_flight[f]]):
                    name = in_flight.pop(fut)
                    self._running.pop(name, None)
                    try:
                        result = fut.result()
                    except Exception as e:
                        logger.debug("job %s crashed", name, exc_info=True)
                        result = JobResult(
                            job=name,
                            status=JobStatus.FAILED,
                            error=f"{type(e).__name__}: {e}",
                            reason="engine_error",
                        )
                    finish(result)

        run.cancelled = self.cancelled
        run.finished_at = utcnow()
        self._emit("on_run_finished", run, RunReport.from_run(run, self.graph.order))
        return run

    # ---- gates ----

    def _gate(self, run: Run, job: Job, outputs: OutputStore) -> Optional[JobResult]:
        """
        Decide whether a job whose dependencies are all terminal may start.
        Returns the terminal result to record instead, or None to dispatch.
        """
        needs = {n: run.result(n) for n in job.needs}
        regardless = bool(job.condition) and uses_status_function(parse(job.condition))

        if not regardless:
            for dep in job.needs:
                r = needs[dep]
                if not satisfies(r, admit_continue_on_error=self.admit_continue_on_error):
                    status = r.status.value if r is not None else "pending"
                    return self._skipped(job.name, f"dependency '{dep}' {status}")

        if not job.condition:
            return None

        ctx = ContextBuilder().build(
            run.context,
            needs,
            outputs,
            env=self.env,
            cancelled=self.cancelled,
            admit_continue_on_error=self.admit_continue_on_error,
            upstream={n: run.result(n) for n in self.graph.transitive_dependencies(job.name)},
        )
        try:
            evaluation = self.evaluator.evaluate(job.condition, ctx)
        except RelayError as e:
            return JobResult(
                job=job.name,
                status=JobStatus.FAILED,
                started_at=utcnow(),
                error=str(e),
                reason=e.kind,
                continue_on_error=job.continue_on_error,
            )
        if not evaluation.result:
            return self._skipped(job.name, f"condition false: {evaluation.debug_info}")
        return None

    def _check_dependencies(self, run: Run, job: Job) -> None:
        for dep in job.needs:
            r = run.result(dep)
            if r is None or not r.status.terminal:
                raise RunStateError(f"Job '{job.name}' dispatched before '{dep}' finished")

    # ---- bookkeeping ----

    def _skipped(self, name: str, reason: str) -> JobResult:
        return JobResult(job=name, status=JobStatus.SKIPPED, reason=reason)

    def _finalize(self, run: Run, outputs: OutputStore, result: JobResult) -> JobResult:
        # publish first: a dependent may only be dispatched after both happened
        outputs.publish(result.job, result.status, result.outputs)
        final = run.finalize(result)
        logger.debug("job %s -> %s (%s)", final.job, final.status.value, final.reason or "")
        self._emit("on_job_finished", run, final)
        return final

    def _emit(self, hook: str, *args) -> None:
        for listener in self.listeners:
            getattr(listener, hook)(*args)


def run_pipeline(
    pipeline: Pipeline,
    context: RunContext,
    executor: JobExecutor,
    *,
    concurrency: Optional[int] = None,
    fail_fast: bool = False,
    admit_continue_on_error: bool = True,
    listeners: Iterable[RunListener] = (),
) -> RunReport:
    graph = build_graph(pipeline.jobs)
    scheduler = Scheduler(
        graph,
        executor,
        concurrency=concurrency,
        fail_fast=fail_fast,
        admit_continue_on_error=admit_continue_on_error,
        listeners=listeners,
        env=dict(pipeline.env),
    )
    run = scheduler.run(pipeline, context)
    return RunReport.from_run(run, graph.order)
