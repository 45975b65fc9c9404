"""End-to-end scheduling tests: real pipelines, real shell steps."""

from __future__ import annotations

import threading
import time

import pytest

from relayci.dag import build_graph
from relayci.dsl import job, pipeline, sh
from relayci.environments import LocalEnvironment
from relayci.errors import EnvironmentProvisionError
from relayci.executor import JobExecutor
from relayci.model import JobStatus
from relayci.scheduler import ExitCode, RunListener, RunReport, Scheduler


def ci_pipeline(*, test_cmd="true", docker_cmd=None):
    """The test/lint -> build -> docker -> update-k8s shape."""
    docker_cmd = docker_cmd or 'echo "image_tag=sha-$RELAYCI_SHA" >> "$RELAYCI_OUTPUT"'
    return pipeline(
        "ci-cd",
        job("test", sh("pytest", test_cmd)),
        job("lint", sh("flake8", "true")),
        job("build", sh("package", "mkdir -p dist && echo bin > dist/app"), needs=["test", "lint"],
            artifacts={"build-artifacts": "dist"}),
        job("docker", sh("metadata", docker_cmd, id="meta"), needs=["build"],
            downloads={"build-artifacts": "dist"},
            outputs={"image_tag": "${{ steps.meta.outputs.image_tag }}"}),
        job(
            "update-k8s",
            sh("apply", 'test "$IMAGE_TAG" = "sha-abc123"'),
            needs=["docker"],
            condition="github.ref == 'refs/heads/main' && github.event_name == 'push'",
            env={"IMAGE_TAG": "${{ needs.docker.outputs.image_tag }}"},
        ),
    )


class TestHappyPath:
    def test_whole_pipeline_succeeds(self, execute):
        report = execute(ci_pipeline())
        assert report.statuses() == {
            "test": "succeeded",
            "lint": "succeeded",
            "build": "succeeded",
            "docker": "succeeded",
            "update-k8s": "succeeded",
        }
        assert report.exit_code is ExitCode.OK
        assert report.results["docker"].outputs == {"image_tag": "sha-abc123"}
        assert report.results["build"].artifacts == (f"{report.run_id}/build-artifacts",)

    def test_no_job_starts_before_its_dependencies_finish(self, execute):
        p = ci_pipeline()
        report = execute(p, concurrency=4)
        for j in p.jobs:
            started = report.results[j.name].started_at
            for dep in j.needs:
                assert report.results[dep].finished_at <= started

    def test_independent_jobs_run_in_parallel(self, execute):
        p = pipeline("parallel", job("a", sh("s", "sleep 0.5")), job("b", sh("s", "sleep 0.5")))
        report = execute(p, concurrency=2)
        a, b = report.results["a"], report.results["b"]
        assert a.started_at < b.finished_at and b.started_at < a.finished_at

    def test_runs_are_deterministic(self, execute):
        first = execute(ci_pipeline(test_cmd="false"))
        second = execute(ci_pipeline(test_cmd="false"))
        assert first.statuses() == second.statuses()
        assert first.run_id != second.run_id


class TestFailurePropagation:
    def test_failed_test_skips_downstream(self, execute):
        report = execute(ci_pipeline(test_cmd="exit 1"))
        assert report.statuses() == {
            "test": "failed",
            "lint": "succeeded",
            "build": "skipped",
            "docker": "skipped",
            "update-k8s": "skipped",
        }
        assert report.results["build"].reason == "dependency 'test' failed"
        assert report.results["docker"].reason == "dependency 'build' skipped"
        assert report.exit_code is ExitCode.JOB_FAILED

    def test_docker_failure_skips_deploy(self, execute):
        report = execute(ci_pipeline(docker_cmd="exit 2"))
        assert report.results["docker"].status is JobStatus.FAILED
        assert report.results["docker"].exit_code == 2
        assert report.results["update-k8s"].status is JobStatus.SKIPPED
        assert [r.job for r in report.failures] == ["docker"]

    def test_continue_on_error_job_does_not_block(self, execute):
        p = pipeline(
            "allowed",
            job("flaky", sh("x", "false"), continue_on_error=True),
            job("after", sh("y", "true"), needs=["flaky"]),
        )
        report = execute(p)
        assert report.results["flaky"].status is JobStatus.FAILED
        assert report.results["after"].status is JobStatus.SUCCEEDED
        assert report.exit_code is ExitCode.OK

    def test_continue_on_error_admission_can_be_disabled(self, execute):
        p = pipeline(
            "strict",
            job("flaky", sh("x", "false"), continue_on_error=True),
            job("after", sh("y", "true"), needs=["flaky"]),
        )
        report = execute(p, admit_continue_on_error=False)
        assert report.results["after"].status is JobStatus.SKIPPED

    def test_fail_fast_skips_jobs_not_yet_started(self, execute):
        p = pipeline(
            "ff",
            job("test", sh("x", "false")),
            job("prep", sh("y", "sleep 0.5")),
            job("package", sh("z", "true"), needs=["prep"]),
        )
        report = execute(p, fail_fast=True, concurrency=2)
        assert report.results["prep"].status is JobStatus.SUCCEEDED
        assert report.results["package"].status is JobStatus.SKIPPED
        assert report.results["package"].reason.startswith("fail-fast")

    def test_without_fail_fast_unrelated_jobs_continue(self, execute):
        p = pipeline(
            "no-ff",
            job("test", sh("x", "false")),
            job("prep", sh("y", "sleep 0.5")),
            job("package", sh("z", "true"), needs=["prep"]),
        )
        report = execute(p, concurrency=2)
        assert report.results["package"].status is JobStatus.SUCCEEDED


class TestConditions:
    def test_false_condition_skips_job(self, execute, run_context):
        report = execute(ci_pipeline(), context=run_context("ci-cd", branch="feature/x"))
        assert report.results["docker"].status is JobStatus.SUCCEEDED
        deploy = report.results["update-k8s"]
        assert deploy.status is JobStatus.SKIPPED
        assert deploy.reason.startswith("condition false")
        assert report.exit_code is ExitCode.OK

    def test_pull_request_does_not_deploy(self, execute, run_context):
        report = execute(ci_pipeline(), context=run_context("ci-cd", event="pull_request"))
        assert report.results["update-k8s"].status is JobStatus.SKIPPED

    def test_always_runs_after_failure(self, execute):
        p = pipeline(
            "notify",
            job("test", sh("x", "false")),
            job("report", sh("y", 'test "$RESULT" = failure'), needs=["test"],
                condition="always()", env={"RESULT": "${{ needs.test.result }}"}),
        )
        report = execute(p)
        assert report.results["report"].status is JobStatus.SUCCEEDED
        assert report.exit_code is ExitCode.JOB_FAILED

    def test_failure_condition(self, execute):
        p = pipeline(
            "cleanup",
            job("test", sh("x", "true")),
            job("on-failure", sh("y", "true"), needs=["test"], condition="failure()"),
        )
        report = execute(p)
        assert report.results["on-failure"].status is JobStatus.SKIPPED

    def test_failure_condition_sees_failures_further_upstream(self, execute):
        p = pipeline(
            "notify",
            job("build", sh("x", "false")),
            job("docker", sh("y", "true"), needs=["build"]),
            job("notify", sh("z", "true"), needs=["docker"], condition="failure()"),
        )
        report = execute(p)
        assert report.results["docker"].status is JobStatus.SKIPPED
        assert report.results["notify"].status is JobStatus.SUCCEEDED
        assert report.exit_code is ExitCode.JOB_FAILED

    def test_reading_outputs_of_failed_job_is_an_engine_error(self, execute):
        p = pipeline(
            "bad-read",
            job("docker", sh("x", "false")),
            job("deploy", sh("y", "true"), needs=["docker"],
                condition="always() && needs.docker.outputs.image_tag != ''"),
        )
        report = execute(p)
        assert report.results["deploy"].reason == "output_not_ready"
        assert report.exit_code is ExitCode.ENGINE_ERROR


class TestExitCodes:
    def test_provision_failure(self, artifact_store, run_context, tmp_path):
        class Broken(LocalEnvironment):
            def provision(self):
                raise EnvironmentProvisionError("docker is not available")

        executor = JobExecutor(
            artifact_store,
            environment_factory=lambda j, base_dir, keep: Broken(j.name, base_dir=tmp_path / "work"),
        )
        p = pipeline("p", job("build", sh("x", "true")))
        report = RunReport.from_run(Scheduler(build_graph(p.jobs), executor).run(p, run_context()))
        assert report.exit_code is ExitCode.PROVISION_FAILED

    def test_crashing_worker_is_an_engine_error(self, artifact_store, run_context):
        def factory(j, base_dir, keep):
            raise RuntimeError("boom")

        executor = JobExecutor(artifact_store, environment_factory=factory)
        p = pipeline("p", job("build", sh("x", "true")), job("after", sh("y", "true"), needs=["build"]))
        report = RunReport.from_run(Scheduler(build_graph(p.jobs), executor).run(p, run_context()))
        assert report.results["build"].reason == "engine_error"
        assert report.results["after"].status is JobStatus.SKIPPED
        assert report.exit_code is ExitCode.ENGINE_ERROR


class _Recorder(RunListener):
    def __init__(self):
        self.events = []

    def on_run_started(self, run):
        self.events.append(("run_started", None))

    def on_job_started(self, run, job):
        self.events.append(("started", job.name))

    def on_job_finished(self, run, result):
        self.events.append(("finished", result.job))

    def on_run_finished(self, run, report):
        self.events.append(("run_finished", report.exit_code))


class TestListenersAndCancel:
    def test_listener_sees_every_job(self, make_executor, run_context):
        recorder = _Recorder()
        p = ci_pipeline(test_cmd="false")
        Scheduler(build_graph(p.jobs), make_executor(), listeners=[recorder]).run(p, run_context())
        assert recorder.events[0] == ("run_started", None)
        assert recorder.events[-1] == ("run_finished", ExitCode.JOB_FAILED)
        finished = [name for kind, name in recorder.events if kind == "finished"]
        assert sorted(finished) == sorted(p.job_names)
        # skipped jobs are never started
        assert ("started", "build") not in recorder.events

    def test_cancel_skips_pending_jobs(self, make_executor, run_context):
        p = pipeline("c", job("first", sh("x", "true")), job("second", sh("y", "true"), needs=["first"]))
        scheduler = Scheduler(build_graph(p.jobs), make_executor())

        class CancelAfterFirst(RunListener):
            def on_job_finished(self, run, result):
                scheduler.cancel()

        scheduler.listeners.append(CancelAfterFirst())
        report = RunReport.from_run(scheduler.run(p, run_context()))
        assert report.results["first"].status is JobStatus.SUCCEEDED
        assert report.results["second"].status is JobStatus.SKIPPED
        assert report.results["second"].reason == "cancelled"
        assert report.exit_code is ExitCode.CANCELLED

    def test_cancel_preempts_running_step(self, make_executor, run_context):
        p = pipeline("c", job("slow", sh("x", "sleep 30")))
        scheduler = Scheduler(build_graph(p.jobs), make_executor())

        class CancelSoon(RunListener):
            def on_job_started(self, run, job):
                threading.Timer(0.5, scheduler.cancel).start()

        scheduler.listeners.append(CancelSoon())
        t0 = time.monotonic()
        report = RunReport.from_run(scheduler.run(p, run_context()))
        assert time.monotonic() - t0 < 15
        assert report.results["slow"].status is JobStatus.SKIPPED
        assert report.results["slow"].reason == "cancelled"


def test_concurrency_must_be_positive(make_executor):
    with pytest.raises(ValueError):
        Scheduler(build_graph([job("a", sh("x", "true"))]), make_executor(), concurrency=0)
