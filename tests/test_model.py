"""Tests for relayci.model, relayci.dsl and relayci.settings."""

from __future__ import annotations

from pathlib import Path

import pytest

from relayci.dsl import build, job, pipeline, sh, uses
from relayci.errors import PipelineDefinitionError, RelayError, RunStateError
from relayci.executor import BestEffortPolicy
from relayci.model import JobResult, JobStatus, Run, RunContext, Step, satisfies
from relayci.settings import Settings


class TestDefinitions:
    def test_step_needs_exactly_one_body(self):
        with pytest.raises(PipelineDefinitionError):
            Step(name="nothing")
        with pytest.raises(PipelineDefinitionError):
            Step(name="both", run="true", uses="actions/checkout@v4")

    def test_job_needs_steps(self):
        with pytest.raises(PipelineDefinitionError):
            job("empty")

    def test_duplicate_step_ids(self):
        with pytest.raises(PipelineDefinitionError):
            job("a", sh("one", "true", id="x"), sh("two", "true", id="x"))

    def test_inputs_must_reference_needed_jobs(self):
        with pytest.raises(PipelineDefinitionError):
            job("deploy", sh("apply", "true"), inputs={"TAG": "docker.image_tag"})
        with pytest.raises(PipelineDefinitionError):
            job("deploy", sh("apply", "true"), needs=["docker"], inputs={"TAG": "image_tag"})

    def test_uses_inputs_are_dashed(self):
        step = uses("Checkout", "actions/checkout@v4", include_git=False)
        assert step.with_ == {"include-git": "False"}
        assert step.describe() == "uses: actions/checkout@v4"

    def test_artifact_action_inputs_named_like_parameters(self):
        step = uses("Upload", "actions/upload-artifact@v4", name="pkg", path="dist")
        assert step.name == "Upload"
        assert step.with_ == {"name": "pkg", "path": "dist"}
        built = build("b").define_step("make", "true").use_action("Fetch", "download-artifact", name="pkg").build()
        assert built.steps[1].name == "Fetch"
        assert built.steps[1].with_ == {"name": "pkg"}

    def test_job_cwd_applies_to_steps_without_one(self):
        j = job("a", sh("one", "true"), sh("two", "true", cwd="sub"), cwd="app")
        assert [s.cwd for s in j.steps] == ["app", "sub"]

    def test_builder(self):
        j = (
            build("deploy")
            .depends_on("docker")
            .define_step("apply", 'kubectl apply -f k8s/')
            .when("github.ref == 'refs/heads/main'")
            .with_env(REGION="eu")
            .with_inputs(IMAGE_TAG="docker.image_tag")
            .download("manifests", "k8s")
            .allow_failure()
            .build()
        )
        assert j.needs == ["docker"]
        assert j.condition == "github.ref == 'refs/heads/main'"
        assert j.inputs == {"IMAGE_TAG": "docker.image_tag"}
        assert j.downloads == {"manifests": "k8s"}
        assert j.continue_on_error is True

    def test_pipeline_lookup(self):
        p = pipeline("ci", job("a", sh("a", "true")))
        assert p.job("a").name == "a"
        with pytest.raises(KeyError):
            p.job("b")


class TestRunContext:
    def test_ref_is_derived_from_branch(self):
        ctx = RunContext.create("ci", branch="main")
        assert ctx.ref == "refs/heads/main"
        assert RunContext.create("ci", branch="main", ref="refs/tags/v1").ref == "refs/tags/v1"

    def test_run_ids_are_unique(self):
        assert RunContext.create("ci").run_id != RunContext.create("ci").run_id

    def test_env_exports_both_spellings(self):
        env = RunContext.create("ci", branch="dev", sha="abc", event="pull_request").as_env()
        assert env["RELAYCI_BRANCH"] == env["GITHUB_REF_NAME"] == "dev"
        assert env["RELAYCI_EVENT"] == env["GITHUB_EVENT_NAME"] == "pull_request"
        assert env["CI"] == "true"


class TestRun:
    def _run(self):
        p = pipeline("ci", job("a", sh("a", "true")), job("b", sh("b", "true"), needs=["a"]))
        return Run(p, RunContext.create("ci"))

    def test_lifecycle(self):
        run = self._run()
        assert run.status("a") is JobStatus.PENDING
        run.start("a")
        assert run.status("a") is JobStatus.RUNNING
        run.finalize(JobResult(job="a", status=JobStatus.SUCCEEDED))
        run.finalize(JobResult(job="b", status=JobStatus.SKIPPED, reason="x"))
        assert run.done
        assert run.succeeded
        assert run.result("a").finished_at is not None

    def test_job_starts_once(self):
        run = self._run()
        run.start("a")
        with pytest.raises(RunStateError):
            run.start("a")

    def test_result_is_finalized_once(self):
        run = self._run()
        run.finalize(JobResult(job="a", status=JobStatus.FAILED))
        with pytest.raises(RunStateError):
            run.finalize(JobResult(job="a", status=JobStatus.SUCCEEDED))

    def test_cannot_finalize_non_terminal(self):
        with pytest.raises(RunStateError):
            self._run().finalize(JobResult(job="a", status=JobStatus.RUNNING))

    def test_allowed_failures_do_not_fail_the_run(self):
        run = self._run()
        run.finalize(JobResult(job="a", status=JobStatus.FAILED, continue_on_error=True))
        run.finalize(JobResult(job="b", status=JobStatus.SUCCEEDED))
        assert run.succeeded


class TestSatisfies:
    def test_default_gate(self):
        assert satisfies(JobResult(job="a", status=JobStatus.SUCCEEDED))
        assert not satisfies(JobResult(job="a", status=JobStatus.SKIPPED))
        assert not satisfies(JobResult(job="a", status=JobStatus.FAILED))
        assert not satisfies(None)

    def test_continue_on_error_admission(self):
        allowed = JobResult(job="a", status=JobStatus.FAILED, continue_on_error=True)
        assert satisfies(allowed)
        assert not satisfies(allowed, admit_continue_on_error=False)


class TestSettings:
    def test_defaults(self):
        s = Settings.from_env({})
        assert s.home == Path(".relayci")
        assert s.concurrency is None
        assert s.best_effort is BestEffortPolicy.SOFT
        assert s.db_url.startswith("sqlite:///")
        assert s.db_url.endswith("runs.db")

    def test_from_environment(self, tmp_path):
        s = Settings.from_env({
            "RELAYCI_HOME": str(tmp_path),
            "RELAYCI_CONCURRENCY": "3",
            "RELAYCI_ARTIFACT_RETENTION_DAYS": "0.5",
            "RELAYCI_BEST_EFFORT": "HARD",
            "RELAYCI_DATABASE_URL": "sqlite://",
        })
        assert s.artifact_dir == tmp_path / "artifacts"
        assert s.work_dir == tmp_path / "work"
        assert s.concurrency == 3
        assert s.retention_seconds == 43200
        assert s.best_effort is BestEffortPolicy.HARD
        assert s.db_url == "sqlite://"

    @pytest.mark.parametrize("key, value", [
        ("RELAYCI_CONCURRENCY", "many"),
        ("RELAYCI_ARTIFACT_RETENTION_DAYS", "forever"),
        ("RELAYCI_BEST_EFFORT", "sometimes"),
    ])
    def test_invalid_values(self, key, value):
        with pytest.raises(RelayError):
            Settings.from_env({key: value})

    def test_overrides_ignore_none(self, tmp_path):
        s = Settings.from_env({}).with_overrides(home=tmp_path, concurrency=None)
        assert s.home == tmp_path
        assert s.concurrency is None
