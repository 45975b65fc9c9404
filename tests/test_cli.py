"""CLI tests: `relayci run`, `status`, `validate`, `runs` and `gc` through click's CliRunner."""

from __future__ import annotations

import textwrap

import pytest
from click.testing import CliRunner

from relayci.cli import cli
from relayci.store import RunStore

PIPELINE = textwrap.dedent(
    """
    name: ci-cd
    on:
      push:
        branches: [main]
      workflow_dispatch:
    jobs:
      test:
        steps:
          - run: {test_cmd}
      lint:
        steps:
          - run: echo lint
      build:
        needs: [test, lint]
        artifacts:
          build-artifacts: dist
        steps:
          - run: mkdir -p dist && echo bin > dist/app
      docker:
        needs: build
        downloads:
          build-artifacts: dist
        steps:
          - id: meta
            run: test -f dist/app && echo "image_tag=sha-1" >> "$GITHUB_OUTPUT"
        outputs:
          image_tag: ${{{{ steps.meta.outputs.image_tag }}}}
      update-k8s:
        needs: docker
        if: github.ref == 'refs/heads/main' && github.event_name == 'push'
        env:
          IMAGE_TAG: ${{{{ needs.docker.outputs.image_tag }}}}
        steps:
          - run: test "$IMAGE_TAG" = sha-1
    """
)


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    for var in ("RELAYCI_HOME", "RELAYCI_DATABASE_URL", "RELAYCI_CONCURRENCY",
                "RELAYCI_ARTIFACT_RETENTION_DAYS", "RELAYCI_BEST_EFFORT"):
        monkeypatch.delenv(var, raising=False)
    project = tmp_path / "project"
    project.mkdir()
    monkeypatch.chdir(project)
    return project


@pytest.fixture
def home(tmp_path):
    return tmp_path / "state"


@pytest.fixture
def invoke(home):
    runner = CliRunner()

    def run(*args):
        return runner.invoke(cli, ["--home", str(home), *args])
    return run


def _write(workspace, test_cmd="echo ok", name="ci-cd.yml"):
    path = workspace / name
    path.write_text(PIPELINE.format(test_cmd=test_cmd))
    return path


def _store(home):
    return RunStore(f"sqlite:///{(home / 'runs.db').resolve()}")


class TestRun:
    def test_successful_run(self, workspace, invoke, home):
        result = invoke("run", str(_write(workspace)), "--branch", "main")
        assert result.exit_code == 0, result.output
        assert "RUN STARTED" in result.output
        assert "Stage 1: test, lint" in result.output
        assert "update-k8s: SUCCESS" in result.output
        assert "Exit code: 0" in result.output
        [run] = _store(home).list_runs()
        assert run.status == "succeeded"

    def test_failing_job(self, workspace, invoke):
        result = invoke("run", str(_write(workspace, test_cmd="echo broken >&2; exit 1")), "--branch", "main")
        assert result.exit_code == 1
        assert "test: FAILED" in result.output
        assert "build: SKIPPED (dependency 'test' failed)" in result.output
        assert "broken" in result.output

    def test_condition_skips_deploy_on_dispatch(self, workspace, invoke):
        result = invoke("run", str(_write(workspace)), "--branch", "main", "--event", "workflow_dispatch")
        assert result.exit_code == 0
        assert "update-k8s: SKIPPED (condition false" in result.output

    def test_not_triggered(self, workspace, invoke):
        result = invoke("run", str(_write(workspace)), "--branch", "feature/x")
        assert result.exit_code == 0
        assert "not triggered" in result.output
        assert "RUN STARTED" not in result.output

    def test_force_ignores_triggers(self, workspace, invoke):
        result = invoke("run", str(_write(workspace)), "--branch", "feature/x", "--force")
        assert result.exit_code == 0
        assert "RUN STARTED" in result.output

    def test_cyclic_pipeline_is_a_definition_error(self, workspace, invoke):
        path = workspace / "cycle.yml"
        path.write_text("jobs:\n  a:\n    needs: b\n    steps: [{run: 'true'}]\n  b:\n    needs: a\n    steps: [{run: 'true'}]\n")
        result = invoke("run", str(path))
        assert result.exit_code == 2
        assert "Invalid pipeline" in result.output

    def test_missing_file_is_a_definition_error(self, workspace, invoke):
        result = invoke("run", "absent.yml")
        assert result.exit_code == 2

    def test_default_pipeline_location(self, workspace, invoke):
        _write(workspace, name="relayci.yml")
        result = invoke("run", "--branch", "main")
        assert result.exit_code == 0, result.output

    def test_no_pipeline_found(self, workspace, invoke):
        result = invoke("run")
        assert result.exit_code == 2
        assert "No pipeline file found" in result.output

    def test_strict_makes_best_effort_steps_fail(self, workspace, invoke):
        path = workspace / "lint.yml"
        path.write_text("jobs:\n  lint:\n    steps:\n      - run: exit 1\n        continue-on-error: true\n")
        assert invoke("run", str(path)).exit_code == 0
        assert invoke("run", str(path), "--strict").exit_code == 1


class TestStatus:
    def test_status_of_recorded_run(self, workspace, invoke, home):
        invoke("run", str(_write(workspace, test_cmd="exit 3")), "--branch", "main")
        [run] = _store(home).list_runs()

        result = invoke("status", run.id[:10])
        assert result.exit_code == 0
        assert f"Run {run.id}" in result.output
        assert "Status: failed (exit 1)" in result.output
        assert "test: failed at step 'exit 3'" in result.output
        assert "docker: skipped (dependency 'build' skipped)" in result.output

    def test_unknown_run(self, workspace, invoke):
        result = invoke("status", "does-not-exist")
        assert result.exit_code == 1
        assert "Run not found" in result.output

    def test_runs_listing(self, workspace, invoke):
        assert "No runs recorded" in invoke("runs").output
        invoke("run", str(_write(workspace)), "--branch", "main")
        result = invoke("runs")
        assert "succeeded" in result.output
        assert "ci-cd" in result.output


class TestValidateAndGc:
    def test_validate(self, workspace, invoke):
        result = invoke("validate", str(_write(workspace)))
        assert result.exit_code == 0
        assert "Pipeline 'ci-cd' is valid (5 jobs)" in result.output
        assert "Stage 4: update-k8s" in result.output

    def test_validate_warns_about_unknown_actions(self, workspace, invoke):
        path = workspace / "actions.yml"
        path.write_text("jobs:\n  a:\n    steps:\n      - uses: docker/build-push-action@v5\n")
        result = invoke("validate", str(path))
        assert result.exit_code == 0
        assert "is not available" in result.output

    def test_validate_bad_condition(self, workspace, invoke):
        path = workspace / "bad.yml"
        path.write_text("jobs:\n  a:\n    if: github.ref ==\n    steps: [{run: 'true'}]\n")
        assert invoke("validate", str(path)).exit_code == 2

    def test_gc_removes_expired_artifacts(self, workspace, invoke, home):
        invoke("run", str(_write(workspace)), "--branch", "main")
        assert len(list((home / "artifacts").iterdir())) == 1
        result = invoke("gc", "--retention-days", "0")
        assert result.exit_code == 0
        assert "Removed artifacts of 1 run(s)" in result.output
        assert list((home / "artifacts").iterdir()) == []

    def test_gc_keeps_recent_artifacts(self, workspace, invoke, home):
        invoke("run", str(_write(workspace)), "--branch", "main")
        result = invoke("gc")
        assert "Removed artifacts of 0 run(s)" in result.output
