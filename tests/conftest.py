"""
Shared pytest fixtures for relayci tests.

Steps in these tests are real `sh -c` commands (`true`, `false`, `echo`)
run in temporary workspaces under `tmp_path`.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from relayci.artifacts import ArtifactStore
from relayci.executor import BestEffortPolicy, ExecutorConfig, JobExecutor
from relayci.model import Pipeline, RunContext
from relayci.scheduler import RunReport, run_pipeline


@pytest.fixture
def artifact_store(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def make_executor(tmp_path: Path, artifact_store: ArtifactStore):
    def factory(best_effort: BestEffortPolicy = BestEffortPolicy.SOFT, **kwargs) -> JobExecutor:
        config = ExecutorConfig(work_dir=tmp_path / "work", best_effort=best_effort)
        return JobExecutor(artifact_store, config, **kwargs)
    return factory


@pytest.fixture
def run_context(tmp_path: Path):
    source = tmp_path / "source"
    source.mkdir()
    (source / "app.txt").write_text("hello\n")

    def factory(pipeline: str = "test", **kwargs) -> RunContext:
        kwargs.setdefault("branch", "main")
        kwargs.setdefault("sha", "abc123")
        kwargs.setdefault("actor", "tester")
        kwargs.setdefault("repository", "acme/app")
        kwargs.setdefault("source_root", source)
        return RunContext.create(pipeline, **kwargs)
    return factory


@pytest.fixture
def execute(make_executor, run_context):
    """Run a whole pipeline and return its report."""
    def run(pipeline: Pipeline, *, executor=None, context=None, **kwargs) -> RunReport:
        return run_pipeline(
            pipeline,
            context or run_context(pipeline.name),
            executor or make_executor(),
            **kwargs,
        )
    return run
