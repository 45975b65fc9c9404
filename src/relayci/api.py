from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from .store import JobRecord, RunRecord, RunStore

# -------------------- Schemas --------------------

class JobSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_name: str
    status: str
    reason: str | None = None
    exit_code: int | None = None
    failed_step: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

class JobResponse(JobSummary):
    run_id: str
    error: str | None = None
    logs: str | None = None
    outputs: dict[str, Any] = Field(default_factory=dict)
    artifacts: list[str] = Field(default_factory=list)

class RunSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    pipeline: str
    event: str
    ref: str
    branch: str
    sha: str
    actor: str
    repository: str
    status: str
    exit_code: int | None = None
    created_at: datetime
    finished_at: datetime | None = None

class RunResponse(RunSummary):
    source: str | None = None
    jobs: list[JobSummary] = Field(default_factory=list)

# -------------------- App --------------------

def create_app(store: RunStore) -> FastAPI:
    """Read-only HTTP view of the run store."""
    app = FastAPI(title="relayci run history")

    def _run_or_404(run_id: str) -> RunRecord:
        run = store.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return run

    @app.get("/runs", response_model=list[RunSummary])
    def list_runs(limit: int = Query(20, ge=1, le=500)):
        return [RunSummary.model_validate(r) for r in store.list_runs(limit=limit)]

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        return RunResponse.model_validate(_run_or_404(run_id))

    @app.get("/runs/{run_id}/jobs/{job_name}", response_model=JobResponse)
    def get_job(run_id: str, job_name: str):
        """Get job details including logs."""
        run = _run_or_404(run_id)
        job: JobRecord | None = store.get_job(run.id, job_name)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return JobResponse.model_validate(job)

    return app


def app_from_env() -> FastAPI:
    """`uvicorn --factory relayci.api:app_from_env` entry point."""
    from .settings import Settings

    return create_app(RunStore(Settings.from_env().db_url))
