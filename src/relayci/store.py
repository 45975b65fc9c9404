# store.py
from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, selectinload, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import RelayError
from .model import JobResult, JobStatus, Run, utcnow
from .scheduler import RunListener, RunReport


class Base(DeclarativeBase):
    pass


class RunRecord(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    pipeline: Mapped[str] = mapped_column(sa.Text, nullable=False)
    source: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    event: Mapped[str] = mapped_column(sa.Text, nullable=False, default="push")
    ref: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    branch: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    sha: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    actor: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    repository: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)  # running|succeeded|failed|cancelled
    exit_code: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=utcnow)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    jobs: Mapped[List["JobRecord"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="JobRecord.position",
    )


class JobRecord(Base):
    __tablename__ = "jobs"
    __table_args__ = (sa.UniqueConstraint("run_id", "job_name"),)

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.String(64), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    job_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    exit_code: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    failed_step: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    logs: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    outputs: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    artifacts: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    run: Mapped[RunRecord] = relationship(back_populates="jobs")


def format_logs(result: JobResult) -> str:
    chunks = []
    for step in result.steps:
        if step.outcome is JobStatus.SKIPPED:
            chunks.append(f"--- {step.name} (skipped)\n")
            continue
        chunks.append(f"--- {step.name} (exit={step.exit_code}, attempts={step.attempts})\n")
        chunks.append(step.stdout)
        if step.stderr:
            chunks.append(step.stderr)
    if result.error and not result.steps:
        chunks.append(result.error + "\n")
    return "".join(chunks)


class RunStore:
    """Persistent run history behind `relayci status`, `relayci runs` and the HTTP API."""

    def __init__(self, database_url: str):
        if database_url.startswith("sqlite:///") and database_url != "sqlite:///:memory:":
            Path(database_url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
        engine_kwargs = {}
        if database_url.startswith("sqlite"):
            # records are written from the dispatch thread and read from API workers
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool
        self.engine = sa.create_engine(database_url, **engine_kwargs)
        self.Session = sessionmaker(self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    # ---- writes ----

    def start_run(self, run: Run) -> None:
        ctx = run.context
        with self.Session.begin() as s:
            s.add(
                RunRecord(
                    id=run.run_id,
                    pipeline=run.pipeline.name,
                    source=run.pipeline.source,
                    event=ctx.event,
                    ref=ctx.ref,
                    branch=ctx.branch,
                    sha=ctx.sha,
                    actor=ctx.actor,
                    repository=ctx.repository,
                    status="running",
                    created_at=ctx.started_at,
                )
            )
            for position, job in enumerate(run.pipeline.jobs):
                s.add(JobRecord(run_id=run.run_id, job_name=job.name, position=position, status=JobStatus.PENDING.value))

    def record_job(self, run_id: str, result: JobResult) -> None:
        with self.Session.begin() as s:
            job = self._job(s, run_id, result.job)
            if job is None:
                job = JobRecord(run_id=run_id, job_name=result.job)
                s.add(job)
            job.status = result.status.value
            job.reason = result.reason
            job.exit_code = result.exit_code
            job.failed_step = result.failed_step
            job.error = result.error
            job.started_at = result.started_at
            job.finished_at = result.finished_at
            if result.status.terminal:
                job.outputs = dict(result.outputs)
                job.artifacts = list(result.artifacts)
                job.logs = format_logs(result) or None

    def finish_run(self, run_id: str, *, status: str, exit_code: int, finished_at: Optional[datetime] = None) -> None:
        with self.Session.begin() as s:
            run = s.get(RunRecord, run_id)
            if run is None:
                raise RelayError(f"Unknown run: {run_id}")
            run.status = status
            run.exit_code = exit_code
            run.finished_at = finished_at or utcnow()

    # ---- reads ----

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        """Look a run up by id or by a unique id prefix."""
        with self.Session() as s:
            q = sa.select(RunRecord).options(selectinload(RunRecord.jobs))
            run = s.scalars(q.where(RunRecord.id == run_id)).first()
            if run is not None:
                return run
            matches = s.scalars(q.where(RunRecord.id.startswith(run_id)).limit(2)).all()
            return matches[0] if len(matches) == 1 else None

    def get_job(self, run_id: str, job_name: str) -> Optional[JobRecord]:
        run = self.get_run(run_id)
        if run is None:
            return None
        return next((j for j in run.jobs if j.job_name == job_name), None)

    def list_runs(self, limit: int = 20) -> List[RunRecord]:
        with self.Session() as s:
            q = (
                sa.select(RunRecord)
                .options(selectinload(RunRecord.jobs))
                .order_by(RunRecord.created_at.desc())
                .limit(limit)
            )
            return list(s.scalars(q).all())

    def _job(self, s, run_id: str, job_name: str) -> Optional[JobRecord]:
        return s.scalars(
            sa.select(JobRecord).where(JobRecord.run_id == run_id, JobRecord.job_name == job_name)
        ).first()


def run_status(report: RunReport) -> str:
    if report.cancelled:
        return "cancelled"
    return "succeeded" if report.succeeded else "failed"


class StoreListener(RunListener):
    """Mirrors scheduler progress into a RunStore."""

    def __init__(self, store: RunStore):
        self.store = store

    def on_run_started(self, run: Run) -> None:
        self.store.start_run(run)

    def on_job_started(self, run: Run, job) -> None:
        started = run.result(job.name)
        if started is not None:
            self.store.record_job(run.run_id, started)

    def on_job_finished(self, run: Run, result: JobResult) -> None:
        self.store.record_job(run.run_id, result)

    def on_run_finished(self, run: Run, report: RunReport) -> None:
        self.store.finish_run(
            run.run_id,
            status=run_status(report),
            exit_code=int(report.exit_code),
            finished_at=run.finished_at,
        )
