from .dsl import job, sh, uses, wf, on, pipeline, JobBuilder, build
from .loader import load_pipeline
from .model import Job, Step, Pipeline, JobStatus, JobResult, RunContext
from .scheduler import Scheduler, RunReport, run_pipeline

__all__ = [
    "job", "sh", "uses", "wf", "on", "pipeline", "JobBuilder", "build",
    "load_pipeline", "Job", "Step", "Pipeline", "JobStatus", "JobResult", "RunContext",
    "Scheduler", "RunReport", "run_pipeline",
]
