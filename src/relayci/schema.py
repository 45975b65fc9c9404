# schema.py
"""
Pydantic models for YAML pipeline documents.

The accepted shape is the GitHub Actions workflow shape (`on`, `jobs`,
`runs-on`, `needs`, `if`, `steps` with `run`/`uses`/`with`), plus a few
relayci keys: `container` selects the Docker environment, `inputs` maps
environment variables to upstream outputs, `artifacts`/`downloads`
declare job-level artifact transfer and `retries` repeats a failing step.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .conditions import template_expressions, validate
from .errors import ConditionSyntaxError
from .model import Job, Pipeline, Step, Trigger

Scalar = Union[str, int, float, bool]


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _text_map(values: Optional[Dict[str, Any]]) -> Dict[str, str]:
    return {str(k): _text(v) for k, v in (values or {}).items()}


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


class _Spec(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class StepSpec(_Spec):
    name: Optional[str] = None
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Scalar] = Field(default_factory=dict, alias="with")
    env: Dict[str, Scalar] = Field(default_factory=dict)
    working_directory: Optional[str] = Field(default=None, alias="working-directory")
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes")
    retries: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _one_body(self) -> "StepSpec":
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of `run` or `uses`")
        return self

    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.uses:
            return self.uses
        first = (self.run or "").strip().splitlines()
        return first[0] if first else "run"

    def to_step(self, default_timeout: Optional[float] = None) -> Step:
        timeout = self.timeout_minutes if self.timeout_minutes is not None else default_timeout
        return Step(
            name=self.display_name(),
            run=self.run,
            uses=self.uses,
            id=self.id,
            with_=_text_map(self.with_),
            env=_text_map(self.env),
            cwd=self.working_directory,
            continue_on_error=self.continue_on_error,
            retries=self.retries,
            timeout=timeout * 60 if timeout is not None else None,
        )


class ContainerSpec(_Spec):
    image: str


class JobSpec(_Spec):
    name: Optional[str] = None
    runs_on: Optional[Union[str, List[str]]] = Field(default=None, alias="runs-on")
    needs: List[str] = Field(default_factory=list)
    if_: Optional[Union[str, bool]] = Field(default=None, alias="if")
    container: Optional[Union[str, ContainerSpec]] = None
    env: Dict[str, Scalar] = Field(default_factory=dict)
    outputs: Dict[str, str] = Field(default_factory=dict)
    inputs: Dict[str, str] = Field(default_factory=dict)
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes")
    artifacts: Dict[str, str] = Field(default_factory=dict)
    downloads: Dict[str, str] = Field(default_factory=dict)
    steps: List[StepSpec]

    @field_validator("needs", mode="before")
    @classmethod
    def _needs_list(cls, v: Any) -> List[str]:
        return _as_list(v)

    @field_validator("steps")
    @classmethod
    def _has_steps(cls, v: List[StepSpec]) -> List[StepSpec]:
        if not v:
            raise ValueError("a job needs at least one step")
        return v

    def condition(self) -> Optional[str]:
        if self.if_ is None:
            return None
        return _text(self.if_)

    def image(self) -> Optional[str]:
        if isinstance(self.container, ContainerSpec):
            return self.container.image
        return self.container

    def to_job(self, job_id: str) -> Job:
        return Job(
            name=job_id,
            display_name=self.name,
            steps=[s.to_step(self.timeout_minutes) for s in self.steps],
            needs=list(self.needs),
            condition=self.condition(),
            outputs=dict(self.outputs),
            inputs=dict(self.inputs),
            env=_text_map(self.env),
            continue_on_error=self.continue_on_error,
            container=self.image(),
            artifacts=dict(self.artifacts),
            downloads=dict(self.downloads),
        )


class TriggerSpec(_Spec):
    branches: List[str] = Field(default_factory=list)
    branches_ignore: List[str] = Field(default_factory=list, alias="branches-ignore")
    paths: List[str] = Field(default_factory=list)
    paths_ignore: List[str] = Field(default_factory=list, alias="paths-ignore")
    # accepted for workflow_dispatch documents, not interpreted
    inputs: Dict[str, Any] = Field(default_factory=dict)
    types: List[str] = Field(default_factory=list)

    @field_validator("branches", "branches_ignore", "paths", "paths_ignore", "types", mode="before")
    @classmethod
    def _lists(cls, v: Any) -> List[str]:
        return _as_list(v)


class PipelineSpec(_Spec):
    name: Optional[str] = None
    on: Dict[str, Optional[TriggerSpec]] = Field(default_factory=dict)
    env: Dict[str, Scalar] = Field(default_factory=dict)
    jobs: Dict[str, JobSpec]

    @model_validator(mode="before")
    @classmethod
    def _yaml_on_key(cls, data: Any) -> Any:
        # YAML 1.1 reads a bare `on:` key as boolean True
        if isinstance(data, dict) and True in data:
            data = dict(data)
            data.setdefault("on", data.pop(True))
        return data

    @field_validator("on", mode="before")
    @classmethod
    def _on_forms(cls, v: Any) -> Any:
        # `on: push`, `on: [push, pull_request]` or the mapping form
        if v is None:
            return {}
        if isinstance(v, str):
            return {v: None}
        if isinstance(v, list):
            return {str(e): None for e in v}
        return v

    @field_validator("jobs")
    @classmethod
    def _has_jobs(cls, v: Dict[str, JobSpec]) -> Dict[str, JobSpec]:
        if not v:
            raise ValueError("a pipeline needs at least one job")
        return v

    def triggers(self) -> tuple[Trigger, ...]:
        out = []
        for event, spec in self.on.items():
            spec = spec or TriggerSpec()
            out.append(
                Trigger(
                    event=event,
                    branches=tuple(spec.branches),
                    branches_ignore=tuple(spec.branches_ignore),
                    paths=tuple(spec.paths),
                    paths_ignore=tuple(spec.paths_ignore),
                )
            )
        return tuple(out)

    def to_pipeline(self, *, default_name: str = "pipeline", source: Optional[str] = None) -> Pipeline:
        jobs = tuple(spec.to_job(job_id) for job_id, spec in self.jobs.items())
        pipeline = Pipeline(
            name=self.name or default_name,
            jobs=jobs,
            triggers=self.triggers(),
            env=_text_map(self.env),
            source=source,
        )
        check_expressions(pipeline)
        return pipeline


def check_expressions(pipeline: Pipeline) -> None:
    """Parse every `if:` and `${{ }}` placeholder so syntax errors fail before a run."""
    for job in pipeline.jobs:
        where = f"jobs.{job.name}"
        if job.condition:
            _check(job.condition, f"{where}.if")
        for key, value in list(job.env.items()) + list(job.outputs.items()):
            _check_template(value, f"{where}.{key}")
        for step in job.steps:
            for key, value in list(step.env.items()) + list(step.with_.items()):
                _check_template(value, f"{where}.steps[{step.key}].{key}")
            if step.run:
                _check_template(step.run, f"{where}.steps[{step.key}].run")
    for key, value in pipeline.env.items():
        _check_template(value, f"env.{key}")


def _check(expression: str, where: str) -> None:
    try:
        validate(expression)
    except ConditionSyntaxError as e:
        raise ConditionSyntaxError(f"{where}: {e.message}", details=e.details) from None


def _check_template(value: str, where: str) -> None:
    for expr in template_expressions(value):
        _check(expr, where)
