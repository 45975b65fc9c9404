# src/relayci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, List, Optional

from .model import Job, Pipeline, Step, Trigger


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: str | None = None,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    retries: int = 0,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        id=id,
        cwd=cwd,
        env=dict(env or {}),
        continue_on_error=continue_on_error,
        retries=retries,
        timeout=timeout,
    )


def uses(name: str, action: str, /, *, id: str | None = None, continue_on_error: bool = False, **inputs) -> Step:
    """
    Create an action step. Keyword arguments become the action inputs;
    underscores turn into dashes (`include_git=` -> `include-git`).
    """
    return Step(
        name=name,
        uses=action,
        id=id,
        with_={k.replace("_", "-"): str(v) for k, v in inputs.items()},
        continue_on_error=continue_on_error,
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    condition: Optional[str] = None,
    outputs: Optional[Dict[str, str]] = None,
    inputs: Optional[Dict[str, str]] = None,
    env: Optional[Dict[str, str]] = None,
    display_name: Optional[str] = None,
    continue_on_error: bool = False,
    container: Optional[str] = None,
    artifacts: Optional[Dict[str, str]] = None,
    downloads: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        display_name=display_name,
        condition=condition,
        outputs=dict(outputs or {}),
        inputs=dict(inputs or {}),
        env={k: str(v) for k, v in (env or {}).items()},
        continue_on_error=continue_on_error,
        container=container,
        artifacts=dict(artifacts or {}),
        downloads=dict(downloads or {}),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._inputs: dict[str, str] = {}
        self._outputs: dict[str, str] = {}
        self._artifacts: dict[str, str] = {}
        self._downloads: dict[str, str] = {}
        self._condition: Optional[str] = None
        self._container: Optional[str] = None
        self._continue_on_error = False

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def use_action(self, name: str, action: str, /, **inputs):
        self._steps.append(uses(name, action, **inputs))
        return self

    def when(self, condition: str):
        self._condition = condition
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_inputs(self, **refs: str):
        """ENV_NAME="<job>.<output_key>" pairs."""
        self._inputs.update(refs)
        return self

    def with_outputs(self, **exprs: str):
        self._outputs.update(exprs)
        return self

    def in_container(self, image: str):
        self._container = image
        return self

    def upload(self, name: str, path: str):
        self._artifacts[name] = path
        return self

    def download(self, name: str, path: str = "."):
        self._downloads[name] = path
        return self

    def allow_failure(self, enabled: bool = True):
        self._continue_on_error = enabled
        return self

    def build(self) -> Job:
        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            condition=self._condition,
            outputs=dict(self._outputs),
            inputs=dict(self._inputs),
            env=dict(self._env),
            continue_on_error=self._continue_on_error,
            container=self._container,
            artifacts=dict(self._artifacts),
            downloads=dict(self._downloads),
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helpers
# ---------------------------------------------------------------------

def wf(*jobs: Job) -> List[Job]:
    """
    Workflow definition helper.

        from relayci import wf, job, sh

        def workflow():
            return wf(
                job("test", sh("Run tests", "pytest -q")),
                job("build", sh("Build", "make"), needs=["test"]),
            )

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    return list(jobs)


def on(event: str, *, branches=(), branches_ignore=(), paths=(), paths_ignore=()) -> Trigger:
    return Trigger(
        event=event,
        branches=tuple(branches),
        branches_ignore=tuple(branches_ignore),
        paths=tuple(paths),
        paths_ignore=tuple(paths_ignore),
    )


def pipeline(
    name: str,
    *jobs: Job,
    triggers: tuple[Trigger, ...] = (),
    env: Optional[Dict[str, str]] = None,
) -> Pipeline:
    return Pipeline(name=name, jobs=tuple(jobs), triggers=tuple(triggers), env=dict(env or {}))
