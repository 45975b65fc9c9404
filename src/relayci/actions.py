# actions.py
from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Mapping

from .artifacts import ArtifactStore
from .environments import Environment, Invocation
from .errors import UnknownActionError
from .model import Job, RunContext, Step


@dataclass(frozen=True)
class ActionContext:
    """Everything a reusable action may touch while it runs."""
    job: Job
    step: Step
    run: RunContext
    inputs: Mapping[str, str]
    env: Mapping[str, str]
    environment: Environment
    artifacts: ArtifactStore

    @property
    def workspace(self) -> Path:
        return self.environment.require_workspace()

    def workspace_path(self, rel: str) -> Path:
        return self.environment.resolve_cwd(rel)


Action = Callable[[ActionContext], Invocation]

_REGISTRY: Dict[str, Action] = {}


def normalize(ref: str) -> str:
    """`actions/checkout@v4` -> `checkout`."""
    name = ref.strip().split("@", 1)[0].rstrip("/")
    return name.rsplit("/", 1)[-1]


def register_action(name: str) -> Callable[[Action], Action]:
    def deco(fn: Action) -> Action:
        _REGISTRY[normalize(name)] = fn
        return fn
    return deco


def get_action(ref: str) -> Action:
    try:
        return _REGISTRY[normalize(ref)]
    except KeyError:
        raise UnknownActionError(
            f"Unknown action '{ref}'",
            details={"known": sorted(_REGISTRY)},
            hint="Use a `run:` step, or register the action with relayci.actions.register_action().",
        ) from None


def known_actions() -> list[str]:
    return sorted(_REGISTRY)


# ---------------------------------------------------------------------
# Built-ins
# ---------------------------------------------------------------------

CHECKOUT_IGNORE = (".relayci", "__pycache__", "*.pyc", ".DS_Store")


@register_action("checkout")
def checkout(ctx: ActionContext) -> Invocation:
    """Copy the source tree the run was started from into the workspace."""
    src = Path(ctx.run.source_root).resolve()
    dest = ctx.workspace_path(ctx.inputs.get("path", "."))
    ignore = list(CHECKOUT_IGNORE)
    if str(ctx.inputs.get("include-git", "true")).lower() == "false":
        ignore.append(".git")
    shutil.copytree(src, dest, ignore=shutil.ignore_patterns(*ignore), dirs_exist_ok=True, symlinks=True)
    return Invocation(exit_code=0, stdout=f"Checked out {src} into {dest}\n")


@register_action("upload-artifact")
def upload_artifact(ctx: ActionContext) -> Invocation:
    name = ctx.inputs.get("name") or "artifact"
    path = ctx.workspace_path(ctx.inputs.get("path", "."))
    handle = ctx.artifacts.put_path(ctx.run.run_id, name, path, producer=ctx.job.name)
    return Invocation(
        exit_code=0,
        stdout=f"Uploaded {path} as artifact '{name}'\n",
        outputs={"artifact-handle": str(handle)},
    )


@register_action("download-artifact")
def download_artifact(ctx: ActionContext) -> Invocation:
    name = ctx.inputs.get("name") or "artifact"
    dest = ctx.workspace_path(ctx.inputs.get("path", "."))
    handle = ctx.artifacts.find(ctx.run.run_id, name)
    ctx.artifacts.extract(handle, dest)
    return Invocation(exit_code=0, stdout=f"Downloaded artifact '{name}' into {dest}\n")
