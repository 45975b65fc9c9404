# loader.py
from __future__ import annotations

import logging
import runpy
from pathlib import Path
from typing import Any, List

import yaml
from pydantic import ValidationError

from .errors import PipelineDefinitionError, RelayError
from .model import Job, Pipeline
from .schema import PipelineSpec, check_expressions

logger = logging.getLogger(__name__)

YAML_SUFFIXES = (".yml", ".yaml")


def load_pipeline(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a YAML document or a Python workflow file.

    Every problem with the definition (missing file, bad YAML, schema
    violations, malformed expressions) surfaces as PipelineDefinitionError.
    """
    p = Path(path).expanduser()
    if not p.exists() and not p.suffix:
        for suffix in YAML_SUFFIXES + (".py",):
            if p.with_suffix(suffix).exists():
                p = p.with_suffix(suffix)
                break
    if not p.exists():
        raise PipelineDefinitionError(
            f"Pipeline file not found: {p}",
            hint="Pass the path of a .yml workflow or a *_workflow.py file.",
        )

    if p.suffix in YAML_SUFFIXES:
        return load_yaml(p.read_text(encoding="utf-8"), source=str(p), default_name=p.stem)
    if p.suffix == ".py":
        return load_python(p)
    raise PipelineDefinitionError(f"Unsupported pipeline file type: {p.name}", details={"suffix": p.suffix})


def load_yaml(text: str, *, source: str = "<string>", default_name: str = "pipeline") -> Pipeline:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise PipelineDefinitionError(f"Invalid YAML in {source}", details={"error": str(e)}) from e
    if not isinstance(data, dict):
        raise PipelineDefinitionError(f"{source} must contain a mapping at the top level")

    try:
        spec = PipelineSpec.model_validate(data)
    except ValidationError as e:
        raise PipelineDefinitionError(
            f"Invalid pipeline definition in {source}",
            details={_loc(err["loc"]): err["msg"] for err in e.errors()},
        ) from e

    logger.debug("loaded %d job(s) from %s", len(spec.jobs), source)
    return spec.to_pipeline(default_name=default_name, source=source)


def _loc(loc: tuple) -> str:
    return ".".join(str(part) for part in loc) or "<root>"


def load_python(path: Path) -> Pipeline:
    """
    Load a Python workflow file.

    The file must define one of:
      - pipeline() -> Pipeline
      - PIPELINE = Pipeline(...)
      - workflow() -> List[Job]
      - JOBS = [Job, ...]
    """
    wf_path = path.expanduser().resolve()
    module_name = f"relayci_workflow_{wf_path.stem}"
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
    except RelayError:
        raise
    except Exception as e:
        raise PipelineDefinitionError(
            f"Failed to execute workflow file {wf_path.name}",
            details={"error": f"{type(e).__name__}: {e}"},
        ) from e

    result: Any = None
    if callable(globals_dict.get("pipeline")) and not _is_dsl_helper(globals_dict["pipeline"]):
        result = globals_dict["pipeline"]()
    elif "PIPELINE" in globals_dict:
        result = globals_dict["PIPELINE"]
    elif callable(globals_dict.get("workflow")):
        try:
            result = globals_dict["workflow"]()
        except TypeError as e:
            raise PipelineDefinitionError(
                "workflow() could not be called without arguments",
                details={"error": str(e)},
                hint="Use the `wf` helper: `def workflow(): return wf(job(...), job(...))`",
            ) from e
    elif "JOBS" in globals_dict:
        result = globals_dict["JOBS"]

    if isinstance(result, Pipeline):
        pipeline = result
        if pipeline.source is None:
            pipeline = Pipeline(
                name=pipeline.name,
                jobs=pipeline.jobs,
                triggers=pipeline.triggers,
                env=pipeline.env,
                source=str(wf_path),
            )
    elif isinstance(result, list) and result and all(isinstance(j, Job) for j in result):
        jobs: List[Job] = result
        pipeline = Pipeline(name=wf_path.stem, jobs=tuple(jobs), source=str(wf_path))
    else:
        raise PipelineDefinitionError(
            f"{wf_path.name} does not define a pipeline",
            hint="Define pipeline() -> Pipeline, PIPELINE, workflow() -> List[Job] or JOBS = [Job, ...].",
        )

    check_expressions(pipeline)
    return pipeline


def _is_dsl_helper(fn: Any) -> bool:
    # `from relayci import pipeline` must not be mistaken for a user definition
    return getattr(fn, "__module__", "") == "relayci.dsl"
