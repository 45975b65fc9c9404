# triggers.py
from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Iterable, Optional, Sequence

from .model import Pipeline, Trigger

EVENTS = ("push", "pull_request", "workflow_dispatch")


@dataclass(frozen=True)
class TriggerDecision:
    triggered: bool
    reason: str

    def __bool__(self) -> bool:
        return self.triggered


def matches(value: str, patterns: Sequence[str]) -> bool:
    """
    Glob match with `!pattern` negation; the last matching pattern wins.
    """
    result = False
    for pattern in patterns:
        if pattern.startswith("!"):
            if fnmatchcase(value, pattern[1:]):
                result = False
        elif fnmatchcase(value, pattern):
            result = True
    return result


def _paths_match(changed: Iterable[str], patterns: Sequence[str]) -> bool:
    return any(matches(path, patterns) for path in changed)


def trigger_matches(
    trigger: Trigger,
    event: str,
    branch: str,
    changed_files: Optional[Sequence[str]] = None,
) -> TriggerDecision:
    if trigger.event != event:
        return TriggerDecision(False, f"event '{event}' does not match '{trigger.event}'")

    # manual runs ignore every filter
    if event == "workflow_dispatch":
        return TriggerDecision(True, "manual dispatch")

    if trigger.branches and not matches(branch, trigger.branches):
        return TriggerDecision(False, f"branch '{branch}' not in {list(trigger.branches)}")
    if trigger.branches_ignore and matches(branch, trigger.branches_ignore):
        return TriggerDecision(False, f"branch '{branch}' is ignored")

    # an unknown or empty change list cannot be filtered; path filters pass
    if changed_files:
        if trigger.paths and not _paths_match(changed_files, trigger.paths):
            return TriggerDecision(False, "no changed file matches `paths`")
        if trigger.paths_ignore and all(matches(p, trigger.paths_ignore) for p in changed_files):
            return TriggerDecision(False, "every changed file matches `paths-ignore`")

    return TriggerDecision(True, f"{event} on '{branch}'")


def evaluate(
    pipeline: Pipeline,
    event: str,
    branch: str,
    changed_files: Optional[Sequence[str]] = None,
) -> TriggerDecision:
    """Decide whether `pipeline` runs for an event; no triggers means always."""
    if not pipeline.triggers:
        return TriggerDecision(True, "pipeline declares no triggers")
    reasons = []
    for trigger in pipeline.triggers:
        decision = trigger_matches(trigger, event, branch, changed_files)
        if decision:
            return decision
        reasons.append(decision.reason)
    return TriggerDecision(False, "; ".join(reasons))


def is_triggered(
    pipeline: Pipeline,
    event: str,
    branch: str,
    changed_files: Optional[Sequence[str]] = None,
) -> bool:
    return evaluate(pipeline, event, branch, changed_files).triggered
