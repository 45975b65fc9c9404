# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple

from .errors import CyclicDependencyError, DuplicateJobError, UnknownJobReferenceError
from .model import Job


@dataclass(frozen=True)
class DependencyGraph:
    """
    Validated job graph.

    Both sides of every edge are indexed so the scheduler can answer
    "who waits on this job" in O(1) when a result arrives.
    Built once per pipeline, never mutated during a run.
    """
    jobs: Mapping[str, Job]
    dependencies: Mapping[str, FrozenSet[str]]   # job -> jobs it needs
    dependents: Mapping[str, FrozenSet[str]]     # job -> jobs that need it
    indegree: Mapping[str, int]
    order: Tuple[str, ...]                       # declaration-stable topological order
    levels: Tuple[Tuple[str, ...], ...]

    def __contains__(self, name: object) -> bool:
        return name in self.jobs

    def __len__(self) -> int:
        return len(self.jobs)

    def roots(self) -> List[str]:
        return [n for n in self.order if self.indegree[n] == 0]

    def transitive_dependents(self, name: str) -> List[str]:
        """Every job downstream of `name`, in topological order."""
        seen: Set[str] = set()
        q = deque(self.dependents[name])
        while q:
            node = q.popleft()
            if node in seen:
                continue
            seen.add(node)
            q.extend(self.dependents[node])
        return [n for n in self.order if n in seen]

    def transitive_dependencies(self, name: str) -> List[str]:
        seen: Set[str] = set()
        q = deque(self.dependencies[name])
        while q:
            node = q.popleft()
            if node in seen:
                continue
            seen.add(node)
            q.extend(self.dependencies[node])
        return [n for n in self.order if n in seen]


def build_graph(jobs: Iterable[Job]) -> DependencyGraph:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must run BEFORE this job)

    Raises DuplicateJobError, UnknownJobReferenceError or CyclicDependencyError.
    """
    jobs = list(jobs)
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DuplicateJobError(f"Duplicate job names found: {dupes}", details={"duplicates": dupes})

    position = {n: i for i, n in enumerate(names)}
    deps: Dict[str, Set[str]] = {n: set() for n in names}
    adj: Dict[str, Set[str]] = {n: set() for n in names}

    for job in jobs:
        for need in job.needs or []:
            if need not in position:
                raise UnknownJobReferenceError(job.name, need, names)
            # Edge need -> job.name (need must run before job)
            deps[job.name].add(need)
            adj[need].add(job.name)

    indeg = {n: len(deps[n]) for n in names}
    levels = _topo_levels(adj, indeg, position)
    if sum(len(level) for level in levels) != len(names):
        placed = {n for level in levels for n in level}
        raise CyclicDependencyError(_find_cycle(deps, [n for n in names if n not in placed]))

    order = tuple(n for level in levels for n in level)
    return DependencyGraph(
        jobs={j.name: j for j in jobs},
        dependencies={n: frozenset(deps[n]) for n in names},
        dependents={n: frozenset(adj[n]) for n in names},
        indegree=indeg,
        order=order,
        levels=tuple(tuple(level) for level in levels),
    )


def _topo_levels(
    adj: Mapping[str, Set[str]],
    indeg: Mapping[str, int],
    position: Mapping[str, int],
) -> List[List[str]]:
    """
    Kahn's algorithm grouped into stages. Each stage can run in parallel;
    ties break on declaration order so the same pipeline always plans the same.
    Jobs stuck on a cycle never reach a stage.
    """
    remaining = dict(indeg)  # copy (we mutate it)
    q = deque(sorted((n for n, d in remaining.items() if d == 0), key=position.__getitem__))
    levels: List[List[str]] = []

    while q:
        level: List[str] = []
        for _ in range(len(q)):
            node = q.popleft()
            level.append(node)
        nxt: List[str] = []
        for node in level:
            for child in adj.get(node, ()):
                remaining[child] -= 1
                if remaining[child] == 0:
                    nxt.append(child)
        q.extend(sorted(nxt, key=position.__getitem__))
        levels.append(level)

    return levels


def _find_cycle(deps: Mapping[str, Set[str]], stuck: List[str]) -> List[str]:
    """Walk `needs` edges from a stuck job until a node repeats."""
    stuck_set = set(stuck)
    start = stuck[0]
    path: List[str] = []
    index: Dict[str, int] = {}
    node: Optional[str] = start
    while node is not None and node not in index:
        index[node] = len(path)
        path.append(node)
        # every stuck job has at least one stuck dependency
        node = next((d for d in sorted(deps[node]) if d in stuck_set), None)
    if node is None:
        return path
    cycle = path[index[node]:] + [node]
    cycle.reverse()
    return cycle


def format_plan(graph: DependencyGraph) -> List[str]:
    lines = []
    for idx, level in enumerate(graph.levels, start=1):
        lines.append(f"Stage {idx}: {', '.join(level)}")
    return lines
