# dag.py
from __future__ import annotations

import heapq
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .errors import CycleDetectedError, MalformedSpecError, UnknownDependencyError
from .model import JobSpec, WorkflowSpec


@dataclass(frozen=True)
class RunGraph:
    """
    DAG derived from a WorkflowSpec.

    Nodes are jobs, edges are the `needs` relation (dependency -> dependent).
    Invariants: acyclic, every dependency exists. `order` is a topological
    order with ties broken by declaration order.
    """
    jobs: Mapping[str, JobSpec]
    order: Tuple[str, ...]
    deps: Mapping[str, Tuple[str, ...]]
    dependents_of: Mapping[str, Tuple[str, ...]]
    declared: Tuple[str, ...]

    def job(self, job_id: str) -> JobSpec:
        return self.jobs[job_id]

    def dependencies(self, job_id: str) -> Tuple[str, ...]:
        return self.deps[job_id]

    def dependents(self, job_id: str) -> Tuple[str, ...]:
        return self.dependents_of[job_id]

    def index(self, job_id: str) -> int:
        """Declaration position of a job (used for deterministic tie-breaking)."""
        return self.declared.index(job_id)

    def descendants(self, job_id: str) -> List[str]:
        seen: Set[str] = set()
        stack = list(self.dependents(job_id))
        while stack:
            nxt = stack.pop()
            if nxt in seen:
                continue
            seen.add(nxt)
            stack.extend(self.dependents(nxt))
        return [j for j in self.order if j in seen]

    def levels(self) -> List[List[str]]:
        """
        Convert DAG into topological "levels" (stages).
        Each stage can run in parallel.
        """
        indeg = {n: len(self.deps[n]) for n in self.declared}
        current = [n for n in self.declared if indeg[n] == 0]
        levels: List[List[str]] = []
        while current:
            levels.append(current)
            nxt: List[str] = []
            for node in current:
                for child in self.dependents_of[node]:
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        nxt.append(child)
            current = sorted(nxt, key=self.declared.index)
        return levels

    def subgraph(self, selected: Iterable[str]) -> RunGraph:
        """Selected jobs (by id or declared id) plus everything they transitively need."""
        wanted: Set[str] = set()
        stack: List[str] = []
        for name in selected:
            matches = [j for j in self.declared if j == name or self.jobs[j].declared_id == name]
            if not matches:
                raise UnknownDependencyError("<selection>", name, self.declared)
            stack.extend(matches)
        while stack:
            node = stack.pop()
            if node in wanted:
                continue
            wanted.add(node)
            stack.extend(self.deps[node])

        keep = [j for j in self.declared if j in wanted]
        return RunGraph(
            jobs={j: self.jobs[j] for j in keep},
            order=tuple(j for j in self.order if j in wanted),
            deps={j: self.deps[j] for j in keep},
            dependents_of={j: tuple(d for d in self.dependents_of[j] if d in wanted) for j in keep},
            declared=tuple(keep),
        )


# ---------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------

def _expand_needs(job: JobSpec, by_id: Dict[str, JobSpec], by_declared: Dict[str, List[str]]) -> Tuple[str, ...]:
    out: List[str] = []
    for need in job.needs:
        if need in by_declared:
            targets = by_declared[need]
        elif need in by_id:
            targets = [need]
        else:
            raise UnknownDependencyError(job.id, need, list(by_declared))
        for t in targets:
            if t not in out:
                out.append(t)
    return tuple(out)


def _find_cycle(remaining: Sequence[str], deps: Mapping[str, Tuple[str, ...]]) -> List[str]:
    """
    Every node left over by Kahn's algorithm has at least one leftover
    dependency, so following dependencies from any of them must loop.
    """
    left = set(remaining)
    node = remaining[0]
    path: List[str] = []
    pos: Dict[str, int] = {}
    while node not in pos:
        pos[node] = len(path)
        path.append(node)
        node = next(d for d in deps[node] if d in left)
    cycle = path[pos[node]:] + [node]
    # report in execution direction: dependency -> dependent
    return list(reversed(cycle))


def resolve(workflow: WorkflowSpec, only: Optional[Iterable[str]] = None) -> RunGraph:
    """
    Build the RunGraph for a workflow.

    Raises:
        MalformedSpecError: duplicate job ids
        UnknownDependencyError: a `needs` entry names no job
        CycleDetectedError: the `needs` graph has a cycle
    """
    jobs = list(workflow.jobs)
    names = [j.id for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise MalformedSpecError(f"Duplicate job names found: {dupes}", where="jobs")

    by_id = {j.id: j for j in jobs}
    by_declared: Dict[str, List[str]] = {}
    for j in jobs:
        by_declared.setdefault(j.declared_id, []).append(j.id)

    deps = {j.id: _expand_needs(j, by_id, by_declared) for j in jobs}
    dependents: Dict[str, List[str]] = {n: [] for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}
    for j in jobs:
        for d in deps[j.id]:
            dependents[d].append(j.id)
            indeg[j.id] += 1

    # Kahn's algorithm; the heap keeps ready jobs in declaration order
    position = {n: i for i, n in enumerate(names)}
    ready = [(position[n], n) for n in names if indeg[n] == 0]
    heapq.heapify(ready)
    order: List[str] = []
    work = dict(indeg)
    while ready:
        _, node = heapq.heappop(ready)
        order.append(node)
        for child in dependents[node]:
            work[child] -= 1
            if work[child] == 0:
                heapq.heappush(ready, (position[child], child))

    if len(order) != len(names):
        remaining = [n for n in names if n not in set(order)]
        raise CycleDetectedError(_find_cycle(remaining, deps))

    graph = RunGraph(
        jobs=by_id,
        order=tuple(order),
        deps=deps,
        dependents_of={n: tuple(v) for n, v in dependents.items()},
        declared=tuple(names),
    )
    if only:
        return graph.subgraph(only)
    return graph
