# dag.py
from __future__ import annotations

import logging
from collections import deque
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from .errors import CyclicDependencyError, DuplicateJobError, UnknownDependencyError
from .model import Job, Outcome

log = logging.getLogger(__name__)

_BLOCKING = (Outcome.FAILURE, Outcome.CANCELLED, Outcome.SKIPPED)


class JobGraph:
    """
    Job definitions plus their `needs` edges.

    Job names are resolved to integer indices (declaration order) once, in
    validate(); everything after that works on index-addressed lists.
    """

    def __init__(self, jobs: Iterable[Job] = ()):
        self._jobs: List[Job] = []
        self._index: Dict[str, int] = {}
        self._needs: List[List[int]] = []        # job -> jobs it needs
        self._dependents: List[List[int]] = []   # job -> jobs that need it
        self._order: Optional[List[int]] = None
        for job in jobs:
            self.add_job(job)

    def add_job(self, job: Job) -> None:
        if job.name in self._index:
            raise DuplicateJobError(job.name)
        self._index[job.name] = len(self._jobs)
        self._jobs.append(job)
        self._order = None

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> List[str]:
        """
        Resolve edges and check the graph is a DAG.

        Returns the topological order (ties broken by declaration order).
        Raises UnknownDependencyError / CyclicDependencyError.
        """
        n = len(self._jobs)
        needs: List[List[int]] = [[] for _ in range(n)]
        dependents: List[List[int]] = [[] for _ in range(n)]
        indeg = [0] * n

        for i, job in enumerate(self._jobs):
            for dep in job.needs:
                j = self._index.get(dep)
                if j is None:
                    raise UnknownDependencyError(job.name, dep, list(self._index))
                if j in needs[i]:
                    continue
                needs[i].append(j)
                dependents[j].append(i)
                indeg[i] += 1

        # Kahn
        q = deque(i for i in range(n) if indeg[i] == 0)
        order: List[int] = []
        while q:
            node = q.popleft()
            order.append(node)
            for child in dependents[node]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        if len(order) != n:
            stuck = [self._jobs[i].name for i in range(n) if indeg[i] > 0]
            raise CyclicDependencyError(stuck)

        self._needs = needs
        self._dependents = dependents
        self._order = order
        log.debug("validated job graph: %s", [self._jobs[i].name for i in order])
        return [self._jobs[i].name for i in order]

    def _ensure_valid(self) -> None:
        if self._order is None:
            self.validate()

    # ------------------------------------------------------------------
    # Index-level accessors (used by the scheduler)
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    @property
    def jobs(self) -> Sequence[Job]:
        return tuple(self._jobs)

    def job(self, name_or_index: str | int) -> Job:
        if isinstance(name_or_index, int):
            return self._jobs[name_or_index]
        return self._jobs[self._index[name_or_index]]

    def index_of(self, name: str) -> int:
        return self._index[name]

    def order(self) -> List[int]:
        self._ensure_valid()
        return list(self._order)

    def needs_of(self, i: int) -> List[int]:
        self._ensure_valid()
        return self._needs[i]

    def dependents_of(self, i: int) -> List[int]:
        self._ensure_valid()
        return self._dependents[i]

    # ------------------------------------------------------------------
    # Readiness queries
    # ------------------------------------------------------------------

    def dependency_state(self, i: int, outcomes: Sequence[Optional[Outcome]]) -> Optional[Outcome]:
        """
        SUCCESS when every dependency of job `i` succeeded, SKIPPED when one of
        them failed, was cancelled or was skipped, None while still waiting.
        `outcomes` is indexed like the graph.
        """
        self._ensure_valid()
        deps = [outcomes[d] for d in self._needs[i]]
        if any(o in _BLOCKING for o in deps):
            return Outcome.SKIPPED
        if all(o is Outcome.SUCCESS for o in deps):
            return Outcome.SUCCESS
        return None

    def _by_index(self, completed: Mapping[str, Outcome]) -> List[Optional[Outcome]]:
        return [completed.get(job.name) for job in self._jobs]

    def ready_jobs(self, completed: Mapping[str, Outcome]) -> Set[str]:
        """Jobs not in `completed` whose every dependency has Outcome success."""
        outcomes = self._by_index(completed)
        return {
            job.name
            for i, job in enumerate(self._jobs)
            if outcomes[i] is None and self.dependency_state(i, outcomes) is Outcome.SUCCESS
        }

    def blocked_jobs(self, completed: Mapping[str, Outcome]) -> Set[str]:
        """
        Jobs not in `completed` with a dependency that failed, was cancelled or
        was skipped. These never run; they go straight to skipped.
        """
        outcomes = self._by_index(completed)
        return {
            job.name
            for i, job in enumerate(self._jobs)
            if outcomes[i] is None and self.dependency_state(i, outcomes) is Outcome.SKIPPED
        }

    def topo_levels(self) -> List[List[str]]:
        """
        Convert the DAG into topological "levels" (stages).
        Each stage can run in parallel.
        """
        self._ensure_valid()
        level: Dict[int, int] = {}
        for i in self._order:
            level[i] = 1 + max((level[d] for d in self._needs[i]), default=-1)
        levels: List[List[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
        for i in self._order:
            levels[level[i]].append(self._jobs[i].name)
        return levels
