# src/ciflow/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .conditions import Condition, parse_condition
from .matrix import Matrix
from .model import Job, Step


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    secrets: Sequence[str] | Mapping[str, str] = (),
) -> Step:
    """
    Create a shell step.

    `secrets` lists secret names to expose under the same env var name, or
    maps env var name -> secret name.
    """
    return Step(name=name, run=cmd, cwd=cwd, env=dict(env or {}), secrets=_secrets(secrets))


def _secrets(secrets: Sequence[str] | Mapping[str, str]) -> Dict[str, str]:
    if isinstance(secrets, Mapping):
        return dict(secrets)
    return {s: s for s in secrets}


def uses(action: str, *, name: str | None = None) -> Step:
    """Placeholder for an external action; runs nothing locally."""
    return Step(name=name or action)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(axes: Mapping[str, Sequence[Any]] | None = None, *, exclude: Iterable[Mapping[str, Any]] = (), **kw: Sequence[Any]) -> Matrix:
    """
    Example:
        matrix(os=["ubuntu-latest", "macos-latest"], rust=["1.65", "stable"])

    Keyword axes keep their written order. Use the mapping form for axis
    names that are not identifiers.
    """
    merged: Dict[str, Sequence[Any]] = dict(axes or {})
    merged.update(kw)
    return Matrix(merged, exclude=list(exclude))


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def _condition(if_: Condition | str | None) -> Optional[Condition]:
    if if_ is None or isinstance(if_, Condition):
        return if_
    return parse_condition(if_)


def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[Sequence[str]] = None,
    if_: Condition | str | None = None,
    matrix: Optional[Matrix] = None,
    fail_fast: bool = True,
    max_parallel: Optional[int] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        condition=_condition(if_),
        matrix=matrix,
        fail_fast=fail_fast,
        max_parallel=max_parallel,
        env={k: str(v) for k, v in (env or {}).items()},
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
        self._condition: Optional[Condition] = None
        self._matrix: Optional[Matrix] = None
        self._fail_fast: bool = True
        self._max_parallel: Optional[int] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, *, secrets: Sequence[str] = ()):
        self._steps.append(sh(name, run, cwd=cwd, secrets=secrets))
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def only_if(self, condition: Condition | str):
        self._condition = _condition(condition)
        return self

    def with_matrix(self, m: Matrix | None = None, **axes: Sequence[Any]):
        self._matrix = m if m is not None else Matrix(axes)
        return self

    def strategy(self, *, fail_fast: bool = True, max_parallel: Optional[int] = None):
        self._fail_fast = fail_fast
        self._max_parallel = max_parallel
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return Job(
            name=self.name,
            steps=tuple(self._steps),
            needs=tuple(self._needs),
            condition=self._condition,
            matrix=self._matrix,
            fail_fast=self._fail_fast,
            max_parallel=self._max_parallel,
            env=dict(self._env),
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Job) -> List[Job]:
    """
    Workflow definition helper.

    Users can write:
        from ciflow import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    return list(jobs)
