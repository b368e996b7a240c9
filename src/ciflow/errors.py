# errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence


class ConfigError(ValueError):
    """
    Pipeline configuration error.

    Raised while loading or validating a pipeline, always before any job runs.
    """


class DuplicateJobError(ConfigError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Duplicate job name: {name}")


class UnknownDependencyError(ConfigError):
    def __init__(self, job: str, missing: str, known: Sequence[str] = ()):
        self.job = job
        self.missing = missing
        msg = f"Job '{job}' needs missing job '{missing}'"
        if known:
            msg += f". Known jobs: {sorted(known)}"
        super().__init__(msg)


class CyclicDependencyError(ConfigError):
    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Job graph has a cycle. Stuck jobs: {self.cycle}")


class MatrixError(ConfigError):
    pass


class ConditionSyntaxError(ConfigError):
    def __init__(self, expr: str, reason: str):
        self.expr = expr
        super().__init__(f"Cannot parse condition {expr!r}: {reason}")


class WorkflowLoadError(ConfigError):
    pass


@dataclass
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int
    stderr: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"
