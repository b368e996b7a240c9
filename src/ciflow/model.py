# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, Mapping, Optional, Tuple

if TYPE_CHECKING:
    from .conditions import Condition
    from .matrix import Matrix


BRANCH_PREFIX = "refs/heads/"
TAG_PREFIX = "refs/tags/"


class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    TAG_PUSH = "tag_push"


class RefType(str, Enum):
    BRANCH = "branch"
    TAG = "tag"


class Outcome(str, Enum):
    """Status of a job or job instance within one run."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (Outcome.PENDING, Outcome.RUNNING)


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class Event:
    """
    The thing that triggered a pipeline run.

    `ref` is a full git ref (refs/heads/master, refs/tags/v1.0.0) or a bare
    name. For pull requests `base_ref` is the target branch; when it is not
    given, `ref` is taken as the target.
    """
    kind: EventKind
    ref: str
    base_ref: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.kind, EventKind):
            object.__setattr__(self, "kind", EventKind(self.kind))


def short_ref(ref: str) -> Tuple[RefType, str]:
    """Split a ref into (type, short name). Bare names count as branches."""
    if ref.startswith(TAG_PREFIX):
        return RefType.TAG, ref[len(TAG_PREFIX):]
    if ref.startswith(BRANCH_PREFIX):
        return RefType.BRANCH, ref[len(BRANCH_PREFIX):]
    return RefType.BRANCH, ref


@dataclass(frozen=True)
class ActivationContext:
    """An activated event plus its normalised ref."""
    event: Event
    ref_type: RefType
    ref_name: str

    @property
    def ref(self) -> str:
        """The event ref in full form; bare names get the prefix of ref_type."""
        ref = self.event.ref
        if ref.startswith("refs/"):
            return ref
        prefix = TAG_PREFIX if self.ref_type is RefType.TAG else BRANCH_PREFIX
        return prefix + ref

    @property
    def is_tag(self) -> bool:
        return self.ref_type is RefType.TAG

    @classmethod
    def for_event(cls, event: Event) -> ActivationContext:
        ref = event.ref
        if event.kind is EventKind.PULL_REQUEST and event.base_ref:
            ref = event.base_ref
        ref_type, name = short_ref(ref)
        if event.kind is EventKind.TAG_PUSH:
            ref_type = RefType.TAG
        return cls(event=event, ref_type=ref_type, ref_name=name)


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job. Opaque to the scheduler."""
    name: str
    run: str = ""
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    # env var name -> secret name; values are resolved by the executor, never stored here
    secrets: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Job:
    """
    A CI job: steps + dependencies + optional matrix and run condition.

    Jobs are defined once at load time and never mutated afterwards.
    """
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    condition: Optional[Condition] = None
    matrix: Optional[Matrix] = None
    fail_fast: bool = True
    max_parallel: Optional[int] = None
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # accept lists from callers, store tuples
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "needs", tuple(self.needs))
        if self.max_parallel is not None and self.max_parallel < 1:
            raise ValueError(f"Job '{self.name}': max_parallel must be >= 1")


@dataclass(frozen=True)
class JobInstance:
    """One concrete execution of a Job for one matrix assignment."""
    job: Job
    index: int
    variables: Mapping[str, object] = field(default_factory=dict)

    @property
    def name(self) -> str:
        if not self.variables:
            return self.job.name
        values = ", ".join(str(v) for v in self.variables.values())
        return f"{self.job.name} ({values})"

    @property
    def needs(self) -> Tuple[str, ...]:
        return self.job.needs

    @property
    def condition(self) -> Optional[Condition]:
        return self.job.condition

    @property
    def steps(self) -> Tuple[Step, ...]:
        return self.job.steps

    def environment(self) -> Dict[str, str]:
        """Job env plus matrix variables as MATRIX_<AXIS>."""
        env = {k: str(v) for k, v in self.job.env.items()}
        for axis, value in self.variables.items():
            env[f"MATRIX_{axis.upper().replace('-', '_')}"] = str(value)
        return env
