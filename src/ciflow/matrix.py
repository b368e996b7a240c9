# matrix.py
from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Sequence, Tuple

from .errors import MatrixError
from .model import Job, JobInstance


@dataclass(frozen=True)
class Matrix:
    """
    Ordered matrix axes.

    Example:
        Matrix({"os": ["ubuntu", "macos"], "rust": ["1.65", "stable"]})

    Axis order and value order are the declaration order; expansion order
    follows them (last axis varies fastest).
    """
    axes: Tuple[Tuple[str, Tuple[Any, ...]], ...]
    exclude: Tuple[Tuple[Tuple[str, Any], ...], ...] = field(default=())

    def __init__(self, axes: Mapping[str, Sequence[Any]] | Sequence[Tuple[str, Sequence[Any]]], exclude: Sequence[Mapping[str, Any]] = ()):
        items = list(axes.items()) if isinstance(axes, Mapping) else list(axes)
        if not items:
            raise MatrixError("matrix must declare at least one axis")

        norm: List[Tuple[str, Tuple[Any, ...]]] = []
        seen = set()
        for axis, values in items:
            if not isinstance(axis, str) or not axis:
                raise MatrixError(f"matrix axis name must be a non-empty string, got {axis!r}")
            if axis in seen:
                raise MatrixError(f"matrix axis '{axis}' declared twice")
            seen.add(axis)
            if isinstance(values, (str, bytes)) or not isinstance(values, Sequence):
                raise MatrixError(f"matrix axis '{axis}' must be a list of values, got {values!r}")
            if len(values) == 0:
                raise MatrixError(f"matrix axis '{axis}' has no values")
            norm.append((axis, tuple(values)))

        excl: List[Tuple[Tuple[str, Any], ...]] = []
        for entry in exclude:
            if not isinstance(entry, Mapping) or not entry:
                raise MatrixError(f"matrix exclude entries must be non-empty mappings, got {entry!r}")
            for key in entry:
                if key not in seen:
                    raise MatrixError(f"matrix exclude names unknown axis '{key}'")
            excl.append(tuple(entry.items()))

        object.__setattr__(self, "axes", tuple(norm))
        object.__setattr__(self, "exclude", tuple(excl))

        if self.size() == 0:
            raise MatrixError("matrix exclude removes every combination")

    @property
    def axis_names(self) -> Tuple[str, ...]:
        return tuple(name for name, _ in self.axes)

    def _excluded(self, combo: Dict[str, Any]) -> bool:
        return any(all(combo.get(k) == v for k, v in rule) for rule in self.exclude)

    def combinations(self) -> Iterator[Dict[str, Any]]:
        """Lazily yield axis -> value assignments in declaration order."""
        names = self.axis_names
        for values in itertools.product(*(vals for _, vals in self.axes)):
            combo = dict(zip(names, values))
            if not self._excluded(combo):
                yield combo

    def size(self) -> int:
        if not self.exclude:
            n = 1
            for _, vals in self.axes:
                n *= len(vals)
            return n
        return sum(1 for _ in self.combinations())


def expand(job: Job) -> Iterator[JobInstance]:
    """
    Fan a job out into its instances.

    Without a matrix the job expands to exactly one instance.
    """
    if job.matrix is None:
        yield JobInstance(job=job, index=0)
        return
    for i, combo in enumerate(job.matrix.combinations()):
        yield JobInstance(job=job, index=i, variables=combo)


def size(job: Job) -> int:
    return 1 if job.matrix is None else job.matrix.size()
