# conditions.py
"""
Run conditions for jobs.

A condition is a pure predicate over an ActivationContext. Conditions compose
with `&`, `|` and `~`, and `parse_condition` turns the small subset of
workflow `if:` expressions we support into the same objects.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Callable, List, Optional

from .errors import ConditionSyntaxError
from .model import ActivationContext, EventKind, Job


@dataclass(frozen=True)
class Condition:
    fn: Callable[[ActivationContext], bool]
    description: str

    def __call__(self, ctx: ActivationContext) -> bool:
        return bool(self.fn(ctx))

    def __and__(self, other: Condition) -> Condition:
        return all_of(self, other)

    def __or__(self, other: Condition) -> Condition:
        return any_of(self, other)

    def __invert__(self) -> Condition:
        return Condition(lambda ctx: not self(ctx), f"!({self.description})")

    def __str__(self) -> str:
        return self.description


def always() -> Condition:
    return Condition(lambda ctx: True, "always()")


def is_tag() -> Condition:
    return Condition(lambda ctx: ctx.is_tag, "is_tag()")


def is_branch() -> Condition:
    return Condition(lambda ctx: not ctx.is_tag, "is_branch()")


def event_is(kind: EventKind | str) -> Condition:
    kind = EventKind(kind)
    return Condition(lambda ctx: ctx.event.kind is kind, f"event == {kind.value}")


def ref_matches(pattern: str) -> Condition:
    """Glob against the short ref name (v1.0.0) or the full ref (refs/tags/v1.0.0)."""
    return Condition(
        lambda ctx: fnmatchcase(ctx.ref_name, pattern) or fnmatchcase(ctx.ref, pattern),
        f"ref matches {pattern!r}",
    )


def ref_startswith(prefix: str) -> Condition:
    return Condition(lambda ctx: ctx.ref.startswith(prefix), f"startsWith(ref, {prefix!r})")


def ref_equals(ref: str) -> Condition:
    return Condition(lambda ctx: ctx.ref == ref, f"ref == {ref!r}")


def all_of(*conds: Condition) -> Condition:
    return Condition(
        lambda ctx: all(c(ctx) for c in conds),
        " && ".join(f"({c.description})" for c in conds),
    )


def any_of(*conds: Condition) -> Condition:
    return Condition(
        lambda ctx: any(c(ctx) for c in conds),
        " || ".join(f"({c.description})" for c in conds),
    )


def allowed(job: Job, context: ActivationContext) -> bool:
    """The gate: a job with no condition always runs."""
    if job.condition is None:
        return True
    return job.condition(context)


# ---------------------------------------------------------------------
# `if:` expression parsing
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<op>&&|\|\||==|!=|!|\(|\)|,)
      | (?P<str>'(?:[^']|'')*')
      | (?P<ident>[A-Za-z_][A-Za-z0-9_.\-]*)
    )""",
    re.VERBOSE,
)

_CONTEXT_FIELDS = {
    "github.ref": lambda ctx: ctx.ref,
    "github.ref_name": lambda ctx: ctx.ref_name,
    "github.event_name": lambda ctx: ctx.event.kind.value,
    "github.ref_type": lambda ctx: ctx.ref_type.value,
}


def _tokenize(expr: str) -> List[tuple]:
    tokens = []
    pos = 0
    text = expr.strip()
    if text.startswith("${{") and text.endswith("}}"):
        text = text[3:-2]
    while pos < len(text):
        if text[pos:].strip() == "":
            break
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise ConditionSyntaxError(expr, f"unexpected input at {text[pos:]!r}")
        if m.group("op"):
            tokens.append(("op", m.group("op")))
        elif m.group("str"):
            tokens.append(("str", m.group("str")[1:-1].replace("''", "'")))
        else:
            tokens.append(("ident", m.group("ident")))
        pos = m.end()
    return tokens


class _Parser:
    # or_expr  := and_expr ('||' and_expr)*
    # and_expr := unary ('&&' unary)*
    # unary    := '!' unary | '(' or_expr ')' | atom

    def __init__(self, expr: str):
        self.expr = expr
        self.tokens = _tokenize(expr)
        self.pos = 0

    def _peek(self) -> Optional[tuple]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self, kind: str, value: str | None = None) -> str:
        tok = self._peek()
        if tok is None or tok[0] != kind or (value is not None and tok[1] != value):
            want = value or kind
            raise ConditionSyntaxError(self.expr, f"expected {want!r}, got {tok[1] if tok else 'end of input'!r}")
        self.pos += 1
        return tok[1]

    def parse(self) -> Condition:
        if not self.tokens:
            raise ConditionSyntaxError(self.expr, "empty expression")
        cond = self._or()
        if self._peek() is not None:
            raise ConditionSyntaxError(self.expr, f"trailing input {self._peek()[1]!r}")
        return cond

    def _or(self) -> Condition:
        parts = [self._and()]
        while self._peek() == ("op", "||"):
            self.pos += 1
            parts.append(self._and())
        return parts[0] if len(parts) == 1 else any_of(*parts)

    def _and(self) -> Condition:
        parts = [self._unary()]
        while self._peek() == ("op", "&&"):
            self.pos += 1
            parts.append(self._unary())
        return parts[0] if len(parts) == 1 else all_of(*parts)

    def _unary(self) -> Condition:
        tok = self._peek()
        if tok == ("op", "!"):
            self.pos += 1
            return ~self._unary()
        if tok == ("op", "("):
            self.pos += 1
            cond = self._or()
            self._take("op", ")")
            return cond
        return self._atom()

    def _field(self) -> str:
        name = self._take("ident")
        if name not in _CONTEXT_FIELDS:
            raise ConditionSyntaxError(self.expr, f"unsupported context field {name!r}")
        return name

    def _atom(self) -> Condition:
        tok = self._peek()
        if tok is None or tok[0] != "ident":
            raise ConditionSyntaxError(self.expr, f"unexpected {tok[1] if tok else 'end of input'!r}")

        if tok[1] in ("startsWith", "endsWith"):
            fn_name = tok[1]
            self.pos += 1
            self._take("op", "(")
            name = self._field()
            self._take("op", ",")
            arg = self._take("str")
            self._take("op", ")")
            get = _CONTEXT_FIELDS[name]
            if fn_name == "startsWith":
                if name == "github.ref":
                    return ref_startswith(arg)
                return Condition(lambda ctx: get(ctx).startswith(arg), f"startsWith({name}, {arg!r})")
            return Condition(lambda ctx: get(ctx).endswith(arg), f"endsWith({name}, {arg!r})")

        if tok[1] in ("true", "false"):
            self.pos += 1
            value = tok[1] == "true"
            return Condition(lambda ctx: value, tok[1])

        if tok[1] == "always":
            self.pos += 1
            self._take("op", "(")
            self._take("op", ")")
            return always()

        name = self._field()
        op = self._peek()
        if op not in (("op", "=="), ("op", "!=")):
            raise ConditionSyntaxError(self.expr, f"expected comparison after {name!r}")
        self.pos += 1
        value = self._take("str")
        get = _CONTEXT_FIELDS[name]
        if op[1] == "==":
            return Condition(lambda ctx: get(ctx) == value, f"{name} == {value!r}")
        return Condition(lambda ctx: get(ctx) != value, f"{name} != {value!r}")


def parse_condition(expr: str) -> Condition:
    """
    Parse a workflow `if:` expression.

    Supported: startsWith/endsWith over github.ref, github.ref_name,
    github.event_name and github.ref_type, ==/!= comparisons against quoted
    strings, true/false, always(), and &&, ||, ! with parentheses.
    """
    return _Parser(expr).parse()
