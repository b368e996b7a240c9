# trigger.py
"""
Trigger evaluation: should this event start a pipeline run at all?

Each rule is a pure predicate over an Event; `TriggerRules` ORs them together.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Tuple

from .errors import ConfigError
from .model import ActivationContext, Event, EventKind, RefType

log = logging.getLogger(__name__)

Rule = Callable[[ActivationContext], bool]


def _matches_any(name: str, patterns: Iterable[str]) -> bool:
    return any(fnmatchcase(name, p) for p in patterns)


def push_branch_rule(patterns: Sequence[str]) -> Rule:
    def rule(ctx: ActivationContext) -> bool:
        return (
            ctx.event.kind is EventKind.PUSH
            and ctx.ref_type is RefType.BRANCH
            and _matches_any(ctx.ref_name, patterns)
        )
    return rule


def tag_rule(patterns: Sequence[str]) -> Rule:
    def rule(ctx: ActivationContext) -> bool:
        return (
            ctx.event.kind in (EventKind.PUSH, EventKind.TAG_PUSH)
            and ctx.ref_type is RefType.TAG
            and _matches_any(ctx.ref_name, patterns)
        )
    return rule


def pull_request_rule(patterns: Sequence[str]) -> Rule:
    def rule(ctx: ActivationContext) -> bool:
        return (
            ctx.event.kind is EventKind.PULL_REQUEST
            and _matches_any(ctx.ref_name, patterns)
        )
    return rule


def any_rule(*rules: Rule) -> Rule:
    return lambda ctx: any(r(ctx) for r in rules)


@dataclass(frozen=True)
class TriggerRules:
    push_branches: Tuple[str, ...] = ("master",)
    push_tags: Tuple[str, ...] = ("v*",)
    pull_request_branches: Tuple[str, ...] = ("master",)

    def rule(self) -> Rule:
        return any_rule(
            push_branch_rule(self.push_branches),
            tag_rule(self.push_tags),
            pull_request_rule(self.pull_request_branches),
        )

    def activate(self, event: Event) -> Optional[ActivationContext]:
        return activate(event, self)

    @classmethod
    def from_mapping(cls, on: Any) -> TriggerRules:
        """
        Build rules from a workflow `on:` block.

        Accepts the mapping form ({push: {branches, tags}, pull_request: {branches}}),
        a list of event names, or a single event name. An event listed without
        filters matches every branch / tag.
        """
        if on is None:
            return cls()
        if isinstance(on, str):
            on = [on]
        if isinstance(on, list):
            on = {name: None for name in on}
        if not isinstance(on, Mapping):
            raise ConfigError(f"'on' must be a mapping, list or string, got {type(on).__name__}")

        unknown = set(on) - {"push", "pull_request"}
        if unknown:
            raise ConfigError(f"Unsupported trigger event(s): {sorted(unknown)}")

        push = on.get("push", None) if "push" in on else False
        pr = on.get("pull_request", None) if "pull_request" in on else False

        def _patterns(block: Any, key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
            if block is False:
                return ()
            if block is None:
                return default
            if not isinstance(block, Mapping):
                raise ConfigError(f"Trigger filter must be a mapping, got {block!r}")
            value = block.get(key)
            if value is None:
                # push: {tags: [...]} alone means tag pushes only
                other = {"branches": "tags", "tags": "branches"}.get(key)
                return () if other in block else default
            if isinstance(value, str):
                value = [value]
            return tuple(str(v) for v in value)

        return cls(
            push_branches=_patterns(push, "branches", ("*",)),
            push_tags=_patterns(push, "tags", ("*",)),
            pull_request_branches=_patterns(pr, "branches", ("*",)),
        )


def activate(event: Event, rules: TriggerRules | None = None) -> Optional[ActivationContext]:
    """Return the run context for `event`, or None when no trigger rule matches."""
    rules = rules or TriggerRules()
    ctx = ActivationContext.for_event(event)
    if rules.rule()(ctx):
        log.debug("event %s %s activates pipeline (%s %s)", event.kind.value, event.ref, ctx.ref_type.value, ctx.ref_name)
        return ctx
    log.debug("event %s %s matches no trigger rule", event.kind.value, event.ref)
    return None
