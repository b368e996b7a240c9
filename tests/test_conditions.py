import pytest

from ciflow.conditions import (
    allowed,
    always,
    event_is,
    is_branch,
    is_tag,
    parse_condition,
    ref_matches,
    ref_startswith,
)
from ciflow.dsl import job, sh
from ciflow.errors import ConditionSyntaxError, ConfigError
from ciflow.model import ActivationContext, Event, EventKind

MASTER = ActivationContext.for_event(Event(EventKind.PUSH, "refs/heads/master"))
TAG = ActivationContext.for_event(Event(EventKind.PUSH, "refs/tags/v1.0.0"))
PR = ActivationContext.for_event(Event(EventKind.PULL_REQUEST, "refs/pull/3/merge", base_ref="master"))


def test_ref_glob_gate():
    publish = job("publish", sh("p", "true"), if_=ref_matches("v*"))
    assert allowed(publish, MASTER) is False
    assert allowed(publish, TAG) is True


def test_job_without_condition_is_allowed():
    assert allowed(job("x", sh("s", "true")), MASTER)


def test_composition():
    cond = (is_tag() | event_is("pull_request")) & ~ref_matches("v0.*")
    assert cond(TAG)
    assert cond(PR)
    assert not cond(MASTER)
    assert always()(MASTER)
    assert is_branch()(MASTER) and not is_branch()(TAG)


def test_ref_matches_full_ref():
    assert ref_matches("refs/tags/*")(TAG)
    assert not ref_matches("refs/tags/*")(MASTER)


@pytest.mark.parametrize(
    "expr, master, tag, pr",
    [
        ("startsWith(github.ref, 'refs/tags/')", False, True, False),
        ("${{ startsWith(github.ref, 'refs/tags/') }}", False, True, False),
        ("github.ref == 'refs/heads/master'", True, False, False),
        ("github.event_name == 'pull_request'", False, False, True),
        ("github.event_name != 'pull_request' && !startsWith(github.ref, 'refs/tags/')", True, False, False),
        ("(github.ref_type == 'tag' || github.event_name == 'pull_request') && true", False, True, True),
        ("endsWith(github.ref_name, '.0')", False, True, False),
        ("always()", True, True, True),
        ("false", False, False, False),
    ],
)
def test_parse_condition(expr, master, tag, pr):
    cond = parse_condition(expr)
    assert (cond(MASTER), cond(TAG), cond(PR)) == (master, tag, pr)


@pytest.mark.parametrize(
    "expr",
    [
        "",
        "github.sha == 'abc'",
        "startsWith(github.ref 'x')",
        "github.ref ==",
        "(github.ref == 'x'",
        "github.ref == 'x' extra",
        "contains(github.ref, 'x')",
    ],
)
def test_parse_condition_rejects(expr):
    with pytest.raises(ConditionSyntaxError):
        parse_condition(expr)


def test_syntax_error_is_config_error():
    assert issubclass(ConditionSyntaxError, ConfigError)


def test_ref_startswith_description():
    assert "refs/tags/" in str(ref_startswith("refs/tags/"))
