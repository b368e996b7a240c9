import logging

import pytest

from ciflow.conditions import Condition, ref_matches
from ciflow.dag import JobGraph
from ciflow.dsl import job, matrix, sh
from ciflow.errors import CyclicDependencyError
from ciflow.model import ActivationContext, Event, EventKind, Outcome
from ciflow.runner import OutcomeTable, Scheduler, aggregate, run_pipeline

MASTER = ActivationContext.for_event(Event(EventKind.PUSH, "refs/heads/master"))
TAG = ActivationContext.for_event(Event(EventKind.PUSH, "refs/tags/v1.0.0"))


def three(fail_fast=True, **kw):
    return job("t", sh("s1", "x"), sh("s2", "y"), matrix=matrix(n=[1, 2, 3]), fail_fast=fail_fast, **kw)


def outcomes(report, name):
    return [r.outcome for r in report.instances[name]]


# ----------------------------------------------------------------------
# Outcome table and aggregation
# ----------------------------------------------------------------------

def test_outcome_table_is_monotonic():
    table = OutcomeTable(1)
    table.add_instances(0, 2)
    assert table.set_instance(0, 0, Outcome.RUNNING)
    assert table.set_instance(0, 0, Outcome.CANCELLED)
    assert not table.set_instance(0, 0, Outcome.SUCCESS)
    assert table.instance(0, 0) is Outcome.CANCELLED
    assert table.set_job(0, Outcome.RUNNING)
    assert not table.set_job(0, Outcome.PENDING)


@pytest.mark.parametrize(
    "outs, expected",
    [
        ([Outcome.SUCCESS] * 3, Outcome.SUCCESS),
        ([Outcome.SUCCESS, Outcome.FAILURE, Outcome.SUCCESS], Outcome.FAILURE),
        ([Outcome.FAILURE, Outcome.CANCELLED, Outcome.CANCELLED], Outcome.FAILURE),
        ([Outcome.SUCCESS, Outcome.CANCELLED], Outcome.CANCELLED),
    ],
)
def test_aggregate(outs, expected):
    assert aggregate(outs) is expected


# ----------------------------------------------------------------------
# Fail-fast
# ----------------------------------------------------------------------

def test_fail_fast_cancels_running_siblings(executors, console):
    executors.plan = {"t (1)": "failure", "t (2)": "block", "t (3)": "block"}
    report = run_pipeline([three()], MASTER, executor_factory=executors, max_workers=3, console=console)
    assert report.jobs["t"] is Outcome.FAILURE
    assert outcomes(report, "t") == [Outcome.FAILURE, Outcome.CANCELLED, Outcome.CANCELLED]
    assert sorted(executors.cancelled()) == ["t (2)", "t (3)"]
    # cancelled instances never reach their second step
    assert ("start", "t (2)", "s2") not in executors.events


def test_fail_fast_cancels_pending_siblings(executors, console):
    executors.plan = {"t (1)": "failure"}
    report = run_pipeline([three()], MASTER, executor_factory=executors, max_workers=1, console=console)
    assert outcomes(report, "t") == [Outcome.FAILURE, Outcome.CANCELLED, Outcome.CANCELLED]
    assert executors.started() == ["t (1)"]


def test_without_fail_fast_siblings_finish(executors, console):
    executors.plan = {"t (1)": "failure", "t (3)": "slow"}
    report = run_pipeline([three(fail_fast=False)], MASTER, executor_factory=executors, max_workers=3, console=console)
    assert outcomes(report, "t") == [Outcome.FAILURE, Outcome.SUCCESS, Outcome.SUCCESS]
    assert report.jobs["t"] is Outcome.FAILURE
    assert executors.cancelled() == []


# ----------------------------------------------------------------------
# Dependencies and gating
# ----------------------------------------------------------------------

def test_dependency_runs_after_prerequisite(executors, console):
    jobs = [
        job("lint", sh("l", "x")),
        job("docs", sh("d", "x"), needs=["lint"]),
        job("build", sh("b", "x"), needs=["lint"], matrix=matrix(os=["a", "b"])),
    ]
    executors.plan = {"lint": "slow"}
    report = run_pipeline(jobs, MASTER, executor_factory=executors, max_workers=4, console=console)
    assert report.ok
    lint_end = executors.index("end", "lint")
    for name in ("docs", "build (a)", "build (b)"):
        assert executors.index("start", name) > lint_end


def test_failure_skips_transitive_dependents(executors, console):
    jobs = [
        job("a", sh("a", "x")),
        job("b", sh("b", "x"), needs=["a"]),
        job("c", sh("c", "x"), needs=["b"]),
        job("side", sh("s", "x")),
    ]
    executors.plan = {"a": "failure"}
    report = run_pipeline(jobs, MASTER, executor_factory=executors, console=console)
    assert report.jobs == {
        "a": Outcome.FAILURE,
        "b": Outcome.SKIPPED,
        "c": Outcome.SKIPPED,
        "side": Outcome.SUCCESS,
    }
    assert sorted(executors.started()) == ["a", "side"]
    assert report.instances["b"] == []
    assert report.failed_jobs() == ["a"]
    assert not report.ok


def test_failed_matrix_job_skips_dependent(executors, console):
    jobs = [three(), job("after", sh("x", "x"), needs=["t"])]
    executors.plan = {"t (1)": "failure"}
    report = run_pipeline(jobs, MASTER, executor_factory=executors, max_workers=1, console=console)
    assert report.jobs["after"] is Outcome.SKIPPED


def test_condition_false_skips_even_with_successful_deps(executors, console):
    jobs = [
        job("build", sh("b", "x")),
        job("publish", sh("p", "x"), needs=["build"], if_=ref_matches("v*")),
        job("announce", sh("a", "x"), needs=["publish"]),
    ]
    report = run_pipeline(jobs, MASTER, executor_factory=executors, console=console)
    assert report.jobs == {"build": Outcome.SUCCESS, "publish": Outcome.SKIPPED, "announce": Outcome.SKIPPED}
    assert report.ok

    tagged = run_pipeline(jobs, TAG, executor_factory=executors, console=console)
    assert all(o is Outcome.SUCCESS for o in tagged.jobs.values())


def test_condition_not_consulted_for_blocked_job(executors, console):
    calls = []

    def spy(ctx):
        calls.append(ctx)
        return True

    jobs = [job("a", sh("a", "x")), job("b", sh("b", "x"), needs=["a"], if_=Condition(spy, "spy"))]
    executors.plan = {"a": "failure"}
    run_pipeline(jobs, MASTER, executor_factory=executors, console=console)
    assert calls == []


# ----------------------------------------------------------------------
# Executor behaviour and limits
# ----------------------------------------------------------------------

def test_executor_exception_is_failure(executors, console, caplog):
    executors.plan = {"boom": "raise"}
    with caplog.at_level(logging.ERROR, logger="ciflow"):
        report = run_pipeline([job("boom", sh("s", "x"))], MASTER, executor_factory=executors, console=console)
    assert report.jobs["boom"] is Outcome.FAILURE
    assert any("boom" in r.getMessage() for r in caplog.records)


def test_max_parallel_limits_instances(executors, console):
    j = job("m", sh("s", "x"), matrix=matrix(n=[1, 2, 3, 4]), max_parallel=1)
    executors.plan = {"m": "slow"}
    report = run_pipeline([j], MASTER, executor_factory=executors, max_workers=4, console=console)
    assert report.jobs["m"] is Outcome.SUCCESS
    assert executors.max_active["m"] == 1
    assert executors.started() == ["m (1)", "m (2)", "m (3)", "m (4)"]


def test_steps_run_in_order_with_matrix_env(executors, console):
    j = job("t", sh("first", "x"), sh("second", "y"), matrix=matrix(os=["linux"]))
    run_pipeline([j], MASTER, executor_factory=executors, console=console)
    steps = [step for kind, name, step in executors.events if kind == "start"]
    assert steps == ["first", "second"]
    assert executors.envs["t (linux)"]["MATRIX_OS"] == "linux"


def test_stops_after_first_failing_step(executors, console):
    executors.plan = {"t": "failure"}
    run_pipeline([job("t", sh("first", "x"), sh("second", "y"))], MASTER, executor_factory=executors, console=console)
    assert [s for k, _, s in executors.events if k == "start"] == ["first"]


def test_cycle_rejected_before_any_job_runs(executors, console):
    jobs = [job("a", sh("a", "x"), needs=["c"]), job("b", sh("b", "x"), needs=["a"]), job("c", sh("c", "x"), needs=["b"])]
    with pytest.raises(CyclicDependencyError):
        run_pipeline(jobs, MASTER, executor_factory=executors, console=console)
    assert executors.events == []


def test_every_job_gets_a_terminal_outcome(executors, console):
    jobs = [
        job("lint", sh("l", "x")),
        three(needs=["lint"]),
        job("docs", sh("d", "x"), needs=["lint"]),
        job("publish", sh("p", "x"), needs=["t", "docs"], if_=ref_matches("v*")),
    ]
    executors.plan = {"t (2)": "failure"}
    report = Scheduler(JobGraph(jobs), executors, max_workers=2, console=console).run(TAG)
    assert set(report.jobs) == {"lint", "t", "docs", "publish"}
    assert all(o.terminal for o in report.jobs.values())
    assert all(r.outcome.terminal for rs in report.instances.values() for r in rs)


def test_report_to_dict(executors, console):
    report = run_pipeline([three()], TAG, executor_factory=executors, console=console)
    data = report.to_dict()
    assert data["jobs"] == {"t": "success"}
    assert data["event"] == {"kind": "push", "ref": "refs/tags/v1.0.0", "ref_type": "tag", "ref_name": "v1.0.0"}
    assert [i["variables"] for i in data["instances"]["t"]] == [{"n": "1"}, {"n": "2"}, {"n": "3"}]


def test_executor_factory_error_fails_only_that_instance(executors, console, caplog):
    def factory(instance):
        if instance.name == "t (2)":
            raise RuntimeError("no runner available")
        return executors(instance)

    jobs = [three(fail_fast=False), job("after", sh("a", "x"), needs=["t"]), job("side", sh("s", "x"))]
    with caplog.at_level(logging.ERROR, logger="ciflow"):
        report = run_pipeline(jobs, MASTER, executor_factory=factory, max_workers=2, console=console)
    assert outcomes(report, "t") == [Outcome.SUCCESS, Outcome.FAILURE, Outcome.SUCCESS]
    assert report.jobs == {"t": Outcome.FAILURE, "after": Outcome.SKIPPED, "side": Outcome.SUCCESS}
    assert "could not create a step executor" in caplog.text


def test_executor_factory_error_on_last_job_still_settles_dependents(console, caplog):
    def factory(instance):
        raise RuntimeError("no runner available")

    jobs = [job("a", sh("a", "x")), job("b", sh("b", "x"), needs=["a"])]
    with caplog.at_level(logging.ERROR, logger="ciflow"):
        report = run_pipeline(jobs, MASTER, executor_factory=factory, console=console)
    assert report.jobs == {"a": Outcome.FAILURE, "b": Outcome.SKIPPED}
    assert "at end of run" not in caplog.text
