# runner.py
from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional, Tuple

from . import settings
from .conditions import allowed
from .dag import JobGraph
from .executors import ExecutorFactory, StepExecutor, shell_executor_factory
from .matrix import expand
from .model import ActivationContext, Event, Job, JobInstance, Outcome, StepStatus
from .trigger import TriggerRules, activate
from .ui.console import Console, get_console

log = logging.getLogger(__name__)

InstanceKey = Tuple[int, int]  # (job index, instance index)


# ----------------------------------------------------------------------
# Outcome table
# ----------------------------------------------------------------------

class OutcomeTable:
    """
    Index-addressed outcomes for jobs and their instances.

    Transitions are atomic and monotonic: once an entry is terminal it never
    changes again, and set_* returns False for the rejected write.
    """

    def __init__(self, n_jobs: int):
        self._lock = threading.Lock()
        self._jobs: List[Outcome] = [Outcome.PENDING] * n_jobs
        self._instances: List[List[Outcome]] = [[] for _ in range(n_jobs)]

    @staticmethod
    def _allowed(old: Outcome, new: Outcome) -> bool:
        if old.terminal:
            return False
        if old is Outcome.RUNNING and new is Outcome.PENDING:
            return False
        return True

    def job(self, i: int) -> Outcome:
        with self._lock:
            return self._jobs[i]

    def jobs(self) -> List[Outcome]:
        with self._lock:
            return list(self._jobs)

    def set_job(self, i: int, outcome: Outcome) -> bool:
        with self._lock:
            if not self._allowed(self._jobs[i], outcome):
                return False
            self._jobs[i] = outcome
            return True

    def add_instances(self, i: int, count: int) -> None:
        with self._lock:
            self._instances[i] = [Outcome.PENDING] * count

    def instance(self, i: int, k: int) -> Outcome:
        with self._lock:
            return self._instances[i][k]

    def instances(self, i: int) -> List[Outcome]:
        with self._lock:
            return list(self._instances[i])

    def set_instance(self, i: int, k: int, outcome: Outcome) -> bool:
        with self._lock:
            if not self._allowed(self._instances[i][k], outcome):
                return False
            self._instances[i][k] = outcome
            return True


def aggregate(outcomes: Iterable[Outcome]) -> Outcome:
    """Job outcome from its instance outcomes (all terminal)."""
    outs = list(outcomes)
    if Outcome.FAILURE in outs:
        return Outcome.FAILURE
    if outs and all(o is Outcome.SUCCESS for o in outs):
        return Outcome.SUCCESS
    if Outcome.CANCELLED in outs:
        return Outcome.CANCELLED
    return Outcome.SKIPPED


# ----------------------------------------------------------------------
# Run report
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class InstanceResult:
    name: str
    variables: Dict[str, object]
    outcome: Outcome


@dataclass
class RunReport:
    """Terminal outcome per job, plus the per-instance breakdown."""
    jobs: Dict[str, Outcome] = field(default_factory=dict)
    instances: Dict[str, List[InstanceResult]] = field(default_factory=dict)
    context: Optional[ActivationContext] = None

    @property
    def ok(self) -> bool:
        return all(o in (Outcome.SUCCESS, Outcome.SKIPPED) for o in self.jobs.values())

    def failed_jobs(self) -> List[str]:
        return [name for name, o in self.jobs.items() if o is Outcome.FAILURE]

    def to_dict(self) -> dict:
        out: dict = {"jobs": {name: o.value for name, o in self.jobs.items()}, "instances": {}}
        if self.context is not None:
            out["event"] = {
                "kind": self.context.event.kind.value,
                "ref": self.context.ref,
                "ref_type": self.context.ref_type.value,
                "ref_name": self.context.ref_name,
            }
        for name, results in self.instances.items():
            out["instances"][name] = [
                {"name": r.name, "variables": {k: str(v) for k, v in r.variables.items()}, "outcome": r.outcome.value}
                for r in results
            ]
        return out


# ----------------------------------------------------------------------
# Worker
# ----------------------------------------------------------------------

def _run_instance(instance: JobInstance, executor: StepExecutor, cancelled: threading.Event) -> Outcome:
    """Run the steps of one instance in order. Returns its outcome, never raises."""
    env = instance.environment()
    for step in instance.steps:
        if cancelled.is_set():
            return Outcome.CANCELLED
        log.info("[%s] step: %s", instance.name, step.name)
        try:
            status = executor.execute(step, env)
        except Exception:
            log.exception("[%s] step '%s' raised", instance.name, step.name)
            return Outcome.FAILURE
        if status is not StepStatus.SUCCESS:
            return Outcome.CANCELLED if cancelled.is_set() else Outcome.FAILURE
    return Outcome.SUCCESS


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

class Scheduler:
    """
    Event-driven scheduler over a validated JobGraph.

    The frontier is re-evaluated after every instance completion. Only the
    scheduler thread writes to the outcome table; workers return outcomes.
    """

    def __init__(
        self,
        graph: JobGraph,
        executor_factory: Optional[ExecutorFactory] = None,
        *,
        max_workers: Optional[int] = None,
        console: Optional[Console] = None,
    ):
        graph.validate()
        self.graph = graph
        self.executor_factory = executor_factory or shell_executor_factory()
        self.max_workers = max_workers or settings.MAX_WORKERS
        self.console = console or get_console()

    def run(self, context: ActivationContext) -> RunReport:
        graph = self.graph
        n = len(graph)
        order = graph.order()
        table = OutcomeTable(n)

        instances: Dict[int, List[JobInstance]] = {}
        queue: Deque[InstanceKey] = deque()
        executors: Dict[InstanceKey, StepExecutor] = {}
        flags: Dict[InstanceKey, threading.Event] = {}
        running = [0] * n
        in_flight: Dict[Future, InstanceKey] = {}

        def resolve_frontier() -> None:
            # one pass in topological order settles skip cascades
            for i in order:
                if table.job(i) is not Outcome.PENDING:
                    continue
                job = graph.job(i)
                state = graph.dependency_state(i, table.jobs())
                if state is None:
                    continue
                if state is Outcome.SKIPPED:
                    table.set_job(i, Outcome.SKIPPED)
                    self.console.print_job_skipped(job.name, "dependency did not succeed")
                    log.info("%s skipped: a dependency did not succeed", job.name)
                    continue
                if not allowed(job, context):
                    table.set_job(i, Outcome.SKIPPED)
                    self.console.print_job_skipped(job.name, f"condition false: {job.condition}")
                    log.info("%s skipped: condition %s is false", job.name, job.condition)
                    continue
                insts = list(expand(job))
                instances[i] = insts
                table.add_instances(i, len(insts))
                table.set_job(i, Outcome.RUNNING)
                self.console.print_job_start(job.name, len(insts))
                for k in range(len(insts)):
                    flags[(i, k)] = threading.Event()
                    queue.append((i, k))

        def dispatch(pool: ThreadPoolExecutor) -> None:
            deferred: Deque[InstanceKey] = deque()
            while queue and len(in_flight) < self.max_workers:
                key = queue.popleft()
                i, k = key
                if table.instance(i, k).terminal:
                    continue  # cancelled before it started
                limit = graph.job(i).max_parallel
                if limit is not None and running[i] >= limit:
                    deferred.append(key)
                    continue
                inst = instances[i][k]
                running[i] += 1
                try:
                    executor = self.executor_factory(inst)
                except Exception:
                    log.exception("[%s] could not create a step executor", inst.name)
                    finish(key, Outcome.FAILURE)
                    continue
                executors[key] = executor
                table.set_instance(i, k, Outcome.RUNNING)
                fut = pool.submit(_run_instance, inst, executor, flags[key])
                in_flight[fut] = key
            queue.extendleft(reversed(deferred))

        def cancel_siblings(i: int, failed_k: int) -> None:
            for k, inst in enumerate(instances[i]):
                if k == failed_k:
                    continue
                if table.set_instance(i, k, Outcome.CANCELLED):
                    flags[(i, k)].set()
                    executor = executors.get((i, k))
                    if executor is not None:
                        executor.cancel()
                    self.console.print_instance_finished(inst.name, Outcome.CANCELLED.value)
                    log.info("%s cancelled (fail-fast)", inst.name)

        def finish(key: InstanceKey, outcome: Outcome) -> None:
            i, k = key
            running[i] -= 1
            executors.pop(key, None)
            inst = instances[i][k]
            if not table.set_instance(i, k, outcome):
                log.debug("%s finished as %s after it was already %s", inst.name, outcome.value, table.instance(i, k).value)
            else:
                self.console.print_instance_finished(inst.name, outcome.value)
                if outcome is Outcome.FAILURE and inst.job.fail_fast:
                    cancel_siblings(i, k)
            outs = table.instances(i)
            if table.job(i) is Outcome.RUNNING and all(o.terminal for o in outs):
                job_outcome = aggregate(outs)
                table.set_job(i, job_outcome)
                self.console.print_job_finished(inst.job.name, job_outcome.value)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            try:
                while True:
                    resolve_frontier()
                    dispatch(pool)
                    if not in_flight:
                        # dispatch may have finished instances itself
                        if any(o is Outcome.PENDING for o in table.jobs()):
                            resolve_frontier()
                        if not queue:
                            break
                        continue
                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                    for fut in done:
                        finish(in_flight.pop(fut), fut.result())
            except BaseException:
                for key, executor in list(executors.items()):
                    flags[key].set()
                    executor.cancel()
                raise

        return self._report(context, table, instances)

    def _report(self, context: ActivationContext, table: OutcomeTable, instances: Dict[int, List[JobInstance]]) -> RunReport:
        report = RunReport(context=context)
        for i, job in enumerate(self.graph.jobs):
            outcome = table.job(i)
            if not outcome.terminal:
                # unreachable for a validated graph; keep the report total anyway
                log.error("%s left %s at end of run; reporting skipped", job.name, outcome.value)
                outcome = Outcome.SKIPPED
            report.jobs[job.name] = outcome
            outs = table.instances(i)
            report.instances[job.name] = [
                InstanceResult(name=inst.name, variables=dict(inst.variables), outcome=outs[k])
                for k, inst in enumerate(instances.get(i, []))
            ]
        return report


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_pipeline(
    jobs: JobGraph | Iterable[Job],
    context: ActivationContext,
    *,
    executor_factory: Optional[ExecutorFactory] = None,
    max_workers: Optional[int] = None,
    console: Optional[Console] = None,
) -> RunReport:
    graph = jobs if isinstance(jobs, JobGraph) else JobGraph(jobs)
    scheduler = Scheduler(graph, executor_factory, max_workers=max_workers, console=console)
    return scheduler.run(context)


def run_for_event(
    jobs: JobGraph | Iterable[Job],
    event: Event,
    *,
    rules: Optional[TriggerRules] = None,
    executor_factory: Optional[ExecutorFactory] = None,
    max_workers: Optional[int] = None,
    console: Optional[Console] = None,
) -> Optional[RunReport]:
    """Activate `event` and run the pipeline. None when no trigger matches."""
    graph = jobs if isinstance(jobs, JobGraph) else JobGraph(jobs)
    graph.validate()
    context = activate(event, rules)
    if context is None:
        return None
    return run_pipeline(
        graph,
        context,
        executor_factory=executor_factory,
        max_workers=max_workers,
        console=console,
    )
