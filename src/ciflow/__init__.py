from .dsl import job, sh, uses, matrix, wf, JobBuilder, build
from .model import ActivationContext, Event, EventKind, Job, JobInstance, Outcome, Step
from .conditions import is_tag, ref_matches, parse_condition
from .dag import JobGraph
from .runner import RunReport, run_pipeline, run_for_event
from .trigger import TriggerRules, activate

__all__ = [
    "job", "sh", "uses", "matrix", "wf", "JobBuilder", "build",
    "ActivationContext", "Event", "EventKind", "Job", "JobInstance", "Outcome", "Step",
    "is_tag", "ref_matches", "parse_condition",
    "JobGraph", "RunReport", "run_pipeline", "run_for_event",
    "TriggerRules", "activate",
]
