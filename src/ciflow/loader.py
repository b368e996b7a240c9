# loader.py
"""
Workflow loading.

Two formats are supported:

  * Python files defining `workflow() -> List[Job]` or `JOBS = [...]`,
    optionally `TRIGGERS = TriggerRules(...)`.
  * YAML files in the hosted-CI shape (`on:` + `jobs:`).

Everything here happens at load time; any problem is a ConfigError and no job
runs.
"""
from __future__ import annotations

import logging
import re
import runpy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .conditions import Condition, parse_condition
from .dag import JobGraph
from .errors import ConfigError, MatrixError, WorkflowLoadError
from .matrix import Matrix
from .model import Job, Step
from .trigger import TriggerRules

log = logging.getLogger(__name__)

DEFAULT_WORKFLOW = "ciflow_workflow.py"
YAML_SUFFIXES = (".yaml", ".yml")

_SECRET_RE = re.compile(r"^\$\{\{\s*secrets\.([A-Za-z_][A-Za-z0-9_]*)\s*\}\}$")


class _WorkflowLoader(yaml.SafeLoader):
    """SafeLoader that keeps floats as written, so `rust: [1.70]` stays "1.70"."""


_WorkflowLoader.add_constructor(
    "tag:yaml.org,2002:float",
    lambda loader, node: loader.construct_scalar(node),
)


@dataclass
class Workflow:
    jobs: List[Job]
    rules: TriggerRules = field(default_factory=TriggerRules)
    source: Optional[Path] = None

    def graph(self) -> JobGraph:
        """Build and validate the job graph."""
        graph = JobGraph(self.jobs)
        graph.validate()
        return graph


# ----------------------------------------------------------------------
# Discovery
# ----------------------------------------------------------------------

def find_workflow_files(root: str | Path = ".") -> List[Path]:
    current_dir = Path(root)
    found = []
    default_workflow = current_dir / DEFAULT_WORKFLOW
    if default_workflow.exists():
        found.append(default_workflow)
    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            found.append(path)
    for name in ("ciflow.yaml", "ciflow.yml"):
        if (current_dir / name).exists():
            found.append(current_dir / name)
    return sorted(found)


# ----------------------------------------------------------------------
# Python workflows
# ----------------------------------------------------------------------

def _load_python(wf_path: Path) -> Workflow:
    module_name = f"ciflow_workflow_{wf_path.stem}"
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
    except ConfigError:
        raise
    except Exception as e:
        raise WorkflowLoadError(f"Error while executing {wf_path.name}: {e}") from e

    jobs = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        jobs = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if not isinstance(jobs, list) or not all(isinstance(j, Job) for j in jobs):
        raise WorkflowLoadError(
            "Workflow must return/define a List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...]."
        )

    rules = globals_dict.get("TRIGGERS", None)
    if rules is None:
        rules = TriggerRules()
    elif not isinstance(rules, TriggerRules):
        raise WorkflowLoadError("TRIGGERS must be a TriggerRules instance")

    return Workflow(jobs=jobs, rules=rules, source=wf_path)


# ----------------------------------------------------------------------
# YAML workflows
# ----------------------------------------------------------------------

def _str_list(value: Any, what: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list):
        return tuple(str(v) for v in value)
    raise ConfigError(f"{what} must be a string or a list, got {value!r}")


def _split_env(value: Any, what: str) -> Tuple[Dict[str, str], Dict[str, str]]:
    """Return (plain env, env var -> secret name)."""
    if value is None:
        return {}, {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{what} must be a mapping, got {value!r}")
    env: Dict[str, str] = {}
    secrets: Dict[str, str] = {}
    for k, v in value.items():
        m = _SECRET_RE.match(str(v))
        if m:
            secrets[str(k)] = m.group(1)
        else:
            env[str(k)] = str(v)
    return env, secrets


def _parse_step(job_name: str, idx: int, raw: Any, job_secrets: Mapping[str, str]) -> Step:
    if not isinstance(raw, Mapping):
        raise ConfigError(f"Job '{job_name}' step {idx + 1} must be a mapping")
    env, secrets = _split_env(raw.get("env"), f"Job '{job_name}' step {idx + 1} env")
    merged_secrets = {**job_secrets, **secrets}
    if "run" in raw:
        run = str(raw["run"])
        default_name = run.strip().splitlines()[0] if run.strip() else f"step {idx + 1}"
        return Step(
            name=str(raw.get("name") or default_name),
            run=run,
            cwd=raw.get("working-directory"),
            env=env,
            secrets=merged_secrets,
        )
    if "uses" in raw:
        uses = str(raw["uses"])
        return Step(name=str(raw.get("name") or uses), env=env, secrets=merged_secrets)
    raise ConfigError(f"Job '{job_name}' step {idx + 1} needs 'run' or 'uses'")


def _parse_condition(job_name: str, raw: Any) -> Optional[Condition]:
    if raw is None:
        return None
    if isinstance(raw, bool):
        return Condition(lambda ctx: raw, str(raw).lower())
    try:
        return parse_condition(str(raw))
    except ConfigError as e:
        raise ConfigError(f"Job '{job_name}': {e}") from e


def _parse_strategy(job_name: str, raw: Any) -> Tuple[Optional[Matrix], bool, Optional[int]]:
    if raw is None:
        return None, True, None
    if not isinstance(raw, Mapping):
        raise ConfigError(f"Job '{job_name}' strategy must be a mapping")

    fail_fast = raw.get("fail-fast", True)
    if not isinstance(fail_fast, bool):
        raise ConfigError(f"Job '{job_name}' strategy.fail-fast must be true or false")

    max_parallel = raw.get("max-parallel")
    if max_parallel is not None and (not isinstance(max_parallel, int) or max_parallel < 1):
        raise ConfigError(f"Job '{job_name}' strategy.max-parallel must be a positive integer")

    m = raw.get("matrix")
    if m is None:
        return None, fail_fast, max_parallel
    if not isinstance(m, Mapping):
        raise ConfigError(f"Job '{job_name}' strategy.matrix must be a mapping")
    if "include" in m:
        raise ConfigError(f"Job '{job_name}': matrix 'include' is not supported")
    axes = {k: v for k, v in m.items() if k != "exclude"}
    try:
        matrix = Matrix(axes, exclude=m.get("exclude") or ())
    except MatrixError as e:
        raise MatrixError(f"Job '{job_name}': {e}") from e
    return matrix, fail_fast, max_parallel


def _parse_job(name: str, raw: Any, top_env: Mapping[str, str], top_secrets: Mapping[str, str]) -> Job:
    if not isinstance(raw, Mapping):
        raise ConfigError(f"Job '{name}' must be a mapping")
    env, secrets = _split_env(raw.get("env"), f"Job '{name}' env")
    job_secrets = {**top_secrets, **secrets}

    steps_raw = raw.get("steps")
    if not isinstance(steps_raw, list) or not steps_raw:
        raise ConfigError(f"Job '{name}' must have at least one step")

    matrix, fail_fast, max_parallel = _parse_strategy(name, raw.get("strategy"))
    return Job(
        name=name,
        steps=tuple(_parse_step(name, i, s, job_secrets) for i, s in enumerate(steps_raw)),
        needs=_str_list(raw.get("needs"), f"Job '{name}' needs"),
        condition=_parse_condition(name, raw.get("if")),
        matrix=matrix,
        fail_fast=fail_fast,
        max_parallel=max_parallel,
        env={**top_env, **env},
    )


def parse_workflow_yaml(text: str, source: Optional[Path] = None) -> Workflow:
    try:
        data = yaml.load(text, Loader=_WorkflowLoader) or {}
    except yaml.YAMLError as e:
        raise WorkflowLoadError(f"Invalid YAML: {e}") from e
    if not isinstance(data, Mapping):
        raise WorkflowLoadError("Workflow YAML must be a mapping at the top level")

    # YAML 1.1 reads a bare `on` key as boolean True
    on = data.get("on", data.get(True))
    rules = TriggerRules.from_mapping(on)

    top_env, top_secrets = _split_env(data.get("env"), "env")
    jobs_raw = data.get("jobs")
    if not isinstance(jobs_raw, Mapping) or not jobs_raw:
        raise WorkflowLoadError("Workflow YAML must define at least one job under 'jobs'")

    jobs = [_parse_job(str(name), raw, top_env, top_secrets) for name, raw in jobs_raw.items()]
    return Workflow(jobs=jobs, rules=rules, source=source)


# ----------------------------------------------------------------------
# Entry point
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Workflow:
    """Load a workflow from a .py or .yaml/.yml file."""
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise WorkflowLoadError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in YAML_SUFFIXES:
        wf = parse_workflow_yaml(wf_path.read_text(encoding="utf-8"), source=wf_path)
    elif wf_path.suffix == ".py":
        wf = _load_python(wf_path)
    else:
        raise WorkflowLoadError(f"Workflow must be a .py or .yaml file, got: {wf_path.name}")

    log.debug("loaded %d job(s) from %s", len(wf.jobs), wf_path)
    return wf
