# executors.py
"""
Step executors.

The scheduler never runs commands itself. For every job instance it asks an
executor factory for a fresh StepExecutor and calls `execute(step, env)` for
each step in order; on fail-fast cancellation it calls `cancel()` from the
scheduler thread while `execute` may still be running in a worker.
"""
from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from pathlib import Path
from typing import Callable, Mapping, Optional, Protocol

from .errors import StepFailure
from .model import JobInstance, Step, StepStatus

log = logging.getLogger(__name__)


class StepExecutor(Protocol):
    def execute(self, step: Step, env: Mapping[str, str]) -> StepStatus: ...

    def cancel(self) -> None: ...


ExecutorFactory = Callable[[JobInstance], StepExecutor]


def _terminate_group(proc: subprocess.Popen) -> None:
    # the shell and everything it started share one session
    if os.name != "posix":
        proc.terminate()
        return
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        log.debug("process group %s already gone", proc.pid)


def _mask(text: str, secrets: Mapping[str, str]) -> str:
    for value in secrets.values():
        if value:
            text = text.replace(value, "***")
    return text


class ShellExecutor:
    """
    Runs steps as shell commands, one instance at a time.

    Secrets named by a step are looked up in `secrets` (default: os.environ)
    and injected into the child environment. They are masked in anything
    we log.
    """

    def __init__(
        self,
        instance: JobInstance,
        *,
        repo_root: str | Path = ".",
        secrets: Optional[Mapping[str, str]] = None,
    ):
        self.instance = instance
        self.repo_root = Path(repo_root).resolve()
        self.secrets = os.environ if secrets is None else secrets
        self._lock = threading.Lock()
        self._proc: Optional[subprocess.Popen] = None
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()
        with self._lock:
            proc = self._proc
        if proc is not None and proc.poll() is None:
            log.debug("[%s] terminating process group %s", self.instance.name, proc.pid)
            _terminate_group(proc)

    def execute(self, step: Step, env: Mapping[str, str]) -> StepStatus:
        if self._cancelled.is_set():
            return StepStatus.FAILURE
        if not step.run:
            # placeholder steps (e.g. `uses:` actions) have nothing to run
            log.info("[%s] %s: nothing to run", self.instance.name, step.name)
            return StepStatus.SUCCESS
        secrets = self._step_secrets(step)
        try:
            self._run(step, env, secrets)
        except StepFailure as e:
            log.warning("%s", _mask(str(e), secrets))
            if e.stderr:
                log.info("[%s] stderr:\n%s", self.instance.name, _mask(e.stderr, secrets))
            return StepStatus.FAILURE
        if self._cancelled.is_set():
            return StepStatus.FAILURE
        return StepStatus.SUCCESS

    def _step_secrets(self, step: Step) -> dict:
        found = {}
        for var, secret in step.secrets.items():
            if secret in self.secrets:
                found[var] = self.secrets[secret]
            else:
                log.warning("[%s] secret '%s' is not available", self.instance.name, secret)
        return found

    def _run(self, step: Step, env: Mapping[str, str], secrets: Mapping[str, str]) -> None:
        cwd = (self.repo_root / (step.cwd or ".")).resolve()
        if not cwd.exists():
            raise StepFailure(
                job=self.instance.name,
                step=step.name,
                cmd=step.run,
                exit_code=-1,
                stderr=f"cwd not found: {cwd}",
            )

        child_env = os.environ.copy()
        child_env.update(env)
        child_env.update(step.env)
        child_env.update(secrets)

        with self._lock:
            if self._cancelled.is_set():
                return
            self._proc = subprocess.Popen(
                step.run,
                shell=True,
                cwd=str(cwd),
                env=child_env,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=os.name == "posix",
            )
        proc = self._proc
        try:
            stdout, stderr = proc.communicate()
        finally:
            with self._lock:
                self._proc = None

        if proc.returncode != 0:
            raise StepFailure(
                job=self.instance.name,
                step=step.name,
                cmd=step.run,
                exit_code=proc.returncode,
                stderr=(stderr or "")[-4000:],
            )


def shell_executor_factory(
    repo_root: str | Path = ".",
    secrets: Optional[Mapping[str, str]] = None,
) -> ExecutorFactory:
    def factory(instance: JobInstance) -> StepExecutor:
        return ShellExecutor(instance, repo_root=repo_root, secrets=secrets)
    return factory
