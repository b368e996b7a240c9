# tests/conftest.py
"""
Shared fixtures.

`executors` is a scripted stand-in for the external step runner. Behaviour is
looked up by instance name first ("build (ubuntu, 1.65)"), then by job name,
and defaults to success:

    "success"  every step succeeds
    "failure"  the first step fails
    "raise"    the first step raises
    "block"    the first step waits until cancel() is called (or a timeout)
    "slow"     every step sleeps briefly, then succeeds
"""
from __future__ import annotations

import threading
import time

import pytest

from ciflow.model import StepStatus
from ciflow.ui.console import Console

BLOCK_TIMEOUT = 5.0


class ScriptedExecutor:
    def __init__(self, recorder, instance):
        self.recorder = recorder
        self.instance = instance
        self._cancelled = threading.Event()

    def _behaviour(self) -> str:
        plan = self.recorder.plan
        return plan.get(self.instance.name, plan.get(self.instance.job.name, "success"))

    def execute(self, step, env):
        rec = self.recorder
        rec.record("start", self.instance.name, step.name, env)
        try:
            behaviour = self._behaviour()
            if behaviour == "failure":
                return StepStatus.FAILURE
            if behaviour == "raise":
                raise RuntimeError("executor blew up")
            if behaviour == "block":
                cancelled = self._cancelled.wait(BLOCK_TIMEOUT)
                return StepStatus.FAILURE if cancelled else StepStatus.SUCCESS
            if behaviour == "slow":
                time.sleep(0.02)
            return StepStatus.SUCCESS
        finally:
            rec.record("end", self.instance.name, step.name, env)

    def cancel(self):
        self.recorder.record("cancel", self.instance.name, None, None)
        self._cancelled.set()


class Recorder:
    def __init__(self):
        self.plan: dict = {}
        self.events: list = []
        self.envs: dict = {}
        self._lock = threading.Lock()
        self._active: dict = {}
        self.max_active: dict = {}

    def record(self, kind, instance, step, env):
        with self._lock:
            self.events.append((kind, instance, step))
            if env is not None:
                self.envs[instance] = dict(env)
            job = instance.split(" (")[0]
            if kind == "start":
                self._active[job] = self._active.get(job, 0) + 1
                self.max_active[job] = max(self.max_active.get(job, 0), self._active[job])
            elif kind == "end":
                self._active[job] -= 1

    def __call__(self, instance):
        return ScriptedExecutor(self, instance)

    def started(self):
        return [name for kind, name, _ in self.events if kind == "start"]

    def cancelled(self):
        return [name for kind, name, _ in self.events if kind == "cancel"]

    def index(self, kind, instance):
        for i, (k, name, _) in enumerate(self.events):
            if k == kind and name == instance:
                return i
        raise AssertionError(f"no {kind} event for {instance}")


@pytest.fixture
def executors():
    return Recorder()


@pytest.fixture
def console():
    return Console(quiet=True)
