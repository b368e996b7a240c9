"""Console output formatting utilities for ciflow."""

from __future__ import annotations

import sys
import threading
import traceback
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from ciflow.runner import RunReport


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress progress lines (errors still go to stderr)
        """
        self.debug = debug
        self.quiet = quiet
        # job lines are printed from the scheduler thread only, but keep
        # multi-line blocks together if a caller prints from workers
        self._lock = threading.Lock()

    def _out(self, *lines: str) -> None:
        if self.quiet:
            return
        with self._lock:
            for line in lines:
                print(line)

    def _err(self, *lines: str) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        job_count: int,
        event: str,
        ref: str,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Repository: {repository}",
            f"Workflow: {workflow}",
            f"Event: {event} {ref}",
            f"Jobs: {job_count}",
            "",
        )

    def print_not_activated(self, event: str, ref: str) -> None:
        self._out(f"No trigger matches {event} {ref}; nothing to run.")

    def print_plan(self, levels: List[List[str]], sizes: Dict[str, int], gates: Dict[str, str]) -> None:
        """Print topological stages with instance counts and run conditions."""
        self.print_header("PLAN")
        for idx, level in enumerate(levels):
            self._out(f"Stage {idx + 1}:")
            for name in level:
                extra = f" x{sizes[name]}" if sizes.get(name, 1) > 1 else ""
                gate = f" (if: {gates[name]})" if name in gates else ""
                self._out(f"  {name}{extra}{gate}")

    def print_job_start(self, name: str, instances: int = 1) -> None:
        """Print job start message."""
        suffix = f" ({instances} instances)" if instances > 1 else ""
        self._out(f"JOB STARTED: {name}{suffix}")

    def print_instance_finished(self, name: str, outcome: str) -> None:
        self._out(f"  {name}: {outcome}")

    def print_job_finished(self, name: str, outcome: str) -> None:
        self._out(f"JOB FINISHED: {name} [{outcome}]")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._out(f"JOB SKIPPED: {name} ({reason})")

    def print_results(self, report: RunReport) -> None:
        """Print final results summary, with per-instance lines for matrix jobs."""
        self._out("\n" + "=" * 40, "RESULTS", "=" * 40)
        for job, outcome in report.jobs.items():
            self._out(f"  {job}: {outcome.value.upper()}")
            results = report.instances.get(job, [])
            if len(results) > 1:
                for r in results:
                    self._out(f"    {r.name}: {r.outcome.value}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print a structured error to stderr. Never silenced by `quiet`.

        Args:
            title: One-line summary
            message: What went wrong
            details: Extra lines, indented
            suggestion: What to try next
        """
        lines = [f"\nERROR: {title}", message]
        lines.extend(f"  {d}" for d in details or ())
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._err(*lines)

    def print_exception(self, exc: BaseException) -> None:
        """Traceback with --debug, one line otherwise."""
        if self.debug:
            self._err("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).rstrip())
        else:
            self._err(f"Error: {exc}")

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_debug(self, message: str) -> None:
        if self.debug:
            self._err(f"[DEBUG] {message}")


_console: Optional[Console] = None


def get_console() -> Console:
    """Process-wide console; the CLI replaces it with a configured one."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
