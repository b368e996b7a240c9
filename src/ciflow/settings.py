from __future__ import annotations
import os


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


MAX_WORKERS = int(os.environ.get("CIFLOW_MAX_WORKERS", "0")) or _default_workers()
LOG_LEVEL = os.environ.get("CIFLOW_LOG_LEVEL", "WARNING").upper()
WORKFLOW = os.environ.get("CIFLOW_WORKFLOW") or None
