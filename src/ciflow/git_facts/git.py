# git.py
# Small wrapper around the Git CLI, used to fill in the event ref when the
# caller does not pass one.

from __future__ import annotations

import subprocess
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def get_remote_url(remote: str = "origin", cwd: Optional[str] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)


def exact_tag(cwd: Optional[str] = None) -> Optional[str]:
    """Tag pointing exactly at HEAD, if any."""
    try:
        return _git(["describe", "--tags", "--exact-match", "HEAD"], cwd=cwd) or None
    except subprocess.CalledProcessError:
        return None


def get_current_ref(cwd: Optional[str] = None) -> str:
    """
    Full ref for the current checkout.

    refs/heads/<branch> on a branch, refs/tags/<tag> on a tagged detached
    HEAD, otherwise the HEAD commit SHA.
    """
    branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if branch and branch != "HEAD":
        return f"refs/heads/{branch}"
    tag = exact_tag(cwd=cwd)
    if tag:
        return f"refs/tags/{tag}"
    return _git(["rev-parse", "HEAD"], cwd=cwd)
