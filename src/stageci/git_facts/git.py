# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git knowledge so the rest of the codebase
# never needs to spell out "git ..." argument vectors itself.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Used for the small read-only queries below (remote URL, current ref).
    Stage checkouts do NOT go through here: they are ordinary commands run by
    the executor so they get streaming output, timeouts and retries.

    Args:
        args: List of git arguments (e.g. ["remote", "get-url", "origin"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def clone_args(url: str, branch: str, target: str | Path, git: str = "git") -> List[str]:
    """
    Argument vector for the checkout stage (full clone, history included).

    Args:
        url: Repository URL (or local path)
        branch: Branch or tag to check out
        target: Destination directory (the run workspace)
        git: git executable to use

    Returns:
        argv list suitable for the command executor.
    """
    args = [git, "clone"]
    if branch:
        args += ["--branch", branch]
    args += [url, str(target)]
    return args


def get_remote_url(remote: str = "origin", cwd: Optional[str] = None) -> str:
    """Return the URL configured for `remote` in the current repository."""
    return _git(["remote", "get-url", remote], cwd=cwd)


def get_current_ref(cwd: Optional[str] = None) -> str:
    """
    Return the current branch name, or the HEAD commit SHA when detached.
    """
    ref = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if ref == "HEAD":
        return _git(["rev-parse", "HEAD"], cwd=cwd)
    return ref
