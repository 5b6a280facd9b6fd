# workspace.py
from __future__ import annotations

import os
import shutil
import stat
import sys
import tempfile
import threading
from pathlib import Path
from typing import Iterable, List

from .errors import WorkspaceError

WORKSPACE_PREFIX = "stageci-"


def _make_writable_and_retry(func, path, _exc_info) -> None:
    # git object files are read-only; rmtree cannot unlink them on some platforms
    os.chmod(path, stat.S_IWRITE | stat.S_IREAD | stat.S_IEXEC)
    func(path)


def _rmtree(path: Path) -> None:
    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=_make_writable_and_retry)
    else:
        shutil.rmtree(path, onerror=_make_writable_and_retry)


class Workspace:
    """
    Exclusively owned directory for one pipeline run.

    Use as a context manager (or call release()) so the directory is removed
    on every exit path. release() is idempotent and safe to call from any
    thread.
    """

    def __init__(self, run_id: str, path: Path):
        self.run_id = run_id
        self.path = path
        self._released = False
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            try:
                _rmtree(self.path)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise WorkspaceError(f"failed to remove workspace: {e}", path=str(self.path)) from e
            self._released = True

    def clear(self, keep: Iterable[str] = ()) -> None:
        """Remove everything inside the workspace except the top-level names in `keep`."""
        keep = set(keep)
        try:
            for child in self.path.iterdir():
                if child.name in keep:
                    continue
                if child.is_dir() and not child.is_symlink():
                    _rmtree(child)
                else:
                    child.unlink()
        except OSError as e:
            raise WorkspaceError(f"failed to clear workspace: {e}", path=str(self.path)) from e

    def __enter__(self) -> "Workspace":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"Workspace(run_id={self.run_id!r}, path={str(self.path)!r})"


def acquire(run_id: str, root: str | Path | None = None) -> Workspace:
    """
    Create `<root>/stageci-<run_id>` (root defaults to the system temp dir).

    The directory must not exist yet: two runs never share a workspace.
    """
    base = Path(root) if root is not None else Path(tempfile.gettempdir())
    path = base / f"{WORKSPACE_PREFIX}{run_id}"
    try:
        base.mkdir(parents=True, exist_ok=True)
        path.mkdir(mode=0o700)
    except FileExistsError as e:
        raise WorkspaceError(f"workspace already exists for run {run_id}", path=str(path)) from e
    except OSError as e:
        raise WorkspaceError(f"failed to create workspace: {e}", path=str(path)) from e
    return Workspace(run_id, path.resolve())


# ----------------------------------------------------------------------
# Artifacts
# ----------------------------------------------------------------------

def collect_artifacts(workspace: Path, patterns: Iterable[str], dest: str | Path) -> List[Path]:
    """
    Copy files/directories matching `patterns` (globs relative to the
    workspace) into `dest`, keeping their relative paths. Returns the copied
    destination paths in match order.
    """
    dest_p = Path(dest)
    copied: List[Path] = []
    seen: set[Path] = set()

    for pattern in patterns:
        for src in sorted(workspace.glob(pattern)):
            rel = src.relative_to(workspace)
            if rel in seen or rel.parts[:1] == (".git",):
                continue
            seen.add(rel)
            target = dest_p / rel
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                if src.is_dir():
                    shutil.copytree(src, target, dirs_exist_ok=True)
                else:
                    shutil.copy2(src, target)
            except OSError as e:
                raise WorkspaceError(f"failed to collect artifact {rel}: {e}", path=str(src)) from e
            copied.append(target)

    return copied
