"""Workspace lifecycle and artifact collection."""

import os
import stat
import threading

import pytest

from stageci import workspace as workspace_module
from stageci.errors import WorkspaceError
from stageci.workspace import WORKSPACE_PREFIX, acquire, collect_artifacts


class TestAcquire:
    def test_creates_directory_named_by_run_id(self, tmp_path):
        ws = acquire("run1", tmp_path)
        try:
            assert ws.path.is_dir()
            assert ws.path.name == f"{WORKSPACE_PREFIX}run1"
            assert ws.path.parent == tmp_path.resolve()
        finally:
            ws.release()

    def test_existing_workspace_is_never_reused(self, tmp_path):
        ws = acquire("run1", tmp_path)
        try:
            with pytest.raises(WorkspaceError):
                acquire("run1", tmp_path)
        finally:
            ws.release()

    def test_uncreatable_root(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(WorkspaceError):
            acquire("run1", blocker)


class TestRelease:
    def test_release_removes_tree(self, tmp_path):
        ws = acquire("run1", tmp_path)
        (ws.path / "deep" / "er").mkdir(parents=True)
        (ws.path / "deep" / "er" / "file.txt").write_text("x")
        ws.release()
        assert not ws.path.exists()
        assert ws.released

    def test_release_is_idempotent(self, tmp_path):
        ws = acquire("run1", tmp_path)
        ws.release()
        ws.release()
        assert not ws.path.exists()

    def test_concurrent_release(self, tmp_path):
        ws = acquire("run1", tmp_path)
        errors = []

        def release():
            try:
                ws.release()
            except Exception as e:  # pragma: no cover - surfaced by the assert
                errors.append(e)

        threads = [threading.Thread(target=release) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        assert not ws.path.exists()

    def test_context_manager_releases_on_error(self, tmp_path):
        with pytest.raises(ValueError):
            with acquire("run1", tmp_path) as ws:
                (ws.path / "f").write_text("x")
                raise ValueError("stage blew up")
        assert not ws.path.exists()

    def test_read_only_files_are_removed(self, tmp_path):
        ws = acquire("run1", tmp_path)
        ro = ws.path / "objects" / "pack"
        ro.mkdir(parents=True)
        f = ro / "readonly"
        f.write_text("x")
        os.chmod(f, stat.S_IREAD)
        ws.release()
        assert not ws.path.exists()

    def test_clear_keeps_directory(self, tmp_path):
        ws = acquire("run1", tmp_path)
        try:
            (ws.path / "sub").mkdir()
            (ws.path / "sub" / "a").write_text("x")
            (ws.path / "b").write_text("y")
            ws.clear()
            assert ws.path.is_dir()
            assert list(ws.path.iterdir()) == []
        finally:
            ws.release()

    def test_clear_can_keep_entries(self, tmp_path):
        ws = acquire("run1", tmp_path)
        try:
            (ws.path / "keep.txt").write_text("x")
            (ws.path / "drop").mkdir()
            ws.clear(keep={"keep.txt"})
            assert [p.name for p in ws.path.iterdir()] == ["keep.txt"]
        finally:
            ws.release()

    def test_failed_release_can_be_retried(self, tmp_path, monkeypatch):
        ws = acquire("run1", tmp_path)
        real_rmtree = workspace_module._rmtree

        def broken(path):
            raise PermissionError("busy")

        monkeypatch.setattr(workspace_module, "_rmtree", broken)
        with pytest.raises(WorkspaceError):
            ws.release()
        assert not ws.released
        assert ws.path.exists()

        monkeypatch.setattr(workspace_module, "_rmtree", real_rmtree)
        ws.release()
        assert ws.released
        assert not ws.path.exists()


class TestCollectArtifacts:
    def test_copies_matches_with_relative_paths(self, tmp_path):
        src = tmp_path / "ws"
        (src / "dist" / "pkg").mkdir(parents=True)
        (src / "dist" / "app.whl").write_text("wheel")
        (src / "dist" / "pkg" / "data.bin").write_text("data")
        (src / "report.xml").write_text("<xml/>")
        (src / "ignored.txt").write_text("no")
        dest = tmp_path / "out"

        copied = collect_artifacts(src, ["dist/*.whl", "*.xml", "dist/pkg"], dest)

        assert (dest / "dist" / "app.whl").read_text() == "wheel"
        assert (dest / "report.xml").read_text() == "<xml/>"
        assert (dest / "dist" / "pkg" / "data.bin").read_text() == "data"
        assert not (dest / "ignored.txt").exists()
        assert len(copied) == 3

    def test_no_matches(self, tmp_path):
        src = tmp_path / "ws"
        src.mkdir()
        assert collect_artifacts(src, ["*.tar.gz"], tmp_path / "out") == []
