"""Command executor against real child processes."""

import os
import threading
import time

import pytest

from stageci.context import CancelToken
from stageci.errors import CancelledError, ExecutionError, StageTimeoutError
from stageci.executor import merge_env, run_command


@pytest.fixture
def env():
    return merge_env()


class TestRunCommand:
    def test_success_captures_output(self, py, tmp_path, env):
        res = run_command(py("print('hello'); print('world')"), cwd=tmp_path, env=env)
        assert res.exit_code == 0
        assert res.output.splitlines() == ["hello", "world"]
        assert res.duration >= 0

    def test_stderr_is_merged(self, py, tmp_path, env):
        code = "import sys; print('out', flush=True); print('err', file=sys.stderr, flush=True)"
        res = run_command(py(code), cwd=tmp_path, env=env)
        assert sorted(res.output.splitlines()) == ["err", "out"]

    def test_lines_are_streamed_to_sink(self, py, tmp_path, env):
        lines = []
        run_command(py("for i in range(3): print(f'line {i}')"), cwd=tmp_path, env=env, sink=lines.append)
        assert lines == ["line 0", "line 1", "line 2"]

    def test_runs_in_working_directory(self, py, tmp_path, env):
        run_command(py("open('marker.txt', 'w').write('x')"), cwd=tmp_path, env=env)
        assert (tmp_path / "marker.txt").read_text() == "x"

    def test_arguments_are_not_split(self, py, tmp_path, env):
        argv = py("import sys; print(sys.argv[1])") + ("two words 'quoted'",)
        res = run_command(argv, cwd=tmp_path, env=env)
        assert res.output.strip() == "two words 'quoted'"

    def test_nonzero_exit_raises_execution_error(self, py, tmp_path, env):
        with pytest.raises(ExecutionError) as exc:
            run_command(py("print('partial'); raise SystemExit(3)"), cwd=tmp_path, env=env, stage="build")
        assert exc.value.exit_code == 3
        assert exc.value.stage == "build"
        assert "partial" in exc.value.output

    def test_missing_executable(self, tmp_path, env):
        with pytest.raises(ExecutionError) as exc:
            run_command(["definitely-not-a-real-tool-xyz"], cwd=tmp_path, env=env)
        assert exc.value.exit_code == 127
        assert exc.value.hint

    def test_empty_command(self, tmp_path, env):
        with pytest.raises(ExecutionError):
            run_command([], cwd=tmp_path, env=env)

    def test_timeout_kills_and_keeps_partial_output(self, py, tmp_path, env):
        code = "import time; print('started', flush=True); time.sleep(30)"
        t0 = time.monotonic()
        with pytest.raises(StageTimeoutError) as exc:
            run_command(py(code), cwd=tmp_path, env=env, timeout=0.5)
        assert time.monotonic() - t0 < 10
        assert exc.value.timeout == 0.5
        assert "started" in exc.value.output

    def test_cancellation_terminates_within_grace_period(self, py, tmp_path, env):
        cancel = CancelToken()
        code = "import time; print('running', flush=True); time.sleep(30)"
        threading.Timer(0.3, cancel.cancel).start()
        t0 = time.monotonic()
        with pytest.raises(CancelledError) as exc:
            run_command(py(code), cwd=tmp_path, env=env, cancel=cancel, grace_period=1.0)
        assert time.monotonic() - t0 < 10
        assert "running" in exc.value.output

    @pytest.mark.skipif(os.name != "posix", reason="process groups are posix-only")
    def test_background_process_does_not_hold_the_stage(self, py, tmp_path, env):
        code = (
            "import subprocess, sys; "
            "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)']); "
            "print('launched', flush=True)"
        )
        t0 = time.monotonic()
        res = run_command(py(code), cwd=tmp_path, env=env, timeout=10)
        assert time.monotonic() - t0 < 5
        assert res.exit_code == 0
        assert "launched" in res.output

    @pytest.mark.skipif(os.name != "posix", reason="process groups are posix-only")
    def test_cancel_kills_background_process_ignoring_sigterm(self, py, tmp_path, env):
        stubborn = "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); time.sleep(30)"
        code = (
            "import subprocess, sys, time; "
            f"subprocess.Popen([sys.executable, '-c', {stubborn!r}]); "
            "print('waiting', flush=True); time.sleep(30)"
        )
        cancel = CancelToken()
        threading.Timer(0.5, cancel.cancel).start()
        t0 = time.monotonic()
        with pytest.raises(CancelledError):
            run_command(py(code), cwd=tmp_path, env=env, cancel=cancel, grace_period=0.5)
        assert time.monotonic() - t0 < 5

    def test_already_cancelled_token(self, py, tmp_path, env):
        cancel = CancelToken()
        cancel.cancel()
        with pytest.raises(CancelledError):
            run_command(py("import time; time.sleep(30)"), cwd=tmp_path, env=env, cancel=cancel, grace_period=0.5)


class TestMergeEnv:
    def test_later_overlays_win(self, monkeypatch):
        monkeypatch.setenv("STAGECI_BASE", "process")
        monkeypatch.setenv("STAGECI_SHARED", "process")
        env = merge_env({"STAGECI_SHARED": "global", "STAGECI_G": "g"}, {"STAGECI_SHARED": "stage"})
        assert env["STAGECI_BASE"] == "process"
        assert env["STAGECI_G"] == "g"
        assert env["STAGECI_SHARED"] == "stage"

    def test_does_not_touch_process_environment(self):
        merge_env({"STAGECI_ONLY_CHILD": "1"})
        assert "STAGECI_ONLY_CHILD" not in os.environ

    def test_child_sees_overlay(self, py, tmp_path):
        env = merge_env({"STAGECI_VALUE": "from-global"}, {"STAGECI_VALUE": "from-stage"})
        res = run_command(py("import os; print(os.environ['STAGECI_VALUE'])"), cwd=tmp_path, env=env)
        assert res.output.strip() == "from-stage"
