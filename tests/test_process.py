"""Tests for the child process runner."""

import asyncio
import os
import sys

import pytest

from utils.process import run_process


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


SLEEPER = "import os, sys, time; open(sys.argv[1], 'w').write(str(os.getpid())); time.sleep(30)"


class TestRunProcess:

    async def test_output_and_exit_code(self, tmp_path):
        code, out = await run_process(
            [sys.executable, "-c", "import sys; print('built'); sys.stderr.write('warn\\n'); sys.exit(3)"],
            tmp_path, timeout=30,
        )
        assert code == 3
        assert "built" in out and "warn" in out

    async def test_runs_in_working_area(self, tmp_path):
        code, out = await run_process([sys.executable, "-c", "import os; print(os.getcwd())"], tmp_path, timeout=30)
        assert code == 0
        assert os.path.samefile(out.strip(), tmp_path)

    async def test_missing_executable(self, tmp_path):
        code, out = await run_process(["definitely-not-a-real-binary"], tmp_path, timeout=5)
        assert code == -1
        assert out.startswith("Could not run command")

    async def test_timeout_kills_the_child(self, tmp_path):
        pid_file = tmp_path / "pid"
        code, out = await run_process([sys.executable, "-c", SLEEPER, str(pid_file)], tmp_path, timeout=2)
        assert code == -1
        assert "timed out" in out
        assert not _alive(int(pid_file.read_text()))

    async def test_cancellation_kills_the_child(self, tmp_path):
        pid_file = tmp_path / "pid"
        task = asyncio.create_task(run_process([sys.executable, "-c", SLEEPER, str(pid_file)], tmp_path, timeout=60))
        for _ in range(100):
            if pid_file.exists() and pid_file.read_text():
                break
            await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not _alive(int(pid_file.read_text()))
