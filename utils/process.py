"""
Child process runner for the agent's npm/npx commands and the backend deploy.

The child runs in its own session so npm and everything it spawns can be
killed together. A timeout or a cancelled caller kills the group and reaps
it before control returns, so the working area is free to delete afterwards.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from pathlib import Path

log = logging.getLogger(__name__)


async def run_process(
    argv: list[str],
    cwd: Path | str,
    timeout: float,
    env: dict[str, str] | None = None,
) -> tuple[int, str]:
    """Run argv without a shell; return (exit code, combined stdout/stderr).

    Exit code -1 means the command could not start or timed out.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
    except OSError as e:
        return -1, f"Could not run command: {e}"

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(proc)
        return -1, f"Command timed out after {timeout:g}s"
    except asyncio.CancelledError:
        await _kill(proc)
        raise
    return proc.returncode, stdout.decode(errors="replace")


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        log.warning("Killed process group %d", proc.pid)
    await proc.wait()
