"""Platform-specific liveness probing and forced termination of browser processes."""

from __future__ import annotations

import logging
import sys

from .commands import run_command

logger = logging.getLogger("wabridge.supervisor.process_probe")


def _is_windows() -> bool:
    return sys.platform == "win32"


async def is_process_running(pid: int) -> bool:
    """Return True only when the process table confirms pid exists.

    Any probing error counts as not running. Registry pruning tolerates a
    false negative (the process is re-registered next cycle) but not a false
    positive.
    """
    try:
        if _is_windows():
            result = await run_command(["tasklist", "/FI", f"PID eq {pid}", "/NH"])
            return result.returncode == 0 and str(pid) in result.stdout.split()
        result = await run_command(["ps", "-p", str(pid), "-o", "pid="])
        return result.returncode == 0 and result.stdout.strip() == str(pid)
    except Exception as exc:
        logger.warning("Liveness probe failed for PID %s: %s", pid, exc)
        return False


async def kill_process(pid: int) -> bool:
    """Force-kill pid and report whether the kill command itself succeeded."""
    logger.info("Attempting to kill browser process with PID: %s", pid)
    try:
        if _is_windows():
            result = await run_command(["taskkill", "/F", "/PID", str(pid)])
        else:
            result = await run_command(["kill", "-9", str(pid)])
    except Exception as exc:
        logger.warning("Failed to kill process %s: %s", pid, exc)
        return False
    if result.returncode != 0:
        logger.warning(
            "Failed to kill process %s: %s",
            pid,
            (result.stderr or "").strip() or f"exit status {result.returncode}",
        )
        return False
    return True
