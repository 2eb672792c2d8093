"""Operator-triggered sweep for WhatsApp browser processes outside the registry."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable

from .commands import run_command
from .orphan_reclaimer import KillFn, OrphanReclaimer, ReclaimReport
from .process_probe import kill_process

logger = logging.getLogger("wabridge.supervisor.browser_sweep")

COMMAND_PREVIEW_CHARS = 100


@dataclass(frozen=True)
class HostProcess:
    pid: int
    command: str

    def preview(self) -> str:
        if len(self.command) > COMMAND_PREVIEW_CHARS:
            return self.command[:COMMAND_PREVIEW_CHARS] + "..."
        return self.command


@dataclass
class SweepResult:
    reclaim: ReclaimReport
    scanned: int = 0
    candidates: list[HostProcess] = field(default_factory=list)
    killed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    declined: bool = False


def parse_ps_output(output: str, process_name: str) -> list[HostProcess]:
    """Parse `ps -eo pid,command` output, keeping lines mentioning process_name."""
    needle = process_name.lower()
    processes: list[HostProcess] = []
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line or needle not in line.lower():
            continue
        parts = line.split(None, 1)
        if len(parts) < 2:
            continue
        try:
            pid = int(parts[0])
        except ValueError:
            continue
        command = parts[1]
        if command.split()[0] in {"grep", "ps"}:
            continue
        processes.append(HostProcess(pid=pid, command=command))
    return processes


def parse_wmic_output(output: str) -> list[HostProcess]:
    """Parse `wmic ... get processid,commandline` output (header skipped)."""
    processes: list[HostProcess] = []
    for raw_line in output.strip().splitlines()[1:]:
        parts = raw_line.strip().split()
        if not parts:
            continue
        try:
            pid = int(parts[-1])
        except ValueError:
            continue
        processes.append(HostProcess(pid=pid, command=" ".join(parts[:-1])))
    return processes


async def find_browser_processes(process_name: str) -> list[HostProcess]:
    """Enumerate host processes whose name or command mentions process_name."""
    try:
        if sys.platform == "win32":
            image = process_name if process_name.endswith(".exe") else f"{process_name}.exe"
            result = await run_command(
                ["wmic", "process", "where", f"name='{image}'", "get", "processid,commandline"]
            )
            parsed = parse_wmic_output(result.stdout)
        else:
            result = await run_command(["ps", "-eo", "pid,command"])
            parsed = parse_ps_output(result.stdout, process_name)
    except Exception as exc:
        logger.error("Error finding %s processes: %s", process_name, exc)
        return []
    if result.returncode != 0:
        logger.error(
            "Process listing failed with status %s: %s",
            result.returncode,
            (result.stderr or "").strip(),
        )
        return []
    own_pid = os.getpid()
    return [process for process in parsed if process.pid != own_pid]


def select_session_browsers(
    processes: Iterable[HostProcess], signatures: Iterable[str]
) -> list[HostProcess]:
    """Keep only processes whose command contains at least one signature."""
    needles = [sig.lower() for sig in signatures if sig]
    return [
        process
        for process in processes
        if any(needle in process.command.lower() for needle in needles)
    ]


async def run_browser_sweep(
    reclaimer: OrphanReclaimer,
    *,
    process_name: str,
    signatures: Iterable[str],
    confirm: Callable[[list[HostProcess]], Awaitable[bool]] | None = None,
    find: Callable[[str], Awaitable[list[HostProcess]]] = find_browser_processes,
    kill: KillFn = kill_process,
) -> SweepResult:
    """Reclaim tracked orphans, then kill signature-matching untracked browsers.

    ``confirm`` is consulted before any kill; ``None`` means unattended mode,
    which proceeds without asking.
    """
    logger.info("Starting manual cleanup of orphaned browser processes...")
    result = SweepResult(reclaim=await reclaimer.reclaim())

    found = await find(process_name)
    result.scanned = len(found)
    logger.info("Found %d %s processes running", len(found), process_name)

    result.candidates = select_session_browsers(found, signatures)
    logger.info(
        "Identified %d browser processes that might be related to WhatsApp",
        len(result.candidates),
    )
    if not result.candidates:
        logger.info("No orphaned WhatsApp browser processes found.")
        return result

    for process in result.candidates:
        logger.info("PID %s: %s", process.pid, process.preview())

    if confirm is None:
        logger.info("Running in non-interactive mode, will attempt to kill processes")
    elif not await confirm(result.candidates):
        logger.info("Operation cancelled by user.")
        result.declined = True
        return result

    for process in result.candidates:
        try:
            killed = await kill(process.pid)
        except Exception as exc:
            logger.error("Failed to kill process %s: %s", process.pid, exc)
            killed = False
        if killed:
            result.killed.append(process.pid)
        else:
            result.failed.append(process.pid)

    logger.info(
        "Cleanup complete. %d of %d processes killed.",
        len(result.killed),
        len(result.candidates),
    )
    return result
