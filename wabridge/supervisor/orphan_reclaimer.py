"""Orphan detection and reclamation over the tracked browser process set."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from wabridge.config import STALE_AFTER_SECONDS

from .process_probe import is_process_running, kill_process
from .process_registry import ProcessRegistry, TrackedProcess, now_ms

logger = logging.getLogger("wabridge.supervisor.orphan_reclaimer")

ProbeFn = Callable[[int], Awaitable[bool]]
KillFn = Callable[[int], Awaitable[bool]]


@dataclass
class ReclaimReport:
    """Outcome of one reclaim pass, by pid."""

    examined: int = 0
    dead: list[int] = field(default_factory=list)
    killed: list[int] = field(default_factory=list)
    kill_failed: list[int] = field(default_factory=list)
    kept: list[int] = field(default_factory=list)

    @property
    def removed(self) -> int:
        return len(self.dead) + len(self.killed)


def is_orphaned(
    entry: TrackedProcess,
    *,
    instance_id: str,
    now: int,
    stale_after_ms: int,
) -> bool:
    """A running entry is orphaned only if it is not ours AND past the threshold."""
    return entry.server_instance_id != instance_id and entry.age_ms(now) > stale_after_ms


class OrphanReclaimer:
    """Prunes dead entries and kills stale processes owned by other instances.

    This is the only automatic termination path. Processes that never made it
    into the registry are never touched here.
    """

    def __init__(
        self,
        registry: ProcessRegistry,
        *,
        stale_after_seconds: float = STALE_AFTER_SECONDS,
        probe: ProbeFn = is_process_running,
        kill: KillFn = kill_process,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.registry = registry
        self.stale_after_ms = int(stale_after_seconds * 1000)
        self._probe = probe
        self._kill = kill
        self._clock = clock

    async def _sweep(
        self, processes: set[TrackedProcess]
    ) -> tuple[set[TrackedProcess], ReclaimReport]:
        report = ReclaimReport(examined=len(processes))
        surviving: set[TrackedProcess] = set()
        for entry in sorted(processes, key=lambda item: item.pid):
            if not await self._probe(entry.pid):
                report.dead.append(entry.pid)
                continue
            orphaned = is_orphaned(
                entry,
                instance_id=self.registry.instance_id,
                now=self._clock(),
                stale_after_ms=self.stale_after_ms,
            )
            if not orphaned:
                surviving.add(entry)
                report.kept.append(entry.pid)
                continue
            logger.info(
                "Found orphaned browser process with PID: %s (owner=%s)",
                entry.pid,
                entry.server_instance_id,
            )
            if await self._kill(entry.pid):
                report.killed.append(entry.pid)
            else:
                surviving.add(entry)
                report.kill_failed.append(entry.pid)
        return surviving, report

    async def reclaim(self) -> ReclaimReport:
        """Run one reclaim pass and write back the surviving set."""
        logger.info("Cleaning up orphaned browser processes...")
        report = await self.registry.replace_all(self._sweep)
        logger.info(
            "Cleanup complete. %d orphaned processes removed (dead=%d killed=%d kill_failed=%d kept=%d).",
            report.removed,
            len(report.dead),
            len(report.killed),
            len(report.kill_failed),
            len(report.kept),
        )
        return report
