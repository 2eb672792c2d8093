"""Tests for orphan classification and reclaim passes over the registry."""

from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from wabridge.supervisor.orphan_reclaimer import OrphanReclaimer, is_orphaned
from wabridge.supervisor.process_registry import ProcessRegistry, TrackedProcess

NOW = 10_000_000_000
MINUTE_MS = 60_000


class _ProcessTable:
    """Fake host: a set of live pids plus a record of kill attempts."""

    def __init__(self, running: set[int], unkillable: set[int] | None = None) -> None:
        self.running = set(running)
        self.unkillable = unkillable or set()
        self.probed: list[int] = []
        self.killed: list[int] = []

    async def probe(self, pid: int) -> bool:
        self.probed.append(pid)
        return pid in self.running

    async def kill(self, pid: int) -> bool:
        self.killed.append(pid)
        if pid in self.unkillable:
            return False
        self.running.discard(pid)
        return True


class OrphanPolicyTests(unittest.TestCase):
    def test_requires_foreign_owner_and_age(self) -> None:
        entry = TrackedProcess(pid=1, start_time=NOW - 20 * MINUTE_MS, server_instance_id="A")
        self.assertTrue(is_orphaned(entry, instance_id="B", now=NOW, stale_after_ms=10 * MINUTE_MS))
        self.assertFalse(is_orphaned(entry, instance_id="A", now=NOW, stale_after_ms=10 * MINUTE_MS))

    def test_age_exactly_at_threshold_is_not_stale(self) -> None:
        entry = TrackedProcess(pid=1, start_time=NOW - 10 * MINUTE_MS, server_instance_id="A")
        self.assertFalse(is_orphaned(entry, instance_id="B", now=NOW, stale_after_ms=10 * MINUTE_MS))


class OrphanReclaimerTests(unittest.IsolatedAsyncioTestCase):
    """Validate the reclaim scenarios for owner, age and liveness combinations."""

    async def asyncSetUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.path = Path(self._tmpdir.name) / ".chrome-pids.json"
        self.registry = ProcessRegistry(self.path, instance_id="B", clock=lambda: NOW)

    async def asyncTearDown(self) -> None:
        self._tmpdir.cleanup()

    def _seed(self, *entries: tuple[int, str, int]) -> None:
        self.path.write_text(
            json.dumps(
                [
                    {"pid": pid, "startTime": NOW - age_min * MINUTE_MS, "serverInstanceId": owner}
                    for pid, owner, age_min in entries
                ]
            ),
            encoding="utf-8",
        )

    def _reclaimer(self, table: _ProcessTable) -> OrphanReclaimer:
        return OrphanReclaimer(
            self.registry,
            stale_after_seconds=600,
            probe=table.probe,
            kill=table.kill,
            clock=lambda: NOW,
        )

    async def test_stale_foreign_running_process_is_killed(self) -> None:
        self._seed((111, "A", 20))
        table = _ProcessTable(running={111})
        report = await self._reclaimer(table).reclaim()
        self.assertEqual(table.killed, [111])
        self.assertEqual(report.killed, [111])
        self.assertEqual(await self.registry.tracked_pids(), [])

    async def test_own_process_is_kept_regardless_of_age(self) -> None:
        self._seed((222, "B", 20))
        table = _ProcessTable(running={222})
        await self._reclaimer(table).reclaim()
        self.assertEqual(table.killed, [])
        self.assertEqual(await self.registry.tracked_pids(), [222])

    async def test_young_foreign_process_is_kept(self) -> None:
        self._seed((333, "A", 2))
        table = _ProcessTable(running={333})
        report = await self._reclaimer(table).reclaim()
        self.assertEqual(table.killed, [])
        self.assertEqual(report.kept, [333])
        self.assertEqual(await self.registry.tracked_pids(), [333])

    async def test_dead_process_is_dropped_without_kill(self) -> None:
        self._seed((444, "A", 20), (445, "B", 1))
        table = _ProcessTable(running=set())
        report = await self._reclaimer(table).reclaim()
        self.assertEqual(table.killed, [])
        self.assertEqual(report.dead, [444, 445])
        self.assertEqual(await self.registry.tracked_pids(), [])

    async def test_failed_kill_keeps_entry_for_retry(self) -> None:
        self._seed((555, "A", 30))
        table = _ProcessTable(running={555}, unkillable={555})
        report = await self._reclaimer(table).reclaim()
        self.assertEqual(report.kill_failed, [555])
        self.assertEqual(await self.registry.tracked_pids(), [555])

    async def test_reclaim_is_idempotent(self) -> None:
        self._seed((111, "A", 20), (222, "B", 20), (333, "A", 2), (444, "A", 20))
        table = _ProcessTable(running={111, 222, 333})
        reclaimer = self._reclaimer(table)
        await reclaimer.reclaim()
        after_first = await self.registry.read()
        second = await reclaimer.reclaim()
        self.assertEqual(await self.registry.read(), after_first)
        self.assertEqual(second.removed, 0)
        self.assertEqual(table.killed, [111])

    async def test_empty_registry_writes_empty_list(self) -> None:
        await self._reclaimer(_ProcessTable(running=set())).reclaim()
        self.assertEqual(json.loads(self.path.read_text(encoding="utf-8")), [])


if __name__ == "__main__":
    unittest.main()
