"""Tests for the supervised run loop exit codes and shutdown routing."""

from __future__ import annotations

import asyncio
import unittest

from wabridge.errors import SessionShutdownError, SessionStartError
from wabridge.runtime import SupervisedRuntime


class _StubCoordinator:
    def __init__(
        self, *, fail_start: bool = False, fail_shutdown: bool = False, teardown_delay: float = 0.0
    ) -> None:
        self.fail_start = fail_start
        self.fail_shutdown = fail_shutdown
        self.teardown_delay = teardown_delay
        self.terminated = asyncio.Event()
        self.shutdown_calls = 0
        self.teardowns = 0

    async def start(self) -> None:
        await asyncio.sleep(0)
        if self.fail_start:
            raise SessionStartError("no session")

    async def shutdown(self) -> None:
        self.shutdown_calls += 1
        if self.shutdown_calls > 1:
            return
        self.teardowns += 1
        await asyncio.sleep(self.teardown_delay)
        self.terminated.set()
        if self.fail_shutdown:
            raise SessionShutdownError("destroy failed")


class SupervisedRuntimeTests(unittest.IsolatedAsyncioTestCase):
    async def test_start_failure_shuts_down_with_exit_code_one(self) -> None:
        coordinator = _StubCoordinator(fail_start=True)
        exit_code = await SupervisedRuntime(coordinator).run()
        self.assertEqual(exit_code, 1)
        self.assertEqual(coordinator.teardowns, 1)

    async def test_start_failure_waits_for_signal_teardown(self) -> None:
        coordinator = _StubCoordinator(fail_start=True, teardown_delay=0.05)
        runtime = SupervisedRuntime(coordinator)
        runtime._spawn_shutdown("SIGTERM")
        exit_code = await asyncio.wait_for(runtime.run(), timeout=1)
        self.assertEqual(exit_code, 1)
        self.assertTrue(coordinator.terminated.is_set())
        self.assertEqual(coordinator.shutdown_calls, 2)
        self.assertEqual(coordinator.teardowns, 1)

    async def test_shutdown_request_ends_run_cleanly(self) -> None:
        coordinator = _StubCoordinator()
        runtime = SupervisedRuntime(coordinator)
        run_task = asyncio.create_task(runtime.run())
        await asyncio.sleep(0)
        runtime._spawn_shutdown("SIGTERM")
        runtime._spawn_shutdown("SIGINT")
        self.assertEqual(await asyncio.wait_for(run_task, timeout=1), 0)
        self.assertEqual(coordinator.teardowns, 1)

    async def test_failed_shutdown_sets_nonzero_exit(self) -> None:
        coordinator = _StubCoordinator(fail_shutdown=True)
        runtime = SupervisedRuntime(coordinator)
        run_task = asyncio.create_task(runtime.run())
        await asyncio.sleep(0)
        runtime._spawn_shutdown("SIGTERM")
        self.assertEqual(await asyncio.wait_for(run_task, timeout=1), 1)


if __name__ == "__main__":
    unittest.main()
