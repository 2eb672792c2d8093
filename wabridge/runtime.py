"""Supervised run loop: start the session, wait for a signal, shut down once."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

from wabridge.browser.backend import MessagingBackend
from wabridge.browser.chromium_backend import ChromiumWhatsAppBackend
from wabridge.config import Settings
from wabridge.errors import SessionShutdownError, SessionStartError, SessionTerminatedError
from wabridge.supervisor.orphan_reclaimer import OrphanReclaimer
from wabridge.supervisor.process_registry import ProcessRegistry
from wabridge.supervisor.session_coordinator import SessionCoordinator

logger = logging.getLogger("wabridge.runtime")


def build_reclaimer(settings: Settings, registry: Optional[ProcessRegistry] = None) -> OrphanReclaimer:
    registry = registry or ProcessRegistry(settings.pid_file)
    return OrphanReclaimer(registry, stale_after_seconds=settings.stale_after_seconds)


def build_coordinator(
    settings: Settings, backend: Optional[MessagingBackend] = None
) -> SessionCoordinator:
    """Wire registry, reclaimer and backend into one coordinator."""
    registry = ProcessRegistry(settings.pid_file)
    return SessionCoordinator(
        backend or ChromiumWhatsAppBackend(settings),
        registry,
        build_reclaimer(settings, registry),
        step_timeout_seconds=settings.step_timeout_seconds,
    )


class SupervisedRuntime:
    """Routes OS signals and unhandled loop errors into one coordinator shutdown."""

    def __init__(self, coordinator: SessionCoordinator) -> None:
        self.coordinator = coordinator
        self.exit_code = 0
        self._tasks: set[asyncio.Task] = set()
        self._signals: list[signal.Signals] = []

    async def request_shutdown(self, reason: str) -> None:
        logger.info("Received %s. Shutting down gracefully...", reason)
        try:
            await self.coordinator.shutdown()
        except SessionShutdownError as exc:
            logger.error("Error during graceful shutdown: %s", exc)
            self.exit_code = 1

    def _spawn_shutdown(self, reason: str) -> None:
        task = asyncio.create_task(self.request_shutdown(reason))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        logger.error(
            "Unhandled error: %s",
            context.get("message", "unknown"),
            exc_info=context.get("exception"),
        )
        self.exit_code = 1
        self._spawn_shutdown("unhandled error")

    def _install_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        loop.set_exception_handler(self._handle_loop_exception)
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, lambda s=sig: self._spawn_shutdown(s.name))
                self._signals.append(sig)
            except (NotImplementedError, RuntimeError):
                # Windows ProactorEventLoop does not support add_signal_handler
                logger.warning("Signal handlers not supported on this platform.")
                break

    def _remove_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals = []
        loop.set_exception_handler(None)

    async def run(self) -> int:
        """Run until terminated and return the process exit code."""
        loop = asyncio.get_running_loop()
        self._install_handlers(loop)
        try:
            try:
                await self.coordinator.start()
            except SessionStartError as exc:
                logger.error("Failed to start WhatsApp session: %s", exc)
                self.exit_code = 1
                await self.request_shutdown("startup failure")
            except SessionTerminatedError:
                logger.info("Shutdown requested before the WhatsApp session started")
            else:
                logger.info("WhatsApp session started; waiting for termination signal")
            # A signal may already own the shutdown; wait for its teardown too.
            await self.coordinator.terminated.wait()
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            return self.exit_code
        finally:
            self._remove_handlers(loop)
