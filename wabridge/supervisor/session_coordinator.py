"""Session lifecycle coordination between the messaging backend and the process registry."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from wabridge.browser.backend import BackendEvent, BackendEventKind, MessagingBackend
from wabridge.config import STEP_TIMEOUT_SECONDS
from wabridge.errors import (
    SessionError,
    SessionShutdownError,
    SessionStartError,
    SessionTerminatedError,
)

from .orphan_reclaimer import OrphanReclaimer, ReclaimReport
from .process_registry import ProcessRegistry

logger = logging.getLogger("wabridge.supervisor.session_coordinator")

TransportCloser = Callable[[], Awaitable[None]]


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    DISCONNECTED = "disconnected"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


_FINAL_STATES = {SessionState.SHUTTING_DOWN, SessionState.TERMINATED}


class SessionCoordinator:
    """Owns one backend session: pre-start reclaim, registration and exactly-once teardown."""

    def __init__(
        self,
        backend: MessagingBackend,
        registry: ProcessRegistry,
        reclaimer: OrphanReclaimer,
        *,
        step_timeout_seconds: float = STEP_TIMEOUT_SECONDS,
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.reclaimer = reclaimer
        self.step_timeout_seconds = step_timeout_seconds
        self.terminated = asyncio.Event()
        self._state = SessionState.UNINITIALIZED
        self._latest_qr_code: Optional[str] = None
        self._authenticated = False
        self._event_task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None
        self._transport_closers: list[TransportCloser] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def instance_id(self) -> str:
        return self.registry.instance_id

    @property
    def latest_qr_code(self) -> Optional[str]:
        return self._latest_qr_code

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated and self._state is SessionState.READY

    def add_transport_closer(self, closer: TransportCloser) -> None:
        """Register a transport resource to release during shutdown."""
        self._transport_closers.append(closer)

    async def cleanup_orphaned_processes(self) -> ReclaimReport:
        return await self.reclaimer.reclaim()

    async def tracked_process_ids(self) -> list[int]:
        return await self.registry.tracked_pids()

    def _discover_process_id(self) -> Optional[int]:
        """Best-effort pid lookup; failure means "no id known", never an error."""
        try:
            pid = self.backend.get_underlying_process_id()
        except Exception as exc:
            logger.warning("Error getting browser PID: %s", exc)
            return None
        if not pid:
            logger.warning("Could not determine browser PID")
            return None
        return int(pid)

    def handle_event(self, event: BackendEvent) -> None:
        """Apply one backend notification to session state."""
        if event.kind is BackendEventKind.QR:
            logger.info("QR code received.")
            self._latest_qr_code = event.payload
        elif event.kind is BackendEventKind.AUTHENTICATED:
            logger.info("WhatsApp client authenticated.")
            self._latest_qr_code = None
            self._authenticated = True
        elif event.kind is BackendEventKind.AUTH_FAILURE:
            logger.error("WhatsApp authentication failure: %s", event.payload)
        elif event.kind is BackendEventKind.READY:
            logger.info("WhatsApp client is ready.")
            self._authenticated = True
            if self._state in (SessionState.INITIALIZING, SessionState.DISCONNECTED):
                self._state = SessionState.READY
        elif event.kind is BackendEventKind.DISCONNECTED:
            logger.warning("WhatsApp client disconnected: %s", event.payload)
            self._latest_qr_code = None
            self._authenticated = False
            if self._state is SessionState.READY:
                self._state = SessionState.DISCONNECTED

    async def _consume_events(self, queue: "asyncio.Queue[BackendEvent]") -> None:
        while True:
            event = await queue.get()
            try:
                self.handle_event(event)
            finally:
                queue.task_done()

    def _subscribe(self) -> None:
        if self._event_task is None:
            self._event_task = asyncio.create_task(self._consume_events(self.backend.events()))

    async def _unsubscribe(self) -> None:
        task, self._event_task = self._event_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def start(self) -> None:
        """Reclaim orphans, initialize the backend and register its browser pid."""
        if self._state in (SessionState.READY, SessionState.INITIALIZING):
            logger.warning("WhatsApp client already initialized.")
            return
        if self._state in _FINAL_STATES:
            raise SessionTerminatedError("Session coordinator has been shut down")

        self._state = SessionState.INITIALIZING
        try:
            await self.cleanup_orphaned_processes()
        except Exception:
            if self._state is SessionState.INITIALIZING:
                self._state = SessionState.UNINITIALIZED
            raise
        if self._state is not SessionState.INITIALIZING:
            logger.warning("Session state changed to %s before initialize", self._state.value)
            return
        self._subscribe()
        logger.info("Initializing WhatsApp client...")
        try:
            await asyncio.wait_for(
                self.backend.initialize_session(), timeout=self.step_timeout_seconds
            )
        except Exception as exc:
            if self._state is SessionState.INITIALIZING:
                self._state = SessionState.UNINITIALIZED
            logger.error("Error initializing WhatsApp client: %s", exc)
            raise SessionStartError(f"Failed to initialize WhatsApp client: {exc}") from exc

        if self._state in _FINAL_STATES:
            logger.warning("Shutdown requested during initialize, destroying new client")
            await self._discard_started_session()
            return
        if self._state is SessionState.INITIALIZING:
            self._state = SessionState.READY
        pid = self._discover_process_id()
        if pid is not None:
            await self.registry.register(pid)
            logger.info("Registered browser process with PID: %s", pid)

    async def _discard_started_session(self) -> None:
        # Shutdown's own destroy may have run before this browser existed.
        pid = self._discover_process_id()
        try:
            await asyncio.wait_for(
                self.backend.destroy_session(), timeout=self.step_timeout_seconds
            )
        except Exception as exc:
            logger.error("Error destroying WhatsApp client started during shutdown: %s", exc)
            if pid is not None:
                await self.registry.register(pid)
                logger.info("Registered browser process with PID %s for later reclaim", pid)

    async def logout(self) -> None:
        """Log out of the backend and unregister its browser; start() may follow."""
        if self._state in _FINAL_STATES:
            raise SessionTerminatedError("Session coordinator has been shut down")
        logger.info("Logging out of WhatsApp...")
        pid = self._discover_process_id()
        try:
            await asyncio.wait_for(self.backend.logout(), timeout=self.step_timeout_seconds)
        except Exception as exc:
            logger.error("Error logging out of WhatsApp: %s", exc)
            raise SessionError(f"Failed to log out of WhatsApp: {exc}") from exc
        self._state = SessionState.UNINITIALIZED
        self._latest_qr_code = None
        self._authenticated = False
        logger.info("Successfully logged out of WhatsApp")
        if pid is not None:
            await self.registry.unregister(pid)

    async def shutdown(self) -> None:
        """Tear the session down exactly once.

        The first call runs the teardown and raises SessionShutdownError if it
        failed. Every later or concurrent call logs and returns immediately.
        """
        if self._shutdown_task is not None:
            logger.info("Shutdown already in progress, ignoring additional request")
            return
        self._state = SessionState.SHUTTING_DOWN
        self._shutdown_task = asyncio.create_task(self._run_shutdown())
        await asyncio.shield(self._shutdown_task)

    async def _release_transports(self) -> None:
        closers, self._transport_closers = self._transport_closers, []
        for closer in closers:
            try:
                await closer()
            except Exception as exc:
                logger.warning("Failed to release transport resource: %s", exc)

    async def _run_shutdown(self) -> None:
        logger.info("Shutting down WhatsApp session...")
        try:
            pid = self._discover_process_id()
            await asyncio.wait_for(
                self.backend.destroy_session(), timeout=self.step_timeout_seconds
            )
            logger.info("WhatsApp client destroyed successfully")
            if pid is not None:
                await self.registry.unregister(pid)
                logger.info("Unregistered browser process with PID: %s", pid)
            await self._release_transports()
            await self.cleanup_orphaned_processes()
        except Exception as exc:
            logger.error("Error during shutdown: %s", exc)
            await self._release_transports()
            try:
                await self.cleanup_orphaned_processes()
            except Exception as cleanup_exc:
                logger.error("Safety-net cleanup failed: %s", cleanup_exc)
            raise SessionShutdownError(f"Shutdown failed: {exc}") from exc
        finally:
            await self._unsubscribe()
            self._latest_qr_code = None
            self._authenticated = False
            self._state = SessionState.TERMINATED
            self.terminated.set()
        logger.info("Shutdown completed successfully")
