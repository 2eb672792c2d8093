"""Headless Chromium driving WhatsApp Web over CDP with a persistent profile."""

from __future__ import annotations

import asyncio
import logging
import shutil
import socket
import subprocess
from pathlib import Path
from typing import Optional

import httpx
from playwright.async_api import (
    Browser,
    Error as PlaywrightError,
    Page,
    Playwright,
    async_playwright,
)

from wabridge.config import Settings
from wabridge.errors import BackendError

from .backend import BackendEvent, BackendEventKind

logger = logging.getLogger("wabridge.browser.chromium_backend")

WHATSAPP_WEB_URL = "https://web.whatsapp.com"
QR_SELECTOR = "div[data-ref]"
CHATS_SELECTOR = "#pane-side"
CDP_READY_TIMEOUT_SECONDS = 30
PAGE_READY_TIMEOUT_MS = 120_000
WATCH_INTERVAL_SECONDS = 1.0
PROCESS_EXIT_TIMEOUT_SECONDS = 5
CHROME_CANDIDATES = (
    "google-chrome",
    "google-chrome-stable",
    "chromium",
    "chromium-browser",
    "chrome",
)


def _free_local_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


def build_browser_command(
    executable: str, *, port: int, session_dir: Path, extra_args: tuple[str, ...]
) -> list[str]:
    """Return the Chromium argv; the profile path doubles as a sweep signature."""
    return [
        executable,
        "--headless=new",
        f"--remote-debugging-port={port}",
        f"--user-data-dir={session_dir}",
        *extra_args,
        "about:blank",
    ]


class ChromiumWhatsAppBackend:
    """MessagingBackend that owns exactly one Chromium subprocess."""

    def __init__(self, settings: Settings, *, url: str = WHATSAPP_WEB_URL) -> None:
        self.settings = settings
        self.url = url
        self._events: asyncio.Queue[BackendEvent] = asyncio.Queue()
        self._process: Optional[asyncio.subprocess.Process] = None
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._page: Optional[Page] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._closing = False

    def events(self) -> "asyncio.Queue[BackendEvent]":
        return self._events

    def _emit(self, kind: BackendEventKind, payload: str = "") -> None:
        self._events.put_nowait(BackendEvent(kind=kind, payload=payload))

    def get_underlying_process_id(self) -> Optional[int]:
        """Return the pid of the Chromium process this backend launched."""
        process = self._process
        if process is None or process.returncode is not None:
            return None
        return process.pid

    def _resolve_executable(self) -> str:
        if self.settings.chrome_executable:
            return self.settings.chrome_executable
        for candidate in CHROME_CANDIDATES:
            found = shutil.which(candidate)
            if found:
                return found
        if self._playwright is not None:
            return self._playwright.chromium.executable_path
        raise BackendError("No Chromium executable found; set CHROME_EXECUTABLE_PATH")

    async def _wait_for_cdp(self, port: int) -> None:
        """Poll the DevTools version endpoint with 1-second retries."""
        url = f"http://127.0.0.1:{port}/json/version"
        async with httpx.AsyncClient(timeout=2.0) as client:
            for _ in range(CDP_READY_TIMEOUT_SECONDS):
                if self._process is not None and self._process.returncode is not None:
                    raise BackendError(
                        f"Chromium exited during startup with status {self._process.returncode}"
                    )
                try:
                    response = await client.get(url)
                    if response.status_code == 200:
                        return
                except httpx.HTTPError:
                    pass
                await asyncio.sleep(1)
        raise BackendError("Timed out waiting for Chromium DevTools endpoint")

    async def initialize_session(self) -> None:
        """Launch Chromium, attach over CDP and wait for QR or chat list."""
        if self._process is not None:
            logger.info("Existing browser found during initialize; releasing it first")
            await self.destroy_session()
        self._closing = False
        self.settings.session_dir.mkdir(parents=True, exist_ok=True)
        try:
            self._playwright = await async_playwright().start()
            executable = self._resolve_executable()
            port = _free_local_port()
            args = build_browser_command(
                executable,
                port=port,
                session_dir=self.settings.session_dir,
                extra_args=self.settings.browser_args,
            )
            logger.info("Launching browser: %s", " ".join(args))
            self._process = await asyncio.create_subprocess_exec(
                *args,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            await self._wait_for_cdp(port)
            self._browser = await self._playwright.chromium.connect_over_cdp(
                f"http://127.0.0.1:{port}"
            )
            self._browser.on("disconnected", lambda _browser: self._on_browser_disconnected())
            contexts = self._browser.contexts
            context = contexts[0] if contexts else await self._browser.new_context()
            pages = context.pages
            self._page = pages[0] if pages else await context.new_page()
            logger.info("Navigating to %s", self.url)
            await self._page.goto(self.url, timeout=PAGE_READY_TIMEOUT_MS)
            await self._page.wait_for_selector(
                f"{QR_SELECTOR}, {CHATS_SELECTOR}", timeout=PAGE_READY_TIMEOUT_MS
            )
        except (PlaywrightError, OSError) as exc:
            await self.destroy_session()
            raise BackendError(f"Failed to start WhatsApp Web session: {exc}") from exc
        except BaseException:
            await self.destroy_session()
            raise
        self._watch_task = asyncio.create_task(self._watch_page())

    def _on_browser_disconnected(self) -> None:
        if self._closing:
            return
        logger.warning("Browser connection lost")
        self._emit(BackendEventKind.DISCONNECTED, "browser disconnected")

    async def _watch_page(self) -> None:
        """Translate page state changes into backend events."""
        last_qr = ""
        authenticated = False
        page = self._page
        while page is not None and not page.is_closed():
            try:
                if await page.query_selector(CHATS_SELECTOR) is not None:
                    if not authenticated:
                        authenticated = True
                        last_qr = ""
                        self._emit(BackendEventKind.AUTHENTICATED)
                        self._emit(BackendEventKind.READY)
                else:
                    if authenticated:
                        authenticated = False
                        self._emit(BackendEventKind.DISCONNECTED, "session logged out")
                    qr_node = await page.query_selector(QR_SELECTOR)
                    if qr_node is not None:
                        qr = await qr_node.get_attribute("data-ref") or ""
                        if qr and qr != last_qr:
                            last_qr = qr
                            self._emit(BackendEventKind.QR, qr)
            except PlaywrightError as exc:
                if not self._closing:
                    logger.warning("Page watch stopped: %s", exc)
                    self._emit(BackendEventKind.DISCONNECTED, str(exc))
                return
            await asyncio.sleep(WATCH_INTERVAL_SECONDS)

    async def _stop_process(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=PROCESS_EXIT_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Browser PID %s ignored terminate; killing", process.pid)
            process.kill()
            await process.wait()

    async def destroy_session(self) -> None:
        """Close CDP attachment, stop Chromium and release Playwright."""
        logger.info("Destroying browser session...")
        self._closing = True
        if self._watch_task is not None:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None
        try:
            if self._browser is not None:
                await self._browser.close()
        except PlaywrightError as exc:
            logger.warning("Error closing CDP connection: %s", exc)
        finally:
            self._browser = None
            self._page = None
            try:
                await self._stop_process()
            except ProcessLookupError:
                pass
            finally:
                self._process = None
                if self._playwright is not None:
                    await self._playwright.stop()
                    self._playwright = None

    async def logout(self) -> None:
        """Destroy the session and delete stored credentials."""
        await self.destroy_session()
        session_dir = self.settings.session_dir
        if session_dir.exists():
            logger.info("Removing stored session data at %s", session_dir)
            await asyncio.to_thread(shutil.rmtree, session_dir)
