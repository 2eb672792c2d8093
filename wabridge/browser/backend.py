"""Contract between the session coordinator and a browser-backed messaging client."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol


class BackendEventKind(str, Enum):
    QR = "qr"
    AUTHENTICATED = "authenticated"
    AUTH_FAILURE = "auth_failure"
    READY = "ready"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class BackendEvent:
    kind: BackendEventKind
    payload: str = ""


class MessagingBackend(Protocol):
    """Capabilities the coordinator requires from the messaging client."""

    async def initialize_session(self) -> None:
        """Launch the browser and connect; raise if the session cannot be established."""

    async def destroy_session(self) -> None:
        """Release every backend resource including the spawned browser."""

    async def logout(self) -> None:
        """Drop the authenticated session and release the browser."""

    def get_underlying_process_id(self) -> Optional[int]:
        """Return the browser OS pid if known, else None. Must not raise."""

    def events(self) -> "asyncio.Queue[BackendEvent]":
        """Return the single notification channel for connection events."""
