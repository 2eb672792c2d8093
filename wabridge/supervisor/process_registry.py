"""Persisted registry of browser processes spawned by supervisor instances."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger("wabridge.supervisor.process_registry")


def now_ms() -> int:
    return int(time.time() * 1000)


def new_instance_id() -> str:
    """Return an owner id unique to one supervisor instance in practice."""
    return f"{now_ms()}-{uuid.uuid4().hex[:13]}"


class TrackedProcess(BaseModel):
    """One registry entry; start_time is the registration time, not OS start time."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    pid: int = Field(gt=0)
    start_time: int = Field(alias="startTime")
    server_instance_id: str = Field(alias="serverInstanceId")

    def age_ms(self, now: int) -> int:
        return now - self.start_time


def _parse_entries(payload: Any) -> dict[int, TrackedProcess]:
    entries: dict[int, TrackedProcess] = {}
    if not isinstance(payload, list):
        logger.warning("Browser process file does not contain a list; treating as empty")
        return entries
    for raw in payload:
        try:
            entry = TrackedProcess.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Skipping malformed browser process entry %r: %s", raw, exc.errors())
            continue
        entries[entry.pid] = entry
    return entries


class ProcessRegistry:
    """JSON-file backed set of TrackedProcess keyed by pid.

    Every mutation reads the whole file, changes it in memory and writes the
    whole file back. Within one instance those sequences are serialized by a
    lock; across instances the last writer wins.
    """

    def __init__(
        self,
        path: Path,
        *,
        instance_id: str | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.path = path
        self.instance_id = instance_id or new_instance_id()
        self._clock = clock
        self._lock = asyncio.Lock()
        logger.info(
            "Initialized process registry at %s with instance ID: %s",
            self.path,
            self.instance_id,
        )

    def _read_sync(self) -> dict[int, TrackedProcess]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Error reading browser processes file %s: %s", self.path, exc)
            return {}
        return _parse_entries(payload)

    def _write_sync(self, processes: Iterable[TrackedProcess]) -> None:
        ordered = sorted(processes, key=lambda entry: entry.pid)
        payload = [entry.model_dump(by_alias=True) for entry in ordered]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(self.path.name + ".tmp")
        temp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        temp_path.replace(self.path)

    async def read(self) -> set[TrackedProcess]:
        """Load the persisted set; absent or corrupt storage reads as empty."""
        entries = await asyncio.to_thread(self._read_sync)
        return set(entries.values())

    async def write(self, processes: Iterable[TrackedProcess]) -> None:
        """Overwrite storage with exactly the given set; failures are logged only."""
        snapshot = list(processes)
        try:
            await asyncio.to_thread(self._write_sync, snapshot)
        except OSError as exc:
            logger.error("Error saving browser processes file %s: %s", self.path, exc)

    async def register(self, pid: int) -> None:
        """Upsert pid with the current time and this instance as owner."""
        if not pid or pid <= 0:
            logger.warning("Attempted to register invalid PID: %r", pid)
            return
        logger.info("Registering browser process with PID: %s", pid)
        async with self._lock:
            entries = await asyncio.to_thread(self._read_sync)
            entries[pid] = TrackedProcess(
                pid=pid,
                start_time=self._clock(),
                server_instance_id=self.instance_id,
            )
            await self.write(entries.values())

    async def unregister(self, pid: int) -> None:
        """Remove pid if present; storage is untouched when nothing changed."""
        if not pid or pid <= 0:
            logger.warning("Attempted to unregister invalid PID: %r", pid)
            return
        logger.info("Unregistering browser process with PID: %s", pid)
        async with self._lock:
            entries = await asyncio.to_thread(self._read_sync)
            if entries.pop(pid, None) is None:
                logger.debug("PID %s was not tracked", pid)
                return
            await self.write(entries.values())

    async def replace_all(self, mutate: Callable[[set[TrackedProcess]], Any]) -> Any:
        """Run an async read-modify-write under the registry lock.

        ``mutate`` receives the current set and must return an awaitable that
        resolves to ``(surviving_set, result)``; the surviving set is written
        back and ``result`` returned to the caller.
        """
        async with self._lock:
            current = set((await asyncio.to_thread(self._read_sync)).values())
            surviving, result = await mutate(current)
            await self.write(surviving)
            return result

    async def tracked_pids(self) -> list[int]:
        """Return the sorted pids currently tracked by any instance."""
        return sorted(entry.pid for entry in await self.read())
