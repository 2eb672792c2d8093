"""Async subprocess helper shared by probe, terminator and sweep."""

import asyncio
import logging
import subprocess

logger = logging.getLogger("wabridge.supervisor.commands")


async def run_command(args: list[str]) -> subprocess.CompletedProcess:
    """Run a subprocess command off the event loop and capture stdout/stderr."""
    logger.debug("Running command: %s", " ".join(args))
    return await asyncio.to_thread(
        subprocess.run,
        args,
        capture_output=True,
        text=True,
    )
