"""Runtime settings for the browser supervisor with environment overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from platformdirs import user_data_dir

PID_FILE_NAME = ".chrome-pids.json"
SESSION_DIR_NAME = "whatsapp-sessions"
STALE_AFTER_SECONDS = 10 * 60
STEP_TIMEOUT_SECONDS = 60
BROWSER_PROCESS_NAME = "chrome"
LOG_LEVEL = "INFO"

SWEEP_SIGNATURES = (
    "whatsapp",
    "puppeteer",
    "headless",
    "user-data-dir=",
    SESSION_DIR_NAME,
)


def _env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_path(key: str, default: Path) -> Path:
    raw = os.getenv(key, "").strip()
    return Path(raw).expanduser() if raw else default


def default_session_dir() -> Path:
    """Return the persistent WhatsApp Web profile directory."""
    return Path(user_data_dir("wabridge")) / SESSION_DIR_NAME


@dataclass(frozen=True)
class Settings:
    pid_file: Path
    session_dir: Path
    stale_after_seconds: float = STALE_AFTER_SECONDS
    step_timeout_seconds: float = STEP_TIMEOUT_SECONDS
    browser_process_name: str = BROWSER_PROCESS_NAME
    sweep_signatures: tuple[str, ...] = SWEEP_SIGNATURES
    chrome_executable: str | None = None
    log_level: str = LOG_LEVEL
    browser_args: tuple[str, ...] = field(
        default=(
            "--no-sandbox",
            "--disable-setuid-sandbox",
            "--disable-dev-shm-usage",
            "--disable-accelerated-2d-canvas",
            "--no-first-run",
            "--no-zygote",
            "--disable-gpu",
        )
    )


def load_settings() -> Settings:
    """Build settings from defaults and WABRIDGE_* environment variables."""
    extra_signatures = tuple(
        item.strip().lower()
        for item in os.getenv("WABRIDGE_SWEEP_SIGNATURES", "").split(",")
        if item.strip()
    )
    signatures = SWEEP_SIGNATURES + tuple(
        sig for sig in extra_signatures if sig not in SWEEP_SIGNATURES
    )
    process_name = os.getenv("WABRIDGE_BROWSER_PROCESS_NAME", "").strip() or BROWSER_PROCESS_NAME
    log_level = os.getenv("WABRIDGE_LOG_LEVEL", "").strip().upper() or LOG_LEVEL
    return Settings(
        pid_file=_env_path("WABRIDGE_PID_FILE", Path.cwd() / PID_FILE_NAME),
        session_dir=_env_path("WABRIDGE_SESSION_DIR", default_session_dir()),
        stale_after_seconds=_env_float("WABRIDGE_STALE_AFTER_SECONDS", STALE_AFTER_SECONDS),
        step_timeout_seconds=_env_float("WABRIDGE_STEP_TIMEOUT_SECONDS", STEP_TIMEOUT_SECONDS),
        browser_process_name=process_name,
        sweep_signatures=signatures,
        chrome_executable=os.getenv("CHROME_EXECUTABLE_PATH", "").strip() or None,
        log_level=log_level,
    )
