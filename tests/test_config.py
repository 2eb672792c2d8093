"""Tests for environment-driven supervisor settings."""

import os
import unittest
from pathlib import Path
from unittest import mock

from wabridge.config import PID_FILE_NAME, STALE_AFTER_SECONDS, SWEEP_SIGNATURES, load_settings


class SettingsTests(unittest.TestCase):
    def test_defaults_use_working_directory_pid_file(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            settings = load_settings()
        self.assertEqual(settings.pid_file, Path.cwd() / PID_FILE_NAME)
        self.assertEqual(settings.stale_after_seconds, STALE_AFTER_SECONDS)
        self.assertEqual(settings.sweep_signatures, SWEEP_SIGNATURES)
        self.assertEqual(settings.session_dir.name, "whatsapp-sessions")

    def test_environment_overrides(self) -> None:
        env = {
            "WABRIDGE_PID_FILE": "/tmp/pids.json",
            "WABRIDGE_STALE_AFTER_SECONDS": "120",
            "WABRIDGE_SWEEP_SIGNATURES": "Remote-Debugging-Port, headless",
            "CHROME_EXECUTABLE_PATH": "/usr/bin/google-chrome",
            "WABRIDGE_LOG_LEVEL": "debug",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            settings = load_settings()
        self.assertEqual(settings.pid_file, Path("/tmp/pids.json"))
        self.assertEqual(settings.stale_after_seconds, 120.0)
        self.assertEqual(settings.sweep_signatures, SWEEP_SIGNATURES + ("remote-debugging-port",))
        self.assertEqual(settings.chrome_executable, "/usr/bin/google-chrome")
        self.assertEqual(settings.log_level, "DEBUG")

    def test_invalid_numbers_fall_back_to_defaults(self) -> None:
        with mock.patch.dict(
            os.environ,
            {"WABRIDGE_STALE_AFTER_SECONDS": "soon", "WABRIDGE_STEP_TIMEOUT_SECONDS": "-4"},
            clear=True,
        ):
            settings = load_settings()
        self.assertEqual(settings.stale_after_seconds, STALE_AFTER_SECONDS)
        self.assertEqual(settings.step_timeout_seconds, 60)


if __name__ == "__main__":
    unittest.main()
