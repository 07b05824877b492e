import os
import sys
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import patch

from agent_toolbelt.domain.contracts import STATUS_COMPLETED, STATUS_FAILED, STATUS_TIMEOUT
from agent_toolbelt.execution.argv import build_command_spec, build_shell_spec
from agent_toolbelt.execution.foreground import (
    DEFAULT_TIMEOUT_SEC,
    NO_TIMEOUT,
    ForegroundRunner,
    resolve_timeout,
)


class TestResolveTimeout(unittest.TestCase):
    def test_non_positive_means_default(self):
        self.assertEqual(resolve_timeout(0), DEFAULT_TIMEOUT_SEC)
        self.assertEqual(resolve_timeout(-5, default=7), 7)

    def test_explicit_value_kept(self):
        self.assertEqual(resolve_timeout(3), 3)

    def test_sentinel_disables_deadline(self):
        self.assertIsNone(resolve_timeout(NO_TIMEOUT))

    def test_env_overrides_default(self):
        with patch.dict(os.environ, {"TOOLBELT_DEFAULT_TIMEOUT_SEC": "12"}, clear=False):
            self.assertEqual(ForegroundRunner().default_timeout_sec, 12)
        with patch.dict(os.environ, {"TOOLBELT_DEFAULT_TIMEOUT_SEC": "abc"}, clear=False):
            self.assertEqual(ForegroundRunner().default_timeout_sec, DEFAULT_TIMEOUT_SEC)


class TestForegroundRunner(unittest.TestCase):
    def setUp(self):
        self.runner = ForegroundRunner()

    def test_no_timeout_outlives_default_deadline(self):
        runner = ForegroundRunner(default_timeout_sec=1)
        result = runner.run(build_shell_spec("sleep 1.5; echo unbounded"), timeout_sec=NO_TIMEOUT)
        self.assertEqual(result.status, STATUS_COMPLETED)
        self.assertEqual(result.stdout, "unbounded\n")
        self.assertEqual(result.exit_code, 0)

    def test_zero_exit_is_completed(self):
        result = self.runner.run(build_shell_spec("echo hello; echo oops >&2"), timeout_sec=10)
        self.assertEqual(result.status, STATUS_COMPLETED)
        self.assertEqual(result.stdout, "hello\n")
        self.assertEqual(result.stderr, "oops\n")
        self.assertEqual(result.exit_code, 0)

    def test_non_zero_exit_is_failed_with_output(self):
        result = self.runner.run(build_shell_spec("echo partial; exit 3"), timeout_sec=10)
        self.assertEqual(result.status, STATUS_FAILED)
        self.assertEqual(result.stdout, "partial\n")
        self.assertEqual(result.exit_code, 3)

    def test_missing_executable_is_failed_not_raised(self):
        result = self.runner.run(build_command_spec("definitely-not-a-real-binary-xyz"), timeout_sec=5)
        self.assertEqual(result.status, STATUS_FAILED)
        self.assertIn("command not found", result.stderr)

    def test_timeout_kills_process_and_keeps_partial_output(self):
        with tempfile.TemporaryDirectory() as tmp:
            pid_file = Path(tmp) / "pid"
            spec = build_shell_spec(f"echo $$ > {pid_file}; echo started; sleep 30")
            started = time.monotonic()
            result = self.runner.run(spec, timeout_sec=1)
            elapsed = time.monotonic() - started

            self.assertEqual(result.status, STATUS_TIMEOUT)
            self.assertLess(elapsed, 10)
            self.assertIn("started", result.stdout)
            pid = int(pid_file.read_text().strip())
            with self.assertRaises(ProcessLookupError):
                os.kill(pid, 0)

    def test_runs_in_working_directory(self):
        with tempfile.TemporaryDirectory() as tmp:
            result = self.runner.run(build_command_spec("pwd", cwd=Path(tmp)), timeout_sec=5)
        self.assertEqual(Path(result.stdout.strip()).resolve(), Path(tmp).resolve())

    def test_env_overlay_reaches_child(self):
        spec = build_shell_spec('printf %s "$TOOLBELT_RUNNER_VAR"', env=["TOOLBELT_RUNNER_VAR=from-overlay"])
        result = self.runner.run(spec, timeout_sec=5)
        self.assertEqual(result.stdout, "from-overlay")

    def test_stdin_text_is_delivered(self):
        spec = build_command_spec(sys.executable, ["-c", "import sys; print(sys.stdin.read().upper())"])
        result = self.runner.run(spec, timeout_sec=10, stdin_text="hello\n")
        self.assertEqual(result.status, STATUS_COMPLETED)
        self.assertIn("HELLO", result.stdout)

    def test_large_output_does_not_block(self):
        spec = build_command_spec(sys.executable, ["-c", "import sys; sys.stdout.write('x' * 300000)"])
        result = self.runner.run(spec, timeout_sec=10)
        self.assertEqual(result.status, STATUS_COMPLETED)
        self.assertEqual(len(result.stdout), 300000)


if __name__ == "__main__":
    unittest.main()
