"""Tests for nodesmith.cli — Click commands."""

from __future__ import annotations

import json
import logging
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from click.testing import CliRunner

from nodesmith.cli import main
from nodesmith.errors import BuildError, FatalEnvironmentError
from nodesmith.inventory import SystemInventory
from nodesmith.source import CARES_CONFIG
from nodesmith.swap import SwapOutcome

_SMALL_HOST = SystemInventory(total_memory_mib=3951, swap_mib=0, cpu_count=2, el_release="7")
_BIG_HOST = SystemInventory(total_memory_mib=16384, swap_mib=2048, cpu_count=8, el_release="7")

# Keep the host's environment out of override resolution.
_CLEAN_ENV: dict[str, str | None] = {
    name: None
    for name in (
        "MAKE_JOBS",
        "SWAP_GB",
        "OPT_LEVEL",
        "VERBOSE",
        "NODESMITH_JOBS",
        "NODESMITH_SWAP_GB",
        "NODESMITH_OPT_LEVEL",
        "NODESMITH_VERBOSE",
    )
}


class _LoggingCase(unittest.TestCase):
    """Drops handlers that setup_logging bound to CliRunner's streams."""

    def tearDown(self) -> None:
        logger = logging.getLogger("nodesmith")
        for handler in list(logger.handlers):
            handler.close()
        logger.handlers.clear()


class TestHelp(unittest.TestCase):
    def test_main_help(self) -> None:
        result = CliRunner().invoke(main, ["--help"])
        self.assertEqual(result.exit_code, 0)
        for command in ("build", "plan", "inventory", "swap", "patch-cares"):
            self.assertIn(command, result.output)

    def test_build_help(self) -> None:
        result = CliRunner().invoke(main, ["build", "--help"])
        self.assertEqual(result.exit_code, 0)
        self.assertIn("--dry-run", result.output)
        self.assertIn("--swap-gb", result.output)
        self.assertIn("MAKE_JOBS", result.output)

    def test_version(self) -> None:
        result = CliRunner().invoke(main, ["--version"])
        self.assertEqual(result.exit_code, 0)
        self.assertIn("0.1.0", result.output)


class TestInventoryCommand(unittest.TestCase):
    @patch("nodesmith.cli.capture_inventory", return_value=_SMALL_HOST)
    def test_json(self, _mock: MagicMock) -> None:
        result = CliRunner().invoke(main, ["inventory", "--json"])
        self.assertEqual(result.exit_code, 0, result.output)
        data = json.loads(result.output)
        self.assertEqual(data["total_memory_mib"], 3951)
        self.assertEqual(data["cpu_count"], 2)

    @patch("nodesmith.cli.capture_inventory", return_value=_SMALL_HOST)
    def test_text(self, _mock: MagicMock) -> None:
        result = CliRunner().invoke(main, ["inventory"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("3.9 GiB", result.output)

    @patch(
        "nodesmith.cli.capture_inventory",
        side_effect=FatalEnvironmentError("Cannot read memory info from /proc/meminfo"),
    )
    def test_unreadable_host(self, _mock: MagicMock) -> None:
        result = CliRunner().invoke(main, ["inventory"])
        self.assertEqual(result.exit_code, 1)
        self.assertIn("Cannot read memory info", result.output)


class TestPlanCommand(unittest.TestCase):
    @patch("nodesmith.cli.capture_inventory", return_value=_SMALL_HOST)
    def test_small_host(self, _mock: MagicMock) -> None:
        result = CliRunner().invoke(main, ["plan", "--json"], env=_CLEAN_ENV)
        self.assertEqual(result.exit_code, 0, result.output)
        data = json.loads(result.output)
        self.assertEqual(data["job_count"], 1)
        self.assertEqual(data["swap_to_add_mib"], 8192)
        self.assertEqual(data["optimization_profile"], "O0")

    @patch("nodesmith.cli.capture_inventory", return_value=_BIG_HOST)
    def test_big_host_text(self, _mock: MagicMock) -> None:
        result = CliRunner().invoke(main, ["plan"], env=_CLEAN_ENV)
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Build Plan", result.output)
        self.assertIn("Jobs:     3 (computed)", result.output)

    @patch("nodesmith.cli.capture_inventory", return_value=_BIG_HOST)
    def test_environment_override(self, _mock: MagicMock) -> None:
        env = dict(_CLEAN_ENV, MAKE_JOBS="6")
        result = CliRunner().invoke(main, ["plan", "--json"], env=env)
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(json.loads(result.output)["job_count"], 6)

    @patch("nodesmith.cli.capture_inventory", return_value=_BIG_HOST)
    def test_cli_beats_environment(self, _mock: MagicMock) -> None:
        env = dict(_CLEAN_ENV, MAKE_JOBS="6")
        result = CliRunner().invoke(main, ["plan", "--json", "-j", "2"], env=env)
        self.assertEqual(json.loads(result.output)["job_count"], 2)

    @patch("nodesmith.cli.capture_inventory", return_value=_SMALL_HOST)
    def test_invalid_jobs(self, _mock: MagicMock) -> None:
        result = CliRunner().invoke(main, ["plan", "--jobs", "lots"], env=_CLEAN_ENV)
        self.assertEqual(result.exit_code, 1)
        self.assertIn("Invalid job count", result.output)

    @patch("nodesmith.cli.capture_inventory", return_value=_SMALL_HOST)
    def test_config_file_policy(self, _mock: MagicMock) -> None:
        runner = CliRunner()
        with runner.isolated_filesystem():
            Path("nodesmith.yaml").write_text("policy: throughput\n")
            result = runner.invoke(
                main, ["plan", "--json", "--config", "nodesmith.yaml"], env=_CLEAN_ENV
            )
        self.assertEqual(result.exit_code, 0, result.output)
        data = json.loads(result.output)
        self.assertEqual(data["policy_name"], "throughput")
        self.assertEqual(data["swap_to_add_mib"], 16384)


class TestBuildCommand(_LoggingCase):
    @patch("nodesmith.pipeline.capture_inventory", return_value=_SMALL_HOST)
    def test_dry_run_prints_plan(self, _mock: MagicMock) -> None:
        result = CliRunner().invoke(main, ["build", "--dry-run", "-q"], env=_CLEAN_ENV)
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Build Plan", result.output)
        self.assertIn("Jobs:     1 (computed)", result.output)

    @patch("nodesmith.cli.run_pipeline")
    def test_build_failure_shows_tail(self, mock_pipeline: MagicMock) -> None:
        mock_pipeline.side_effect = BuildError("make", 2, "g++: fatal error: Killed signal")
        with tempfile.TemporaryDirectory() as tmp:
            log_file = Path(tmp) / "build.log"
            result = CliRunner().invoke(
                main, ["build", "-q", "--log-file", str(log_file)], env=_CLEAN_ENV
            )
        self.assertEqual(result.exit_code, 1)
        self.assertIn("Killed signal", result.output)
        self.assertIn("Build step 'make' failed (exit 2)", result.output)

    @patch("nodesmith.cli.run_pipeline")
    def test_fatal_error(self, mock_pipeline: MagicMock) -> None:
        mock_pipeline.side_effect = FatalEnvironmentError("Run as root.")
        with tempfile.TemporaryDirectory() as tmp:
            log_file = Path(tmp) / "build.log"
            result = CliRunner().invoke(
                main, ["build", "-q", "--log-file", str(log_file)], env=_CLEAN_ENV
            )
        self.assertEqual(result.exit_code, 1)
        self.assertIn("Run as root.", result.output)

    @patch("nodesmith.cli.run_pipeline")
    def test_unwritable_log_file(self, mock_pipeline: MagicMock) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            blocker = Path(tmp) / "not-a-dir"
            blocker.write_text("")
            log_file = blocker / "build.log"
            result = CliRunner().invoke(
                main, ["build", "-q", "--skip-deps", "--log-file", str(log_file)], env=_CLEAN_ENV
            )
        self.assertEqual(result.exit_code, 1)
        self.assertIsInstance(result.exception, SystemExit)
        self.assertIn("Cannot open build log", result.output)
        mock_pipeline.assert_not_called()


class TestSwapCommand(_LoggingCase):
    @patch("nodesmith.cli.ensure_swap")
    @patch("nodesmith.cli.require_root")
    def test_creates_swap(self, _root: MagicMock, mock_ensure: MagicMock) -> None:
        mock_ensure.return_value = SwapOutcome(
            path=Path("/swapfile_test"), action="created", size_mib=4096
        )
        result = CliRunner().invoke(main, ["swap", "--size-gb", "4", "--path", "/swapfile_test"])
        self.assertEqual(result.exit_code, 0, result.output)
        request = mock_ensure.call_args[0][0]
        self.assertEqual(request.size_mib, 4096)
        self.assertEqual(request.path, Path("/swapfile_test"))
        self.assertIn("created", result.output)
        self.assertIn("swapoff /swapfile_test", result.output)

    @patch("nodesmith.cli.ensure_swap")
    @patch("nodesmith.cli.require_root")
    def test_already_active(self, _root: MagicMock, mock_ensure: MagicMock) -> None:
        mock_ensure.return_value = SwapOutcome(path=Path("/swapfile_node22"), action="already_active")
        result = CliRunner().invoke(main, ["swap", "--size-gb", "8"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("already active", result.output)
        self.assertNotIn("swapoff", result.output)

    def test_size_must_be_positive(self) -> None:
        result = CliRunner().invoke(main, ["swap", "--size-gb", "0"])
        self.assertEqual(result.exit_code, 2)

    @patch("nodesmith.cli.require_root", side_effect=FatalEnvironmentError("Run as root."))
    def test_requires_root(self, _root: MagicMock) -> None:
        result = CliRunner().invoke(main, ["swap", "--size-gb", "8"])
        self.assertEqual(result.exit_code, 1)
        self.assertIn("Run as root.", result.output)


class TestPatchCaresCommand(_LoggingCase):
    def test_patches_tree(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            header = Path(tmp) / CARES_CONFIG
            header.parent.mkdir(parents=True)
            header.write_text("#define HAVE_GETRANDOM 1\n")
            result = CliRunner().invoke(main, ["patch-cares", tmp])
            self.assertEqual(result.exit_code, 0, result.output)
            self.assertIn("#undef HAVE_GETRANDOM", header.read_text())

    def test_missing_header(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            result = CliRunner().invoke(main, ["patch-cares", tmp])
        self.assertEqual(result.exit_code, 1)
        self.assertIn("not found", result.output)


if __name__ == "__main__":
    unittest.main()
