"""Tests for nodesmith.toolchain — root/OS checks, yum groups, SCL and Python."""

from __future__ import annotations

import os
import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from nodesmith.errors import FatalEnvironmentError
from nodesmith.inventory import SystemInventory
from nodesmith.toolchain import (
    DEFAULT_PACKAGE_GROUPS,
    PackageGroup,
    check_os,
    find_python,
    install_package_group,
    install_packages,
    require_build_tools,
    require_root,
    scl_available,
    scl_bin_dirs,
)


def _completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> MagicMock:
    proc = MagicMock()
    proc.returncode = returncode
    proc.stdout = stdout
    proc.stderr = stderr
    return proc


def _inventory(el_release: str | None) -> SystemInventory:
    return SystemInventory(
        total_memory_mib=4096, swap_mib=0, cpu_count=2, el_release=el_release
    )


class TestRequireRoot(unittest.TestCase):
    @patch("nodesmith.toolchain.os.geteuid", return_value=0)
    def test_root(self, _mock: MagicMock) -> None:
        require_root()

    @patch("nodesmith.toolchain.os.geteuid", return_value=1000)
    def test_not_root(self, _mock: MagicMock) -> None:
        with self.assertRaises(FatalEnvironmentError) as ctx:
            require_root()
        self.assertIn("root", str(ctx.exception))


class TestCheckOs(unittest.TestCase):
    def test_supported(self) -> None:
        self.assertTrue(check_os(_inventory("7")))

    def test_unsupported_warns(self) -> None:
        with self.assertLogs("nodesmith.toolchain", level="WARNING"):
            self.assertFalse(check_os(_inventory("8")))

    def test_unknown_warns(self) -> None:
        with self.assertLogs("nodesmith.toolchain", level="WARNING") as logs:
            self.assertFalse(check_os(_inventory(None)))
        self.assertTrue(any("unknown" in line for line in logs.output))

    def test_strict_raises(self) -> None:
        with self.assertRaises(FatalEnvironmentError):
            check_os(_inventory("9"), strict=True)


class TestPackageGroups(unittest.TestCase):
    def test_default_groups(self) -> None:
        groups = {g.name: g for g in DEFAULT_PACKAGE_GROUPS}
        self.assertIn("gcc-c++", groups["build tools"].packages)
        self.assertIn("epel-release", groups["epel"].packages)
        self.assertIn("devtoolset-11-gcc-c++", groups["devtoolset-11"].packages)

    @patch("nodesmith.toolchain.subprocess.run")
    def test_install_success(self, mock_run: MagicMock) -> None:
        mock_run.return_value = _completed()
        self.assertTrue(install_package_group(PackageGroup("tools", ("make", "gcc"))))
        self.assertEqual(mock_run.call_args[0][0], ["yum", "-y", "install", "-q", "make", "gcc"])

    @patch("nodesmith.toolchain.subprocess.run")
    def test_failure_is_a_warning(self, mock_run: MagicMock) -> None:
        mock_run.return_value = _completed(
            1, stderr="Cannot find a valid baseurl for repo: base/7/x86_64"
        )
        with self.assertLogs("nodesmith.toolchain", level="WARNING") as logs:
            self.assertFalse(install_package_group(PackageGroup("build tools", ("gcc",))))
        self.assertTrue(any("valid baseurl" in line for line in logs.output))

    @patch("nodesmith.toolchain.subprocess.run")
    def test_timeout_is_a_warning(self, mock_run: MagicMock) -> None:
        mock_run.side_effect = subprocess.TimeoutExpired(["yum"], 1800)
        with self.assertLogs("nodesmith.toolchain", level="WARNING"):
            self.assertFalse(install_package_group(PackageGroup("scl", ("scl-utils",))))

    @patch("nodesmith.toolchain.subprocess.run", side_effect=FileNotFoundError)
    def test_missing_yum_is_a_warning(self, _mock: MagicMock) -> None:
        with self.assertLogs("nodesmith.toolchain", level="WARNING"):
            self.assertFalse(install_package_group(PackageGroup("epel", ("epel-release",))))

    @patch("nodesmith.toolchain.subprocess.run")
    def test_install_packages_reports_each_group(self, mock_run: MagicMock) -> None:
        mock_run.side_effect = [_completed(1), _completed(0)]
        groups = (
            PackageGroup("epel", ("epel-release",)),
            PackageGroup("build tools", ("gcc",)),
        )
        with self.assertLogs("nodesmith.toolchain", level="WARNING"):
            results = install_packages(groups)
        self.assertEqual(results, {"epel": False, "build tools": True})


class TestRequireBuildTools(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmpdir = Path(self._tmp.name)
        self.bin_dir = self.tmpdir / "bin"
        self.bin_dir.mkdir()
        self.scl_dir = self.tmpdir / "scl"
        self.scl_dir.mkdir()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _install(self, directory: Path, *names: str) -> None:
        for name in names:
            tool = directory / name
            tool.write_text("#!/bin/sh\n")
            os.chmod(tool, 0o755)

    def test_all_present(self) -> None:
        self._install(self.bin_dir, "gcc", "g++", "make", "tar")
        found = require_build_tools(environ={"PATH": str(self.bin_dir)})
        self.assertEqual(found["g++"], self.bin_dir / "g++")
        self.assertEqual(sorted(found), ["g++", "gcc", "make", "tar"])

    def test_missing_compiler_is_fatal(self) -> None:
        self._install(self.bin_dir, "make", "tar")
        with self.assertRaises(FatalEnvironmentError) as ctx:
            require_build_tools(environ={"PATH": str(self.bin_dir)})
        self.assertIn("gcc, g++", str(ctx.exception))
        self.assertNotIn("make", str(ctx.exception))

    def test_extra_dirs_searched_first(self) -> None:
        self._install(self.bin_dir, "gcc", "g++", "make", "tar")
        self._install(self.scl_dir, "gcc", "g++")
        found = require_build_tools(
            extra_dirs=[str(self.scl_dir)], environ={"PATH": str(self.bin_dir)}
        )
        self.assertEqual(found["gcc"], self.scl_dir / "gcc")
        self.assertEqual(found["make"], self.bin_dir / "make")

    def test_scl_bin_dirs(self) -> None:
        self.assertEqual(
            scl_bin_dirs(("devtoolset-11",)), ["/opt/rh/devtoolset-11/root/usr/bin"]
        )


class TestSclAvailable(unittest.TestCase):
    @patch("nodesmith.toolchain.shutil.which", return_value=None)
    def test_no_scl_binary(self, _mock: MagicMock) -> None:
        self.assertFalse(scl_available(("devtoolset-11",)))

    @patch("nodesmith.toolchain.subprocess.run")
    @patch("nodesmith.toolchain.shutil.which", return_value="/usr/bin/scl")
    def test_all_collections_listed(self, _which: MagicMock, mock_run: MagicMock) -> None:
        mock_run.return_value = _completed(stdout="devtoolset-11\nrh-python38\n")
        self.assertTrue(scl_available(("devtoolset-11", "rh-python38")))

    @patch("nodesmith.toolchain.subprocess.run")
    @patch("nodesmith.toolchain.shutil.which", return_value="/usr/bin/scl")
    def test_missing_collection(self, _which: MagicMock, mock_run: MagicMock) -> None:
        mock_run.return_value = _completed(stdout="devtoolset-11\n")
        self.assertFalse(scl_available(("devtoolset-11", "rh-python38")))

    def test_no_collections_requested(self) -> None:
        self.assertFalse(scl_available(()))


class TestFindPython(unittest.TestCase):
    def test_candidate_found(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            python = Path(tmp) / "python3"
            python.write_text("#!/bin/sh\n")
            os.chmod(python, 0o755)
            self.assertEqual(find_python((str(Path(tmp) / "missing"), str(python))), python)

    @patch("nodesmith.toolchain.shutil.which", return_value="/usr/bin/python3")
    def test_falls_back_to_path(self, _mock: MagicMock) -> None:
        self.assertEqual(find_python(("/nonexistent/python3",)), Path("/usr/bin/python3"))

    @patch("nodesmith.toolchain.shutil.which", return_value=None)
    def test_not_found(self, _mock: MagicMock) -> None:
        with self.assertRaises(FatalEnvironmentError):
            find_python(("/nonexistent/python3",))


if __name__ == "__main__":
    unittest.main()
