"""Host preparation: privilege and OS checks, packages, SCL and Python.

Package installation goes through ``yum`` group by group and is
best-effort: EL7 mirrors are end-of-life and often unreachable, while
the tools they would install may already be present.  A failing group is
logged and skipped.  What the build actually needs is checked afterwards
by :func:`require_build_tools`, which is fatal when a tool is missing.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from nodesmith.errors import FatalEnvironmentError
from nodesmith.formatting import tail_lines
from nodesmith.inventory import SystemInventory
from nodesmith.logging import get_logger

log = get_logger("toolchain")

BUILD_TOOLS = ("gcc", "g++", "make", "tar")


# ---------------------------------------------------------------------------
# Privilege and OS checks
# ---------------------------------------------------------------------------


def require_root() -> None:
    """Abort unless running as root.

    Raises:
        FatalEnvironmentError: If the effective UID is not 0.
    """
    if os.geteuid() != 0:
        raise FatalEnvironmentError("Run as root.")


def check_os(
    inventory: SystemInventory,
    supported: tuple[str, ...] = ("7",),
    *,
    strict: bool = False,
) -> bool:
    """Check that the host runs a supported EL release.

    Returns:
        True if the release is supported.

    Raises:
        FatalEnvironmentError: If *strict* and the release is unsupported
            or unknown.
    """
    release = inventory.el_release
    log.info("Detected EL release: %s", release or "unknown")
    if release in supported:
        return True
    message = (
        f"EL release {release or 'unknown'} is not one of {', '.join(supported)}; "
        f"the EL7 workarounds may be unnecessary or insufficient"
    )
    if strict:
        raise FatalEnvironmentError(message)
    log.warning(message)
    return False


# ---------------------------------------------------------------------------
# Packages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PackageGroup:
    """A set of packages installed with a single yum transaction."""

    name: str
    packages: tuple[str, ...]


DEFAULT_PACKAGE_GROUPS: tuple[PackageGroup, ...] = (
    PackageGroup("epel", ("epel-release",)),
    PackageGroup(
        "build tools",
        ("curl", "tar", "xz", "bzip2", "make", "gcc", "gcc-c++", "git", "perl"),
    ),
    PackageGroup("scl utilities", ("centos-release-scl", "scl-utils")),
    PackageGroup(
        "devtoolset-11",
        ("devtoolset-11", "devtoolset-11-gcc", "devtoolset-11-gcc-c++", "devtoolset-11-binutils"),
    ),
    PackageGroup("rh-python38", ("rh-python38", "rh-python38-python-devel")),
)


def install_package_group(group: PackageGroup, *, timeout: int = 1800) -> bool:
    """Install one package group with yum.

    Returns:
        True on success, False if yum failed, timed out or is missing.
    """
    argv = ["yum", "-y", "install", "-q", *group.packages]
    log.info("Installing %s: %s", group.name, " ".join(group.packages))
    log.debug("Running: %s", " ".join(argv))
    try:
        proc = subprocess.run(argv, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError:
        log.warning("yum not found; skipping %s", group.name)
        return False
    except subprocess.TimeoutExpired:
        log.warning("Installing %s timed out, continuing", group.name)
        return False

    if proc.stdout.strip():
        log.debug("yum stdout: %s", proc.stdout.strip())
    if proc.returncode == 0:
        return True

    log.warning(
        "Installing %s failed (exit %d), continuing: %s",
        group.name,
        proc.returncode,
        tail_lines(proc.stderr.strip() or proc.stdout.strip(), 5),
    )
    return False


def install_packages(
    groups: tuple[PackageGroup, ...] = DEFAULT_PACKAGE_GROUPS,
) -> dict[str, bool]:
    """Install all *groups* in order and return ``{group name: succeeded}``."""
    return {group.name: install_package_group(group) for group in groups}


def scl_bin_dirs(collections: tuple[str, ...]) -> list[str]:
    """``bin`` directories that ``scl enable`` puts on PATH for *collections*."""
    return [f"/opt/rh/{c}/root/usr/bin" for c in collections]


def require_build_tools(
    tools: tuple[str, ...] = BUILD_TOOLS,
    *,
    extra_dirs: list[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Path]:
    """Check that every build tool is on PATH (or in *extra_dirs*).

    Returns:
        ``{tool: resolved path}``.

    Raises:
        FatalEnvironmentError: Naming every tool that is missing.
    """
    env = os.environ if environ is None else environ
    search = os.pathsep.join([*(extra_dirs or []), env.get("PATH", os.defpath)])
    found: dict[str, Path] = {}
    missing: list[str] = []
    for tool in tools:
        path = shutil.which(tool, path=search)
        if path is None:
            missing.append(tool)
        else:
            found[tool] = Path(path)
    if missing:
        raise FatalEnvironmentError(
            f"Required build tool(s) not found: {', '.join(missing)}"
        )
    log.debug("Build tools: %s", ", ".join(f"{t}={p}" for t, p in found.items()))
    return found


# ---------------------------------------------------------------------------
# Software Collections and Python
# ---------------------------------------------------------------------------


def scl_available(collections: tuple[str, ...]) -> bool:
    """Whether ``scl`` exists and lists every one of *collections*."""
    if not collections or shutil.which("scl") is None:
        return False
    try:
        proc = subprocess.run(["scl", "-l"], capture_output=True, text=True, timeout=30)
    except (subprocess.TimeoutExpired, OSError) as exc:
        log.debug("scl -l failed: %s", exc)
        return False
    if proc.returncode != 0:
        return False
    listed = {line.strip() for line in proc.stdout.splitlines()}
    return all(c in listed for c in collections)


def find_python(candidates: tuple[str, ...]) -> Path:
    """Return the first executable Python 3 among *candidates*, then PATH.

    Raises:
        FatalEnvironmentError: If no interpreter is found.
    """
    for candidate in candidates:
        path = Path(candidate)
        if path.is_file() and os.access(path, os.X_OK):
            log.debug("Using Python candidate %s", path)
            return path
    found = shutil.which("python3")
    if found:
        log.debug("Using python3 from PATH: %s", found)
        return Path(found)
    raise FatalEnvironmentError("python3 not found")
