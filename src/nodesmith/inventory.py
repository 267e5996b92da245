"""System inventory for build planning.

Reads total RAM, active swap and logical CPU count, plus the OS release
identifiers used to decide whether the EL7 workarounds apply.

Memory, swap and CPU readings are mandatory: the planner has no safe
default for them, so any failure raises :class:`FatalEnvironmentError`.
The OS identifiers are informational and best-effort.
"""

from __future__ import annotations

import glob
import json
import os
import platform
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from nodesmith.errors import FatalEnvironmentError
from nodesmith.formatting import format_mib, format_section_header
from nodesmith.logging import get_logger

log = get_logger("inventory")

_MEMINFO = Path("/proc/meminfo")
_OS_RELEASE = Path("/etc/os-release")
_RELEASE_GLOB = "/etc/*release"
_RELEASE_RE = re.compile(r"release\s+(\d+)")


# ---------------------------------------------------------------------------
# SystemInventory
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SystemInventory:
    """Resources and identity of the build host, read once per run."""

    total_memory_mib: int
    swap_mib: int
    cpu_count: int
    el_release: str | None = None
    os_distro: str = ""
    kernel: str = ""
    arch: str = ""
    hostname: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SystemInventory:
        """Deserialize from a dict, ignoring unknown fields."""
        known = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in known}
        return cls(**filtered)

    def to_json(self, indent: int = 2) -> str:
        """Serialize to a JSON string."""
        return json.dumps(self.to_dict(), indent=indent)


# ---------------------------------------------------------------------------
# Mandatory readings
# ---------------------------------------------------------------------------


def parse_meminfo(text: str) -> dict[str, int]:
    """Parse ``/proc/meminfo`` content into a ``{key: kB}`` mapping."""
    mem: dict[str, int] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) >= 2:
            try:
                mem[parts[0].rstrip(":")] = int(parts[1])
            except ValueError:
                continue
    return mem


def read_memory_mib(meminfo_path: Path = _MEMINFO) -> tuple[int, int]:
    """Return ``(total_memory_mib, swap_mib)`` from ``/proc/meminfo``.

    Raises:
        FatalEnvironmentError: If the file cannot be read or lacks
            ``MemTotal`` / ``SwapTotal``.
    """
    try:
        text = meminfo_path.read_text()
    except OSError as exc:
        raise FatalEnvironmentError(f"Cannot read memory info from {meminfo_path}: {exc}") from exc

    mem = parse_meminfo(text)
    if "MemTotal" not in mem:
        raise FatalEnvironmentError(f"MemTotal missing from {meminfo_path}")
    if "SwapTotal" not in mem:
        raise FatalEnvironmentError(f"SwapTotal missing from {meminfo_path}")
    return mem["MemTotal"] // 1024, mem["SwapTotal"] // 1024


def read_cpu_count() -> int:
    """Return the number of logical CPUs this process may run on.

    Uses the scheduler affinity mask where the platform has one, the way
    ``nproc`` does, so cpusets and container limits are respected.

    Raises:
        FatalEnvironmentError: If the count cannot be determined.
    """
    try:
        count: int | None = len(os.sched_getaffinity(0))
    except (AttributeError, OSError):
        count = os.cpu_count()
    if not count or count < 1:
        raise FatalEnvironmentError("Cannot determine logical CPU count")
    return count


# ---------------------------------------------------------------------------
# Informational readings
# ---------------------------------------------------------------------------


def detect_el_release(release_files: list[str] | None = None) -> str | None:
    """Return the EL major release (``"7"``) or ``None`` if unknown.

    Scans ``/etc/*release`` for the first ``release N`` token, the way
    ``/etc/redhat-release`` and ``/etc/centos-release`` spell it.
    """
    paths = release_files if release_files is not None else sorted(glob.glob(_RELEASE_GLOB))
    for name in paths:
        try:
            text = Path(name).read_text(errors="replace")
        except OSError:
            continue
        match = _RELEASE_RE.search(text)
        if match:
            return match.group(1)
    return None


def detect_os_distro(os_release: Path = _OS_RELEASE) -> str:
    """Return ``PRETTY_NAME`` from ``/etc/os-release``, or a platform fallback."""
    try:
        for line in os_release.read_text().splitlines():
            if line.startswith("PRETTY_NAME="):
                return line.split("=", 1)[1].strip().strip('"')
    except OSError:
        pass
    return f"{platform.system()} {platform.release()}"


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------


def capture_inventory(meminfo_path: Path = _MEMINFO) -> SystemInventory:
    """Read the current system inventory.

    Raises:
        FatalEnvironmentError: If memory, swap or CPU count is unreadable.
    """
    total_mib, swap_mib = read_memory_mib(meminfo_path)
    cpu_count = read_cpu_count()
    inventory = SystemInventory(
        total_memory_mib=total_mib,
        swap_mib=swap_mib,
        cpu_count=cpu_count,
        el_release=detect_el_release(),
        os_distro=detect_os_distro(),
        kernel=platform.release(),
        arch=platform.machine(),
        hostname=platform.node(),
    )
    log.debug(
        "Inventory: mem=%d MiB swap=%d MiB cpus=%d el=%s",
        inventory.total_memory_mib,
        inventory.swap_mib,
        inventory.cpu_count,
        inventory.el_release,
    )
    return inventory


def format_inventory(inventory: SystemInventory) -> str:
    """Format an inventory for terminal display."""
    lines = [
        format_section_header("System Inventory"),
        f"OS:       {inventory.os_distro} ({inventory.kernel}, {inventory.arch})",
        f"EL:       {inventory.el_release or 'unknown'}",
        f"CPUs:     {inventory.cpu_count}",
        f"RAM:      {format_mib(inventory.total_memory_mib)}",
        f"Swap:     {format_mib(inventory.swap_mib)}",
        f"Hostname: {inventory.hostname}",
    ]
    return "\n".join(lines)
