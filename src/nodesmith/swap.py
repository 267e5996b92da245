"""Swap file provisioning.

Creates, activates and persists a swap file of a requested size.  The
contract is create-or-reuse: a path already active as swap is left
untouched, and the fstab entry is only appended once, so repeated runs
never stack swap files.
"""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

from nodesmith.errors import FatalEnvironmentError, SwapAllocationError
from nodesmith.formatting import format_mib
from nodesmith.logging import get_logger
from nodesmith.planner import SwapRequest

log = get_logger("swap")

_PROC_SWAPS = Path("/proc/swaps")
_FSTAB = Path("/etc/fstab")
_MIB = 1024 * 1024


@dataclass
class SwapOutcome:
    """What :func:`ensure_swap` did."""

    path: Path
    action: str  # skipped | already_active | reused | created
    size_mib: int = 0
    allocation_method: str | None = None
    fstab_updated: bool = False


# ---------------------------------------------------------------------------
# State inspection
# ---------------------------------------------------------------------------


def active_swap_paths(proc_swaps: Path = _PROC_SWAPS) -> set[str]:
    """Return the filenames listed as active in ``/proc/swaps``."""
    try:
        text = proc_swaps.read_text()
    except OSError as exc:
        log.debug("Cannot read %s: %s", proc_swaps, exc)
        return set()
    paths: set[str] = set()
    for line in text.splitlines()[1:]:
        parts = line.split()
        if parts:
            paths.add(parts[0])
    return paths


def fstab_has_entry(path: Path, fstab: Path = _FSTAB) -> bool:
    """Whether *fstab* already has an entry whose device is *path*."""
    try:
        text = fstab.read_text()
    except FileNotFoundError:
        return False
    for line in text.splitlines():
        parts = line.split()
        if parts and not parts[0].startswith("#") and parts[0] == str(path):
            return True
    return False


# ---------------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------------


def allocate_with_fallocate(path: Path, size_mib: int) -> None:
    """Reserve *size_mib* for *path* with ``fallocate``.

    Raises:
        SwapAllocationError: If fallocate is missing or the filesystem
            does not support it.
    """
    log.debug("Running: fallocate -l %dM %s", size_mib, path)
    try:
        subprocess.run(
            ["fallocate", "-l", f"{size_mib}M", str(path)],
            capture_output=True,
            text=True,
            timeout=300,
            check=True,
        )
    except FileNotFoundError:
        raise SwapAllocationError("fallocate", "command not found") from None
    except subprocess.CalledProcessError as exc:
        detail = exc.stderr.strip() or f"exit {exc.returncode}"
        raise SwapAllocationError("fallocate", detail) from exc


def allocate_with_dd(path: Path, size_mib: int) -> None:
    """Zero-fill *size_mib* into *path* with ``dd``.

    Raises:
        SwapAllocationError: If dd fails.
    """
    log.debug("Running: dd if=/dev/zero of=%s bs=1M count=%d", path, size_mib)
    try:
        subprocess.run(
            ["dd", "if=/dev/zero", f"of={path}", "bs=1M", f"count={size_mib}"],
            capture_output=True,
            text=True,
            timeout=3600,
            check=True,
        )
    except FileNotFoundError:
        raise SwapAllocationError("dd", "command not found") from None
    except subprocess.CalledProcessError as exc:
        raise SwapAllocationError("dd", exc.stderr.strip() or f"exit {exc.returncode}") from exc


_ALLOCATORS = (
    ("fallocate", allocate_with_fallocate),
    ("dd", allocate_with_dd),
)


def allocate_swap_file(path: Path, size_mib: int) -> str:
    """Allocate a file of exactly *size_mib* MiB, trying each method in turn.

    Returns:
        The name of the method that succeeded.

    Raises:
        FatalEnvironmentError: If every method fails or leaves a file of
            the wrong size.
    """
    expected = size_mib * _MIB
    failures: list[str] = []
    for name, allocate in _ALLOCATORS:
        try:
            allocate(path, size_mib)
        except SwapAllocationError as exc:
            log.warning("Swap allocation with %s failed, trying next method: %s", name, exc)
            failures.append(str(exc))
            path.unlink(missing_ok=True)
            continue

        actual = path.stat().st_size if path.exists() else 0
        if actual == expected:
            return name
        log.warning(
            "Swap allocation with %s produced %d bytes (expected %d)", name, actual, expected
        )
        failures.append(f"{name}: size {actual} != {expected}")
        path.unlink(missing_ok=True)

    raise FatalEnvironmentError(
        f"Could not allocate {format_mib(size_mib)} swap file at {path}: " + "; ".join(failures)
    )


# ---------------------------------------------------------------------------
# Activation
# ---------------------------------------------------------------------------


def _run_required(argv: list[str]) -> None:
    log.debug("Running: %s", " ".join(argv))
    try:
        subprocess.run(argv, capture_output=True, text=True, timeout=300, check=True)
    except FileNotFoundError:
        raise FatalEnvironmentError(f"Required tool not found: {argv[0]}") from None
    except subprocess.CalledProcessError as exc:
        raise FatalEnvironmentError(
            f"{argv[0]} failed (exit {exc.returncode}): {exc.stderr.strip()}"
        ) from exc


def activate_swap_file(path: Path) -> None:
    """Restrict permissions, format and enable *path* as swap.

    Raises:
        FatalEnvironmentError: If mkswap or swapon fails.
    """
    os.chmod(path, 0o600)
    _run_required(["mkswap", str(path)])
    _run_required(["swapon", str(path)])


def persist_swap_entry(path: Path, fstab: Path = _FSTAB) -> bool:
    """Append an fstab entry for *path* unless one exists.

    Returns:
        True if a line was appended.
    """
    if fstab_has_entry(path, fstab):
        return False
    existing = fstab.read_text() if fstab.exists() else ""
    prefix = "" if not existing or existing.endswith("\n") else "\n"
    with fstab.open("a", encoding="utf-8") as f:
        f.write(f"{prefix}{path} none swap sw 0 0\n")
    log.info("Added %s to %s", path, fstab)
    return True


def ensure_swap(
    request: SwapRequest,
    *,
    fstab: Path = _FSTAB,
    proc_swaps: Path = _PROC_SWAPS,
) -> SwapOutcome:
    """Make sure the requested swap file exists, is active and persisted.

    A zero-size request is a no-op.  A path that is already active swap
    is left untouched.  A leftover file of the right size is reused
    without reallocation.

    Raises:
        FatalEnvironmentError: If allocation or activation fails.  Swap
            activated earlier in the run is not rolled back.
    """
    path = request.path
    if request.size_mib <= 0:
        return SwapOutcome(path=path, action="skipped")

    if str(path) in active_swap_paths(proc_swaps):
        log.info("Swap file %s is already active", path)
        return SwapOutcome(
            path=path,
            action="already_active",
            fstab_updated=persist_swap_entry(path, fstab),
        )

    outcome = SwapOutcome(path=path, action="created", size_mib=request.size_mib)
    if path.exists() and path.stat().st_size == request.size_mib * _MIB:
        log.info("Reusing existing swap file %s", path)
        outcome.action = "reused"
    else:
        log.info("Adding %s swap file at %s", format_mib(request.size_mib), path)
        path.unlink(missing_ok=True)
        outcome.allocation_method = allocate_swap_file(path, request.size_mib)

    if request.activate:
        activate_swap_file(path)
        outcome.fstab_updated = persist_swap_entry(path, fstab)
        log.info("Swap enabled at %s", path)
    return outcome


def swap_removal_hint(path: Path) -> str:
    """Command an operator can run to remove the swap file later."""
    return f"swapoff {path} && rm -f {path} && sed -i '\\#^{path} #d' /etc/fstab"
