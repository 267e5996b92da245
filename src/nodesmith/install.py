"""Exposing and verifying an installed Node.js prefix."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

from nodesmith.errors import FatalEnvironmentError
from nodesmith.logging import get_logger

log = get_logger("install")

NODE_BINARIES = ("node", "npm", "npx")


@dataclass
class VerifyResult:
    """Versions reported by the installed binaries."""

    node_version: str
    npm_version: str | None = None


def link_binaries(
    prefix: Path,
    bin_dir: Path,
    names: tuple[str, ...] = NODE_BINARIES,
) -> list[Path]:
    """Point ``bin_dir/<name>`` at ``prefix/bin/<name>``, replacing old links.

    Returns:
        The links created.
    """
    bin_dir.mkdir(parents=True, exist_ok=True)
    links: list[Path] = []
    for name in names:
        target = prefix / "bin" / name
        link = bin_dir / name
        if link.is_symlink() or link.exists():
            link.unlink()
        link.symlink_to(target)
        log.debug("Linked %s -> %s", link, target)
        links.append(link)
    return links


def profile_shim_text(prefix: Path) -> str:
    """Shell snippet that puts ``prefix/bin`` first on PATH once."""
    bin_path = prefix / "bin"
    return (
        "# Managed by nodesmith.\n"
        'case ":$PATH:" in\n'
        f'  *":{bin_path}:"*) ;;\n'
        f'  *) export PATH="{bin_path}:$PATH" ;;\n'
        "esac\n"
    )


def write_profile_shim(prefix: Path, path: Path) -> bool:
    """Write the PATH shim to *path* (e.g. ``/etc/profile.d/...``).

    Returns:
        True if the file changed.
    """
    text = profile_shim_text(prefix)
    if path.exists() and path.read_text(encoding="utf-8") == text:
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    path.chmod(0o644)
    log.info("Wrote profile shim %s", path)
    return True


def _version_of(binary: Path) -> str:
    proc = subprocess.run(
        [str(binary), "-v"],
        capture_output=True,
        text=True,
        timeout=60,
        check=True,
    )
    return proc.stdout.strip()


def verify_installation(bin_dir: Path) -> VerifyResult:
    """Run ``node -v`` (required) and ``npm -v`` (best-effort).

    Raises:
        FatalEnvironmentError: If node cannot report its version.
    """
    try:
        node_version = _version_of(bin_dir / "node")
    except (OSError, subprocess.SubprocessError) as exc:
        raise FatalEnvironmentError(f"Installed node does not run: {exc}") from exc
    log.info("node %s", node_version)

    result = VerifyResult(node_version=node_version)
    try:
        result.npm_version = _version_of(bin_dir / "npm")
        log.info("npm %s", result.npm_version)
    except (OSError, subprocess.SubprocessError) as exc:
        log.warning("npm -v failed: %s", exc)
    return result
