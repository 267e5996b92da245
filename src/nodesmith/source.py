"""Fetching, unpacking and patching the Node.js source tree."""

from __future__ import annotations

import re
import shutil
import tarfile
from pathlib import Path

import requests

from nodesmith import __version__
from nodesmith.errors import FatalEnvironmentError
from nodesmith.logging import get_logger

log = get_logger("source")

_USER_AGENT = f"nodesmith/{__version__}"
_CHUNK_SIZE = 1024 * 1024

CARES_CONFIG = Path("deps/cares/config/linux/ares_config.h")

# sys/random.h and getrandom() arrived in glibc 2.25; EL7 ships 2.17.
CARES_DISABLED_MACROS = ("HAVE_SYS_RANDOM_H", "HAVE_GETRANDOM")


# ---------------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------------


def node_tarball_url(version: str, mirror: str = "https://nodejs.org/dist") -> str:
    """Return the source tarball URL for *version* (``v22.18.0``)."""
    return f"{mirror.rstrip('/')}/{version}/node-{version}.tar.gz"


def download_source(url: str, dest: Path, *, timeout: float = 60.0) -> Path:
    """Download *url* to *dest* unless *dest* already exists.

    The body is streamed into ``<dest>.part`` and renamed on completion,
    so an interrupted download is never mistaken for a finished one.

    Raises:
        FatalEnvironmentError: On connection errors or a non-200 response.
    """
    if dest.exists():
        log.info("Reusing downloaded %s", dest)
        return dest

    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(dest.name + ".part")
    log.info("Downloading %s", url)
    try:
        with requests.get(
            url, stream=True, timeout=timeout, headers={"User-Agent": _USER_AGENT}
        ) as resp:
            if resp.status_code != 200:
                raise FatalEnvironmentError(f"Download of {url} failed: HTTP {resp.status_code}")
            with partial.open("wb") as f:
                for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
    except requests.RequestException as exc:
        partial.unlink(missing_ok=True)
        raise FatalEnvironmentError(f"Download of {url} failed: {exc}") from exc
    except FatalEnvironmentError:
        partial.unlink(missing_ok=True)
        raise

    partial.rename(dest)
    log.debug("Downloaded %d bytes to %s", dest.stat().st_size, dest)
    return dest


def extract_source(tarball: Path, src_root: Path, dir_name: str) -> Path:
    """Unpack *tarball* into *src_root*, replacing any previous tree.

    Returns:
        Path to the extracted ``src_root/dir_name`` directory.

    Raises:
        FatalEnvironmentError: If the archive is unreadable or does not
            contain *dir_name*.
    """
    target = src_root / dir_name
    if target.exists():
        log.debug("Removing previous source tree %s", target)
        shutil.rmtree(target)

    log.info("Extracting %s into %s", tarball, src_root)
    try:
        with tarfile.open(tarball, "r:gz") as tar:
            if hasattr(tarfile, "data_filter"):
                tar.extractall(src_root, filter="data")
            else:
                tar.extractall(src_root)  # noqa: S202
    except (tarfile.TarError, OSError) as exc:
        raise FatalEnvironmentError(f"Cannot extract {tarball}: {exc}") from exc

    if not target.is_dir():
        raise FatalEnvironmentError(f"{tarball} did not contain {dir_name}/")
    return target


# ---------------------------------------------------------------------------
# c-ares patch
# ---------------------------------------------------------------------------


def patch_cares_text(text: str) -> str:
    """Return ares_config.h content with the EL7-unavailable macros undefined.

    ``#define`` lines for each macro become ``#undef``; a macro that does
    not appear at all gets an ``#undef`` appended.  Applying the patch
    twice gives the same result.
    """
    for macro in CARES_DISABLED_MACROS:
        pattern = re.compile(rf"^#\s*define\s+{macro}\b.*$", re.MULTILINE)
        text = pattern.sub(f"#undef {macro}", text)
        if not re.search(rf"\b{macro}\b", text):
            if text and not text.endswith("\n"):
                text += "\n"
            text += f"#undef {macro}\n"
    return text


def patch_cares_config(source_dir: Path) -> bool:
    """Patch the bundled c-ares config header in *source_dir*.

    Returns:
        True if the header was found (and patched if needed), False if it
        is missing; the build's ``-U`` flags still cover that case.
    """
    header = source_dir / CARES_CONFIG
    if not header.is_file():
        log.warning("%s not found; relying on -U defines during build", CARES_CONFIG)
        return False

    original = header.read_text(encoding="utf-8")
    patched = patch_cares_text(original)
    if patched != original:
        header.write_text(patched, encoding="utf-8")
        log.info("Patched %s (disabled %s)", CARES_CONFIG, ", ".join(CARES_DISABLED_MACROS))
    else:
        log.info("%s already patched", CARES_CONFIG)
    return True
