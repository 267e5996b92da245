"""Build configuration loading.

Handles:
- Defaults for a Node.js build on an EL7 host.
- Loading settings from a YAML file.
- Reading the operator overrides (jobs, swap size, optimization level,
  verbosity) from the environment and the command line.

The environment is only read here, at the edge; the planner and the
build invoker receive explicit values.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from nodesmith.errors import FatalEnvironmentError
from nodesmith.logging import get_logger
from nodesmith.planner import (
    POLICIES,
    OptimizationProfile,
    PlannerPolicy,
    PlanOverrides,
    policy_from_mapping,
)

log = get_logger("config")

DEFAULT_NODE_VERSION = "v22.18.0"
DEFAULT_MIRROR = "https://nodejs.org/dist"
DEFAULT_SCL_COLLECTIONS = ("devtoolset-11", "rh-python38")
DEFAULT_PYTHON_CANDIDATES = ("/opt/rh/rh-python38/root/usr/bin/python3",)

# Environment variable names per override, highest precedence first.
ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "jobs": ("NODESMITH_JOBS", "MAKE_JOBS"),
    "swap_gb": ("NODESMITH_SWAP_GB", "SWAP_GB"),
    "opt_level": ("NODESMITH_OPT_LEVEL", "OPT_LEVEL"),
    "verbose": ("NODESMITH_VERBOSE", "VERBOSE"),
}


# ---------------------------------------------------------------------------
# BuildConfig
# ---------------------------------------------------------------------------


@dataclass
class BuildConfig:
    """Resolved configuration for a build run."""

    node_version: str = DEFAULT_NODE_VERSION
    mirror: str = DEFAULT_MIRROR
    src_root: Path = field(default_factory=lambda: Path("/usr/local/src"))
    prefix: Path | None = None  # Derived from node_version if unset
    log_file: Path | None = None  # Derived from node_version if unset
    swap_path: Path | None = None  # Derived from the major version if unset
    bin_dir: Path = field(default_factory=lambda: Path("/usr/local/bin"))
    profile_script: Path = field(
        default_factory=lambda: Path("/etc/profile.d/nodesmith-node.sh")
    )
    intl: str = "none"
    download_timeout: float = 60.0
    scl_collections: tuple[str, ...] = DEFAULT_SCL_COLLECTIONS
    python_candidates: tuple[str, ...] = DEFAULT_PYTHON_CANDIDATES
    supported_el_releases: tuple[str, ...] = ("7",)
    policy: PlannerPolicy = field(default_factory=lambda: POLICIES["constrained"])

    def __post_init__(self) -> None:
        if not self.node_version.startswith("v"):
            self.node_version = f"v{self.node_version}"

    @property
    def node_dir_name(self) -> str:
        """Source directory name, e.g. ``node-v22.18.0``."""
        return f"node-{self.node_version}"

    @property
    def tarball_name(self) -> str:
        return f"{self.node_dir_name}.tar.gz"

    @property
    def source_dir(self) -> Path:
        return self.src_root / self.node_dir_name

    @property
    def install_prefix(self) -> Path:
        return self.prefix or Path("/opt") / self.node_dir_name

    @property
    def build_log(self) -> Path:
        return self.log_file or Path(f"/root/node_{self.node_version}_build.log")

    @property
    def swap_file(self) -> Path:
        if self.swap_path is not None:
            return self.swap_path
        major = self.node_version.lstrip("v").split(".", 1)[0]
        return Path(f"/swapfile_node{major}")


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------


def load_config_file(config_path: Path) -> dict[str, Any]:
    """Load build settings from a YAML file.

    File format::

        node_version: v22.18.0
        prefix: /opt/node-v22.18.0
        policy: constrained
        planner:
          low_mem_threshold_mib: 6144
          hard_cap: 3
          memory_per_job_mib: 1700
          swap_target_gib: 8

    Raises:
        FatalEnvironmentError: If the file is missing or is not a mapping.
    """
    if not config_path.exists():
        raise FatalEnvironmentError(f"Config file not found: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise FatalEnvironmentError(f"Invalid YAML in {config_path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise FatalEnvironmentError(
            f"Config must be a YAML mapping, got {type(data).__name__}"
        )
    return data


_PATH_KEYS = ("src_root", "prefix", "log_file", "swap_path", "bin_dir", "profile_script")
_STR_KEYS = ("node_version", "mirror", "intl")
_TUPLE_KEYS = ("scl_collections", "python_candidates", "supported_el_releases")


def config_from_mapping(
    data: Mapping[str, Any],
    *,
    cli_overrides: Mapping[str, Any] | None = None,
) -> BuildConfig:
    """Build a BuildConfig from a parsed mapping.

    CLI values that are not ``None`` take precedence over file values.

    Raises:
        FatalEnvironmentError: On unknown keys or invalid values.
    """
    merged: dict[str, Any] = dict(data)
    for key, value in (cli_overrides or {}).items():
        if value is not None:
            merged[key] = value

    known = set(_PATH_KEYS) | set(_STR_KEYS) | set(_TUPLE_KEYS)
    known |= {"policy", "planner", "download_timeout"}
    unknown = sorted(set(merged) - known)
    if unknown:
        raise FatalEnvironmentError(f"Unknown config key(s): {', '.join(unknown)}")

    kwargs: dict[str, Any] = {}
    for key in _STR_KEYS:
        if key in merged:
            kwargs[key] = str(merged[key])
    for key in _PATH_KEYS:
        if key in merged:
            kwargs[key] = Path(merged[key])
    for key in _TUPLE_KEYS:
        if key in merged:
            value = merged[key]
            if isinstance(value, str):
                value = [value]
            if not isinstance(value, (list, tuple)):
                raise FatalEnvironmentError(f"{key} must be a list (got {value!r})")
            kwargs[key] = tuple(str(v) for v in value)
    if "download_timeout" in merged:
        try:
            kwargs["download_timeout"] = float(merged["download_timeout"])
        except (TypeError, ValueError):
            raise FatalEnvironmentError(
                f"download_timeout must be a number (got {merged['download_timeout']!r})"
            ) from None

    policy_name = str(merged.get("policy", "constrained"))
    if policy_name not in POLICIES:
        raise FatalEnvironmentError(
            f"Unknown policy {policy_name!r} (expected one of {', '.join(sorted(POLICIES))})"
        )
    policy = POLICIES[policy_name]
    planner_data = merged.get("planner") or {}
    if not isinstance(planner_data, dict):
        raise FatalEnvironmentError("'planner' must be a mapping of setting -> value")
    try:
        policy = policy_from_mapping(policy, planner_data)
    except ValueError as exc:
        raise FatalEnvironmentError(str(exc)) from exc
    kwargs["policy"] = policy

    return BuildConfig(**kwargs)


# ---------------------------------------------------------------------------
# Overrides
# ---------------------------------------------------------------------------


def overrides_from_env(environ: Mapping[str, str]) -> dict[str, str]:
    """Collect raw override strings from *environ*.

    ``NODESMITH_*`` names win over the bare names.  Empty values are ignored.
    """
    raw: dict[str, str] = {}
    for key, names in ENV_OVERRIDES.items():
        for name in names:
            value = environ.get(name, "").strip()
            if value:
                raw[key] = value
                break
    return raw


def _parse_jobs(value: str | int) -> int | None:
    if isinstance(value, int):
        jobs = value
    else:
        if value.strip().lower() == "auto":
            return None
        try:
            jobs = int(value)
        except ValueError:
            raise FatalEnvironmentError(
                f"Invalid job count {value!r}: expected 'auto' or a positive integer"
            ) from None
    if jobs < 1:
        raise FatalEnvironmentError(f"Invalid job count {value!r}: must be at least 1")
    return jobs


def _parse_swap_gb(value: str | int) -> int:
    try:
        size = int(value)
    except ValueError:
        raise FatalEnvironmentError(
            f"Invalid swap size {value!r}: expected a whole number of GiB"
        ) from None
    if size < 0:
        raise FatalEnvironmentError(f"Invalid swap size {value!r}: must not be negative")
    return size


def _parse_verbose(value: str | bool) -> bool:
    if isinstance(value, bool):
        return value
    text = value.strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise FatalEnvironmentError(f"Invalid verbosity flag {value!r}: expected 0 or 1")


def resolve_overrides(
    environ: Mapping[str, str],
    *,
    jobs: str | int | None = None,
    swap_gb: str | int | None = None,
    opt_level: str | None = None,
    verbose: bool | None = None,
) -> PlanOverrides:
    """Merge CLI and environment overrides into a PlanOverrides.

    CLI keyword values (when not ``None``) win over the environment.

    Raises:
        FatalEnvironmentError: If any value cannot be parsed.
    """
    raw: dict[str, Any] = overrides_from_env(environ)
    cli = {"jobs": jobs, "swap_gb": swap_gb, "opt_level": opt_level, "verbose": verbose}
    for key, value in cli.items():
        if value is not None:
            raw[key] = value
    if raw:
        log.debug("Overrides: %s", raw)

    profile: OptimizationProfile | None = None
    if "opt_level" in raw:
        try:
            profile = OptimizationProfile.parse(str(raw["opt_level"]))
        except ValueError as exc:
            raise FatalEnvironmentError(str(exc)) from exc

    return PlanOverrides(
        jobs=_parse_jobs(raw["jobs"]) if "jobs" in raw else None,
        swap_gib=_parse_swap_gb(raw["swap_gb"]) if "swap_gb" in raw else None,
        opt_level=profile,
        verbose=_parse_verbose(raw["verbose"]) if "verbose" in raw else False,
    )
