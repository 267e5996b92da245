"""End-to-end build orchestration.

Runs the phases of a build in order, each timed and logged as
``==> <phase> START`` / ``==> <phase> DONE in <duration>``:

1. preflight (root, inventory, OS release)
2. planning
3. dependencies (yum package groups, best-effort)
4. toolchain check (compiler, make, tar, Python)
5. swap provisioning
6. fetch and unpack
7. c-ares patch
8. compile and install
9. symlinks and profile shim
10. verification

Every fatal condition raises before the build invoker sees a plan.
"""

from __future__ import annotations

import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from nodesmith.build import StepResult, run_build
from nodesmith.config import BuildConfig
from nodesmith.formatting import format_duration
from nodesmith.install import VerifyResult, link_binaries, verify_installation, write_profile_shim
from nodesmith.inventory import capture_inventory
from nodesmith.logging import get_logger
from nodesmith.planner import BuildResourcePlan, PlanOverrides, format_plan, plan_build
from nodesmith.source import download_source, extract_source, node_tarball_url, patch_cares_config
from nodesmith.swap import SwapOutcome, ensure_swap, swap_removal_hint
from nodesmith.toolchain import (
    check_os,
    find_python,
    install_packages,
    require_build_tools,
    require_root,
    scl_available,
    scl_bin_dirs,
)

log = get_logger("pipeline")


@dataclass
class PipelineOptions:
    """Switches for a pipeline run that are not build settings."""

    dry_run: bool = False
    skip_deps: bool = False
    strict_os: bool = False
    require_root: bool = True


@dataclass
class PipelineResult:
    """Everything a completed (or dry) run produced."""

    plan: BuildResourcePlan
    prefix: Path
    node_version: str = ""
    dry_run: bool = False
    swap: SwapOutcome | None = None
    build_steps: list[StepResult] = field(default_factory=list)
    verify: VerifyResult | None = None
    phase_durations: dict[str, float] = field(default_factory=dict)


@contextmanager
def phase(name: str, durations: dict[str, float]) -> Iterator[None]:
    """Log the start and end of a phase and record its duration.

    A phase that raises logs ``FAILED`` and re-raises.
    """
    log.info("==> %s START", name)
    start = time.monotonic()
    try:
        yield
    except BaseException:
        elapsed = time.monotonic() - start
        durations[name] = elapsed
        log.error("==> %s FAILED after %s", name, format_duration(elapsed))
        raise
    elapsed = time.monotonic() - start
    durations[name] = elapsed
    log.info("==> %s DONE in %s", name, format_duration(elapsed))


def run_pipeline(
    config: BuildConfig,
    overrides: PlanOverrides,
    *,
    environ: Mapping[str, str],
    options: PipelineOptions | None = None,
) -> PipelineResult:
    """Build and install Node.js according to *config*.

    Args:
        config: Resolved build settings.
        overrides: Operator overrides for the planner.
        environ: Base environment for build subprocesses.
        options: Run switches (dry run, skipping dependencies, ...).

    Raises:
        FatalEnvironmentError: On any environment, tool or swap failure.
        BuildError: If configure, make or install fails.
    """
    opts = options or PipelineOptions()
    durations: dict[str, float] = {}
    prefix = config.install_prefix
    log.info("Node %s build starting. Log: %s", config.node_version, config.build_log)

    with phase("Preflight checks", durations):
        if opts.require_root and not opts.dry_run:
            require_root()
        inventory = capture_inventory()
        check_os(inventory, config.supported_el_releases, strict=opts.strict_os)

    with phase("Plan build resources", durations):
        plan = plan_build(inventory, config.policy, overrides)
        for line in format_plan(plan).splitlines():
            log.info("%s", line)

    if opts.dry_run:
        log.info("Dry run: stopping before any changes are made")
        return PipelineResult(
            plan=plan,
            prefix=prefix,
            node_version=config.node_version,
            dry_run=True,
            phase_durations=durations,
        )

    if not opts.skip_deps:
        with phase("Install deps (SCL toolchain, Python 3.8, build tools)", durations):
            install_packages()

    with phase("Check toolchain", durations):
        collections = (
            config.scl_collections if scl_available(config.scl_collections) else ()
        )
        require_build_tools(extra_dirs=scl_bin_dirs(collections), environ=environ)
        python = find_python(config.python_candidates)

    result = PipelineResult(
        plan=plan,
        prefix=prefix,
        node_version=config.node_version,
        phase_durations=durations,
    )

    with phase("Provision swap", durations):
        result.swap = ensure_swap(plan.swap_request(config.swap_file))

    with phase(f"Fetch Node {config.node_version} source", durations):
        url = node_tarball_url(config.node_version, config.mirror)
        tarball = download_source(
            url, config.src_root / config.tarball_name, timeout=config.download_timeout
        )
        source_dir = extract_source(tarball, config.src_root, config.node_dir_name)

    with phase("Patch c-ares for EL7 (disable sys/random.h & getrandom)", durations):
        patch_cares_config(source_dir)

    with phase("Compile & install", durations):
        result.build_steps = run_build(
            plan,
            source_dir,
            prefix,
            python,
            base_env=environ,
            scl_collections=collections,
            intl=config.intl,
        )

    with phase("Create symlinks", durations):
        link_binaries(prefix, config.bin_dir)
        write_profile_shim(prefix, config.profile_script)

    with phase("Verify installation", durations):
        result.verify = verify_installation(config.bin_dir)

    log.info("SUCCESS: Node %s installed at %s", config.node_version, prefix)
    log.info("Symlinks: %s/{node,npm,npx}", config.bin_dir)
    log.info("Log: %s", config.build_log)
    if result.swap is not None and result.swap.action in ("created", "reused"):
        log.info("Swap file %s is enabled.", result.swap.path)
        log.info("To remove later: %s", swap_removal_hint(result.swap.path))
    return result
