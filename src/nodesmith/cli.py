"""Command-line interface for nodesmith.

Provides the main CLI entry point with ``build``, ``plan``, ``inventory``,
``swap`` and ``patch-cares`` subcommands.
"""

from __future__ import annotations

import os
from pathlib import Path

import click

from nodesmith import __version__
from nodesmith.config import BuildConfig, config_from_mapping, load_config_file, resolve_overrides
from nodesmith.errors import BuildError, FatalEnvironmentError, NodesmithError
from nodesmith.formatting import format_duration
from nodesmith.inventory import capture_inventory, format_inventory
from nodesmith.logging import setup_logging
from nodesmith.pipeline import PipelineOptions, run_pipeline
from nodesmith.planner import POLICIES, PlanOverrides, SwapRequest, format_plan, plan_build
from nodesmith.source import patch_cares_config
from nodesmith.swap import ensure_swap, swap_removal_hint
from nodesmith.toolchain import require_root


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """nodesmith: build Node.js from source on memory-constrained EL7 hosts."""


def _load_config(config_path: Path | None, **cli_values: object) -> BuildConfig:
    data = load_config_file(config_path) if config_path is not None else {}
    return config_from_mapping(data, cli_overrides=cli_values)


def _resolve(
    jobs: str | None,
    swap_gb: str | None,
    opt_level: str | None,
    verbose: bool,
) -> PlanOverrides:
    return resolve_overrides(
        os.environ,
        jobs=jobs,
        swap_gb=swap_gb,
        opt_level=opt_level,
        verbose=True if verbose else None,
    )


_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML file with build settings.",
)
_policy_option = click.option(
    "--policy",
    type=click.Choice(sorted(POLICIES)),
    default=None,
    help="Planner policy (default: constrained).",
)
_jobs_option = click.option(
    "--jobs",
    "-j",
    type=str,
    default=None,
    help="Parallel make jobs: 'auto' or a number. Env: MAKE_JOBS.",
)
_swap_option = click.option(
    "--swap-gb",
    type=str,
    default=None,
    help="Swap to provision in GiB (0 disables). Env: SWAP_GB.",
)
_opt_option = click.option(
    "--opt-level",
    type=str,
    default=None,
    help="Optimization profile O0, O1 or O2. Env: OPT_LEVEL.",
)


# ---------------------------------------------------------------------------
# build
# ---------------------------------------------------------------------------


@main.command()
@_config_option
@click.option("--node-version", type=str, default=None, help="Node.js version, e.g. v22.18.0.")
@click.option(
    "--prefix",
    type=click.Path(path_type=Path),
    default=None,
    help="Install prefix (default: /opt/node-<version>).",
)
@_policy_option
@_jobs_option
@_swap_option
@_opt_option
@click.option("--dry-run", is_flag=True, help="Plan only; change nothing.")
@click.option("--skip-deps", is_flag=True, help="Do not install packages with yum.")
@click.option("--strict-os", is_flag=True, help="Fail on anything other than EL7.")
@click.option("-v", "--verbose", is_flag=True, help="Show compiler output (make V=1).")
@click.option("-q", "--quiet", is_flag=True, help="Only show warnings and errors.")
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Build log (default: /root/node_<version>_build.log).",
)
def build(
    config_path: Path | None,
    node_version: str | None,
    prefix: Path | None,
    policy: str | None,
    jobs: str | None,
    swap_gb: str | None,
    opt_level: str | None,
    dry_run: bool,
    skip_deps: bool,
    strict_os: bool,
    verbose: bool,
    quiet: bool,
    log_file: Path | None,
) -> None:
    """Build Node.js from source and install it."""
    try:
        config = _load_config(
            config_path,
            node_version=node_version,
            prefix=prefix,
            policy=policy,
            log_file=log_file,
        )
        overrides = _resolve(jobs, swap_gb, opt_level, verbose)
        build_log = None if dry_run else config.build_log
        try:
            setup_logging(verbose=overrides.verbose, quiet=quiet, log_file=build_log)
        except OSError as exc:
            raise FatalEnvironmentError(f"Cannot open build log {build_log}: {exc}") from exc
        result = run_pipeline(
            config,
            overrides,
            environ=os.environ,
            options=PipelineOptions(dry_run=dry_run, skip_deps=skip_deps, strict_os=strict_os),
        )
    except BuildError as exc:
        if exc.output_tail:
            click.echo(exc.output_tail, err=True)
        raise click.ClickException(f"{exc}. See the build log for details.") from exc
    except NodesmithError as exc:
        raise click.ClickException(str(exc)) from exc

    if dry_run:
        click.echo(format_plan(result.plan))
        return
    total = sum(result.phase_durations.values())
    click.echo(
        f"Installed Node {config.node_version} at {result.prefix} in {format_duration(total)}"
    )


# ---------------------------------------------------------------------------
# plan
# ---------------------------------------------------------------------------


@main.command("plan")
@_config_option
@_policy_option
@_jobs_option
@_swap_option
@_opt_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def plan_cmd(
    config_path: Path | None,
    policy: str | None,
    jobs: str | None,
    swap_gb: str | None,
    opt_level: str | None,
    as_json: bool,
) -> None:
    """Show the resource plan for this host without building."""
    try:
        config = _load_config(config_path, policy=policy)
        overrides = _resolve(jobs, swap_gb, opt_level, False)
        plan = plan_build(capture_inventory(), config.policy, overrides)
    except (NodesmithError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(plan.to_json())
    else:
        click.echo(format_plan(plan))


# ---------------------------------------------------------------------------
# inventory
# ---------------------------------------------------------------------------


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def inventory(as_json: bool) -> None:
    """Print the memory, swap and CPU inventory of this host."""
    try:
        inv = capture_inventory()
    except NodesmithError as exc:
        raise click.ClickException(str(exc)) from exc
    if as_json:
        click.echo(inv.to_json())
    else:
        click.echo(format_inventory(inv))


# ---------------------------------------------------------------------------
# swap
# ---------------------------------------------------------------------------


@main.command()
@click.option("--size-gb", type=click.IntRange(min=1), required=True, help="Swap size in GiB.")
@click.option(
    "--path",
    "swap_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Swap file path (default: /swapfile_node<major>).",
)
@click.option("-v", "--verbose", is_flag=True)
def swap(size_gb: int, swap_path: Path | None, verbose: bool) -> None:
    """Create, enable and persist a swap file (no-op if already active)."""
    setup_logging(verbose=verbose)
    path = swap_path or BuildConfig().swap_file
    try:
        require_root()
        outcome = ensure_swap(SwapRequest(path=path, size_mib=size_gb * 1024))
    except NodesmithError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"{outcome.path}: {outcome.action.replace('_', ' ')}")
    if outcome.action in ("created", "reused"):
        click.echo(f"To remove later: {swap_removal_hint(outcome.path)}")


# ---------------------------------------------------------------------------
# patch-cares
# ---------------------------------------------------------------------------


@main.command("patch-cares")
@click.argument("source_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
def patch_cares(source_dir: Path) -> None:
    """Disable sys/random.h and getrandom in a Node source tree's c-ares config."""
    setup_logging()
    if not patch_cares_config(source_dir):
        click.echo("c-ares config header not found; nothing patched.", err=True)
        raise SystemExit(1)
    click.echo(f"Patched c-ares config in {source_dir}")
