"""Running the Node.js configure/make/install steps.

The build invoker takes a :class:`BuildResourcePlan` and turns it into
compiler flags, an explicit environment and an ordered list of steps.
Steps run inside ``scl enable`` when the toolchain collections are
present, so GCC 11 and Python 3.8 are picked up without mutating this
process's environment.
"""

from __future__ import annotations

import subprocess
import time
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from nodesmith.errors import BuildError, FatalEnvironmentError
from nodesmith.formatting import format_duration
from nodesmith.logging import get_logger
from nodesmith.planner import BuildResourcePlan, OptimizationProfile

log = get_logger("build")

# -U flags cover the c-ares macros even when the header patch could not be applied.
_COMMON_FLAGS = (
    "-fno-omit-frame-pointer -fno-strict-aliasing -U_FORTIFY_SOURCE "
    "-UHAVE_SYS_RANDOM_H -UHAVE_GETRANDOM"
)
_CXX_ONLY_FLAGS = "-fno-rtti -fno-exceptions"
_OUTPUT_TAIL_LINES = 40


@dataclass(frozen=True)
class BuildStep:
    """One external command in the build sequence."""

    name: str
    argv: tuple[str, ...]
    required: bool = True


@dataclass
class StepResult:
    """Outcome of a single build step."""

    name: str
    exit_code: int
    duration_s: float
    output_tail: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


# ---------------------------------------------------------------------------
# Flags and environment
# ---------------------------------------------------------------------------


def compiler_flags(profile: OptimizationProfile) -> tuple[str, str]:
    """Return ``(CFLAGS, CXXFLAGS)`` for *profile*."""
    cflags = f"{profile.base_flags} {_COMMON_FLAGS}"
    cxxflags = f"{profile.base_flags} {_CXX_ONLY_FLAGS} {_COMMON_FLAGS}"
    return cflags, cxxflags


def build_env(
    plan: BuildResourcePlan,
    python: Path,
    base_env: Mapping[str, str],
) -> dict[str, str]:
    """Build the environment dict for the build subprocesses.

    *base_env* is copied, never mutated; callers pass ``os.environ``.
    """
    cflags, cxxflags = compiler_flags(plan.optimization_profile)
    env = dict(base_env)
    env["CC"] = "gcc"
    env["CXX"] = "g++"
    env["CFLAGS"] = cflags
    env["CXXFLAGS"] = cxxflags
    env["LDFLAGS"] = f"{base_env.get('LDFLAGS', '')} -Wl,--no-as-needed".strip()
    env["ARFLAGS"] = "cr"
    env["PYTHON"] = str(python)
    log.debug("Env: CFLAGS=%s", env["CFLAGS"])
    log.debug("Env: CXXFLAGS=%s", env["CXXFLAGS"])
    log.debug("Env: LDFLAGS=%s PYTHON=%s", env["LDFLAGS"], env["PYTHON"])
    return env


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def build_steps(plan: BuildResourcePlan, prefix: Path, intl: str = "none") -> list[BuildStep]:
    """Return the ordered configure/make/install steps for *plan*."""
    verbosity = "V=1" if plan.verbose else "V=0"
    return [
        BuildStep("distclean", ("make", "-s", "distclean"), required=False),
        BuildStep("configure", ("./configure", f"--prefix={prefix}", f"--with-intl={intl}")),
        BuildStep("make", ("make", f"-j{plan.job_count}", verbosity)),
        BuildStep("install", ("make", "install")),
    ]


def wrap_scl(argv: tuple[str, ...], collections: tuple[str, ...]) -> list[str]:
    """Prefix *argv* with ``scl enable <collections> --`` when any are given."""
    if not collections:
        return list(argv)
    return ["scl", "enable", *collections, "--", *argv]


def run_step(
    step: BuildStep,
    *,
    cwd: Path,
    env: Mapping[str, str],
    scl_collections: tuple[str, ...] = (),
) -> StepResult:
    """Run *step*, streaming its combined output into the log at DEBUG.

    Raises:
        FatalEnvironmentError: If the command cannot be started.
    """
    argv = wrap_scl(step.argv, scl_collections)
    log.debug("Running: %s (in %s)", " ".join(argv), cwd)
    tail: deque[str] = deque(maxlen=_OUTPUT_TAIL_LINES)
    start = time.monotonic()
    try:
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd),
            env=dict(env),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
        )
    except OSError as exc:
        raise FatalEnvironmentError(f"Cannot start {argv[0]}: {exc}") from exc

    assert proc.stdout is not None
    with proc.stdout:
        for line in proc.stdout:
            line = line.rstrip("\n")
            tail.append(line)
            log.debug("%s", line)
    exit_code = proc.wait()

    return StepResult(
        name=step.name,
        exit_code=exit_code,
        duration_s=time.monotonic() - start,
        output_tail="\n".join(tail),
    )


def run_build(
    plan: BuildResourcePlan,
    source_dir: Path,
    prefix: Path,
    python: Path,
    *,
    base_env: Mapping[str, str],
    scl_collections: tuple[str, ...] = (),
    intl: str = "none",
) -> list[StepResult]:
    """Configure, build and install Node.js from *source_dir*.

    Optional steps (``distclean``) may fail; the first required step that
    fails stops the build.

    Raises:
        BuildError: If a required step exits non-zero.
    """
    env = build_env(plan, python, base_env)
    log.info("Using Python: %s", python)
    if scl_collections:
        log.info("Building inside SCL: %s", " ".join(scl_collections))
    else:
        log.warning("SCL not detected; building with system toolchain")

    results: list[StepResult] = []
    for step in build_steps(plan, prefix, intl):
        if step.name == "make":
            log.info(
                "Building Node (jobs=%d, %s) - this can take a while",
                plan.job_count,
                plan.optimization_profile.value,
            )
        else:
            log.info("Running %s: %s", step.name, " ".join(step.argv))
        result = run_step(step, cwd=source_dir, env=env, scl_collections=scl_collections)
        results.append(result)
        if result.ok:
            log.info("%s finished in %s", step.name, format_duration(result.duration_s))
            continue
        if not step.required:
            log.debug("%s exited %d (non-fatal)", step.name, result.exit_code)
            continue
        log.error("%s failed (exit %d)", step.name, result.exit_code)
        raise BuildError(step.name, result.exit_code, result.output_tail)
    return results
