"""Resource-aware build planning.

Decides, from the host inventory and a named policy, how much swap to
provision, how many parallel compile jobs to hand to ``make`` and which
optimization profile to compile with.  Everything here is a pure
function of its arguments: no environment reads, no filesystem access.

V8 translation units can each need well over a gigabyte while
compiling, so parallelism is bounded by memory and by a hard cap, and
collapses to a serial build below a low-memory threshold.
"""

from __future__ import annotations

import enum
import json
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any

from nodesmith.formatting import format_mib, format_section_header
from nodesmith.inventory import SystemInventory


# ---------------------------------------------------------------------------
# Optimization profiles
# ---------------------------------------------------------------------------


class OptimizationProfile(enum.Enum):
    """Compiler optimization level used for the whole build."""

    O0 = "O0"
    O1 = "O1"
    O2 = "O2"

    @property
    def base_flags(self) -> str:
        """Base C/C++ flags: optimization level, no debug info, piped stages."""
        return f"-{self.value} -g0 -pipe"

    @classmethod
    def parse(cls, value: str) -> OptimizationProfile:
        """Parse ``'O1'``, ``'o1'``, ``'-O1'`` or ``'1'``.

        Raises:
            ValueError: If *value* names no known profile.
        """
        text = value.strip().lstrip("-").upper()
        if text.isdigit():
            text = f"O{text}"
        try:
            return cls(text)
        except ValueError:
            choices = ", ".join(p.value for p in cls)
            raise ValueError(
                f"Unknown optimization level {value!r} (expected one of {choices})"
            ) from None


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PlannerPolicy:
    """Tunable thresholds for the planner.

    The two swap gates are independent: ``gate_swap_on_threshold`` skips
    swap on hosts at or above the low-memory threshold, and
    ``skip_swap_when_present`` skips it when any swap is already active.
    """

    name: str = "constrained"
    low_mem_threshold_mib: int = 6144
    hard_cap: int | None = 3
    memory_per_job_mib: int = 1700
    swap_target_gib: int = 8
    gate_swap_on_threshold: bool = True
    skip_swap_when_present: bool = True
    default_profile: OptimizationProfile = OptimizationProfile.O0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        data = asdict(self)
        data["default_profile"] = self.default_profile.value
        return data


CONSTRAINED_POLICY = PlannerPolicy()

THROUGHPUT_POLICY = PlannerPolicy(
    name="throughput",
    hard_cap=None,
    swap_target_gib=16,
    default_profile=OptimizationProfile.O1,
)

POLICIES: dict[str, PlannerPolicy] = {
    CONSTRAINED_POLICY.name: CONSTRAINED_POLICY,
    THROUGHPUT_POLICY.name: THROUGHPUT_POLICY,
}


def policy_from_mapping(base: PlannerPolicy, data: dict[str, Any]) -> PlannerPolicy:
    """Return *base* with fields overridden from a parsed mapping.

    Unknown keys are rejected so that typos in a config file do not
    silently fall back to defaults.

    Raises:
        ValueError: On unknown keys or values of the wrong type.
    """
    known = {f for f in PlannerPolicy.__dataclass_fields__ if f != "name"}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown planner setting(s): {', '.join(unknown)}")

    changes: dict[str, Any] = {}
    for key, value in data.items():
        if key == "default_profile":
            changes[key] = OptimizationProfile.parse(str(value))
        elif key == "hard_cap":
            changes[key] = None if value is None else _positive_int(key, value)
        elif key in ("gate_swap_on_threshold", "skip_swap_when_present"):
            if not isinstance(value, bool):
                raise ValueError(f"{key} must be true or false (got {value!r})")
            changes[key] = value
        else:
            changes[key] = _positive_int(key, value)
    return replace(base, **changes)


def _positive_int(key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"{key} must be a positive integer (got {value!r})")
    return value


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


def compute_swap_requirement(
    total_memory_mib: int,
    existing_swap_mib: int,
    configured_target_gib: int,
    *,
    low_mem_threshold_mib: int | None = None,
    skip_when_swap_present: bool = True,
) -> int:
    """Return how much swap (MiB) to add before building.

    Two gates run in order.  If *low_mem_threshold_mib* is given and the
    host has at least that much memory, no swap is added.  Then, if
    *skip_when_swap_present* is set and any swap is already active, no
    swap is added, so repeated runs never stack swap files.  Otherwise
    the full configured target is requested.

    Raises:
        ValueError: On negative memory values or a non-positive target.
    """
    if total_memory_mib < 0 or existing_swap_mib < 0:
        raise ValueError("Memory and swap sizes must be non-negative")
    if configured_target_gib <= 0:
        raise ValueError(f"Swap target must be positive (got {configured_target_gib})")

    if low_mem_threshold_mib is not None and total_memory_mib >= low_mem_threshold_mib:
        return 0
    if skip_when_swap_present and existing_swap_mib > 0:
        return 0
    return configured_target_gib * 1024


def compute_job_count(
    cpu_count: int,
    total_memory_mib: int,
    swap_mib: int,
    memory_per_job_mib: int,
    low_mem_threshold_mib: int,
    hard_cap: int | None,
) -> int:
    """Return the number of parallel compile jobs.

    Below the low-memory threshold the build is serial regardless of
    core count.  Otherwise the job count is the smallest of the core
    count, what RAM plus swap can hold at *memory_per_job_mib* each, and
    *hard_cap* (``None`` means uncapped), never less than 1.

    Raises:
        ValueError: If *cpu_count* or *memory_per_job_mib* is below 1.
    """
    if cpu_count < 1:
        raise ValueError(f"cpu_count must be at least 1 (got {cpu_count})")
    if memory_per_job_mib < 1:
        raise ValueError(f"memory_per_job_mib must be at least 1 (got {memory_per_job_mib})")

    if total_memory_mib < low_mem_threshold_mib:
        return 1

    by_memory = max(1, (total_memory_mib + swap_mib) // memory_per_job_mib)
    jobs = min(cpu_count, by_memory)
    if hard_cap is not None:
        jobs = min(jobs, hard_cap)
    return max(1, jobs)


def select_optimization_profile(
    total_memory_mib: int,
    user_override: OptimizationProfile | None,
    *,
    policy: PlannerPolicy = CONSTRAINED_POLICY,
) -> OptimizationProfile:
    """Pick the optimization profile.

    An explicit *user_override* always wins.  Otherwise the policy
    default is used, except that a policy defaulting above ``O0`` drops
    to ``O0`` on hosts below its low-memory threshold.
    """
    if user_override is not None:
        return user_override
    if (
        policy.default_profile is not OptimizationProfile.O0
        and total_memory_mib < policy.low_mem_threshold_mib
    ):
        return OptimizationProfile.O0
    return policy.default_profile


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PlanOverrides:
    """Operator overrides; each set field bypasses the computed value."""

    jobs: int | None = None
    swap_gib: int | None = None  # 0 disables swap provisioning
    opt_level: OptimizationProfile | None = None
    verbose: bool = False


@dataclass(frozen=True)
class SwapRequest:
    """Request handed to the swap manager."""

    path: Path
    size_mib: int
    activate: bool = True


@dataclass(frozen=True)
class BuildResourcePlan:
    """Resources chosen for a single build run."""

    total_memory_mib: int
    existing_swap_mib: int
    cpu_count: int
    memory_per_job_mib: int
    swap_to_add_mib: int
    job_count: int
    optimization_profile: OptimizationProfile
    verbose: bool = False
    policy_name: str = CONSTRAINED_POLICY.name
    job_source: str = "computed"  # computed | override
    profile_source: str = "computed"  # computed | override
    notes: tuple[str, ...] = field(default_factory=tuple)

    def swap_request(self, path: Path) -> SwapRequest:
        """Build the swap manager request for this plan."""
        return SwapRequest(path=path, size_mib=self.swap_to_add_mib, activate=True)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        data = asdict(self)
        data["optimization_profile"] = self.optimization_profile.value
        data["notes"] = list(self.notes)
        return data

    def to_json(self, indent: int = 2) -> str:
        """Serialize to a JSON string."""
        return json.dumps(self.to_dict(), indent=indent)


def plan_build(
    inventory: SystemInventory,
    policy: PlannerPolicy = CONSTRAINED_POLICY,
    overrides: PlanOverrides | None = None,
) -> BuildResourcePlan:
    """Compute the build plan for the current host.

    Swap is decided first; the job count then sees existing swap plus
    the swap about to be added, since that is what the compiler will
    run against.

    Raises:
        ValueError: If an override is out of range.
    """
    ov = overrides or PlanOverrides()
    notes: list[str] = []

    if ov.swap_gib is not None:
        if ov.swap_gib < 0:
            raise ValueError(f"Swap override must be non-negative (got {ov.swap_gib})")
        if ov.swap_gib == 0:
            swap_to_add = 0
            notes.append("swap provisioning disabled by override")
        else:
            # An explicit size still respects the no-stacking gate.
            swap_to_add = compute_swap_requirement(
                inventory.total_memory_mib,
                inventory.swap_mib,
                ov.swap_gib,
                skip_when_swap_present=policy.skip_swap_when_present,
            )
    else:
        swap_to_add = compute_swap_requirement(
            inventory.total_memory_mib,
            inventory.swap_mib,
            policy.swap_target_gib,
            low_mem_threshold_mib=(
                policy.low_mem_threshold_mib if policy.gate_swap_on_threshold else None
            ),
            skip_when_swap_present=policy.skip_swap_when_present,
        )
    if swap_to_add == 0 and inventory.swap_mib > 0 and ov.swap_gib != 0:
        notes.append(f"{format_mib(inventory.swap_mib)} swap already active")

    if ov.jobs is not None:
        if ov.jobs < 1:
            raise ValueError(f"Job override must be at least 1 (got {ov.jobs})")
        job_count = ov.jobs
        job_source = "override"
    else:
        job_count = compute_job_count(
            inventory.cpu_count,
            inventory.total_memory_mib,
            inventory.swap_mib + swap_to_add,
            policy.memory_per_job_mib,
            policy.low_mem_threshold_mib,
            policy.hard_cap,
        )
        job_source = "computed"
        if inventory.total_memory_mib < policy.low_mem_threshold_mib:
            notes.append(
                f"below {format_mib(policy.low_mem_threshold_mib)} threshold: serial build"
            )

    profile = select_optimization_profile(
        inventory.total_memory_mib, ov.opt_level, policy=policy
    )

    return BuildResourcePlan(
        total_memory_mib=inventory.total_memory_mib,
        existing_swap_mib=inventory.swap_mib,
        cpu_count=inventory.cpu_count,
        memory_per_job_mib=policy.memory_per_job_mib,
        swap_to_add_mib=swap_to_add,
        job_count=job_count,
        optimization_profile=profile,
        verbose=ov.verbose,
        policy_name=policy.name,
        job_source=job_source,
        profile_source="override" if ov.opt_level is not None else "computed",
        notes=tuple(notes),
    )


def format_plan(plan: BuildResourcePlan) -> str:
    """Format a plan for terminal display."""
    lines = [
        format_section_header("Build Plan"),
        f"Policy:   {plan.policy_name}",
        f"RAM:      {format_mib(plan.total_memory_mib)}",
        f"Swap:     {format_mib(plan.existing_swap_mib)} active, "
        f"{format_mib(plan.swap_to_add_mib)} to add",
        f"CPUs:     {plan.cpu_count}",
        f"Jobs:     {plan.job_count} ({plan.job_source})",
        f"Profile:  {plan.optimization_profile.value} ({plan.profile_source})",
        f"Per job:  {format_mib(plan.memory_per_job_mib)}",
    ]
    for note in plan.notes:
        lines.append(f"Note:     {note}")
    return "\n".join(lines)
