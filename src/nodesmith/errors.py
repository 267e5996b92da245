"""Exception types raised by nodesmith."""

from __future__ import annotations


class NodesmithError(Exception):
    """Base class for all nodesmith errors."""


class FatalEnvironmentError(NodesmithError):
    """The host cannot safely run a build.

    Raised when inventory cannot be read, a required tool is missing,
    a configuration value is invalid, or swap that the memory policy
    asked for could not be provisioned.
    """


class SwapAllocationError(NodesmithError):
    """A single swap file allocation method failed.

    The swap manager catches this and tries the next method; it only
    escapes as a :class:`FatalEnvironmentError` once every method failed.
    """

    def __init__(self, method: str, message: str) -> None:
        super().__init__(f"{method}: {message}")
        self.method = method


class BuildError(NodesmithError):
    """A required build step exited with a non-zero status."""

    def __init__(self, step: str, exit_code: int, output_tail: str = "") -> None:
        super().__init__(f"Build step '{step}' failed (exit {exit_code})")
        self.step = step
        self.exit_code = exit_code
        self.output_tail = output_tail
