"""Error taxonomy shared by every stage of the kernel build.

Every stage raises a :class:`BuildError` subclass; ``build_kernel.main`` turns
any of them into an error log line and exit status 1.
"""

from __future__ import annotations


class BuildError(RuntimeError):
    """Base class for fatal build failures, optionally carrying a hint."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint

    def __str__(self) -> str:
        message = super().__str__()
        if self.hint:
            return f"{message} ({self.hint})"
        return message


class ValidationError(BuildError):
    """Bad or missing command-line input."""


class ToolchainError(BuildError):
    """No usable compiler or required tool could be located."""


class NetworkError(BuildError):
    """A remote script, patch binary or version file could not be fetched."""


class BuildToolError(BuildError):
    """An external build tool (make, scripts/config, a setup script) failed."""


class PackagingError(BuildError):
    """Missing artefact, template clone failure or archive failure."""
