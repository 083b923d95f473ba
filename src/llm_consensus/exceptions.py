"""Exception hierarchy for llm-consensus."""

from __future__ import annotations

from collections.abc import Sequence


class CouncilError(Exception):
    """Base class for all council errors."""


class ConfigurationError(CouncilError, ValueError):
    """Raised when a session or dynamic configuration fails validation.

    Raised before any session work begins; nothing is partially started.
    """

    def __init__(self, message: str, errors: Sequence[str] | None = None) -> None:
        super().__init__(message)
        self.errors: list[str] = list(errors or [])

    def __str__(self) -> str:
        base = super().__str__()
        if not self.errors:
            return base
        return f"{base}: " + "; ".join(self.errors)


class CouncilUnavailableError(CouncilError):
    """Raised when no council member could be reached for a stage."""


class SessionCancelledError(CouncilError):
    """Raised inside a running session after cancel() was requested."""


class PlanValidationError(CouncilError):
    """Raised when an LLM-produced council plan is malformed or out of bounds."""

    def __init__(self, message: str, errors: Sequence[str] | None = None) -> None:
        super().__init__(message)
        self.errors: list[str] = list(errors or [])


class SessionNotFoundError(CouncilError, KeyError):
    """Raised by repositories when a session id is unknown."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Session not found"


__all__ = [
    "ConfigurationError",
    "CouncilError",
    "CouncilUnavailableError",
    "PlanValidationError",
    "SessionCancelledError",
    "SessionNotFoundError",
]
