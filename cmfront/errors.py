"""Exception hierarchy for planning, configuration and execution."""
from __future__ import annotations

from typing import Iterable, Sequence


class CmError(Exception):
    """Base class for user-facing, recoverable errors."""


class PlanError(CmError):
    """A request could not be turned into a plan. Raised before any step exists."""


class InvalidValue(PlanError):
    def __init__(self, category: str, value: str, suggestions: Sequence[str] = ()) -> None:
        self.category = category
        self.value = value
        self.suggestions = tuple(suggestions)
        message = f"invalid value '{value}' for {category}"
        if self.suggestions:
            message = f"{message} (did you mean: {', '.join(self.suggestions)}?)"
        super().__init__(message)


class AmbiguousRequest(PlanError):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class EnvironmentUnresolvable(PlanError):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class InvalidRequest(PlanError):
    """Aggregate of every validation failure found in a single request."""

    def __init__(self, errors: Iterable[PlanError]) -> None:
        self.errors = tuple(errors)
        lines = [f"  - {error}" for error in self.errors]
        super().__init__("invalid request:\n" + "\n".join(lines))


class ConfirmationDeclined(CmError):
    """An unsafe plan was not confirmed."""


class ConfigError(CmError):
    """The settings file could not be read or has the wrong shape."""


class UnknownCategoryError(LookupError):
    """A known-value category that does not exist was requested. Always a programming error."""


__all__ = [
    "AmbiguousRequest",
    "CmError",
    "ConfigError",
    "ConfirmationDeclined",
    "EnvironmentUnresolvable",
    "InvalidRequest",
    "InvalidValue",
    "PlanError",
    "UnknownCategoryError",
]
