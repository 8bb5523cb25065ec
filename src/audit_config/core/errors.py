"""
Error taxonomy shared by the configuration subsystem.

Load failures abort startup, validation failures carry every violated field so
operators can fix an environment in one pass, and path failures reject unknown
dotted paths on reads and writes.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Literal

IssueKind = Literal[
    "required",
    "type",
    "min",
    "max",
    "pattern",
    "enum",
    "custom",
    "cross-field",
    "production-required",
    "production-constraint",
]


class ConfigError(RuntimeError):
    """Base class for configuration failures."""


class ConfigLoadError(ConfigError):
    """Raised when the backing file is missing, unreadable, malformed, or cannot be written."""


class ConfigDecryptError(ConfigLoadError):
    """Raised when an encrypted payload fails to decrypt or authenticate."""


class ConfigStateError(ConfigError):
    """Raised when an operation is attempted in the wrong lifecycle state."""


class ConfigPathError(ConfigError, KeyError):
    """Raised when a dotted path does not resolve to a known field."""

    def __init__(self, path: str, detail: str | None = None) -> None:
        self.path = path
        message = f"Configuration path '{path}' not found"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return str(self.args[0])


@dataclass(frozen=True)
class ValidationIssue:
    """One violated rule on one field."""

    field: str
    kind: IssueKind
    message: str
    value: Any = None

    def __str__(self) -> str:
        return f"{self.field}: {self.message} [{self.kind}]"


class ConfigValidationError(ConfigError):
    """Aggregated validation failure listing every violated field."""

    def __init__(self, issues: Iterable[ValidationIssue]) -> None:
        self.issues: tuple[ValidationIssue, ...] = tuple(issues)
        summary = "; ".join(str(issue) for issue in self.issues)
        super().__init__(f"Configuration validation failed: {summary}")

    @property
    def fields(self) -> list[str]:
        return [issue.field for issue in self.issues]

    def issues_for(self, field: str) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.field == field]

    def kinds_for(self, field: str) -> set[str]:
        return {issue.kind for issue in self.issues_for(field)}


__all__ = [
    "ConfigDecryptError",
    "ConfigError",
    "ConfigLoadError",
    "ConfigPathError",
    "ConfigStateError",
    "ConfigValidationError",
    "IssueKind",
    "ValidationIssue",
]
