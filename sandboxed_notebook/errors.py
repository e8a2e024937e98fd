"""Error taxonomy for policy composition, compilation and confined launch.

Every error here is terminal for the current launch attempt. Callers tell
"fix your config" apart from "this host cannot sandbox" via ``category``.
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sandboxed_notebook.seatbelt.model import PermissionRule


class ErrorCategory(StrEnum):
    CONFIG = "config"
    ENVIRONMENT = "environment"


class SandboxError(Exception):
    category: ErrorCategory = ErrorCategory.CONFIG


class InvalidScope(SandboxError):
    """A scope expression the enforcement engine cannot parse."""


class UnsafeScopeRejected(SandboxError):
    """A requested grant falls outside the allow-listed root categories."""

    def __init__(self, message: str, *, path: Path | str) -> None:
        self.path = Path(path)
        super().__init__(message)


class UnsupportedRule(SandboxError):
    """The engine cannot express a rule without changing its meaning."""

    def __init__(self, message: str, *, rule: PermissionRule | None = None) -> None:
        self.rule = rule
        super().__init__(message)


class LaunchFailed(SandboxError):
    category = ErrorCategory.ENVIRONMENT


class ConfigError(SandboxError):
    """Configuration file could not be read or failed validation."""
