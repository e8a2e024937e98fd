"""
Validators for composed policies that produce human-readable messages.

Layering contract:
- Read-only: do not mutate the policy.
- Pure analysis: return a list of messages; no error codes.
- Context is explicit and can be derived from the runtime via make_runtime_context().
"""

from __future__ import annotations

import platform
import shutil
from collections.abc import Iterable
from dataclasses import dataclass

from .model import NETWORK_CATEGORIES, Action, Category, PathPrefix, Policy
from .template import LOADER_ROOTS


@dataclass(frozen=True)
class ValidationContext:
    macos_version: str | None = None  # e.g., "14.6.1"
    sandbox_exec_present: bool = False

    @property
    def can_sandbox(self) -> bool:
        return self.macos_version is not None and self.sandbox_exec_present


def make_runtime_context() -> ValidationContext:
    ver, _, _ = platform.mac_ver()
    return ValidationContext(macos_version=ver or None, sandbox_exec_present=bool(shutil.which("sandbox-exec")))


def _file_read_subpaths(policy: Policy) -> Iterable[str]:
    for rule in policy.rules:
        if rule.category == Category.FILE_READ and rule.action == Action.ALLOW and isinstance(rule.scope, PathPrefix):
            yield rule.scope.path


def validate(policy: Policy, ctx: ValidationContext | None = None) -> list[str]:
    """
    Analyze a policy with an optional runtime-derived context and return messages.

    Messages are human-readable warnings/notes; callers decide severity.
    """
    ctx = ctx or make_runtime_context()
    msgs: list[str] = []

    # Platform visibility
    if ctx.macos_version is None:
        msgs.append("warning: non-macOS platform detected; seatbelt policies cannot be enforced here")
    if not ctx.sandbox_exec_present:
        msgs.append("warning: sandbox-exec not found; launching will fail closed")

    # Loader roots: without them the interpreter aborts before main()
    read_paths = set(_file_read_subpaths(policy))
    missing = [p for p in LOADER_ROOTS if not any(PathPrefix(path=rp).covers(p) for rp in read_paths)]
    if missing:
        mv = ctx.macos_version or "unknown macOS"
        msgs.append(
            "warning: {} with default deny and no read access to {}; the dynamic loader will likely fail".format(
                mv, ", ".join(missing)
            )
        )

    # Network note: unscoped network allows mean arbitrary egress/ingress
    for rule in policy.rules:
        if rule.category in NETWORK_CATEGORIES and rule.action == Action.ALLOW and rule.scope is None:
            msgs.append(f"note: '{rule.category}' is allowed without an endpoint filter; ensure this is intended")

    # Write grants reaching into interpreter/package trees let kernels modify installed code
    for rule in policy.scoped:
        if rule.category == Category.FILE_WRITE and rule.action == Action.ALLOW and isinstance(rule.scope, PathPrefix):
            if "site-packages" in rule.scope.path or rule.scope.path.startswith(("/opt/homebrew", "/usr/local")):
                msgs.append(f"note: write access to package tree {rule.scope.path}; installed code becomes mutable")

    return msgs
