"""
Policy composer: baseline template + caller extras -> one ordered Policy.

Pure with respect to its inputs (nothing is mutated); the only side effect is
reading the filesystem to resolve symlinks of requested paths.
"""

from __future__ import annotations

import logging
import os
import sys
import tempfile
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from sandboxed_notebook.errors import UnsafeScopeRejected, UnsupportedRule

from .model import Action, Category, LiteralPath, LocalEndpoint, PathPrefix, PermissionRule, Policy, RemoteEndpoint

logger = logging.getLogger(__name__)


class NetworkAccess(StrEnum):
    NONE = "none"
    LOOPBACK = "loopback"
    OPEN = "open"


class ExtraPermissionSet(BaseModel):
    """Caller-supplied grants on top of a template.

    data_directory, temp_directories and package_roots become read+write grants;
    read_only_paths become read grants. deny_paths deny both reading and
    writing; deny_read_paths and deny_write_paths deny one of the two.

    exec_deny lists executables that may never be exec'd. A non-empty
    exec_allow replaces the template's unscoped process-exec allow, so only
    the listed executables may be exec'd.
    """

    data_directory: Path | None = None
    temp_directories: frozenset[Path] = frozenset()
    package_roots: frozenset[Path] = frozenset()
    read_only_paths: frozenset[Path] = frozenset()
    deny_paths: frozenset[Path] = frozenset()
    deny_read_paths: frozenset[Path] = frozenset()
    deny_write_paths: frozenset[Path] = frozenset()
    exec_allow: frozenset[Path] = frozenset()
    exec_deny: frozenset[Path] = frozenset()
    network: NetworkAccess = NetworkAccess.LOOPBACK

    model_config = ConfigDict(extra="forbid", frozen=True)


_DEFAULT_TEMP_ROOTS = ("/tmp", "/var/tmp", "/private/tmp", "/private/var/tmp", "/var/folders", "/private/var/folders")
_DEFAULT_PACKAGE_ROOTS = ("/opt/homebrew", "/usr/local", "/opt/local", "/Library/Frameworks/Python.framework")


def _dedup_paths(paths) -> tuple[Path, ...]:
    seen: dict[str, Path] = {}
    for p in paths:
        seen.setdefault(os.path.normpath(p), Path(os.path.normpath(p)))
    return tuple(seen.values())


def _resolve(path: str) -> str:
    try:
        return Path(path).resolve(strict=False).as_posix()
    except (OSError, RuntimeError) as e:
        # Symlink loops and unreadable parents: fall back to the lexical form
        logger.debug("cannot resolve %s: %s", path, e)
        return path


@dataclass(frozen=True)
class SafeRoots:
    """Allow-list of root categories that extra grants may live under."""

    home: tuple[Path, ...] = ()
    temp: tuple[Path, ...] = ()
    packages: tuple[Path, ...] = ()
    _resolved: dict[str, str] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        for category, roots in self._categories():
            for root in roots:
                if not root.is_absolute():
                    raise ValueError(f"{category} root must be absolute: {root}")
                if os.path.normpath(root) == "/":
                    raise ValueError(f"{category} root must not be the filesystem root")

    @classmethod
    def default(cls) -> SafeRoots:
        """Roots for the current user and interpreter."""
        home = Path.home()
        temp = _dedup_paths([tempfile.gettempdir(), *_DEFAULT_TEMP_ROOTS])
        prefixes = [p for p in (sys.prefix, sys.base_prefix) if len(Path(p).parts) > 2]
        packages = _dedup_paths([*_DEFAULT_PACKAGE_ROOTS, *prefixes])
        return cls(
            home=() if os.path.normpath(home) == "/" else (home,),
            temp=tuple(p for p in temp if p.is_absolute()),
            packages=packages,
        )

    def _categories(self) -> tuple[tuple[str, tuple[Path, ...]], ...]:
        return (("home", self.home), ("temp", self.temp), ("packages", self.packages))

    def _resolved_root(self, root: Path) -> str:
        key = root.as_posix()
        if key not in self._resolved:
            self._resolved[key] = _resolve(os.path.normpath(root))
        return self._resolved[key]

    def category_of(self, path: str) -> str | None:
        """Name of the first root category containing ``path`` (lexically or after resolving roots)."""
        for category, roots in self._categories():
            for root in roots:
                for form in (os.path.normpath(root), self._resolved_root(root)):
                    if PathPrefix(path=form).covers(path):
                        return category
        return None


def _absolute(path: Path, source: str) -> str:
    if not path.is_absolute():
        raise UnsafeScopeRejected(f"{source}: path must be absolute: {path}", path=path)
    return os.path.normpath(path)


def _checked_forms(path: Path, roots: SafeRoots, source: str) -> tuple[str, ...]:
    """Validate a requested path; return its lexical and (if different) resolved forms."""
    lexical = _absolute(path, source)
    if roots.category_of(lexical) is None:
        raise UnsafeScopeRejected(f"{source}: {lexical} is outside the allowed home/temp/package roots", path=path)
    resolved = _resolve(lexical)
    if resolved == lexical:
        return (lexical,)
    if roots.category_of(resolved) is None:
        raise UnsafeScopeRejected(
            f"{source}: {lexical} resolves to {resolved}, outside the allowed home/temp/package roots", path=path
        )
    return (lexical, resolved)


def _unchecked_forms(path: Path, source: str) -> tuple[str, ...]:
    """Lexical and (if different) resolved forms, without the root check."""
    lexical = _absolute(path, source)
    resolved = _resolve(lexical)
    return (lexical,) if resolved == lexical else (lexical, resolved)


def _read_prefixes(policy: Policy) -> tuple[PathPrefix | None, ...]:
    """Read allows in ``policy`` that imply reads of a subtree; None means unscoped."""
    out: list[PathPrefix | None] = []
    for rule in policy.rules:
        if rule.category != Category.FILE_READ or rule.action != Action.ALLOW:
            continue
        if rule.scope is None or isinstance(rule.scope, PathPrefix):
            out.append(rule.scope)
    return tuple(out)


_CATEGORY_ORDER = {Category.FILE_READ: 0, Category.FILE_WRITE: 1, Category.PROCESS_EXEC: 2}
_ACTION_ORDER = {Action.ALLOW: 0, Action.DENY: 1}
_UNSCOPED_EXEC = PermissionRule(category=Category.PROCESS_EXEC)


def specificity_key(rule: PermissionRule) -> tuple[str, int, int, str]:
    """Normalized-path sort key.

    A path sorts before every path below it, so broader grants come first; on
    the same path allows come before denies.
    """
    match rule.scope:
        case PathPrefix(path=path, kind=kind) | LiteralPath(path=path, kind=kind):
            return (path, _ACTION_ORDER[rule.action], _CATEGORY_ORDER.get(rule.category, 3), kind)
    raise UnsupportedRule(f"composed grants must be path-scoped: {rule.action} {rule.category}", rule=rule)


def _network_rules(mode: NetworkAccess) -> tuple[PermissionRule, ...]:
    if mode == NetworkAccess.OPEN:
        return tuple(
            PermissionRule(category=c)
            for c in (Category.NETWORK_INBOUND, Category.NETWORK_OUTBOUND, Category.NETWORK_BIND)
        )
    if mode == NetworkAccess.LOOPBACK:
        return (
            PermissionRule(category=Category.NETWORK_BIND, scope=LocalEndpoint()),
            PermissionRule(category=Category.NETWORK_INBOUND, scope=LocalEndpoint()),
            PermissionRule(category=Category.NETWORK_OUTBOUND, scope=RemoteEndpoint()),
        )
    return ()


def compose(baseline: Policy, extra: ExtraPermissionSet, *, roots: SafeRoots | None = None) -> Policy:
    """Merge ``extra`` into ``baseline`` and return a new Policy.

    Raises UnsafeScopeRejected when any requested path (lexically or after
    resolving symlinks) lies outside ``roots``; no partial policy is returned.
    Denials and exec lists only narrow, so they skip the root check.
    """
    roots = roots or SafeRoots.default()

    writable: set[str] = set()
    writable_sources = (
        ("data_directory", (extra.data_directory,) if extra.data_directory is not None else ()),
        ("temp_directories", extra.temp_directories),
        ("package_roots", extra.package_roots),
    )
    for source, paths in writable_sources:
        for p in paths:
            writable.update(_checked_forms(p, roots, source))

    readable: set[str] = set(writable)
    for p in extra.read_only_paths:
        readable.update(_checked_forms(p, roots, "read_only_paths"))

    deny_read: set[str] = set()
    deny_write: set[str] = set()
    for p in extra.deny_paths:
        forms = _unchecked_forms(p, "deny_paths")
        deny_read.update(forms)
        deny_write.update(forms)
    for p in extra.deny_read_paths:
        deny_read.update(_unchecked_forms(p, "deny_read_paths"))
    for p in extra.deny_write_paths:
        deny_write.update(_unchecked_forms(p, "deny_write_paths"))

    exec_allow: set[str] = set()
    for p in extra.exec_allow:
        exec_allow.update(_unchecked_forms(p, "exec_allow"))
    exec_deny: set[str] = set()
    for p in extra.exec_deny:
        exec_deny.update(_unchecked_forms(p, "exec_deny"))

    existing = set(baseline.rules)
    broader_reads = _read_prefixes(baseline)
    grants: set[PermissionRule] = set()

    for path in writable:
        grants.add(PermissionRule(category=Category.FILE_WRITE, scope=PathPrefix(path=path)))

    for path in readable:
        under_deny = any(PathPrefix(path=d).covers(path) for d in deny_read)
        implied = any(scope is None or scope.covers(path) for scope in broader_reads) or any(
            other != path and PathPrefix(path=other).covers(path) for other in readable
        )
        if implied and not under_deny:
            logger.debug("read of %s implied by a broader grant", path)
            continue
        grants.add(PermissionRule(category=Category.FILE_READ, scope=PathPrefix(path=path)))

    for path in deny_read:
        grants.add(PermissionRule(category=Category.FILE_READ, action=Action.DENY, scope=PathPrefix(path=path)))
    for path in deny_write:
        grants.add(PermissionRule(category=Category.FILE_WRITE, action=Action.DENY, scope=PathPrefix(path=path)))

    for path in exec_allow:
        grants.add(PermissionRule(category=Category.PROCESS_EXEC, scope=LiteralPath(path=path)))
    for path in exec_deny:
        grants.add(PermissionRule(category=Category.PROCESS_EXEC, action=Action.DENY, scope=LiteralPath(path=path)))

    coarse = baseline.coarse
    if exec_allow:
        # Allow-listed exec: the scoped allows below are the only exec grants
        coarse = tuple(r for r in coarse if r != _UNSCOPED_EXEC)
        logger.info("exec restricted to %d executables", len(exec_allow))

    scoped = tuple(sorted(grants - existing, key=specificity_key))
    network = tuple(r for r in _network_rules(extra.network) if r not in existing)

    for rule in scoped:
        logger.debug("grant: %s %s %s", rule.action, rule.category, rule.scope)
    logger.info(
        "composed policy %r: %d baseline rules, %d scoped grants, network=%s",
        baseline.name,
        len(baseline.rules),
        len(scoped),
        extra.network,
    )
    return baseline.with_rules(coarse=coarse + network, scoped=baseline.scoped + scoped)
