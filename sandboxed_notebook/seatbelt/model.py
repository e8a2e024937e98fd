"""
Typed permission rules for macOS Seatbelt (SBPL) policies.

Layering contract:
- Pure data only. Values are frozen and hashable; structural equality is identity.
- The only construction-time check is the Regex dialect/anchoring check.
- Composer, compiler and launcher live in sibling modules.
"""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sandboxed_notebook.errors import InvalidScope


class Action(StrEnum):
    """Allow/deny action; values are the SBPL keywords."""

    ALLOW = "allow"
    DENY = "deny"


class Category(StrEnum):
    """SBPL operation names (string-valued for textual rendering)."""

    DEFAULT = "default"
    NETWORK_INBOUND = "network-inbound"
    NETWORK_OUTBOUND = "network-outbound"
    NETWORK_BIND = "network-bind"
    PROCESS_EXEC = "process-exec"
    PROCESS_FORK = "process-fork"
    SIGNAL = "signal"
    IPC = "ipc*"
    SYSTEM = "system*"
    MACH = "mach*"
    IOKIT = "iokit*"
    SYSCTL_READ = "sysctl-read"
    USER_PREFERENCE = "user-preference*"
    FILE_READ_METADATA = "file-read-metadata"
    FILE_READ = "file-read*"
    FILE_WRITE = "file-write*"
    FILE_IOCTL = "file-ioctl"
    FILE_MAP_EXECUTABLE = "file-map-executable"


NETWORK_CATEGORIES = frozenset({Category.NETWORK_INBOUND, Category.NETWORK_OUTBOUND, Category.NETWORK_BIND})
FILE_CATEGORIES = frozenset({Category.FILE_READ, Category.FILE_WRITE})

# POSIX ERE metacharacters; everything else in a path is literal.
_REGEX_META = frozenset(".[]()*+?{}|^$\\")
_PERL_ONLY_ESCAPE = re.compile(r"\\[dDwWsSbBAzZ]")
_LAZY_QUANTIFIER = re.compile(r"(?<!\\)[*+?}]\?")
_FIRST_SEGMENT = re.compile(r"/[^/]+/")


def regex_escape(path: str) -> str:
    """Escape a literal path for use inside an SBPL (POSIX-style) regex."""
    return "".join("\\" + ch if ch in _REGEX_META else ch for ch in path)


def _literal_prefix(pattern: str) -> tuple[str, str]:
    """Split a '^'-anchored pattern into its leading literal text and the rest."""
    out: list[str] = []
    i = 1
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern) and pattern[i + 1] in _REGEX_META:
            out.append(pattern[i + 1])
            i += 2
        elif ch in _REGEX_META:
            break
        else:
            out.append(ch)
            i += 1
    return "".join(out), pattern[i:]


def _anchors_on_directory(pattern: str) -> bool:
    """True when the pattern can only match below a named directory, or one exact path.

    ^/var/tmp is refused (it also matches /var/tmp-evil), as are wildcards that
    continue a partial segment (^/v.*, ^/var/tmp.*).
    """
    if not pattern.startswith("^/"):
        return False
    prefix, rest = _literal_prefix(pattern)
    if rest == "$":
        return _FIRST_SEGMENT.match(prefix + "/") is not None
    if _FIRST_SEGMENT.match(prefix) is None:
        return False
    if prefix.endswith("/"):
        return True
    return rest != "" and not rest.startswith(".")


class _Scope(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class LiteralPath(_Scope):
    """Exact path match; renders (literal "<path>")."""

    kind: Literal["literal"] = "literal"
    path: str


class PathPrefix(_Scope):
    """Directory subtree match; renders (subpath "<dir>")."""

    kind: Literal["subpath"] = "subpath"
    path: str

    @property
    def depth(self) -> int:
        return len([part for part in self.path.split("/") if part])

    def covers(self, path: str) -> bool:
        root = self.path.rstrip("/")
        return path == root or path.startswith(root + "/") or root == ""


class Regex(_Scope):
    """Regular-expression match; renders (regex #"<pattern>").

    Patterns must be anchored on a directory: ``^/`` followed by literal text
    naming at least one whole directory (``^/dev/...``), or one exact path
    (``^/tmp$``). They cannot match siblings of the root they name.
    """

    kind: Literal["regex"] = "regex"
    pattern: str

    @field_validator("pattern")
    @classmethod
    def _check_dialect(cls, pattern: str) -> str:
        try:
            re.compile(pattern)
        except re.error as e:
            raise InvalidScope(f"regex does not compile: {pattern!r}: {e}") from e
        if "(?" in pattern:
            raise InvalidScope(f"regex uses extension groups unsupported by the engine: {pattern!r}")
        if _PERL_ONLY_ESCAPE.search(pattern):
            raise InvalidScope(f"regex uses Perl-style class escapes unsupported by the engine: {pattern!r}")
        if _LAZY_QUANTIFIER.search(pattern):
            raise InvalidScope(f"regex uses lazy quantifiers unsupported by the engine: {pattern!r}")
        if not _anchors_on_directory(pattern):
            raise InvalidScope(f"regex must be anchored on a directory (^/<segment>/... or ^/<path>$): {pattern!r}")
        return pattern

    @classmethod
    def below(cls, directory: str, tail: str) -> Regex:
        """Pattern for entries strictly inside ``directory``; ``tail`` matches the rest."""
        return cls(pattern="^" + regex_escape(directory.rstrip("/")) + "/" + tail)


class FileMode(_Scope):
    """File permission-bits predicate; renders (file-mode #o<mode>)."""

    kind: Literal["file-mode"] = "file-mode"
    mode: int


class LocalEndpoint(_Scope):
    """Local socket address predicate; renders (local ip "<host>:<port>")."""

    kind: Literal["local-ip"] = "local-ip"
    host: str = "localhost"
    port: str = "*"


class RemoteEndpoint(_Scope):
    """Remote socket address predicate; renders (remote ip "<host>:<port>")."""

    kind: Literal["remote-ip"] = "remote-ip"
    host: str = "localhost"
    port: str = "*"


class Intersection(_Scope):
    """All members must match; renders (require-all ...)."""

    kind: Literal["require-all"] = "require-all"
    members: tuple[Scope, ...] = Field(min_length=2)


class Union(_Scope):
    """Any member may match; renders (require-any ...)."""

    kind: Literal["require-any"] = "require-any"
    members: tuple[Scope, ...] = Field(min_length=2)


Scope = LiteralPath | PathPrefix | Regex | FileMode | LocalEndpoint | RemoteEndpoint | Intersection | Union

Intersection.model_rebuild()
Union.model_rebuild()


class PermissionRule(BaseModel):
    """
    One grant or denial. No scope means the whole category.

    Example SBPL render for allow+file-write*+PathPrefix("/var/tmp"):
      (allow file-write* (subpath "/var/tmp"))
    """

    category: Category
    action: Action = Action.ALLOW
    scope: Scope | None = None

    model_config = ConfigDict(extra="forbid", frozen=True)


DEFAULT_DENY = PermissionRule(category=Category.DEFAULT, action=Action.DENY)


class Policy(BaseModel):
    """
    Ordered rule list in three bands.

    Band 1 is always exactly DEFAULT_DENY and is implicit; ``coarse`` holds the
    category allows the target needs to start at all; ``scoped`` holds
    fine-grained file grants, most specific last.
    """

    name: str
    version: int = 1
    coarse: tuple[PermissionRule, ...] = ()
    scoped: tuple[PermissionRule, ...] = ()

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def _check_bands(self) -> Policy:
        for rule in (*self.coarse, *self.scoped):
            if rule.category == Category.DEFAULT:
                raise ValueError("only the leading band may hold a default rule")
        for rule in self.scoped:
            if rule.scope is None:
                raise ValueError(f"scoped band requires a scope: {rule.action} {rule.category}")
        return self

    @property
    def rules(self) -> tuple[PermissionRule, ...]:
        return (DEFAULT_DENY, *self.coarse, *self.scoped)

    def with_rules(
        self, *, coarse: tuple[PermissionRule, ...] | None = None, scoped: tuple[PermissionRule, ...] | None = None
    ) -> Policy:
        return Policy(
            name=self.name,
            version=self.version,
            coarse=self.coarse if coarse is None else coarse,
            scoped=self.scoped if scoped is None else scoped,
        )
