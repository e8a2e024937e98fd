"""
SBPL compiler: Policy -> SBPL text.

Pure function: no mutations, no auto-inserted rules or platform probing.
Anything the engine cannot express exactly is rejected with UnsupportedRule.
"""

from __future__ import annotations

from dataclasses import dataclass

from sandboxed_notebook.errors import UnsupportedRule

from .model import (
    NETWORK_CATEGORIES,
    Category,
    FileMode,
    Intersection,
    LiteralPath,
    LocalEndpoint,
    PathPrefix,
    PermissionRule,
    Policy,
    Regex,
    RemoteEndpoint,
    Scope,
    Union,
)

_PATH_SCOPE_KINDS = frozenset({"literal", "subpath", "regex", "file-mode", "require-all", "require-any"})
_ENDPOINT_SCOPE_KINDS = frozenset({"local-ip", "remote-ip", "require-all", "require-any"})

# Categories whose filters are paths (vnode operations).
_PATH_CATEGORIES = frozenset(
    {
        Category.FILE_READ,
        Category.FILE_WRITE,
        Category.FILE_READ_METADATA,
        Category.FILE_IOCTL,
        Category.FILE_MAP_EXECUTABLE,
        Category.PROCESS_EXEC,
    }
)

_ENDPOINT_HOSTS = frozenset({"localhost", "*"})


@dataclass(frozen=True)
class EngineCapabilities:
    """What a given enforcement engine can express."""

    name: str
    scope_kinds: frozenset[str]
    categories: frozenset[Category]


SEATBELT_V1 = EngineCapabilities(
    name="seatbelt-v1", scope_kinds=_PATH_SCOPE_KINDS | _ENDPOINT_SCOPE_KINDS, categories=frozenset(Category)
)


def _check_text(s: str, rule: PermissionRule) -> str:
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in s):
        raise UnsupportedRule(f"control character in SBPL literal {s!r}", rule=rule)
    return s


def _q(s: str, rule: PermissionRule) -> str:
    """Quote an SBPL string literal."""
    return _check_text(s, rule).replace("\\", "\\\\").replace('"', '\\"')


def _qr(pattern: str, rule: PermissionRule) -> str:
    """Quote a regex literal; backslashes belong to the pattern and stay as-is."""
    return _check_text(pattern, rule).replace('"', '\\"')


def _path(path: str, rule: PermissionRule) -> str:
    if not path.startswith("/"):
        raise UnsupportedRule(f"SBPL path filters require absolute paths, got {path!r}", rule=rule)
    return _q(path, rule)


def _endpoint(host: str, port: str, rule: PermissionRule) -> str:
    if host not in _ENDPOINT_HOSTS:
        raise UnsupportedRule(f"network filters only accept 'localhost' or '*' hosts, got {host!r}", rule=rule)
    if port != "*" and not (port.isdigit() and 0 < int(port) < 65536):
        raise UnsupportedRule(f"invalid network filter port {port!r}", rule=rule)
    return f"{host}:{port}"


def _render_scope(scope: Scope, rule: PermissionRule, engine: EngineCapabilities) -> str:
    if scope.kind not in engine.scope_kinds:
        raise UnsupportedRule(f"{engine.name} cannot express {scope.kind} filters", rule=rule)
    allowed = _ENDPOINT_SCOPE_KINDS if rule.category in NETWORK_CATEGORIES else _PATH_SCOPE_KINDS
    if rule.category not in _PATH_CATEGORIES and rule.category not in NETWORK_CATEGORIES:
        raise UnsupportedRule(f"{rule.category} takes no filters", rule=rule)
    if scope.kind not in allowed:
        raise UnsupportedRule(f"{scope.kind} filter does not apply to {rule.category}", rule=rule)

    match scope:
        case LiteralPath(path=path):
            return f'(literal "{_path(path, rule)}")'
        case PathPrefix(path=path):
            return f'(subpath "{_path(path, rule)}")'
        case Regex(pattern=pattern):
            return f'(regex #"{_qr(pattern, rule)}")'
        case FileMode(mode=mode):
            if not 0 <= mode <= 0o7777:
                raise UnsupportedRule(f"file mode out of range: {mode:#o}", rule=rule)
            return f"(file-mode #o{mode:04o})"
        case LocalEndpoint(host=host, port=port):
            return f'(local ip "{_endpoint(host, port, rule)}")'
        case RemoteEndpoint(host=host, port=port):
            return f'(remote ip "{_endpoint(host, port, rule)}")'
        case Intersection(members=members):
            return "(require-all " + " ".join(_render_scope(m, rule, engine) for m in members) + ")"
        case Union(members=members):
            return "(require-any " + " ".join(_render_scope(m, rule, engine) for m in members) + ")"
    raise UnsupportedRule(f"unsupported scope type: {type(scope).__name__}", rule=rule)


def render_rule(rule: PermissionRule, engine: EngineCapabilities = SEATBELT_V1) -> str:
    if rule.category not in engine.categories:
        raise UnsupportedRule(f"{engine.name} has no {rule.category} operation", rule=rule)
    if rule.scope is None:
        return f"({rule.action.value} {rule.category.value})"
    return f"({rule.action.value} {rule.category.value} {_render_scope(rule.scope, rule, engine)})"


def compile_sbpl(policy: Policy, *, engine: EngineCapabilities | None = None) -> str:
    """Compile a Policy to SBPL text, preserving rule order exactly."""
    engine = engine or SEATBELT_V1
    lines = ["(version 1)"]
    lines.extend(render_rule(rule, engine) for rule in policy.rules)
    lines.append("")
    return "\n".join(lines)


def minify_profile(profile: str) -> str:
    """Drop ';' comments and blank lines; join the rest with single spaces.

    Comment markers inside string literals are kept.
    """
    out: list[str] = []
    for raw in profile.splitlines():
        line = _strip_comment(raw).strip()
        if line:
            out.append(line)
    return " ".join(out)


def _strip_comment(line: str) -> str:
    in_string = False
    escaped = False
    for i, ch in enumerate(line):
        if escaped:
            escaped = False
        elif ch == "\\" and in_string:
            escaped = True
        elif ch == '"':
            in_string = not in_string
        elif ch == ";" and not in_string:
            return line[:i]
    return line
