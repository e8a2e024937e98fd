"""Seatbelt policy model, baseline templates, composition and SBPL compilation."""

from .compile import SEATBELT_V1, EngineCapabilities, compile_sbpl, minify_profile, render_rule
from .compose import ExtraPermissionSet, NetworkAccess, SafeRoots, compose
from .model import (
    DEFAULT_DENY,
    Action,
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
from .template import baseline, template
from .validate import ValidationContext, make_runtime_context, validate

__all__ = [
    "DEFAULT_DENY",
    "SEATBELT_V1",
    "Action",
    "Category",
    "EngineCapabilities",
    "ExtraPermissionSet",
    "FileMode",
    "Intersection",
    "LiteralPath",
    "LocalEndpoint",
    "NetworkAccess",
    "PathPrefix",
    "PermissionRule",
    "Policy",
    "Regex",
    "RemoteEndpoint",
    "SafeRoots",
    "Scope",
    "Union",
    "ValidationContext",
    "baseline",
    "compile_sbpl",
    "compose",
    "make_runtime_context",
    "minify_profile",
    "render_rule",
    "template",
    "validate",
]
