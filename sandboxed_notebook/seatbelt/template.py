"""
Deny-by-default baseline templates.

A template is the minimal rule set a target program class needs to start at
all. Every entry below says what breaks without it; anything not strictly
required belongs in caller-supplied extras, not here.
"""

from __future__ import annotations

from collections.abc import Callable

from .model import Category, LiteralPath, PathPrefix, PermissionRule, Policy, Regex

TEMPLATE_NAME = "notebook"
TEMPLATE_VERSION = 1

# Terminal device nodes only: controlling tty, pseudo-terminal slaves and the pty multiplexer.
TERMINAL_DEVICE_PATTERN = "^/dev/(tty|ttys[0-9]+|ttyp[0-9a-f]+|ptmx)$"

# Roots the macOS dynamic loader reads before main(); see dyld_cache_format.h cryptexPrefixes.
LOADER_ROOTS: tuple[str, ...] = (
    "/System",
    "/usr/lib",
    "/private/var/db/dyld",
    "/System/Volumes/Preboot",
    "/System/Cryptexes",
    "/System/Volumes/Preboot/Cryptexes",
)


def _allow(category: Category, scope=None) -> PermissionRule:
    return PermissionRule(category=category, scope=scope)


def baseline() -> Policy:
    """Return the notebook-server baseline policy (immutable)."""
    coarse = [
        # server spawns kernels, kernels spawn helpers
        _allow(Category.PROCESS_EXEC),
        _allow(Category.PROCESS_FORK),
        # graceful shutdown: server signals its kernels, launcher signals the server
        _allow(Category.SIGNAL),
        # kernel <-> server messaging, semaphores for multiprocessing
        _allow(Category.IPC),
        # TODO: narrow system*/mach*/iokit* once per-service names are known
        _allow(Category.SYSTEM),
        _allow(Category.MACH),
        _allow(Category.IOKIT),
        # hw.ncpu, kern.osrelease etc. read by the interpreter at startup
        _allow(Category.SYSCTL_READ),
        # CoreFoundation reads preferences during framework init
        _allow(Category.USER_PREFERENCE),
        # stat() on parents of every allowed path; path traversal fails without it
        _allow(Category.FILE_READ_METADATA),
        # terminal control when attached to a tty
        _allow(Category.FILE_IOCTL, Regex(pattern=TERMINAL_DEVICE_PATTERN)),
        _allow(Category.FILE_READ, Regex(pattern=TERMINAL_DEVICE_PATTERN)),
        _allow(Category.FILE_WRITE, Regex(pattern=TERMINAL_DEVICE_PATTERN)),
        # standard character devices
        _allow(Category.FILE_READ, LiteralPath(path="/dev/null")),
        _allow(Category.FILE_WRITE, LiteralPath(path="/dev/null")),
        _allow(Category.FILE_READ, LiteralPath(path="/dev/zero")),
        _allow(Category.FILE_READ, LiteralPath(path="/dev/random")),
        _allow(Category.FILE_READ, LiteralPath(path="/dev/urandom")),
        # dyld maps shared-cache and framework code
        _allow(Category.FILE_MAP_EXECUTABLE),
    ]
    coarse.extend(_allow(Category.FILE_READ, PathPrefix(path=root)) for root in LOADER_ROOTS)
    return Policy(name=TEMPLATE_NAME, version=TEMPLATE_VERSION, coarse=tuple(coarse))


TEMPLATES: dict[str, Callable[[], Policy]] = {TEMPLATE_NAME: baseline}


def template(name: str) -> Policy:
    """Look up a template by trust-tier name."""
    try:
        factory = TEMPLATES[name]
    except KeyError:
        raise KeyError(f"unknown policy template {name!r}; known: {', '.join(sorted(TEMPLATES))}") from None
    return factory()
