"""YAML configuration for sandboxed notebook launches.

The config layer turns user-facing settings (with ``~`` and relative paths)
into the absolute-path ExtraPermissionSet the composer validates, plus the
child environment and launcher knobs.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sandboxed_notebook.errors import ConfigError
from sandboxed_notebook.launcher import DEFAULT_TERM_GRACE_SECS
from sandboxed_notebook.seatbelt.compose import ExtraPermissionSet, NetworkAccess, SafeRoots

logger = logging.getLogger(__name__)

TERM_GRACE_ENV = "SANDBOXED_NOTEBOOK_TERM_GRACE_SECS"

# Default env whitelist used when passing through only a safe subset.
DEFAULT_ENV_WHITELIST: tuple[str, ...] = (
    "HOME",
    "LOGNAME",
    "PATH",
    "SHELL",
    "USER",
    "USERNAME",
    "TMPDIR",
    "TEMP",
    "TMP",
    "LANG",
    "TERM",
)


def _abs(p: str | Path) -> Path:
    return Path(p).expanduser().absolute()


class EnvConfig(BaseModel):
    set: dict[str, str] = Field(default_factory=dict)
    passthrough: list[str] = Field(default_factory=lambda: list(DEFAULT_ENV_WHITELIST))
    model_config = ConfigDict(extra="forbid")


class FSConfig(BaseModel):
    data_dir: Path | None = None
    temp_dirs: list[Path] = Field(default_factory=list)
    package_roots: list[Path] = Field(default_factory=list)
    read_only: list[Path] = Field(default_factory=list)
    deny: list[Path] = Field(default_factory=list)
    deny_read: list[Path] = Field(default_factory=list)
    deny_write: list[Path] = Field(default_factory=list)
    exec_allow: list[Path] = Field(default_factory=list)
    exec_deny: list[Path] = Field(default_factory=list)
    model_config = ConfigDict(extra="forbid")


class NetConfig(BaseModel):
    mode: NetworkAccess = NetworkAccess.LOOPBACK
    model_config = ConfigDict(extra="forbid")


class RootsConfig(BaseModel):
    """Optional override of the safe root categories; unset fields keep the defaults."""

    home: list[Path] | None = None
    temp: list[Path] | None = None
    packages: list[Path] | None = None
    model_config = ConfigDict(extra="forbid")


class LauncherConfig(BaseModel):
    term_grace_secs: float = Field(default=DEFAULT_TERM_GRACE_SECS, gt=0)
    model_config = ConfigDict(extra="forbid")


class SandboxConfig(BaseModel):
    template: str = "notebook"
    env: EnvConfig = Field(default_factory=EnvConfig)
    fs: FSConfig = Field(default_factory=FSConfig)
    net: NetConfig = Field(default_factory=NetConfig)
    roots: RootsConfig = Field(default_factory=RootsConfig)
    launcher: LauncherConfig = Field(default_factory=LauncherConfig)
    model_config = ConfigDict(extra="forbid")

    def extra_permissions(self) -> ExtraPermissionSet:
        fs = self.fs
        return ExtraPermissionSet(
            data_directory=_abs(fs.data_dir) if fs.data_dir is not None else None,
            temp_directories=frozenset(_abs(p) for p in fs.temp_dirs),
            package_roots=frozenset(_abs(p) for p in fs.package_roots),
            read_only_paths=frozenset(_abs(p) for p in fs.read_only),
            deny_paths=frozenset(_abs(p) for p in fs.deny),
            deny_read_paths=frozenset(_abs(p) for p in fs.deny_read),
            deny_write_paths=frozenset(_abs(p) for p in fs.deny_write),
            exec_allow=frozenset(_abs(p) for p in fs.exec_allow),
            exec_deny=frozenset(_abs(p) for p in fs.exec_deny),
            network=self.net.mode,
        )

    def safe_roots(self) -> SafeRoots:
        defaults = SafeRoots.default()
        r = self.roots
        return SafeRoots(
            home=defaults.home if r.home is None else tuple(_abs(p) for p in r.home),
            temp=defaults.temp if r.temp is None else tuple(_abs(p) for p in r.temp),
            packages=defaults.packages if r.packages is None else tuple(_abs(p) for p in r.packages),
        )

    def child_environment(self, parent_env: Mapping[str, str] | None = None) -> dict[str, str]:
        """Whitelisted variables from ``parent_env``, then explicit ``env.set`` (which wins)."""
        parent = os.environ if parent_env is None else parent_env
        child = {k: parent[k] for k in self.env.passthrough if k in parent}
        child.update(self.env.set)
        return child

    def term_grace_secs(self, environ: Mapping[str, str] | None = None) -> float:
        environ = os.environ if environ is None else environ
        if raw := environ.get(TERM_GRACE_ENV):
            try:
                value = float(raw)
            except ValueError as e:
                raise ConfigError(f"{TERM_GRACE_ENV} must be a number, got {raw!r}") from e
            if value <= 0:
                raise ConfigError(f"{TERM_GRACE_ENV} must be positive, got {raw!r}")
            return value
        return self.launcher.term_grace_secs


def parse_config(raw_text: str, *, source: str = "<config>") -> SandboxConfig:
    try:
        raw = yaml.safe_load(raw_text)
    except yaml.YAMLError as e:
        raise ConfigError(f"{source}: invalid YAML: {e}") from e
    try:
        return SandboxConfig.model_validate(raw or {})
    except ValidationError as e:
        raise ConfigError(f"{source}: schema error: {e}") from e


def load_config(path: str | Path) -> SandboxConfig:
    p = Path(path).expanduser()
    try:
        text = p.read_text()
    except OSError as e:
        raise ConfigError(f"cannot read config {p}: {e}") from e
    logger.debug("loaded config from %s", p)
    return parse_config(text, source=str(p))


def detect_package_roots() -> list[Path]:
    """Install prefixes of the running interpreter (venv first, then base)."""
    roots: list[Path] = []
    for prefix in (sys.prefix, sys.base_prefix):
        p = Path(prefix).absolute()
        if p not in roots:
            roots.append(p)
    return roots
