"""
Confined launcher: compile a policy, start the target under the enforcement engine, wait.

- No magic rule injection. The policy in the LaunchSpec is the policy enforced.
- The compiled profile lives in a private artifacts dir that is removed on exit.
- No retries. Any failure before the target runs is raised as-is and nothing is spawned.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex
import shutil
import signal
import sys
import tempfile
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from types import MappingProxyType
from typing import Protocol

from sandboxed_notebook.errors import LaunchFailed, SandboxError
from sandboxed_notebook.seatbelt.compile import SEATBELT_V1, EngineCapabilities, compile_sbpl
from sandboxed_notebook.seatbelt.model import Policy
from sandboxed_notebook.seatbelt.validate import ValidationContext, make_runtime_context

logger = logging.getLogger(__name__)

DEFAULT_TERM_GRACE_SECS = 2.0
FORWARDED_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)


class LaunchState(StrEnum):
    IDLE = "idle"
    COMPILING = "compiling"
    SPAWNING = "spawning"
    CONFINED = "confined"
    EXITED = "exited"
    LAUNCH_FAILED = "launch_failed"


@dataclass(frozen=True)
class LaunchSpec:
    """Everything needed for one confined launch. Consumed once; never mutated."""

    policy: Policy
    executable: str
    arguments: tuple[str, ...] = ()
    environment: Mapping[str, str] = field(default_factory=dict)
    cwd: Path | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "arguments", tuple(self.arguments))
        object.__setattr__(self, "environment", MappingProxyType(dict(self.environment)))

    @property
    def argv(self) -> list[str]:
        return [self.executable, *self.arguments]


@dataclass(frozen=True)
class ExitStatus:
    """Target exit status. A signal death N reports signal=N and code=128+N."""

    code: int
    signal: int | None = None

    @classmethod
    def from_returncode(cls, returncode: int) -> ExitStatus:
        if returncode < 0:
            return cls(code=128 - returncode, signal=-returncode)
        return cls(code=returncode)

    @property
    def signal_name(self) -> str | None:
        if self.signal is None:
            return None
        try:
            return signal.Signals(self.signal).name
        except ValueError:
            return f"signal {self.signal}"


class SandboxBackend(Protocol):
    """Platform enforcement primitive: what it can express and how to exec under it."""

    name: str
    capabilities: EngineCapabilities

    def ensure_available(self) -> None:
        """Raise LaunchFailed if the primitive cannot be invoked on this host."""
        ...

    def command(self, policy_file: Path, spec: LaunchSpec) -> list[str]:
        """argv that applies the profile and then execs the target."""
        ...


class SeatbeltBackend:
    """macOS sandbox-exec: applies the profile in-process, then execs the target."""

    name = "seatbelt"
    capabilities = SEATBELT_V1

    def __init__(self, sandbox_exec: str | None = None) -> None:
        self._sandbox_exec = sandbox_exec

    def ensure_available(self) -> None:
        if sys.platform != "darwin":
            raise LaunchFailed("seatbelt is macOS-only (requires sandbox-exec)")
        sx = self._sandbox_exec or shutil.which("sandbox-exec")
        if not sx:
            raise LaunchFailed("sandbox-exec not found on PATH; cannot confine the target")
        self._sandbox_exec = sx

    def command(self, policy_file: Path, spec: LaunchSpec) -> list[str]:
        if not self._sandbox_exec:
            raise LaunchFailed("seatbelt backend used before ensure_available()")
        return [self._sandbox_exec, "-f", str(policy_file), *spec.argv]


class UnsupportedPlatformBackend:
    """Fail-closed stand-in for hosts without an enforcement primitive."""

    name = "unsupported"
    capabilities = SEATBELT_V1

    def __init__(self, reason: str) -> None:
        self.reason = reason

    def ensure_available(self) -> None:
        raise LaunchFailed(self.reason)

    def command(self, policy_file: Path, spec: LaunchSpec) -> list[str]:
        raise LaunchFailed(self.reason)


def default_backend(ctx: ValidationContext | None = None) -> SandboxBackend:
    ctx = ctx or make_runtime_context()
    if ctx.macos_version is not None:
        return SeatbeltBackend()
    return UnsupportedPlatformBackend(f"no sandbox backend for platform {sys.platform!r}; refusing to run unconfined")


def _log_rmtree_error(func, path, exc: BaseException) -> None:
    logger.warning("failed to remove launch artifact %s: %s", path, exc)


class ConfinedLauncher:
    """Single-use launcher: idle -> compiling -> spawning -> confined -> exited | launch_failed."""

    def __init__(
        self,
        backend: SandboxBackend | None = None,
        *,
        term_grace: float = DEFAULT_TERM_GRACE_SECS,
        forward_signals: tuple[signal.Signals, ...] = FORWARDED_SIGNALS,
    ) -> None:
        self.backend = backend or default_backend()
        self.term_grace = term_grace
        self.forward_signals = forward_signals
        self._state = LaunchState.IDLE
        self._proc: asyncio.subprocess.Process | None = None
        self.policy_text: str | None = None

    @property
    def state(self) -> LaunchState:
        return self._state

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    def _transition(self, state: LaunchState) -> None:
        logger.debug("launcher %s -> %s", self._state, state)
        self._state = state

    async def launch(self, spec: LaunchSpec) -> ExitStatus:
        if self._state != LaunchState.IDLE:
            raise RuntimeError(f"launcher is single-use (state={self._state})")

        self._transition(LaunchState.COMPILING)
        try:
            policy_text = compile_sbpl(spec.policy, engine=self.backend.capabilities)
        except SandboxError:
            self._transition(LaunchState.LAUNCH_FAILED)
            raise
        self.policy_text = policy_text

        self._transition(LaunchState.SPAWNING)
        try:
            self.backend.ensure_available()
        except LaunchFailed:
            self._transition(LaunchState.LAUNCH_FAILED)
            raise

        artifacts_dir = Path(tempfile.mkdtemp(prefix="sandboxed-notebook-"))
        try:
            try:
                proc = await self._spawn(spec, policy_text, artifacts_dir)
            except LaunchFailed:
                self._transition(LaunchState.LAUNCH_FAILED)
                raise
            self._proc = proc
            self._transition(LaunchState.CONFINED)
            logger.info("pid %d confined by %s policy %r", proc.pid, self.backend.name, spec.policy.name)
            with self._forwarding(proc):
                returncode = await self._wait(proc)
        finally:
            shutil.rmtree(artifacts_dir, onexc=_log_rmtree_error)

        status = ExitStatus.from_returncode(returncode)
        self._transition(LaunchState.EXITED)
        logger.info("pid %d exited: code=%d signal=%s", proc.pid, status.code, status.signal_name)
        return status

    async def _spawn(self, spec: LaunchSpec, policy_text: str, artifacts_dir: Path) -> asyncio.subprocess.Process:
        try:
            policy_file = artifacts_dir / "policy.sb"
            policy_file.write_text(policy_text)
            cmd = self.backend.command(policy_file, spec)
            logger.debug("exec: %s", shlex.join(cmd))
            # Own process group so forwarded signals reach the whole confined tree.
            return await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(spec.cwd) if spec.cwd else None,
                env=dict(spec.environment),
                process_group=0,
            )
        except OSError as e:
            raise LaunchFailed(f"cannot spawn {spec.executable!r} under {self.backend.name}: {e}") from e

    async def _wait(self, proc: asyncio.subprocess.Process) -> int:
        try:
            return await proc.wait()
        except asyncio.CancelledError:
            logger.info("launch cancelled; stopping pid %d", proc.pid)
            await self._shutdown(proc)
            self._transition(LaunchState.EXITED)
            raise

    async def _shutdown(self, proc: asyncio.subprocess.Process) -> None:
        """Two-phase termination: SIGTERM, wait up to term_grace, then SIGKILL and wait (shielded)."""
        if proc.returncode is not None:
            return
        self._signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(asyncio.shield(proc.wait()), timeout=self.term_grace)
        except TimeoutError:
            logger.warning("pid %d ignored SIGTERM for %.1fs; killing", proc.pid, self.term_grace)
            self._signal_group(proc, signal.SIGKILL)
            await asyncio.shield(proc.wait())

    def _signal_group(self, proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        if proc.returncode is not None:
            return
        logger.debug("forwarding %s to process group %d", sig.name, proc.pid)
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            logger.debug("process group %d already gone", proc.pid)

    @contextlib.contextmanager
    def _forwarding(self, proc: asyncio.subprocess.Process) -> Iterator[None]:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in self.forward_signals:
            try:
                loop.add_signal_handler(sig, self._signal_group, proc, sig)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                # Not the main thread: the caller owns signal delivery.
                logger.debug("cannot forward %s: %s", sig.name, e)
                continue
            installed.append(sig)
        try:
            yield
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)


async def launch(spec: LaunchSpec, backend: SandboxBackend | None = None, **kwargs) -> ExitStatus:
    """Compile, spawn and wait for one confined target."""
    return await ConfinedLauncher(backend, **kwargs).launch(spec)


def run(spec: LaunchSpec, backend: SandboxBackend | None = None, **kwargs) -> ExitStatus:
    """Blocking wrapper around launch()."""
    return asyncio.run(launch(spec, backend, **kwargs))
