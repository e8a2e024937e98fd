from __future__ import annotations

import sys
from pathlib import Path

import pytest

from sandboxed_notebook.launcher import LaunchSpec
from sandboxed_notebook.seatbelt.compile import SEATBELT_V1
from sandboxed_notebook.seatbelt.compose import SafeRoots
from sandboxed_notebook.seatbelt.model import Policy
from sandboxed_notebook.seatbelt.template import baseline


class PassthroughBackend:
    """Runs the target directly, with no enforcement. Records every policy file it is handed."""

    name = "passthrough"
    capabilities = SEATBELT_V1

    def __init__(self) -> None:
        self.policy_files: list[Path] = []
        self.policy_texts: list[str] = []

    def ensure_available(self) -> None:
        return None

    def command(self, policy_file: Path, spec: LaunchSpec) -> list[str]:
        self.policy_files.append(policy_file)
        self.policy_texts.append(policy_file.read_text())
        return spec.argv


@pytest.fixture
def passthrough_backend() -> PassthroughBackend:
    return PassthroughBackend()


@pytest.fixture
def notebook_baseline() -> Policy:
    return baseline()


@pytest.fixture
def tmp_roots(tmp_path: Path) -> SafeRoots:
    """Safe roots confined to the test's tmp dir."""
    home = tmp_path / "home"
    temp = tmp_path / "temp"
    packages = tmp_path / "packages"
    for d in (home, temp, packages):
        d.mkdir()
    return SafeRoots(home=(home,), temp=(temp,), packages=(packages,))


@pytest.fixture
def python_spec(notebook_baseline: Policy):
    """Build a LaunchSpec running ``sys.executable -c <code>``."""

    def _make(code: str, *args: str, **kwargs) -> LaunchSpec:
        return LaunchSpec(
            policy=notebook_baseline, executable=sys.executable, arguments=("-c", code, *args), **kwargs
        )

    return _make
