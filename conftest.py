"""Root pytest configuration: marker registration and environment-based skips."""

from __future__ import annotations

import platform
import shutil

import pytest


def pytest_configure(config: pytest.Config) -> None:
    """Register all common test markers."""
    config.addinivalue_line("markers", "unit: fast unit tests")
    config.addinivalue_line("markers", "integration: integration tests")
    config.addinivalue_line("markers", "requires_sandbox_exec: tests requiring macOS sandbox-exec")
    config.addinivalue_line("markers", "macos: macOS-only tests")


def pytest_runtest_setup(item: pytest.Item) -> None:
    """Skip tests based on environment and markers."""
    if item.get_closest_marker("macos") is not None and platform.system() != "Darwin":
        pytest.skip("macOS-only test")

    if item.get_closest_marker("requires_sandbox_exec") is not None and not shutil.which("sandbox-exec"):
        pytest.skip("sandbox-exec not found on PATH")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Automatically add markers based on other markers."""
    for item in items:
        # sandbox-exec tests are implicitly macOS-only
        if item.get_closest_marker("requires_sandbox_exec") is not None:
            item.add_marker(pytest.mark.macos)
