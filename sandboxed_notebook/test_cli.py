from __future__ import annotations

from pathlib import Path

import pytest
from hamcrest import assert_that, contains_exactly, contains_string, has_entry, not_, starts_with

from sandboxed_notebook import cli
from sandboxed_notebook.config import TERM_GRACE_ENV
from sandboxed_notebook.errors import LaunchFailed
from sandboxed_notebook.launcher import ExitStatus, LaunchSpec


class FakeRun:
    def __init__(self, result: ExitStatus | Exception) -> None:
        self.result = result
        self.calls: list[tuple[LaunchSpec, dict]] = []

    def __call__(self, spec: LaunchSpec, **kwargs) -> ExitStatus:
        self.calls.append((spec, kwargs))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


@pytest.fixture
def fake_run(monkeypatch: pytest.MonkeyPatch) -> FakeRun:
    fake = FakeRun(ExitStatus(code=0))
    monkeypatch.setattr(cli, "run", fake)
    return fake


def test_print_policy(capsys: pytest.CaptureFixture[str]):
    assert cli.main(["--print-policy"]) == 0
    out = capsys.readouterr().out
    assert_that(out, starts_with("(version 1)\n(deny default)\n"))
    assert_that(out, contains_string('(allow network-bind (local ip "localhost:*"))'))


def test_print_policy_minified(capsys: pytest.CaptureFixture[str]):
    assert cli.main(["--print-policy", "--minify", "--net", "open"]) == 0
    out = capsys.readouterr().out
    assert out.count("\n") == 1
    assert_that(out, contains_string("(deny default) (allow process-exec)"))
    assert_that(out, contains_string("(allow network-outbound)"))


def test_data_dir_becomes_a_write_grant(capsys: pytest.CaptureFixture[str], tmp_path: Path):
    assert cli.main(["--print-policy", "--data-dir", str(tmp_path)]) == 0
    assert_that(capsys.readouterr().out, contains_string(f'(allow file-write* (subpath "{tmp_path}"))'))


def test_exec_deny_flag_adds_a_literal_denial(capsys: pytest.CaptureFixture[str]):
    assert cli.main(["--print-policy", "--exec-deny", "/bin/bash"]) == 0
    out = capsys.readouterr().out
    assert_that(out, contains_string('(deny process-exec (literal "/bin/bash"))'))
    assert_that(out, contains_string("(allow process-exec)\n"))


def test_exec_allow_flag_drops_unscoped_exec(capsys: pytest.CaptureFixture[str]):
    assert cli.main(["--print-policy", "--exec-allow", "/opt/example/bin/jupyter"]) == 0
    out = capsys.readouterr().out
    assert_that(out, contains_string('(allow process-exec (literal "/opt/example/bin/jupyter"))'))
    assert_that(out, not_(contains_string("(allow process-exec)\n")))


def test_deny_write_flag_denies_only_writes(capsys: pytest.CaptureFixture[str], tmp_path: Path):
    target = tmp_path / "notes"
    assert cli.main(["--print-policy", "--deny-write", str(target)]) == 0
    out = capsys.readouterr().out
    assert_that(out, contains_string(f'(deny file-write* (subpath "{target}"))'))
    assert_that(out, not_(contains_string(f'(deny file-read* (subpath "{target}"))')))


def test_grant_outside_safe_roots_exits_2(capsys: pytest.CaptureFixture[str], fake_run: FakeRun):
    assert cli.main(["--data-dir", "/etc", "--", "jupyter", "lab"]) == cli.EXIT_CONFIG
    assert_that(capsys.readouterr().err, contains_string("outside the allowed"))
    assert fake_run.calls == []


def test_missing_command_exits_2(capsys: pytest.CaptureFixture[str]):
    assert cli.main([]) == cli.EXIT_CONFIG
    assert_that(capsys.readouterr().err, contains_string("missing command"))


def test_bad_config_exits_2(capsys: pytest.CaptureFixture[str], tmp_path: Path):
    config = tmp_path / "sandbox.yaml"
    config.write_text("template: kiosk\n")
    assert cli.main(["--config", str(config), "--print-policy"]) == cli.EXIT_CONFIG
    assert_that(capsys.readouterr().err, contains_string("unknown policy template"))


def test_command_runs_with_whitelisted_environment(fake_run: FakeRun, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("PATH", "/usr/bin:/bin")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "s3cr3t")
    monkeypatch.delenv(TERM_GRACE_ENV, raising=False)

    assert cli.main(["--", "jupyter", "lab", "--no-browser"]) == 0

    [(spec, kwargs)] = fake_run.calls
    assert spec.executable == "jupyter"
    assert_that(spec.arguments, contains_exactly("lab", "--no-browser"))
    assert_that(dict(spec.environment), has_entry("PATH", "/usr/bin:/bin"))
    assert_that(dict(spec.environment), not_(has_entry("AWS_SECRET_ACCESS_KEY", "s3cr3t")))
    assert kwargs == {"term_grace": 2.0}


def test_child_exit_code_is_returned(fake_run: FakeRun):
    fake_run.result = ExitStatus(code=5)
    assert cli.main(["false"]) == 5


def test_signal_death_is_reported(fake_run: FakeRun, capsys: pytest.CaptureFixture[str]):
    fake_run.result = ExitStatus(code=143, signal=15)
    assert cli.main(["--", "jupyter", "lab"]) == 143
    assert_that(capsys.readouterr().err, contains_string("terminated by SIGTERM"))


def test_launch_failure_exits_4(fake_run: FakeRun, capsys: pytest.CaptureFixture[str]):
    fake_run.result = LaunchFailed("sandbox-exec not found on PATH")
    assert cli.main(["--", "jupyter", "lab"]) == cli.EXIT_LAUNCH_FAILED
    assert_that(capsys.readouterr().err, contains_string("launch failed: sandbox-exec not found"))
