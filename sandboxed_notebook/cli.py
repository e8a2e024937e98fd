from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from sandboxed_notebook.config import NetConfig, SandboxConfig, detect_package_roots, load_config
from sandboxed_notebook.errors import ConfigError, InvalidScope, LaunchFailed, UnsafeScopeRejected, UnsupportedRule
from sandboxed_notebook.launcher import LaunchSpec, run
from sandboxed_notebook.seatbelt.compile import compile_sbpl, minify_profile
from sandboxed_notebook.seatbelt.compose import NetworkAccess, compose
from sandboxed_notebook.seatbelt.model import Policy
from sandboxed_notebook.seatbelt.template import template
from sandboxed_notebook.seatbelt.validate import validate

PROG = "sandboxed-notebook"

EXIT_CONFIG = 2
EXIT_UNSUPPORTED = 3
EXIT_LAUNCH_FAILED = 4

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog=PROG, description="Run a notebook server (or any command) under a deny-by-default macOS seatbelt policy"
    )
    ap.add_argument("--config", type=Path, help="Path to sandbox YAML config")
    ap.add_argument("--data-dir", type=Path, help="Writable data directory (e.g. ~/Library/Jupyter)")
    ap.add_argument("--temp-dir", type=Path, action="append", default=[], help="Writable temp directory (repeatable)")
    ap.add_argument(
        "--package-root", type=Path, action="append", default=[], help="Writable package install root (repeatable)"
    )
    ap.add_argument("--read-only", type=Path, action="append", default=[], help="Readable source tree (repeatable)")
    ap.add_argument("--deny", type=Path, action="append", default=[], help="Path to deny read/write (repeatable)")
    ap.add_argument("--deny-read", type=Path, action="append", default=[], help="Path to deny reading (repeatable)")
    ap.add_argument("--deny-write", type=Path, action="append", default=[], help="Path to deny writing (repeatable)")
    ap.add_argument(
        "--exec-allow",
        type=Path,
        action="append",
        default=[],
        help="Executable allowed to run (repeatable); when given, no other executable may run",
    )
    ap.add_argument("--exec-deny", type=Path, action="append", default=[], help="Executable denied (repeatable)")
    ap.add_argument(
        "--allow-interpreter", action="store_true", help="Allow reading the running interpreter's install prefixes"
    )
    ap.add_argument("--net", choices=[m.value for m in NetworkAccess], help="Network access (default: loopback)")
    ap.add_argument("--print-policy", action="store_true", help="Print the compiled SBPL policy and exit")
    ap.add_argument("--minify", action="store_true", help="With --print-policy: single-line output")
    ap.add_argument("--debug", action="store_true", help="Verbose diagnostics on stderr")
    ap.add_argument("cmd", nargs=argparse.REMAINDER, help="Command to execute (prefix with -- to separate)")
    return ap


def _apply_overrides(cfg: SandboxConfig, args: argparse.Namespace) -> SandboxConfig:
    read_only = [*cfg.fs.read_only, *args.read_only]
    if args.allow_interpreter:
        read_only.extend(detect_package_roots())
    fs = cfg.fs.model_copy(
        update={
            "data_dir": args.data_dir if args.data_dir is not None else cfg.fs.data_dir,
            "temp_dirs": [*cfg.fs.temp_dirs, *args.temp_dir],
            "package_roots": [*cfg.fs.package_roots, *args.package_root],
            "read_only": read_only,
            "deny": [*cfg.fs.deny, *args.deny],
            "deny_read": [*cfg.fs.deny_read, *args.deny_read],
            "deny_write": [*cfg.fs.deny_write, *args.deny_write],
            "exec_allow": [*cfg.fs.exec_allow, *args.exec_allow],
            "exec_deny": [*cfg.fs.exec_deny, *args.exec_deny],
        }
    )
    net = cfg.net if args.net is None else NetConfig(mode=NetworkAccess(args.net))
    return cfg.model_copy(update={"fs": fs, "net": net})


def _compose(cfg: SandboxConfig) -> Policy:
    try:
        base = template(cfg.template)
    except KeyError as e:
        raise ConfigError(str(e.args[0])) from e
    return compose(base, cfg.extra_permissions(), roots=cfg.safe_roots())


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    # Drop a leading "--" separator if present
    cmd = list(args.cmd)
    if cmd and cmd[0] == "--":
        cmd = cmd[1:]
    if not cmd and not args.print_policy:
        print(f"{PROG}: missing command after --", file=sys.stderr)
        return EXIT_CONFIG

    try:
        cfg = _apply_overrides(load_config(args.config) if args.config else SandboxConfig(), args)
        policy = _compose(cfg)
        term_grace = cfg.term_grace_secs()
    except (ConfigError, InvalidScope, UnsafeScopeRejected) as e:
        print(f"{PROG}: {e}", file=sys.stderr)
        return EXIT_CONFIG

    for msg in validate(policy):
        logger.warning("%s", msg)

    if args.print_policy:
        try:
            text = compile_sbpl(policy)
        except UnsupportedRule as e:
            print(f"{PROG}: {e}", file=sys.stderr)
            return EXIT_UNSUPPORTED
        sys.stdout.write(minify_profile(text) + "\n" if args.minify else text)
        return 0

    spec = LaunchSpec(
        policy=policy,
        executable=cmd[0],
        arguments=tuple(cmd[1:]),
        environment=cfg.child_environment(),
        cwd=Path.cwd(),
    )
    try:
        status = run(spec, term_grace=term_grace)
    except (InvalidScope, UnsupportedRule) as e:
        print(f"{PROG}: {e}", file=sys.stderr)
        return EXIT_CONFIG if isinstance(e, InvalidScope) else EXIT_UNSUPPORTED
    except LaunchFailed as e:
        print(f"{PROG}: launch failed: {e}", file=sys.stderr)
        return EXIT_LAUNCH_FAILED

    if status.signal is not None:
        print(f"{PROG}: {cmd[0]} terminated by {status.signal_name}", file=sys.stderr)
    return status.code


if __name__ == "__main__":
    raise SystemExit(main())
