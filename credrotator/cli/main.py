"""CLI entry point: argparse dispatcher for all subcommands."""
from __future__ import annotations

import argparse
import json
import sys
import traceback


# ---------------------------------------------------------------------------
# Command registry: command name → (module_path, function_name)
# Lazy-imported at dispatch time to keep startup fast.
# ---------------------------------------------------------------------------
COMMANDS = {
    "run":   ("credrotator.cli.commands.run",    "cmd_run"),
    "check": ("credrotator.cli.commands.record", "cmd_check"),
    "init":  ("credrotator.cli.commands.record", "cmd_init"),
}


# ---------------------------------------------------------------------------
# Shared argparse helpers
# ---------------------------------------------------------------------------
def _add_settings_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("-f", "--file", help="Credentials file to watch (CredentialsFilePath)")
    p.add_argument("-s", "--service", help="Target service name (TargetServiceName)")


def _add_retry_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--max-retries", type=int, help="Apply attempts per change (MaxRetryAttempts)")
    p.add_argument("--retry-delay", type=int, help="Seconds between attempts (RetryDelaySeconds)")
    p.add_argument("--interval", type=int, help="Liveness tick in seconds (CheckIntervalSeconds)")


# ---------------------------------------------------------------------------
# Parser builder
# ---------------------------------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    from credrotator.cli._version import __version__

    parser = argparse.ArgumentParser(
        prog="credential-rotator",
        description="Watch a credentials file and apply changes to a managed service account",
    )
    parser.add_argument("--debug", action="store_true", help="Show stack traces on error")
    parser.add_argument("-c", "--config", help="JSON settings file (CredentialService section)")
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    # run
    p = sub.add_parser("run", help="Watch the credentials file and rotate on change (daemon)")
    _add_settings_args(p)
    _add_retry_args(p)
    p.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    p.add_argument("--log-file", help="Also log to this file, rolled daily")

    # check
    p = sub.add_parser("check", help="Load the credentials file and report it (masked)")
    _add_settings_args(p)
    p.add_argument("--skip-access", action="store_true", help="Do not probe the target service")

    # init
    p = sub.add_parser("init", help="Write a placeholder credentials file if none exists")
    _add_settings_args(p)

    return parser


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------
def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)

    entry = COMMANDS.get(args.command)
    if not entry:
        parser.print_help()
        sys.exit(1)

    mod_path, fn_name = entry
    try:
        import importlib
        mod = importlib.import_module(mod_path)
        fn = getattr(mod, fn_name)
        fn(args)
    except KeyboardInterrupt:
        sys.exit(130)
    except Exception as exc:
        json.dump({"ok": False, "error": str(exc)}, sys.stdout, default=str)
        sys.stdout.write("\n")
        if args.debug:
            traceback.print_exc(file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
