"""Record commands: inspect or scaffold the credentials file."""
from __future__ import annotations

import argparse
import json
import sys

from credrotator.cli.core import settings_from_args
from credrotator.logger import RecordParseError
from credrotator.rotate_core.loader import RecordLoader, materialize_placeholder
from credrotator.rotate_core.updater import build_updater


def _emit(payload: dict) -> None:
    json.dump(payload, sys.stdout, default=str)
    sys.stdout.write("\n")


def cmd_check(args: argparse.Namespace) -> None:
    """Load the record once and report what the daemon would see (masked)."""
    settings = settings_from_args(args)
    path = settings.credentials_file_path
    out = {
        "ok": True,
        "file": str(path),
        "service": settings.target_service_name,
        "present": False,
    }
    try:
        record = RecordLoader(path).load()
    except RecordParseError as exc:
        out.update(ok=False, present=True, error=str(exc))
        _emit(out)
        sys.exit(2)
    if record is not None:
        out.update(
            present=True,
            username=record.masked_username,
            observed_at=record.observed_at.isoformat(),
            declared_modified=record.declared_modified.isoformat() if record.declared_modified else None,
        )
    if not getattr(args, "skip_access", False):
        out["service_accessible"] = bool(build_updater(settings).validate_access())
    _emit(out)


def cmd_init(args: argparse.Namespace) -> None:
    """Write a placeholder record unless one already exists."""
    settings = settings_from_args(args)
    created = materialize_placeholder(settings.credentials_file_path)
    _emit({"ok": True, "file": str(settings.credentials_file_path), "created": created})
