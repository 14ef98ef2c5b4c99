"""Run command: watch the credentials file and rotate on change (daemon mode)."""
from __future__ import annotations

import argparse
import os
import signal
import sys

from credrotator.cli.core import settings_from_args
from credrotator.logger import configure_logging
from credrotator.rotate_core.utils import get_boolean_env, safe_print


def cmd_run(args: argparse.Namespace) -> None:
    """Start the rotation daemon and block until SIGINT/SIGTERM."""
    settings = settings_from_args(args)
    configure_logging(
        level=os.environ.get("LOG_LEVEL"),
        json_format=bool(getattr(args, "json_logs", False)) or get_boolean_env("LOG_JSON"),
        log_file=getattr(args, "log_file", None) or os.environ.get("LOG_FILE"),
    )

    from credrotator.rotate_daemon import CredentialRotationService

    service = CredentialRotationService(settings)

    def _handle_term(signum, frame):
        service.stop_event.set()

    signal.signal(signal.SIGTERM, _handle_term)

    # FatalStartupError propagates to the dispatcher, which exits non-zero
    try:
        service.start()
        service.run_forever()
    except KeyboardInterrupt:
        safe_print("\nStopping credential rotator...", file=sys.stderr)
    finally:
        service.stop()
