"""Shared helpers for CLI commands."""
from __future__ import annotations

import argparse
import os

from dotenv import find_dotenv, load_dotenv

from credrotator.rotate_core.config import RotatorSettings, load_settings

_env_loaded = False


def load_env_file() -> None:
    """Load a .env file from the working directory once; real env vars win."""
    global _env_loaded
    if _env_loaded:
        return
    path = os.environ.get("ROTATOR_ENV_FILE") or find_dotenv(usecwd=True)
    if path:
        load_dotenv(path, override=False)
    _env_loaded = True


def settings_from_args(args: argparse.Namespace) -> RotatorSettings:
    """Resolve settings with CLI flags as the top layer."""
    load_env_file()
    return load_settings(
        getattr(args, "config", None),
        credentials_file_path=getattr(args, "file", None),
        target_service_name=getattr(args, "service", None),
        max_retry_attempts=getattr(args, "max_retries", None),
        retry_delay_seconds=getattr(args, "retry_delay", None),
        check_interval_seconds=getattr(args, "interval", None),
    )
