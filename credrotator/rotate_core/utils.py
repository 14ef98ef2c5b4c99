"""Misc utilities shared across rotate_core modules."""

from __future__ import annotations

import os
import sys
from typing import Any, Mapping, Optional, Type

from watchdog.observers import Observer

from credrotator.logger import safe_bool
from .config import LOGGER


def safe_print(*args: Any, **kwargs: Any) -> None:
    """Best-effort print that tolerates a closed or broken stream."""
    try:
        print(*args, **kwargs)
    except (OSError, ValueError):
        # Stream already gone during shutdown
        pass


def get_boolean_env(name: str, default: bool = False, environ: Optional[Mapping[str, str]] = None) -> bool:
    """Parse a boolean environment variable; unrecognized values keep ``default``."""
    env = os.environ if environ is None else environ
    return safe_bool(env.get(name), default, logger=LOGGER, context=name)


def create_observer(use_polling: bool, observer_cls: Type[Observer] = Observer) -> Observer:
    """Create the watchdog observer for the credentials directory.

    Polling is the fallback for network mounts and containers where native
    notifications are not delivered.
    """
    if use_polling:
        from watchdog.observers.polling import PollingObserver

        LOGGER.info("Using polling observer for credentials directory (platform=%s)", sys.platform)
        return PollingObserver()
    return observer_cls()


__all__ = ["create_observer", "get_boolean_env", "safe_print"]
