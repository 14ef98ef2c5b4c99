"""Core building blocks for the rotation daemon.

Modules:
    config: settings resolution and shared logger
    models: records, signals, attempts and coordinator states
    debouncer: collapses raw file events into change signals
    loader: reads and parses the credentials file
    handler: watchdog event handler logic
    coordinator: retry/backoff state machine
    updater: apply capability implementations
"""

from . import config, models, debouncer, loader, handler, coordinator, updater

__all__ = [
    "config",
    "models",
    "debouncer",
    "loader",
    "handler",
    "coordinator",
    "updater",
]
