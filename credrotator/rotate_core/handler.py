"""Watchdog event handler that feeds credentials-file events to the debouncer."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEventHandler

from credrotator.logger import WatchError
from .config import LOGGER
from .debouncer import Debouncer


class CredentialFileHandler(FileSystemEventHandler):
    """Forward events for one file to a Debouncer, stamped with the file's mtime.

    The observer is scheduled on the file's directory, so events for sibling
    files are filtered out here. Editors that save via rename show up as a
    move whose destination is the watched file.
    """

    def __init__(
        self,
        path: Path,
        debouncer: Debouncer,
        on_error: Optional[Callable[[WatchError], None]] = None,
    ):
        super().__init__()
        self.path = Path(path).resolve()
        self.debouncer = debouncer
        self.on_error = on_error

    def _is_target(self, src_path) -> bool:
        try:
            return Path(os.fsdecode(src_path)).resolve() == self.path
        except (OSError, ValueError):
            return False

    def _maybe_observe(self, src_path) -> None:
        if not self._is_target(src_path):
            return
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            # Removed again before we looked; the next write will be picked up
            return
        except OSError as exc:
            self._report(WatchError(f"Could not stat {self.path}: {exc.strerror or exc}"))
            return
        if self.debouncer.observe(mtime):
            LOGGER.info("Credentials file changed, reloading...")

    def _report(self, err: WatchError) -> None:
        LOGGER.error("File system watcher error occurred: %s", err)
        if self.on_error is not None:
            try:
                self.on_error(err)
            except Exception:
                LOGGER.exception("Watch error callback failed")

    def on_modified(self, event):
        if not event.is_directory:
            self._maybe_observe(event.src_path)

    def on_created(self, event):
        if not event.is_directory:
            self._maybe_observe(event.src_path)

    def on_moved(self, event):
        if not event.is_directory:
            self._maybe_observe(event.dest_path)

    def on_deleted(self, event):
        if not event.is_directory and self._is_target(event.src_path):
            LOGGER.warning("Credentials file %s was removed; waiting for it to reappear", self.path)


__all__ = ["CredentialFileHandler"]
