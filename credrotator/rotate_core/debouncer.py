"""Debounced change detection for the credentials file."""

from __future__ import annotations

import threading
from typing import Callable, Optional

from .config import LOGGER
from .models import ChangeSignal


class Debouncer:
    """Collapse bursts of raw file events into one ChangeSignal per quiet window.

    Raw events are stamped with the file's modification time, not arrival
    time. An event is a new change only when its stamp is strictly later than
    ``last_accepted + quiet_window``; anything else is an echo of the change
    already accepted. While the accepted change is still settling, echoes push
    the pending signal's stamp forward and restart the settle delay, so the
    signal goes out once the writer has gone quiet.
    """

    def __init__(
        self,
        emit_cb: Callable[[ChangeSignal], None],
        quiet_window: float = 1.0,
        settle_delay: float = 0.5,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ):
        self._emit_cb = emit_cb
        self.quiet_window = float(quiet_window)
        self.settle_delay = float(settle_delay)
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._last_accepted: Optional[float] = None
        self._pending: Optional[float] = None
        self._timer: Optional[threading.Timer] = None
        # Bumped on every reschedule so a timer that already fired cannot emit stale state
        self._generation = 0
        self._closed = False

    @property
    def last_accepted(self) -> Optional[float]:
        with self._lock:
            return self._last_accepted

    @property
    def has_pending(self) -> bool:
        with self._lock:
            return self._pending is not None

    def observe(self, storage_mtime: float) -> bool:
        """Feed one raw event. Returns True when it starts a new effective change."""
        with self._lock:
            if self._closed:
                return False
            if (
                self._last_accepted is not None
                and storage_mtime <= self._last_accepted + self.quiet_window
            ):
                if self._pending is not None:
                    self._pending = max(self._pending, storage_mtime)
                    self._schedule_locked()
                return False
            self._last_accepted = storage_mtime
            if self._pending is None or storage_mtime > self._pending:
                self._pending = storage_mtime
            self._schedule_locked()
            return True

    def _schedule_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._generation += 1
        self._timer = self._timer_factory(self.settle_delay, self._fire, args=(self._generation,))
        self._timer.daemon = True
        self._timer.start()

    def _fire(self, generation: int) -> None:
        with self._lock:
            if self._closed or generation != self._generation or self._pending is None:
                return
            signal = ChangeSignal(observed_at=self._pending)
            self._pending = None
            self._timer = None
        try:
            self._emit_cb(signal)
        except Exception as exc:
            LOGGER.error(
                "Delivering change signal failed in Debouncer._fire",
                extra={"error": str(exc)},
                exc_info=True,
            )

    def close(self) -> None:
        """Drop any pending signal and refuse further events."""
        with self._lock:
            self._closed = True
            self._pending = None
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


__all__ = ["Debouncer"]
