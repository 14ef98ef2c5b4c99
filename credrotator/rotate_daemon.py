"""Rotation daemon: wires the watch, debouncer and coordinator together."""
from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Optional

from watchdog.observers import Observer

from credrotator.logger import FatalStartupError, WatchError
from credrotator.rotate_core.config import LOGGER, RotatorSettings
from credrotator.rotate_core.coordinator import UpdateCoordinator
from credrotator.rotate_core.debouncer import Debouncer
from credrotator.rotate_core.handler import CredentialFileHandler
from credrotator.rotate_core.loader import RecordLoader, materialize_placeholder
from credrotator.rotate_core.models import UpdateCycle
from credrotator.rotate_core.updater import ServiceCredentialUpdater, build_updater
from credrotator.rotate_core.utils import create_observer

logger = LOGGER

# Bound on how long stop() waits for the worker to finish an interrupted cycle
_WORKER_JOIN_SECS = 10.0


class CredentialRotationService:
    """Owns the long-lived pieces of one rotation process.

    ``start`` raises FatalStartupError when the watch cannot be established.
    After that, every failure is logged and the service keeps running.
    """

    def __init__(
        self,
        settings: RotatorSettings,
        updater: Optional[ServiceCredentialUpdater] = None,
        observer_factory: Optional[Callable[[], Observer]] = None,
        on_cycle_complete: Optional[Callable[[UpdateCycle], None]] = None,
    ):
        self.settings = settings
        self.path = Path(settings.credentials_file_path).resolve()
        self.updater = updater or build_updater(settings)
        self._observer_factory = observer_factory or (lambda: create_observer(settings.use_polling))
        self.stop_event = threading.Event()
        self.loader = RecordLoader(self.path)
        self.coordinator = UpdateCoordinator(
            self.loader,
            self.updater,
            max_attempts=settings.max_retry_attempts,
            retry_delay=settings.retry_delay_seconds,
            cancel=self.stop_event,
            on_cycle_complete=on_cycle_complete,
        )
        self.debouncer = Debouncer(
            self.coordinator.submit,
            quiet_window=settings.quiet_window_seconds,
            settle_delay=settings.settle_delay_seconds,
        )
        self.handler = CredentialFileHandler(self.path, self.debouncer, on_error=self._on_watch_error)
        self._observer: Optional[Observer] = None
        self._worker: Optional[threading.Thread] = None
        self._watch_degraded = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        s = self.settings
        logger.info("Credential rotator starting up...")
        logger.info("Target Service: %s", s.target_service_name)
        logger.info("Credentials File: %s", self.path)
        logger.info("Check Interval: %s seconds", s.check_interval_seconds)

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FatalStartupError(f"Cannot create directory {self.path.parent}: {exc}") from exc
        try:
            materialize_placeholder(self.path)
        except OSError as exc:
            logger.error("Failed to create sample credentials file: %s", exc)

        try:
            accessible = self.updater.validate_access(cancel=self.stop_event)
        except Exception:
            logger.exception("Error validating service access")
            accessible = False
        if not accessible:
            logger.warning(
                "Target service '%s' is not accessible. Service will continue monitoring for changes.",
                s.target_service_name,
            )

        try:
            self._observer = self._start_observer()
        except Exception as exc:
            raise FatalStartupError(f"Could not watch {self.path}: {exc}") from exc
        logger.info("File monitoring started successfully")

        self._worker = threading.Thread(
            target=self.coordinator.run,
            args=(self.stop_event,),
            name="credential-coordinator",
            daemon=True,
        )
        self._worker.start()
        self.coordinator.request_startup()

    def _start_observer(self) -> Observer:
        obs = self._observer_factory()
        obs.schedule(self.handler, str(self.path.parent), recursive=False)
        obs.start()
        return obs

    def run_forever(self) -> None:
        """Block, ticking every CheckIntervalSeconds, until ``stop`` is called."""
        interval = float(self.settings.check_interval_seconds)
        while not self.stop_event.wait(interval):
            self.tick()

    def tick(self) -> None:
        """Liveness tick: nudge the coordinator and re-establish a dead watch."""
        self.coordinator.request_tick()
        obs = self._observer
        if obs is not None and obs.is_alive():
            if self._watch_degraded:
                logger.info("File monitoring recovered")
                self._watch_degraded = False
            return
        self._on_watch_error(WatchError("file observer is not running"))
        try:
            self._stop_observer()
            self._observer = self._start_observer()
        except Exception as exc:
            logger.error("Re-establishing file monitoring failed: %s", exc)
            return
        # Changes made while the watch was down produced no events
        self.coordinator.request_startup()

    def _on_watch_error(self, err: WatchError) -> None:
        if not self._watch_degraded:
            logger.error("Monitoring degraded: %s", err)
        self._watch_degraded = True

    @property
    def watch_degraded(self) -> bool:
        return self._watch_degraded

    def _stop_observer(self) -> None:
        obs, self._observer = self._observer, None
        if obs is None:
            return
        try:
            obs.stop()
            if obs.is_alive():
                obs.join(timeout=5)
        except RuntimeError:
            # join() on an observer that never started
            pass

    def stop(self) -> None:
        logger.info("Credential rotator shutting down...")
        self.coordinator.shutdown()
        self.debouncer.close()
        self._stop_observer()
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.join(timeout=_WORKER_JOIN_SECS)
            if worker.is_alive():
                logger.warning("Coordinator did not stop within %.0f seconds", _WORKER_JOIN_SECS)
        logger.info("File monitoring stopped")


__all__ = ["CredentialRotationService"]
