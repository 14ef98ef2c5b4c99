"""Update coordinator: the retry/backoff state machine behind each rotation.

All transitions run through ``dispatch`` under a single lock, so at most one
apply call is ever outstanding. Producers (the debouncer, the liveness tick,
startup) never call ``dispatch`` themselves; they put events on the inbox and
the worker thread running ``run`` drains it.

States::

    Idle --signal/startup, record ok--> Updating(1)
    Updating(n) --success--> Idle
    Updating(n) --failure, n < max--> BackoffWait(n, now + delay)
    Updating(n) --failure, n == max--> Idle  (terminal failure reported)
    BackoffWait(n) --resume_at reached--> Updating(n + 1)  (same record)

Signals arriving outside Idle collapse into one pending flag that fires a
fresh load as soon as the cycle ends.
"""

from __future__ import annotations

import queue
import threading
from dataclasses import replace
from enum import Enum
from typing import Callable, Optional, Union

from credrotator.logger import ApplyFailure, ContextLogger, CycleCancelled, RecordParseError
from .clock import MonotonicClock
from .config import LOGGER
from .loader import RecordLoader
from .models import (
    AttemptOutcome,
    BackoffWait,
    ChangeSignal,
    CoordinatorState,
    CredentialRecord,
    CycleResult,
    Idle,
    UpdateAttempt,
    UpdateCycle,
    Updating,
)
from .updater import ServiceCredentialUpdater

# Upper bound on how long the worker blocks on the inbox between stop checks
_INBOX_POLL_SECS = 0.5


class CoordinatorEvent(str, Enum):
    STARTUP = "startup"
    TICK = "tick"
    STOP = "stop"


Event = Union[ChangeSignal, CoordinatorEvent, None]


class UpdateCoordinator:
    def __init__(
        self,
        loader: RecordLoader,
        updater: ServiceCredentialUpdater,
        max_attempts: int = 3,
        retry_delay: float = 5.0,
        clock=None,
        cancel: Optional[threading.Event] = None,
        on_cycle_complete: Optional[Callable[[UpdateCycle], None]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._loader = loader
        self._updater = updater
        self.max_attempts = int(max_attempts)
        self.retry_delay = float(retry_delay)
        self._clock = clock or MonotonicClock()
        self._cancel = cancel or threading.Event()
        self._on_cycle_complete = on_cycle_complete
        self._log = ContextLogger(LOGGER, service=updater.service_name)

        self._lock = threading.RLock()
        self._inbox: "queue.Queue[Event]" = queue.Queue()
        self._state: CoordinatorState = Idle()
        self._pending: Optional[Event] = None
        self._cycle: Optional[UpdateCycle] = None
        self._last_cycle: Optional[UpdateCycle] = None
        self._last_applied: Optional[CredentialRecord] = None
        self._advancing = False

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def state(self) -> CoordinatorState:
        with self._lock:
            return self._state

    @property
    def last_applied(self) -> Optional[CredentialRecord]:
        with self._lock:
            return self._last_applied

    @property
    def last_cycle(self) -> Optional[UpdateCycle]:
        with self._lock:
            return self._last_cycle

    @property
    def has_pending_signal(self) -> bool:
        with self._lock:
            return self._pending is not None

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    # ------------------------------------------------------------------
    # Producers: enqueue only
    # ------------------------------------------------------------------
    def submit(self, signal: ChangeSignal) -> None:
        self._inbox.put(signal)

    def request_startup(self) -> None:
        self._inbox.put(CoordinatorEvent.STARTUP)

    def request_tick(self) -> None:
        self._inbox.put(CoordinatorEvent.TICK)

    def shutdown(self) -> None:
        """Cancel any wait or apply in progress and wake the worker."""
        self._cancel.set()
        self._inbox.put(CoordinatorEvent.STOP)

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------
    def run(self, stop: Optional[threading.Event] = None) -> None:
        """Drain the inbox until ``stop`` (or the cancel event) is set."""
        stop = stop or self._cancel
        while not (stop.is_set() or self._cancel.is_set()):
            try:
                event = self._inbox.get(timeout=self._wait_timeout())
            except queue.Empty:
                event = None
            if event is CoordinatorEvent.STOP:
                break
            try:
                self.dispatch(event)
            except Exception:
                # Steady-state failures must never take the worker down
                LOGGER.exception("Unexpected error in update coordinator")
        with self._lock:
            if not isinstance(self._state, Idle):
                self._abort_cycle()

    def _wait_timeout(self) -> float:
        with self._lock:
            st = self._state
            if isinstance(st, BackoffWait):
                return max(0.0, min(_INBOX_POLL_SECS, st.resume_at - self._clock.now()))
        return _INBOX_POLL_SECS

    def poll(self) -> None:
        """Advance time-driven transitions (backoff expiry) without a new event."""
        self.dispatch(None)

    def dispatch(self, event: Event) -> None:
        """The serialized transition function."""
        with self._lock:
            if self._cancel.is_set():
                if not isinstance(self._state, Idle):
                    self._abort_cycle()
                return
            if isinstance(event, ChangeSignal) or event is CoordinatorEvent.STARTUP:
                if isinstance(self._state, Idle):
                    self._begin_cycle(event)
                else:
                    if self._pending is not None:
                        self._log.debug("Coalescing change signal into pending update")
                    self._pending = event
            elif event is CoordinatorEvent.TICK:
                self._log.debug("Periodic health check", state=self._state.name)
            # Re-entrant calls (from apply or a listener) only record their event
            if self._advancing:
                return
            self._advancing = True
            try:
                self._advance()
            finally:
                self._advancing = False

    # ------------------------------------------------------------------
    # Transitions (lock held)
    # ------------------------------------------------------------------
    def _advance(self) -> None:
        while not self._cancel.is_set():
            st = self._state
            if isinstance(st, Updating):
                self._perform_attempt(st)
            elif isinstance(st, BackoffWait):
                if self._clock.now() < st.resume_at:
                    return
                attempt = UpdateAttempt(
                    attempt_number=st.attempt.attempt_number + 1, started_at=self._clock.now()
                )
                self._state = Updating(st.record, attempt)
            elif self._pending is not None:
                trigger, self._pending = self._pending, None
                self._log.info("Processing change deferred during previous update")
                self._begin_cycle(trigger)
            else:
                return

    def _begin_cycle(self, trigger: Event) -> None:
        try:
            record = self._loader.load()
        except RecordParseError as exc:
            self._log.warning(f"Ignoring credentials change: {exc}")
            return
        if record is None:
            self._log.info("Credentials file is absent; waiting for it to appear")
            return
        if record == self._last_applied:
            # Resync after startup or a watch outage found nothing new
            self._log.info(
                f"Credentials for user {record.masked_username} unchanged since last update; skipping",
                user=record.masked_username,
            )
            return
        kind = "initial credentials" if trigger is CoordinatorEvent.STARTUP else "credential change"
        self._log.info(f"Processing {kind} for user {record.masked_username}", user=record.masked_username)
        self._cycle = UpdateCycle(record=record)
        self._state = Updating(record, UpdateAttempt(attempt_number=1, started_at=self._clock.now()))

    def _perform_attempt(self, st: Updating) -> None:
        attempt = st.attempt
        log = self._log.bind(user=st.record.masked_username, attempt=attempt.attempt_number)
        log.info(
            f"Attempting to update credentials for user {st.record.masked_username} on service "
            f"'{self._updater.service_name}' (attempt {attempt.attempt_number}/{self.max_attempts})"
        )
        try:
            ok = bool(self._updater.apply(st.record, cancel=self._cancel))
        except CycleCancelled:
            self._abort_cycle()
            return
        except Exception:
            log.exception("Error updating service credentials")
            ok = False
        if self._cancel.is_set():
            self._abort_cycle()
            return

        finished = replace(attempt, outcome=AttemptOutcome.SUCCESS if ok else AttemptOutcome.FAILURE)
        if self._cycle is not None:
            self._cycle.attempts.append(finished)

        if ok:
            self._last_applied = st.record
            log.info(f"Successfully updated credentials for service '{self._updater.service_name}'")
            self._finish_cycle(CycleResult.SUCCEEDED)
        elif attempt.attempt_number < self.max_attempts:
            log.warning(f"Update attempt failed; retrying in {self.retry_delay:g} seconds")
            self._state = BackoffWait(st.record, finished, self._clock.now() + self.retry_delay)
        else:
            failure = ApplyFailure(
                f"Failed to update service credentials after {self.max_attempts} attempts",
                attempt=attempt.attempt_number,
            )
            log.error(str(failure))
            self._finish_cycle(CycleResult.FAILED, failure)

    def _finish_cycle(self, result: CycleResult, error: Optional[Exception] = None) -> None:
        cycle = self._cycle
        self._cycle = None
        self._state = Idle()
        if cycle is None:
            return
        cycle.result = result
        cycle.error = error
        self._last_cycle = cycle
        if self._on_cycle_complete is not None:
            try:
                self._on_cycle_complete(cycle)
            except Exception:
                LOGGER.exception("Cycle completion listener failed")

    def _abort_cycle(self) -> None:
        """Leave the cycle without reporting a failure (shutdown path)."""
        if self._cycle is not None:
            self._log.info("Credential update aborted by shutdown")
        self._pending = None
        self._finish_cycle(CycleResult.ABORTED)


__all__ = ["CoordinatorEvent", "UpdateCoordinator"]
