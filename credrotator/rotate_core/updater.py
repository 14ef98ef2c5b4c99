"""Apply capability: push credentials to the target service.

The coordinator calls ``apply`` serially and treats ``False`` and a raised
exception alike as a failed attempt. Implementations must tolerate being
called again with the same record after a failure or an interrupted call;
the coordinator never assumes an interrupted call took effect.
"""

from __future__ import annotations

import json
import random
import shlex
import shutil
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from typing import List, Optional

from credrotator.logger import ConfigurationError, CycleCancelled
from .config import LOGGER, RotatorSettings
from .models import CredentialRecord

# How often a blocking call re-checks the cancellation event
_POLL_SECS = 0.1


class ServiceCredentialUpdater(ABC):
    """Contract consumed by the UpdateCoordinator."""

    def __init__(self, service_name: str):
        self.service_name = service_name

    @abstractmethod
    def validate_access(self, cancel: Optional[threading.Event] = None) -> bool:
        """Best-effort check that the target service exists and is reachable."""

    @abstractmethod
    def apply(self, record: CredentialRecord, cancel: Optional[threading.Event] = None) -> bool:
        """Apply ``record`` to the target. Raise CycleCancelled if ``cancel`` fires mid-call."""


class SimulatedServiceUpdater(ServiceCredentialUpdater):
    """Stand-in updater for demos and dry runs.

    Sleeps ``duration`` seconds and succeeds with probability
    ``success_rate``. Only the sample service names validate as accessible.
    """

    KNOWN_SERVICES = frozenset({"sample service", "sampleservice"})

    def __init__(
        self,
        service_name: str,
        success_rate: float = 0.85,
        duration: float = 2.0,
        rng: Optional[random.Random] = None,
    ):
        super().__init__(service_name)
        self.success_rate = success_rate
        self.duration = duration
        self._rng = rng or random.Random()

    def _pause(self, seconds: float, cancel: Optional[threading.Event]) -> None:
        if cancel is None:
            time.sleep(seconds)
        elif cancel.wait(seconds):
            raise CycleCancelled("credential update interrupted")

    def validate_access(self, cancel: Optional[threading.Event] = None) -> bool:
        LOGGER.info("Validating access to service '%s'", self.service_name)
        self._pause(0.1, cancel)
        if self.service_name.strip().lower() in self.KNOWN_SERVICES:
            LOGGER.info("Service '%s' is accessible", self.service_name)
            return True
        LOGGER.warning("Service '%s' was not found or is not accessible", self.service_name)
        return False

    def apply(self, record: CredentialRecord, cancel: Optional[threading.Event] = None) -> bool:
        LOGGER.debug("Simulating credential update for user %s", record.masked_username)
        self._pause(self.duration, cancel)
        ok = self._rng.random() < self.success_rate
        LOGGER.debug("Service credential update simulation %s", "succeeded" if ok else "failed")
        return ok


class CommandServiceUpdater(ServiceCredentialUpdater):
    """Run an operator-supplied command to apply credentials.

    The record is written to the command's stdin as
    ``{"service": ..., "username": ..., "password": ...}``; it never appears
    on the command line or in the environment. Exit status 0 means success.
    """

    def __init__(
        self,
        service_name: str,
        apply_command: str,
        validate_command: Optional[str] = None,
        timeout: float = 120.0,
    ):
        super().__init__(service_name)
        self.apply_argv = shlex.split(apply_command)
        if not self.apply_argv:
            raise ConfigurationError("ApplyCommand is empty")
        self.validate_argv = shlex.split(validate_command) if validate_command else None
        self.timeout = timeout

    def _run(self, argv: List[str], payload: Optional[bytes], cancel: Optional[threading.Event]) -> Optional[int]:
        """Run ``argv`` to completion. Returns the exit code, or None on timeout."""
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.PIPE if payload is not None else subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
        )
        deadline = time.monotonic() + self.timeout
        pending_input = payload
        while True:
            try:
                proc.communicate(pending_input, timeout=_POLL_SECS)
                return proc.returncode
            except subprocess.TimeoutExpired:
                pending_input = None
            if cancel is not None and cancel.is_set():
                proc.terminate()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait()
                raise CycleCancelled(f"{argv[0]} interrupted")
            if time.monotonic() >= deadline:
                proc.kill()
                proc.wait()
                LOGGER.warning("%s timed out after %.0f seconds", argv[0], self.timeout)
                return None

    def validate_access(self, cancel: Optional[threading.Event] = None) -> bool:
        LOGGER.info("Validating access to service '%s'", self.service_name)
        if self.validate_argv is None:
            found = shutil.which(self.apply_argv[0]) is not None
            if not found:
                LOGGER.warning("Apply command %s was not found on PATH", self.apply_argv[0])
            return found
        try:
            code = self._run(self.validate_argv, None, cancel)
        except OSError as exc:
            LOGGER.warning("Validate command could not be started: %s", exc)
            return False
        if code != 0:
            LOGGER.warning(
                "Validate command for service '%s' exited with status %s", self.service_name, code
            )
            return False
        return True

    def apply(self, record: CredentialRecord, cancel: Optional[threading.Event] = None) -> bool:
        payload = json.dumps(
            {"service": self.service_name, "username": record.username, "password": record.secret}
        ).encode("utf-8")
        code = self._run(self.apply_argv, payload, cancel)
        if code != 0:
            LOGGER.warning("Apply command exited with status %s", code)
            return False
        return True


def build_updater(settings: RotatorSettings) -> ServiceCredentialUpdater:
    if settings.apply_mode == "command":
        return CommandServiceUpdater(
            settings.target_service_name,
            settings.apply_command or "",
            validate_command=settings.validate_command,
            timeout=settings.apply_timeout_seconds,
        )
    return SimulatedServiceUpdater(
        settings.target_service_name,
        success_rate=settings.simulated_success_rate,
    )


__all__ = [
    "CommandServiceUpdater",
    "ServiceCredentialUpdater",
    "SimulatedServiceUpdater",
    "build_updater",
]
