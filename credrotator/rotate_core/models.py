"""Value types shared by the rotation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Union


def mask_username(username: Optional[str]) -> str:
    """Mask a username for logging: first 3 chars visible, the rest starred."""
    if not username or len(username) <= 3:
        return "***"
    return username[:3] + "*" * (len(username) - 3)


@dataclass(frozen=True)
class CredentialRecord:
    """One parsed credentials record.

    ``observed_at`` is the storage modification time of the file the record
    was read from. ``declared_modified`` is the payload's own LastModified
    value, kept for diagnostics only.
    """

    username: str
    secret: str = field(repr=False)
    observed_at: datetime
    declared_modified: Optional[datetime] = None

    @property
    def masked_username(self) -> str:
        return mask_username(self.username)

    def __repr__(self) -> str:
        return (
            f"CredentialRecord(username={self.masked_username!r}, "
            f"observed_at={self.observed_at.isoformat()!r})"
        )

    __str__ = __repr__


@dataclass(frozen=True)
class ChangeSignal:
    """Effective "the record changed" token emitted by the debouncer.

    ``observed_at`` is the storage modification time (epoch seconds) of the
    last raw event folded into this signal.
    """

    observed_at: float


class AttemptOutcome(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class UpdateAttempt:
    attempt_number: int
    started_at: float
    outcome: AttemptOutcome = AttemptOutcome.PENDING


class CycleResult(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class UpdateCycle:
    """Attempts made for one record, from the first apply to the final outcome."""

    record: CredentialRecord
    attempts: List[UpdateAttempt] = field(default_factory=list)
    result: Optional[CycleResult] = None
    # Set on terminal failure
    error: Optional[Exception] = None

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)


# ---------------------------------------------------------------------------
# Coordinator states
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Idle:
    name = "idle"


@dataclass(frozen=True)
class Updating:
    record: CredentialRecord
    attempt: UpdateAttempt
    name = "updating"


@dataclass(frozen=True)
class BackoffWait:
    record: CredentialRecord
    attempt: UpdateAttempt
    resume_at: float
    name = "backoff_wait"


CoordinatorState = Union[Idle, Updating, BackoffWait]


__all__ = [
    "AttemptOutcome",
    "BackoffWait",
    "ChangeSignal",
    "CoordinatorState",
    "CredentialRecord",
    "CycleResult",
    "Idle",
    "UpdateAttempt",
    "UpdateCycle",
    "Updating",
    "mask_username",
]
