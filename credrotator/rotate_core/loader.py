"""Read and parse the credentials record from disk."""

from __future__ import annotations

import json
import os
import secrets
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from credrotator.logger import RecordParseError
from .config import LOGGER
from .models import CredentialRecord


def _lower_keys(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {str(k).lower(): v for k, v in payload.items()}


def _parse_declared(value: Any) -> Optional[datetime]:
    """Best-effort parse of the payload's LastModified; the file mtime is authoritative."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        LOGGER.debug("Ignoring unparsable LastModified value in credentials record")
        return None


class RecordLoader:
    """Whole-file, read-only loader for the credentials JSON record.

    ``load()`` returns None when the file does not exist and raises
    RecordParseError when it exists but cannot be read or parsed.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> Optional[CredentialRecord]:
        try:
            st = self.path.stat()
            data = self.path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise RecordParseError(
                f"Could not read credentials file {self.path}: {exc.strerror or exc}"
            ) from exc
        try:
            # utf-8-sig drops the BOM some Windows editors write
            raw = data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            # exc's message quotes the offending byte; report only its offset
            raise RecordParseError(
                f"Credentials file {self.path} is not valid UTF-8 (byte offset {exc.start})"
            ) from exc
        return self.parse(raw, st.st_mtime)

    def parse(self, raw: str, storage_mtime: float) -> CredentialRecord:
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            # JSONDecodeError messages carry only position info, never content
            raise RecordParseError(f"Credentials file {self.path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise RecordParseError(f"Credentials file {self.path} must contain a JSON object")

        fields = _lower_keys(payload)
        username = fields.get("username")
        secret = fields.get("password")
        if not isinstance(username, str) or not username.strip():
            raise RecordParseError(f"Credentials file {self.path} has no usable Username")
        if not isinstance(secret, str) or not secret.strip():
            raise RecordParseError(f"Credentials file {self.path} has no usable Password")

        return CredentialRecord(
            username=username,
            secret=secret,
            observed_at=datetime.fromtimestamp(storage_mtime, tz=timezone.utc),
            declared_modified=_parse_declared(fields.get("lastmodified")),
        )


def materialize_placeholder(path: Union[str, Path]) -> bool:
    """Write a sample record when none exists so the watch has a file to observe.

    Returns True when a file was written. An existing file is never touched.
    """
    p = Path(path)
    if p.exists():
        return False
    p.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "Username": "sample_user",
        "Password": secrets.token_urlsafe(18),
        "LastModified": datetime.now(timezone.utc).isoformat(),
    }
    # O_EXCL so a concurrently created real record wins
    try:
        fd = os.open(str(p), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2)
        fh.write("\n")
    LOGGER.info("Created sample credentials file at %s", p)
    return True


__all__ = ["RecordLoader", "materialize_placeholder"]
