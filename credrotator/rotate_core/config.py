"""Shared configuration and logging helpers for the rotation daemon."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from credrotator.logger import (
    ConfigurationError,
    get_logger,
    safe_bool,
    safe_float,
    safe_int,
)


def build_logger():
    """Create a logger, falling back to logging.getLogger when the main logger fails."""
    try:
        return get_logger("credrotator.rotate")
    except Exception:  # pragma: no cover - fallback for logger import issues
        return logging.getLogger("credrotator.rotate")


LOGGER = build_logger()

SECTION_NAME = "CredentialService"
APPLY_MODES = ("simulated", "command")


@dataclass(frozen=True)
class RotatorSettings:
    credentials_file_path: Path = Path("credentials.json")
    target_service_name: str = "Sample Service"
    # Liveness tick, not the debounce window
    check_interval_seconds: int = 30
    max_retry_attempts: int = 3
    retry_delay_seconds: int = 5
    quiet_window_seconds: float = 1.0
    settle_delay_seconds: float = 0.5
    use_polling: bool = False
    apply_mode: str = "simulated"
    apply_command: Optional[str] = None
    validate_command: Optional[str] = None
    apply_timeout_seconds: float = 120.0
    simulated_success_rate: float = 0.85

    def validate(self) -> "RotatorSettings":
        if self.max_retry_attempts < 1:
            raise ConfigurationError("MaxRetryAttempts must be at least 1")
        if self.retry_delay_seconds < 0:
            raise ConfigurationError("RetryDelaySeconds must not be negative")
        if self.check_interval_seconds <= 0:
            raise ConfigurationError("CheckIntervalSeconds must be positive")
        if self.quiet_window_seconds < 0 or self.settle_delay_seconds < 0:
            raise ConfigurationError("Debounce windows must not be negative")
        if self.apply_timeout_seconds <= 0:
            raise ConfigurationError("ApplyTimeoutSeconds must be positive")
        if not 0.0 <= self.simulated_success_rate <= 1.0:
            raise ConfigurationError("SimulatedSuccessRate must be between 0 and 1")
        if self.apply_mode not in APPLY_MODES:
            raise ConfigurationError(
                f"ApplyMode must be one of {', '.join(APPLY_MODES)}, got {self.apply_mode!r}"
            )
        if self.apply_mode == "command" and not (self.apply_command or "").strip():
            raise ConfigurationError("ApplyMode 'command' requires ApplyCommand")
        if not str(self.credentials_file_path).strip():
            raise ConfigurationError("CredentialsFilePath must not be empty")
        return self


# JSON settings keys (matched case-insensitively) → field name
_FILE_KEYS = {
    "credentialsfilepath": "credentials_file_path",
    "targetservicename": "target_service_name",
    "checkintervalseconds": "check_interval_seconds",
    "maxretryattempts": "max_retry_attempts",
    "retrydelayseconds": "retry_delay_seconds",
    "quietwindowseconds": "quiet_window_seconds",
    "settledelayseconds": "settle_delay_seconds",
    "usepolling": "use_polling",
    "applymode": "apply_mode",
    "applycommand": "apply_command",
    "validatecommand": "validate_command",
    "applytimeoutseconds": "apply_timeout_seconds",
    "simulatedsuccessrate": "simulated_success_rate",
}

_ENV_KEYS = {
    "CREDENTIALS_FILE_PATH": "credentials_file_path",
    "TARGET_SERVICE_NAME": "target_service_name",
    "CHECK_INTERVAL_SECONDS": "check_interval_seconds",
    "MAX_RETRY_ATTEMPTS": "max_retry_attempts",
    "RETRY_DELAY_SECONDS": "retry_delay_seconds",
    "WATCH_DEBOUNCE_SECS": "quiet_window_seconds",
    "WATCH_SETTLE_SECS": "settle_delay_seconds",
    "WATCH_USE_POLLING": "use_polling",
    "APPLY_MODE": "apply_mode",
    "APPLY_COMMAND": "apply_command",
    "VALIDATE_COMMAND": "validate_command",
    "APPLY_TIMEOUT_SECS": "apply_timeout_seconds",
    "SIMULATED_SUCCESS_RATE": "simulated_success_rate",
}


def _coerce(name: str, value: Any, current: Any) -> Any:
    """Convert a raw setting to the field's type, keeping ``current`` on bad input."""
    if name == "credentials_file_path":
        return Path(str(value)) if value not in (None, "") else current
    if name in ("apply_command", "validate_command"):
        text = str(value).strip() if value is not None else ""
        return text or None
    if isinstance(current, bool):
        return safe_bool(value, current, logger=LOGGER, context=name)
    if isinstance(current, int):
        return safe_int(value, current, logger=LOGGER, context=name)
    if isinstance(current, float):
        return safe_float(value, current, logger=LOGGER, context=name)
    if name == "apply_mode":
        return str(value).strip().lower() if value is not None else current
    return str(value) if value is not None else current


def _apply_layer(settings: RotatorSettings, values: Mapping[str, Any]) -> RotatorSettings:
    changes: Dict[str, Any] = {}
    for name, raw in values.items():
        changes[name] = _coerce(name, raw, getattr(settings, name))
    return replace(settings, **changes) if changes else settings


def read_settings_file(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a JSON settings file into ``{field_name: raw_value}``.

    Accepts either a ``CredentialService`` section (any casing) or a flat
    object. Unknown keys inside the section are logged and ignored.
    """
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Settings file not found: {p}") from exc
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"Settings file {p} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Settings file {p} must contain a JSON object")

    section = data
    for key, value in data.items():
        if key.lower() == SECTION_NAME.lower():
            if not isinstance(value, dict):
                raise ConfigurationError(f"'{SECTION_NAME}' in {p} must be an object")
            section = value
            break

    out: Dict[str, Any] = {}
    for key, value in section.items():
        name = _FILE_KEYS.get(str(key).lower())
        if name is None:
            if section is not data:
                LOGGER.warning("Ignoring unknown setting %r in %s", key, p)
            continue
        out[name] = value
    return out


def read_env_settings(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    env = os.environ if environ is None else environ
    return {name: env[key] for key, name in _ENV_KEYS.items() if key in env}


def load_settings(
    config_path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> RotatorSettings:
    """Resolve settings: defaults, then settings file, then environment, then overrides."""
    settings = RotatorSettings()
    if config_path:
        settings = _apply_layer(settings, read_settings_file(config_path))
    settings = _apply_layer(settings, read_env_settings(environ))
    known = {f.name for f in fields(RotatorSettings)}
    extra = {k: v for k, v in overrides.items() if v is not None}
    unknown = set(extra) - known
    if unknown:
        raise ConfigurationError(f"Unknown settings: {', '.join(sorted(unknown))}")
    settings = _apply_layer(settings, extra)
    return settings.validate()


__all__ = [
    "APPLY_MODES",
    "LOGGER",
    "RotatorSettings",
    "load_settings",
    "read_env_settings",
    "read_settings_file",
]
