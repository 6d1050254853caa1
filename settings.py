"""Application configuration helpers for OrderSync."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Tuple, Union

from ordersync import app_paths


logger = logging.getLogger(__name__)


SYNC_SETTINGS_PATH = str(app_paths.data_path("sync_settings.json"))
ENDPOINT_ENV_VAR = "ORDERSYNC_ENDPOINT"

DEFAULT_ENDPOINT = ""
DEFAULT_PULL_WINDOW_DAYS = 60
DEFAULT_SYNC_INTERVAL_SECONDS = 60
DEFAULT_STATUS_DEBOUNCE_SECONDS = 0.5
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0

Number = Union[int, float]

# key -> (type, default, minimum, maximum)
_NUMERIC_FIELDS: Dict[str, Tuple[type, Number, Number, Number]] = {
    "pull_window_days": (int, DEFAULT_PULL_WINDOW_DAYS, 1, 365),
    "sync_interval_seconds": (int, DEFAULT_SYNC_INTERVAL_SECONDS, 15, 600),
    "status_debounce_seconds": (float, DEFAULT_STATUS_DEBOUNCE_SECONDS, 0.05, 5.0),
    "request_timeout_seconds": (float, DEFAULT_REQUEST_TIMEOUT_SECONDS, 5.0, 120.0),
}


@dataclass
class SyncSettings:
    endpoint: str = DEFAULT_ENDPOINT
    pull_window_days: int = DEFAULT_PULL_WINDOW_DAYS
    sync_interval_seconds: int = DEFAULT_SYNC_INTERVAL_SECONDS
    status_debounce_seconds: float = DEFAULT_STATUS_DEBOUNCE_SECONDS
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS

    @property
    def configured(self) -> bool:
        return bool(self.endpoint)

    def to_json(self) -> Dict[str, object]:
        return {
            "endpoint": self.endpoint,
            "pull_window_days": self.pull_window_days,
            "sync_interval_seconds": self.sync_interval_seconds,
            "status_debounce_seconds": self.status_debounce_seconds,
            "request_timeout_seconds": self.request_timeout_seconds,
        }


def _default_payload() -> Dict[str, object]:
    return SyncSettings().to_json()


def _clamp(key: str, value: object) -> Number:
    kind, default, minimum, maximum = _NUMERIC_FIELDS[key]
    if isinstance(value, bool):
        return default
    try:
        number = kind(value)
    except (TypeError, ValueError):
        return default
    return max(minimum, min(maximum, number))


def _ensure_sync_settings(path: str = SYNC_SETTINGS_PATH) -> Dict[str, object]:
    default_settings = _default_payload()
    if not os.path.exists(path):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(default_settings, handle, indent=2)
        return dict(default_settings)

    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable settings file %s: %s", path, exc)
        return dict(default_settings)
    if not isinstance(data, dict):
        return dict(default_settings)

    merged: Dict[str, object] = dict(default_settings)
    for key, value in data.items():
        if key in _NUMERIC_FIELDS:
            merged[key] = _clamp(key, value)
        elif key == "endpoint" and isinstance(value, str):
            merged[key] = value.strip()
    return merged


def load_sync_settings(path: str = SYNC_SETTINGS_PATH) -> SyncSettings:
    data = _ensure_sync_settings(path)
    endpoint = os.getenv(ENDPOINT_ENV_VAR) or str(data.get("endpoint", DEFAULT_ENDPOINT))
    return SyncSettings(
        endpoint=endpoint.strip(),
        pull_window_days=int(data["pull_window_days"]),
        sync_interval_seconds=int(data["sync_interval_seconds"]),
        status_debounce_seconds=float(data["status_debounce_seconds"]),
        request_timeout_seconds=float(data["request_timeout_seconds"]),
    )


def save_sync_settings(settings: SyncSettings, path: str = SYNC_SETTINGS_PATH) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    payload = settings.to_json()
    for key in _NUMERIC_FIELDS:
        payload[key] = _clamp(key, payload[key])

    with open(path, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)


__all__ = [
    "DEFAULT_PULL_WINDOW_DAYS",
    "DEFAULT_REQUEST_TIMEOUT_SECONDS",
    "DEFAULT_STATUS_DEBOUNCE_SECONDS",
    "DEFAULT_SYNC_INTERVAL_SECONDS",
    "ENDPOINT_ENV_VAR",
    "SYNC_SETTINGS_PATH",
    "SyncSettings",
    "load_sync_settings",
    "save_sync_settings",
]
