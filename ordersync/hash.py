"""Hashing utilities for structural record comparison."""
from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Mapping

from ordersync.models import Entity


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        return {key: _plain(item) for key, item in asdict(value).items()}
    if isinstance(value, Mapping):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def record_fingerprint(record: Entity) -> str:
    """Return a deterministic SHA-256 hash of the record's business fields.

    Version stamps and sync bookkeeping are excluded, so a record that only
    differs in ``last_updated`` or ``sync_status`` hashes identically.
    """

    payload = json.dumps(
        _plain(record.business_fields()),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def fingerprints(records: Iterable[Entity]) -> Dict[str, str]:
    return {record.id: record_fingerprint(record) for record in records}


__all__ = ["fingerprints", "record_fingerprint"]
