"""In-memory authoritative collections of customers, products and orders."""
from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional

from ordersync.models import (
    ENTITY_TYPES,
    Entity,
    EntityKind,
    SyncStatus,
)

logger = logging.getLogger(__name__)

StoreListener = Callable[[EntityKind, str], None]

# Passed to listeners when a whole collection was replaced.
ALL_RECORDS = "*"


def _check_invariants(kind: EntityKind, record: Entity) -> None:
    expected = ENTITY_TYPES[kind]
    if not isinstance(record, expected):
        raise TypeError(f"{kind.value} collection only holds {expected.__name__} records")
    if not record.id:
        raise ValueError(f"{kind.value} record without identifier")
    if record.pending_action is not None and record.sync_status is SyncStatus.SYNCED:
        raise ValueError(
            f"{kind.value} {record.id} has a pending {record.pending_action.value} "
            "but is marked synced"
        )


class EntityStore:
    """Keyed-by-id collections guarded by a single re-entrant lock.

    Records are immutable dataclasses; every write swaps the stored instance,
    so a record handed to a caller never changes underneath it.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._collections: Dict[EntityKind, Dict[str, Entity]] = {
            kind: {} for kind in EntityKind
        }
        self._listeners: List[StoreListener] = []
        self._listener_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, kind: EntityKind, record_id: str) -> Optional[Entity]:
        with self._lock:
            return self._collections[kind].get(record_id)

    def records(self, kind: EntityKind) -> List[Entity]:
        with self._lock:
            return list(self._collections[kind].values())

    def unsynced(self, kind: EntityKind) -> List[Entity]:
        with self._lock:
            return [record for record in self._collections[kind].values() if record.is_unsynced]

    def __len__(self) -> int:
        with self._lock:
            return sum(len(collection) for collection in self._collections.values())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def upsert(self, kind: EntityKind, record: Entity) -> Entity:
        _check_invariants(kind, record)
        with self._lock:
            self._collections[kind][record.id] = record
        self._notify(kind, record.id)
        return record

    def patch(self, kind: EntityKind, record_id: str, **changes) -> Optional[Entity]:
        """Atomically replace fields of an existing record, returning the new record."""

        with self._lock:
            current = self._collections[kind].get(record_id)
            if current is None:
                return None
            updated = replace(current, **changes)
            _check_invariants(kind, updated)
            self._collections[kind][record_id] = updated
        self._notify(kind, record_id)
        return updated

    def remove(self, kind: EntityKind, record_id: str) -> Optional[Entity]:
        with self._lock:
            removed = self._collections[kind].pop(record_id, None)
        if removed is not None:
            self._notify(kind, record_id)
        return removed

    def replace_all(self, kind: EntityKind, records: Iterable[Entity]) -> None:
        replacement: Dict[str, Entity] = {}
        for record in records:
            _check_invariants(kind, record)
            replacement[record.id] = record
        with self._lock:
            self._collections[kind] = replacement
        self._notify(kind, ALL_RECORDS)

    def clear(self) -> None:
        with self._lock:
            for kind in EntityKind:
                self._collections[kind] = {}
        for kind in EntityKind:
            self._notify(kind, ALL_RECORDS)

    @property
    def lock(self) -> threading.RLock:
        """Lock callers may hold to make a read-then-write sequence atomic."""

        return self._lock

    # ------------------------------------------------------------------
    # Listener management
    # ------------------------------------------------------------------
    def add_listener(self, listener: StoreListener) -> None:
        if not callable(listener):
            raise TypeError("listener must be callable")
        with self._listener_lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: StoreListener) -> None:
        with self._listener_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, kind: EntityKind, record_id: str) -> None:
        with self._listener_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(kind, record_id)
            except Exception:
                logger.exception("Entity store listener raised an exception")


__all__ = ["ALL_RECORDS", "EntityStore", "StoreListener"]
