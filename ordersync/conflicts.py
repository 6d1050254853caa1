"""Tracking and operator resolution of version conflicts."""
from __future__ import annotations

import json
import logging
import threading
from collections import deque
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from ordersync import app_paths
from ordersync.debounce import Debouncer
from ordersync.editing import EditSessions
from ordersync.entity_store import EntityStore
from ordersync.errors import GatewayError
from ordersync.gateway import RemoteGateway, returned_version
from ordersync.models import (
    UNVERSIONED,
    ConflictDescriptor,
    PendingAction,
    SyncStatus,
    VersionStamp,
    coerce_version,
)
from ordersync.write_queue import WriteQueue

logger = logging.getLogger(__name__)

_CONFLICT_LOGGER = logging.getLogger("ordersync.sync.conflicts")
_HANDLER_CONFIGURED = False
_HANDLER_LOCK = threading.Lock()

ConflictListener = Callable[["ConflictState", Optional[ConflictDescriptor]], None]


def _ensure_conflict_logger() -> logging.Logger:
    global _HANDLER_CONFIGURED
    with _HANDLER_LOCK:
        if not _HANDLER_CONFIGURED:
            path = app_paths.logs_path("conflicts.log")
            try:
                handler = logging.FileHandler(path, encoding="utf-8")
            except OSError:  # pragma: no cover - depends on filesystem permissions
                handler = None
            else:
                handler.setFormatter(
                    logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
                )
                _CONFLICT_LOGGER.addHandler(handler)
            _CONFLICT_LOGGER.setLevel(logging.INFO)
            _HANDLER_CONFIGURED = True
    return _CONFLICT_LOGGER


class ConflictState(Enum):
    CLEAN = "clean"
    CONFLICTED = "conflicted"


class ConflictCoordinator:
    """Hold conflicts until the operator discards or force-overwrites them.

    Conflicts raised while one is already open wait in arrival order; the
    next one becomes current as soon as the previous one is resolved.
    """

    def __init__(
        self,
        store: EntityStore,
        gateway: RemoteGateway,
        write_queue: WriteQueue,
        *,
        resync: Callable[[], Any],
        refresh: Optional[Callable[[], Any]] = None,
        edit_sessions: Optional[EditSessions] = None,
        debouncer: Optional[Debouncer] = None,
        force_timeout: Optional[float] = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._queue = write_queue
        self._resync = resync
        self._refresh = refresh
        self._edit_sessions = edit_sessions
        self._debouncer = debouncer
        self._force_timeout = force_timeout
        self._lock = threading.RLock()
        self._open: Deque[ConflictDescriptor] = deque()
        self._recent: Deque[Dict[str, object]] = deque(maxlen=50)
        self._listeners: List[ConflictListener] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def state(self) -> ConflictState:
        with self._lock:
            return ConflictState.CONFLICTED if self._open else ConflictState.CLEAN

    @property
    def current(self) -> Optional[ConflictDescriptor]:
        with self._lock:
            return self._open[0] if self._open else None

    def waiting(self) -> List[ConflictDescriptor]:
        with self._lock:
            return list(self._open)

    def recent(self, limit: int = 10) -> List[Dict[str, object]]:
        """Return the most recent conflict log entries."""

        with self._lock:
            return list(self._recent)[:limit]

    def add_listener(self, listener: ConflictListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: ConflictListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def raise_conflict(self, descriptor: ConflictDescriptor) -> None:
        """Enter (or stay in) ``CONFLICTED`` with ``descriptor`` queued."""

        with self._lock:
            self._open.append(descriptor)
        self._record(descriptor, "detected")
        self._notify()

    def discard_local(self) -> bool:
        """Drop the local mutation of the current conflict and reload remote data."""

        with self._lock:
            if not self._open:
                return False
            descriptor = self._open.popleft()

        key = (descriptor.kind, descriptor.record_id)
        if self._debouncer is not None:
            self._debouncer.cancel(key)
        record = self._store.get(descriptor.kind, descriptor.record_id)
        if record is not None and record.pending_action is not None:
            self._store.patch(
                descriptor.kind,
                descriptor.record_id,
                sync_status=SyncStatus.SYNCED,
                pending_action=None,
                error_message=None,
            )
        if self._edit_sessions is not None:
            self._edit_sessions.close_for(descriptor.kind, descriptor.record_id)
        self._record(descriptor, "discarded")

        try:
            self._resync()
        except GatewayError as exc:
            logger.warning("Resync after discarding %s failed: %s", descriptor.record_id, exc)
        refreshed = self._store.get(descriptor.kind, descriptor.record_id)
        self._queue.rebase(key, refreshed.last_updated if refreshed else UNVERSIONED)
        self._notify()
        return True

    def force_overwrite(self) -> bool:
        """Resubmit the current conflict's payload with ``force: true``.

        Returns ``True`` when the remote store accepted the write; otherwise the
        coordinator stays ``CONFLICTED`` with the same descriptor current.
        """

        descriptor = self.current
        if descriptor is None:
            return False

        payload = dict(descriptor.data)
        payload["force"] = True
        outcome: Dict[str, object] = {"accepted": False}

        def task(attempted: VersionStamp) -> VersionStamp:
            try:
                data = self._gateway.post(descriptor.action, payload)
            except GatewayError as exc:
                logger.warning("Forced %s for %s failed: %s", descriptor.action, descriptor.record_id, exc)
                outcome["error"] = str(exc)
                return attempted
            version = coerce_version(returned_version(data))
            if not version:
                version = attempted
            self._apply_forced(descriptor, version)
            outcome["accepted"] = True
            return version

        future = self._queue.enqueue(
            (descriptor.kind, descriptor.record_id),
            task,
            coerce_version(payload.get("originalLastUpdated")),
        )
        try:
            future.result(timeout=self._force_timeout)
        except FutureTimeoutError:
            logger.warning("Forced %s for %s timed out", descriptor.action, descriptor.record_id)
            return False

        if not outcome["accepted"]:
            return False

        with self._lock:
            if self._open and self._open[0] is descriptor:
                self._open.popleft()
        self._record(descriptor, "forced")
        if self._edit_sessions is not None:
            self._edit_sessions.close_for(descriptor.kind, descriptor.record_id)
        if self._refresh is not None:
            try:
                self._refresh()
            except Exception:
                logger.debug("Refresh after forced overwrite failed", exc_info=True)
        self._notify()
        return True

    def clear(self) -> None:
        with self._lock:
            self._open.clear()
        self._notify()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _apply_forced(self, descriptor: ConflictDescriptor, version: VersionStamp) -> None:
        if descriptor.pending_action is PendingAction.DELETE:
            self._store.remove(descriptor.kind, descriptor.record_id)
            return
        record = self._store.get(descriptor.kind, descriptor.record_id)
        if record is not None:
            self._store.upsert(descriptor.kind, record.mark_synced(version))

    def _record(self, descriptor: ConflictDescriptor, resolution: str) -> None:
        timestamp = datetime.now(timezone.utc).replace(microsecond=0).isoformat()
        payload: Dict[str, object] = {
            "record_id": descriptor.record_id,
            "kind": descriptor.kind.value,
            "action": descriptor.action,
            "description": descriptor.description,
            "resolution": resolution,
            "timestamp": timestamp.replace("+00:00", "Z"),
        }
        conflict_logger = _ensure_conflict_logger()
        try:
            conflict_logger.info("%s", json.dumps(payload, ensure_ascii=False, sort_keys=True))
        except TypeError:  # pragma: no cover - guard for non-serialisable data
            conflict_logger.info("record_id=%s resolution=%s", descriptor.record_id, resolution)
        with self._lock:
            self._recent.appendleft(payload)

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
            state = ConflictState.CONFLICTED if self._open else ConflictState.CLEAN
            current = self._open[0] if self._open else None
        for listener in listeners:
            try:
                listener(state, current)
            except Exception:  # pragma: no cover - UI callback guard
                logger.debug("Conflict listener failed", exc_info=True)


__all__ = ["ConflictCoordinator", "ConflictListener", "ConflictState"]
