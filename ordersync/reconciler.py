"""Background pulls that keep the entity store fresh without losing local work."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Dict, Hashable, List, Optional, Tuple

from ordersync.codec import decode_dataset
from ordersync.editing import EditSessions
from ordersync.entity_store import EntityStore
from ordersync.errors import GatewayError
from ordersync.gateway import RemoteGateway, pull_start_date
from ordersync.hash import fingerprints
from ordersync.models import Dataset, Entity, EntityKind, SyncStatus, VersionStamp, is_newer
from ordersync.write_queue import WriteQueue

logger = logging.getLogger(__name__)

StatusPayload = Dict[str, object]
StatusCallback = Callable[[str, StatusPayload], None]

DEFAULT_INTERVAL_SECONDS = 60
DEFAULT_WINDOW_DAYS = 60


@dataclass(frozen=True)
class PendingSnapshot:
    """A pulled dataset waiting for the operator to apply it."""

    dataset: Dataset
    changes: Dict[EntityKind, Tuple[str, ...]] = field(default_factory=dict)
    pulled_at: str = ""

    def change_counts(self) -> Dict[str, int]:
        return {kind.value: len(ids) for kind, ids in self.changes.items()}


class BackgroundReconciler:
    """Pull the remote dataset on a daemon thread and stage what changed.

    A pull that finds differences never touches the store directly; it stages
    a :class:`PendingSnapshot` which :meth:`apply_pending` installs on request.
    Records that are ``pending``/``error`` locally, or that still have writes
    in the queue, are ignored by the comparison and survive every install.
    """

    def __init__(
        self,
        store: EntityStore,
        gateway: RemoteGateway,
        *,
        write_queue: Optional[WriteQueue] = None,
        edit_sessions: Optional[EditSessions] = None,
        interval_seconds: int = DEFAULT_INTERVAL_SECONDS,
        window_days: int = DEFAULT_WINDOW_DAYS,
        status_callback: Optional[StatusCallback] = None,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._queue = write_queue
        self._edit_sessions = edit_sessions
        self._interval = max(1, int(interval_seconds))
        self._window_days = window_days
        self._status_callback = status_callback
        self._today = today or date.today
        self._pull_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._pending: Optional[PendingSnapshot] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="ordersync-reconciler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2)
            self._thread = None

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def trigger(self) -> threading.Thread:
        """Reconcile once on a separate thread, e.g. when the window regains focus."""

        thread = threading.Thread(target=self._guarded_reconcile, name="ordersync-trigger", daemon=True)
        thread.start()
        return thread

    # ------------------------------------------------------------------
    # Snapshot handling
    # ------------------------------------------------------------------
    @property
    def pending(self) -> Optional[PendingSnapshot]:
        with self._state_lock:
            return self._pending

    def discard_pending(self) -> None:
        with self._state_lock:
            self._pending = None

    def reconcile(self) -> Optional[PendingSnapshot]:
        """Pull once and stage a snapshot if the remote data differs."""

        if self._edit_sessions is not None and self._edit_sessions.active:
            self._notify_status("skipped", {"reason": "editing"})
            return None
        if not self._pull_lock.acquire(blocking=False):
            self._notify_status("skipped", {"reason": "busy"})
            return None
        try:
            try:
                dataset = self._fetch()
            except GatewayError as exc:
                logger.warning("Background pull failed: %s", exc)
                self._notify_status("offline", {"message": str(exc)})
                return None
            changes = self._diff(dataset)
        finally:
            self._pull_lock.release()

        if not changes:
            self._notify_status("idle", {})
            return None

        snapshot = PendingSnapshot(dataset=dataset, changes=changes, pulled_at=_timestamp())
        with self._state_lock:
            self._pending = snapshot
        logger.info("Remote changes staged: %s", snapshot.change_counts())
        self._notify_status("pending", {"changes": snapshot.change_counts()})
        return snapshot

    def apply_pending(self) -> bool:
        """Install the staged snapshot, keeping every unsynced local record."""

        with self._state_lock:
            snapshot = self._pending
            self._pending = None
        if snapshot is None:
            return False
        self._install(snapshot.dataset)
        self._notify_status("synced", {"counts": snapshot.dataset.counts()})
        return True

    def resync(self) -> Dataset:
        """Pull and install immediately, bypassing the staging step.

        Raises :class:`~ordersync.errors.GatewayError` when the pull fails.
        """

        with self._pull_lock:
            dataset = self._fetch()
            self._install(dataset)
        with self._state_lock:
            self._pending = None
        self._notify_status("synced", {"counts": dataset.counts()})
        return dataset

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _run(self) -> None:
        while not self._stop_event.is_set():
            start = time.monotonic()
            self._guarded_reconcile()
            elapsed = time.monotonic() - start
            self._stop_event.wait(max(0.0, self._interval - elapsed))

    def _guarded_reconcile(self) -> None:
        try:
            self.reconcile()
        except Exception:  # pragma: no cover - thread boundary guard
            logger.exception("Background reconcile failed")
            self._notify_status("offline", {"message": "unexpected failure"})

    def _fetch(self) -> Dataset:
        start_date = pull_start_date(self._window_days, self._today())
        return decode_dataset(self._gateway.pull(start_date))

    def _busy(self, kind: EntityKind, record_id: str) -> bool:
        return self._queue is not None and self._queue.is_busy((kind, record_id))

    def _diff(self, dataset: Dataset) -> Dict[EntityKind, Tuple[str, ...]]:
        changes: Dict[EntityKind, Tuple[str, ...]] = {}
        for kind in EntityKind:
            remote = dataset.collection(kind)
            local = self._store.records(kind)
            excluded = {
                record.id for record in local if record.is_unsynced or self._busy(kind, record.id)
            }
            excluded.update(record.id for record in remote if self._busy(kind, record.id))
            local_hashes = fingerprints(record for record in local if record.id not in excluded)
            remote_hashes = fingerprints(record for record in remote if record.id not in excluded)
            changed = sorted(
                record_id
                for record_id in set(local_hashes) | set(remote_hashes)
                if local_hashes.get(record_id) != remote_hashes.get(record_id)
            )
            if changed:
                changes[kind] = tuple(changed)
        return changes

    def _install(self, dataset: Dataset) -> None:
        versions: Dict[Hashable, VersionStamp] = {}
        with self._store.lock:
            for kind in EntityKind:
                remote = dataset.collection(kind)
                local = {record.id: record for record in self._store.records(kind)}
                keep = {
                    record_id: record
                    for record_id, record in local.items()
                    if record.is_unsynced or self._busy(kind, record_id)
                }
                merged: List[Entity] = []
                seen = set()
                for record in remote:
                    seen.add(record.id)
                    if record.id in keep:
                        merged.append(keep[record.id])
                    elif record.id in local and is_newer(local[record.id].last_updated, record.last_updated):
                        # Pulled before a write of ours was confirmed.
                        merged.append(local[record.id])
                    elif record.id not in local and self._busy(kind, record.id):
                        # Deleted locally, delete still in flight.
                        continue
                    else:
                        merged.append(record)
                merged.extend(record for record_id, record in keep.items() if record_id not in seen)
                self._store.replace_all(kind, merged)
                versions.update(
                    ((kind, record.id), record.last_updated)
                    for record in merged
                    if record.sync_status is SyncStatus.SYNCED
                )
        if self._queue is not None:
            self._queue.rebase_idle(versions)

    def _notify_status(self, status: str, payload: StatusPayload) -> None:
        if self._status_callback:
            try:
                self._status_callback(status, payload)
            except Exception:  # pragma: no cover - UI callback guard
                logger.debug("Reconciler status callback failed", exc_info=True)


def _timestamp() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


__all__ = ["BackgroundReconciler", "PendingSnapshot", "StatusCallback"]
