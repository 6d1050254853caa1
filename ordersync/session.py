"""Wire the synchronisation components together for one signed-in session."""
from __future__ import annotations

import logging
from datetime import date
from typing import Callable, Optional

import requests

from ordersync.conflicts import ConflictCoordinator
from ordersync.debounce import Debouncer
from ordersync.editing import EditSessions
from ordersync.entity_store import EntityStore
from ordersync.gateway import RemoteGateway
from ordersync.models import Dataset
from ordersync.mutations import MutationPipeline, NotifyCallback
from ordersync.reconciler import BackgroundReconciler, StatusCallback
from ordersync.write_queue import WriteQueue
from settings import SyncSettings, load_sync_settings

logger = logging.getLogger(__name__)


class SyncSession:
    """Own the store, gateway, queue and controllers of one client.

    Nothing here is process-wide: two sessions never share state, which keeps
    tests and multiple endpoints independent.
    """

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        *,
        http_session: Optional[requests.Session] = None,
        notify: Optional[NotifyCallback] = None,
        status_callback: Optional[StatusCallback] = None,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self.settings = settings or load_sync_settings()
        self.store = EntityStore()
        self.gateway = RemoteGateway(
            self.settings.endpoint,
            timeout=self.settings.request_timeout_seconds,
            session=http_session,
        )
        self.write_queue = WriteQueue()
        self.debouncer = Debouncer(self.settings.status_debounce_seconds)
        self.edit_sessions = EditSessions()
        self.reconciler = BackgroundReconciler(
            self.store,
            self.gateway,
            write_queue=self.write_queue,
            edit_sessions=self.edit_sessions,
            interval_seconds=self.settings.sync_interval_seconds,
            window_days=self.settings.pull_window_days,
            status_callback=status_callback,
            today=today,
        )
        self.conflicts = ConflictCoordinator(
            self.store,
            self.gateway,
            self.write_queue,
            resync=self.reconciler.resync,
            refresh=self.reconciler.trigger,
            edit_sessions=self.edit_sessions,
            debouncer=self.debouncer,
            force_timeout=self.settings.request_timeout_seconds * 2,
        )
        self.mutations = MutationPipeline(
            self.store,
            self.gateway,
            self.write_queue,
            self.conflicts,
            debouncer=self.debouncer,
            notify=notify,
        )
        self.authenticated = False

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    def login(self, password: str) -> bool:
        self.authenticated = self.gateway.login(password)
        if not self.authenticated:
            logger.info("Login rejected")
        return self.authenticated

    def change_password(self, old_password: str, new_password: str) -> bool:
        return self.gateway.change_password(old_password, new_password)

    def logout(self) -> None:
        """Stop background work and forget every local record."""

        self.reconciler.stop()
        self.mutations.flush_status_updates()
        self.write_queue.join(timeout=self.settings.request_timeout_seconds)
        self.store.clear()
        self.reconciler.discard_pending()
        self.conflicts.clear()
        self.authenticated = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, *, background: bool = True) -> Dataset:
        """Load the dataset and optionally start the periodic reconciler."""

        dataset = self.reconciler.resync()
        logger.info("Initial load: %s", dataset.counts())
        if background:
            self.reconciler.start()
        return dataset

    def close(self, timeout: Optional[float] = None) -> None:
        self.reconciler.stop()
        self.mutations.flush_status_updates()
        if not self.write_queue.join(timeout=timeout):
            logger.warning("Closing with writes still in flight")
        self.gateway.close()

    def __enter__(self) -> "SyncSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close(timeout=self.settings.request_timeout_seconds)


__all__ = ["SyncSession"]
