"""Bookkeeping for open editor surfaces (create/edit forms)."""
from __future__ import annotations

import itertools
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional

from ordersync.models import EntityKind

logger = logging.getLogger(__name__)

CloseCallback = Callable[["EditSession"], None]


@dataclass(frozen=True)
class EditSession:
    token: int
    kind: EntityKind
    record_id: Optional[str]


class EditSessions:
    """Track which records the operator is editing.

    While any session is open the background reconciler skips its pulls.
    ``close_for`` force-closes the sessions of a record whose local changes
    were discarded, invoking the callback registered with the session.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._sessions: Dict[int, EditSession] = {}
        self._callbacks: Dict[int, CloseCallback] = {}

    def open(
        self,
        kind: EntityKind,
        record_id: Optional[str] = None,
        on_close: Optional[CloseCallback] = None,
    ) -> EditSession:
        """Register an editor; ``record_id`` is ``None`` for a new record form."""

        with self._lock:
            session = EditSession(next(self._counter), kind, record_id)
            self._sessions[session.token] = session
            if on_close is not None:
                self._callbacks[session.token] = on_close
        return session

    def close(self, session: EditSession) -> None:
        with self._lock:
            self._sessions.pop(session.token, None)
            self._callbacks.pop(session.token, None)

    @contextmanager
    def editing(
        self, kind: EntityKind, record_id: Optional[str] = None
    ) -> Iterator[EditSession]:
        session = self.open(kind, record_id)
        try:
            yield session
        finally:
            self.close(session)

    @property
    def active(self) -> bool:
        with self._lock:
            return bool(self._sessions)

    def sessions(self) -> List[EditSession]:
        with self._lock:
            return list(self._sessions.values())

    def close_for(self, kind: EntityKind, record_id: str) -> int:
        with self._lock:
            matching = [
                session
                for session in self._sessions.values()
                if session.kind is kind and session.record_id == record_id
            ]
            callbacks = []
            for session in matching:
                del self._sessions[session.token]
                callbacks.append((session, self._callbacks.pop(session.token, None)))
        for session, callback in callbacks:
            if callback is None:
                continue
            try:
                callback(session)
            except Exception:  # pragma: no cover - UI callback guard
                logger.debug("Editor close callback failed", exc_info=True)
        return len(matching)


__all__ = ["EditSession", "EditSessions"]
