"""Per-record write serialisation.

Each key (usually ``(EntityKind, record_id)``) owns a mailbox: an ordered list
of write tasks processed one at a time by a short-lived worker thread.  A
task receives the version produced by the task before it and returns the
version the next task should use, so rapid edits to one record form a strict
causal chain even when the earlier write has not been confirmed yet.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Hashable, Mapping, Optional

from ordersync.models import UNVERSIONED, Unversioned, Version, VersionStamp, coerce_version, is_newer

logger = logging.getLogger(__name__)

WriteTask = Callable[[VersionStamp], VersionStamp]


@dataclass
class _Envelope:
    task: WriteTask
    known_version: VersionStamp
    future: Future


@dataclass
class _Mailbox:
    tasks: Deque[_Envelope] = field(default_factory=deque)
    running: bool = False
    settled: VersionStamp = UNVERSIONED


class WriteQueue:
    """Guarantee at most one in-flight write per key, in enqueue order."""

    def __init__(self, *, thread_name: str = "ordersync-write") -> None:
        self._condition = threading.Condition()
        self._mailboxes: Dict[Hashable, _Mailbox] = {}
        self._thread_name = thread_name

    def enqueue(
        self,
        key: Hashable,
        task: WriteTask,
        known_version: VersionStamp = UNVERSIONED,
    ) -> "Future[VersionStamp]":
        """Chain ``task`` after the current tail of ``key``'s mailbox.

        ``known_version`` is used when the mailbox has no settled version yet.
        The returned future resolves to the version the task handed on.
        """

        future: "Future[VersionStamp]" = Future()
        with self._condition:
            mailbox = self._mailboxes.setdefault(key, _Mailbox())
            mailbox.tasks.append(_Envelope(task, known_version, future))
            if not mailbox.running:
                mailbox.running = True
                worker = threading.Thread(
                    target=self._drain,
                    args=(key, mailbox),
                    name=f"{self._thread_name}-{key}",
                    daemon=True,
                )
                worker.start()
        return future

    def rebase(self, key: Hashable, version: VersionStamp) -> None:
        """Replace the settled version of ``key``, e.g. after a full resync."""

        with self._condition:
            mailbox = self._mailboxes.setdefault(key, _Mailbox())
            mailbox.settled = version

    def rebase_idle(self, versions: Mapping[Hashable, VersionStamp]) -> int:
        """Rebase existing mailboxes that have nothing queued or running.

        Used after a pull installed newer versions; busy chains keep theirs.
        A key only moves forward: a pulled version older than the one the
        chain already settled on is ignored.
        """

        updated = 0
        with self._condition:
            for key, version in versions.items():
                mailbox = self._mailboxes.get(key)
                if mailbox is None or mailbox.running or mailbox.tasks:
                    continue
                if not is_newer(version, mailbox.settled):
                    continue
                mailbox.settled = version
                updated += 1
        return updated

    def settled_version(self, key: Hashable) -> VersionStamp:
        with self._condition:
            mailbox = self._mailboxes.get(key)
            return mailbox.settled if mailbox else UNVERSIONED

    def is_busy(self, key: Hashable) -> bool:
        with self._condition:
            mailbox = self._mailboxes.get(key)
            return bool(mailbox and (mailbox.running or mailbox.tasks))

    def join(self, timeout: Optional[float] = None) -> bool:
        """Block until every mailbox is drained. Returns ``False`` on timeout."""

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while any(box.running or box.tasks for box in self._mailboxes.values()):
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._condition.wait(remaining)
        return True

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------
    def _drain(self, key: Hashable, mailbox: _Mailbox) -> None:
        while True:
            with self._condition:
                if not mailbox.tasks:
                    mailbox.running = False
                    self._condition.notify_all()
                    return
                envelope = mailbox.tasks.popleft()
                previous = mailbox.settled

            attempted = previous if isinstance(previous, Version) else envelope.known_version
            if not envelope.future.set_running_or_notify_cancel():
                continue

            try:
                result = envelope.task(attempted)
            except Exception:
                logger.exception("Write task for %s failed unexpectedly", key)
                result = attempted
            if not isinstance(result, (Version, Unversioned)):
                result = coerce_version(result)

            with self._condition:
                mailbox.settled = result
            envelope.future.set_result(result)


__all__ = ["WriteQueue", "WriteTask"]
