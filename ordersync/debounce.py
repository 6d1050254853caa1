"""Keyed quiet-window debouncing built on :class:`threading.Timer`."""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple

logger = logging.getLogger(__name__)

Callback = Callable[[], Any]


class Debouncer:
    """Collapse bursts of calls per key into the last one.

    ``call(key, fn)`` cancels any timer still waiting for ``key`` and starts a
    new one, so only the final ``fn`` of a burst runs once ``delay`` seconds
    pass without another call for that key.
    """

    def __init__(self, delay: float = 0.5) -> None:
        self.delay = max(0.0, float(delay))
        self._lock = threading.Lock()
        self._timers: Dict[Hashable, Tuple[threading.Timer, Callback]] = {}

    def call(self, key: Hashable, callback: Callback) -> None:
        timer = threading.Timer(self.delay, self._fire, args=(key,))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(key, None)
            if previous is not None:
                previous[0].cancel()
            self._timers[key] = (timer, callback)
        timer.start()

    def is_pending(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._timers

    def cancel(self, key: Hashable) -> bool:
        with self._lock:
            entry = self._timers.pop(key, None)
        if entry is None:
            return False
        entry[0].cancel()
        return True

    def flush(self, key: Optional[Hashable] = None) -> List[Any]:
        """Run waiting callbacks now instead of at the end of their window."""

        with self._lock:
            keys = [key] if key is not None else list(self._timers)
            entries = [self._timers.pop(item) for item in keys if item in self._timers]
        results = []
        for timer, callback in entries:
            timer.cancel()
            results.append(self._run(callback))
        return results

    def _fire(self, key: Hashable) -> None:
        with self._lock:
            entry = self._timers.get(key)
            if entry is None or entry[0] is not threading.current_thread():
                return
            del self._timers[key]
        self._run(entry[1])

    @staticmethod
    def _run(callback: Callback) -> Any:
        try:
            return callback()
        except Exception:
            logger.exception("Debounced callback failed")
            return None


__all__ = ["Debouncer"]
