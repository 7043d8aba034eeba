"""In-memory ring buffer of sync log lines for diagnostics tooling."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable

from tillsync.core.settings import settings

SYNC_LOGGER_NAMES = ("tillsync.services.sync", "tillsync.services.sync_worker")
DEFAULT_MAX_LINES = 500

Listener = Callable[[list[str]], None]


class SyncLogBuffer(logging.Handler):
    """Logging handler keeping the most recent formatted records.

    Subscribers receive the full buffer after every new line. Errors raised
    by a subscriber are reported through ``handleError``.
    """

    def __init__(self, max_lines: int = DEFAULT_MAX_LINES) -> None:
        super().__init__(level=logging.INFO)
        self._lines: deque[str] = deque(maxlen=max(1, max_lines))
        self._listeners: list[Listener] = []
        self._buffer_lock = threading.Lock()
        self.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
        except Exception:  # noqa: BLE001 - logging handlers must not raise
            self.handleError(record)
            return
        with self._buffer_lock:
            self._lines.append(line)
            snapshot = list(self._lines)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:  # noqa: BLE001 - one broken listener must not stop logging
                self.handleError(record)

    def lines(self) -> list[str]:
        with self._buffer_lock:
            return list(self._lines)

    def clear(self) -> None:
        with self._buffer_lock:
            self._lines.clear()
            snapshot: list[str] = []
            listeners = list(self._listeners)
        for listener in listeners:
            listener(snapshot)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` and return a function that unregisters it."""
        with self._buffer_lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._buffer_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe


sync_log = SyncLogBuffer(settings.sync_log_max_lines)


def attach_sync_log(buffer: SyncLogBuffer | None = None) -> SyncLogBuffer:
    """Route the sync loggers into ``buffer`` (idempotent)."""
    buffer = buffer or sync_log
    for name in SYNC_LOGGER_NAMES:
        target = logging.getLogger(name)
        if buffer not in target.handlers:
            target.addHandler(buffer)
        if target.level == logging.NOTSET or target.level > logging.INFO:
            target.setLevel(logging.INFO)
    return buffer
