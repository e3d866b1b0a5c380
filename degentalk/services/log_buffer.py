"""
degentalk.services.log_buffer — Live Log Tail for the Admin Panel
===================================================================

A bounded, thread-safe ring of recent log records fed by a
:class:`logging.Handler` on the root logger.  ``GET /api/admin/logs``
reads it; ``PUT /api/admin/logs/level`` changes the capture level at
runtime.  Nothing is persisted; each API process has its own ring.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

DEFAULT_CAPACITY = 2000
VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
UVICORN_LOGGERS = ("uvicorn", "uvicorn.access", "uvicorn.error")

_ring: LogRing | None = None
_ring_lock = threading.Lock()


@dataclass(frozen=True, slots=True)
class LogRecordView:
    timestamp: str
    level: str
    logger: str
    message: str


class LogRing:
    """Fixed-capacity record store; the oldest entries fall off first."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._records: deque[LogRecordView] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def push(self, record: LogRecordView) -> None:
        with self._lock:
            self._records.append(record)

    def tail(
        self,
        count: int = 200,
        *,
        min_level: str | None = None,
        prefix: str | None = None,
    ) -> list[dict[str, str]]:
        """Newest *count* records at or above *min_level* whose logger
        name starts with *prefix*, oldest first."""
        floor = logging.getLevelName(min_level.upper()) if min_level else 0
        if not isinstance(floor, int):
            floor = 0
        with self._lock:
            snapshot = list(self._records)

        matched = [
            asdict(r) for r in snapshot
            if logging.getLevelName(r.level) >= floor
            and (not prefix or r.logger.startswith(prefix))
        ]
        return matched[-count:] if count else matched


class RingHandler(logging.Handler):
    def __init__(self, ring: LogRing, level: int = logging.DEBUG) -> None:
        super().__init__(level)
        self.ring = ring

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.ring.push(LogRecordView(
                timestamp=datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                level=record.levelname,
                logger=record.name,
                message=self.format(record),
            ))
        except Exception:
            self.handleError(record)


def get_ring() -> LogRing:
    global _ring
    if _ring is None:
        with _ring_lock:
            if _ring is None:
                _ring = LogRing()
    return _ring


def _find_handler() -> RingHandler | None:
    for handler in logging.getLogger().handlers:
        if isinstance(handler, RingHandler):
            return handler
    return None


def install_handler(level: int = logging.DEBUG) -> RingHandler:
    """Attach the ring handler to the root logger (once per process).

    Uvicorn's loggers are switched to propagate so access and error lines
    reach the ring too.
    """
    handler = _find_handler()
    if handler is not None:
        handler.setLevel(level)
        return handler

    handler = RingHandler(get_ring(), level=level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logging.getLogger().addHandler(handler)
    for name in UVICORN_LOGGERS:
        log = logging.getLogger(name)
        log.propagate = True
        log.setLevel(logging.INFO)
    return handler


def get_logs(
    tail: int = 200,
    level: str | None = None,
    logger_filter: str | None = None,
) -> list[dict[str, str]]:
    return get_ring().tail(tail, min_level=level, prefix=logger_filter)


def get_current_level() -> str:
    handler = _find_handler()
    if handler is not None:
        return logging.getLevelName(handler.level)
    return logging.getLevelName(logging.getLogger().level)


def set_capture_level(level_name: str) -> str:
    """Change the capture level; installs the handler if it is missing.

    Raises
    ------
    ValueError
        If *level_name* is not one of :data:`VALID_LEVELS`.
    """
    level_name = level_name.upper()
    if level_name not in VALID_LEVELS:
        raise ValueError(f"Invalid level: {level_name}. Must be one of {VALID_LEVELS}")
    install_handler(level=getattr(logging, level_name))
    return level_name
