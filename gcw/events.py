from __future__ import annotations

import logging
import os
import sys
from collections import deque
from dataclasses import dataclass
from threading import Lock

from .runtime import utc_now

logger = logging.getLogger("gcw")

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


@dataclass(frozen=True)
class Event:
    ts: str
    level: str
    service_name: str | None
    message: str


class EventJournal:
    """Bounded in-memory record of recent events (served by the status API)."""

    def __init__(self, maxlen: int = 500) -> None:
        self._lock = Lock()
        self._events: deque[Event] = deque(maxlen=maxlen)

    def append(self, event: Event) -> None:
        with self._lock:
            self._events.append(event)

    def recent(self, limit: int = 50, service_name: str | None = None) -> list[Event]:
        with self._lock:
            items = list(self._events)
        if service_name:
            items = [e for e in items if e.service_name == service_name]
        items.reverse()
        return items[: max(0, int(limit))]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


journal = EventJournal()


def setup_logging(log_file: str | None, debug: bool = False) -> None:
    """Attach the append-only file sink and a stderr stream to the ``gcw`` logger.

    Safe to call more than once: previously attached handlers are replaced.
    """
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.propagate = False

    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(formatter)
    logger.addHandler(stream)

    if log_file:
        parent = os.path.dirname(os.path.abspath(log_file))
        if parent and not os.path.exists(parent):
            os.makedirs(parent, exist_ok=True)
        fh = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        fh.setFormatter(formatter)
        logger.addHandler(fh)


def log_event(level: str, message: str, service_name: str | None = None) -> None:
    level = level.upper()
    levelno = _LEVELS.get(level, logging.INFO)
    text = f"[{service_name}] {message}" if service_name else message
    logger.log(levelno, text)
    if levelno >= logging.INFO:
        journal.append(
            Event(ts=utc_now(), level=logging.getLevelName(levelno), service_name=service_name, message=message)
        )
