from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    row_id: str
    event: str  # INSERT|UPDATE|DELETE
    new: dict[str, Any] | None


ChangeCallback = Callable[[ChangeEvent], None]


class Subscription:
    def __init__(self, feed: "ChangeFeed", key: tuple[str, str | None], callback: ChangeCallback) -> None:
        self._feed = feed
        self._key = key
        self._callback = callback
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed._remove(self._key, self._callback)


class ChangeFeed:
    """In-process publish/subscribe channel for committed row changes.

    Subscribers register for a table, optionally narrowed to one row id.
    Callbacks run synchronously on the publishing thread after the commit;
    a failing callback is logged and does not affect other subscribers.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[tuple[str, str | None], list[ChangeCallback]] = {}

    def subscribe(self, table: str, callback: ChangeCallback, *, row_id: str | None = None) -> Subscription:
        key = (table, row_id)
        with self._lock:
            self._subscribers.setdefault(key, []).append(callback)
        return Subscription(self, key, callback)

    def _remove(self, key: tuple[str, str | None], callback: ChangeCallback) -> None:
        with self._lock:
            callbacks = self._subscribers.get(key)
            if not callbacks:
                return
            try:
                callbacks.remove(callback)
            except ValueError:
                return
            if not callbacks:
                self._subscribers.pop(key, None)

    def subscriber_count(self, table: str, *, row_id: str | None = None) -> int:
        with self._lock:
            return len(self._subscribers.get((table, row_id), []))

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            targets = list(self._subscribers.get((event.table, event.row_id), []))
            targets.extend(self._subscribers.get((event.table, None), []))
        for callback in targets:
            try:
                callback(event)
            except Exception:
                logger.exception("Change subscriber failed for %s/%s", event.table, event.row_id)


_FEEDS: dict[str, ChangeFeed] = {}
_FEEDS_LOCK = threading.Lock()


def feed_for(db_path: str | Path) -> ChangeFeed:
    """Return the process-wide feed shared by every store opened on `db_path`."""
    key = str(Path(db_path).expanduser().resolve())
    with _FEEDS_LOCK:
        feed = _FEEDS.get(key)
        if feed is None:
            feed = ChangeFeed()
            _FEEDS[key] = feed
        return feed
