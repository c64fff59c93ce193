from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Protocol


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    title: str
    description: str
    variant: str = "default"  # default|destructive

    @property
    def is_error(self) -> bool:
        return self.variant == "destructive"


class Notifier(Protocol):
    def notify(self, notification: Notification) -> None: ...


class LoggingNotifier:
    """Routes notifications to the log (headless deployments)."""

    def notify(self, notification: Notification) -> None:
        level = logging.WARNING if notification.is_error else logging.INFO
        logger.log(level, "%s: %s", notification.title, notification.description)


class RecordingNotifier:
    """Keeps every notification in order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: list[Notification] = []

    def notify(self, notification: Notification) -> None:
        with self._lock:
            self._items.append(notification)

    @property
    def items(self) -> list[Notification]:
        with self._lock:
            return list(self._items)

    @property
    def titles(self) -> list[str]:
        return [n.title for n in self.items]

    def last(self) -> Notification | None:
        with self._lock:
            return self._items[-1] if self._items else None

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
