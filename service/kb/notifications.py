"""Knowledge base notification bus.

Fire-and-forget publish/subscribe used to tell admins about training
problems. Listeners are called synchronously in :meth:`NotificationBus.publish`;
their errors are caught so a bad listener never affects a training job.

Notification kinds
------------------
``training_failed``    the model raised or the commit could not be stored
``training_timeout``   a job exceeded the max training duration and was cancelled
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable

log = logging.getLogger(__name__)

NOTIFICATION_KINDS: frozenset[str] = frozenset({"training_failed", "training_timeout"})

Listener = Callable[[str, dict[str, Any]], None]


class NotificationBus:

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Listener) -> None:
        """Register ``callback(kind, details)`` for all future notifications."""
        with self._lock:
            self._listeners.append(callback)

    def unsubscribe(self, callback: Listener) -> None:
        with self._lock:
            try:
                self._listeners.remove(callback)
            except ValueError:
                pass

    def publish(self, kind: str, details: dict[str, Any]) -> None:
        """Dispatch *kind* with *details* to every listener. Never raises."""
        if kind not in NOTIFICATION_KINDS:
            log.debug("NotificationBus: unknown kind %r", kind)
        with self._lock:
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(kind, details)
            except Exception:
                log.debug("NotificationBus: listener error", exc_info=True)


def log_notification(kind: str, details: dict[str, Any]) -> None:
    """Default listener: surface notifications in the service log."""
    log.warning("kb_notification %s: %s", kind, details.get("message") or details)
