from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Literal, Optional

from product_portal.core.store.document_store import DocumentStore, Unsubscribe


logger = logging.getLogger(__name__)

PRODUCT_DATA_UPDATED = "productDataUpdated"
STORE_CHANGED = "storage"

Channel = Literal["in-context", "cross-context"]


@dataclass(frozen=True)
class Notification:
    """A "state may have changed, re-derive" signal. Never a diff."""

    topic: str
    channel: Channel
    product_id: Optional[str] = None


Listener = Callable[[Notification], None]


class NotificationBus:
    """Fan-out of change signals to every consumer in one execution context.

    Cross-context signals come from the store's own subscription (writes made
    by other contexts). In-context signals are raised explicitly by writers via
    ``dispatch`` right after a successful put, since the store never echoes a
    context's own writes back to it.
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()
        self._store_unsubscribe: Optional[Unsubscribe] = store.subscribe(self._on_store_change)

    def subscribe(self, listener: Listener) -> Unsubscribe:
        with self._lock:
            self._listeners.append(listener)

        def _remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _remove

    def dispatch(self, topic: str = PRODUCT_DATA_UPDATED, *, product_id: Optional[str] = None) -> int:
        """Deliver an in-context notification synchronously. Returns listener count."""
        return self._deliver(Notification(topic=topic, channel="in-context", product_id=product_id))

    def _on_store_change(self) -> None:
        self._deliver(Notification(topic=STORE_CHANGED, channel="cross-context"))

    def _deliver(self, notification: Notification) -> int:
        with self._lock:
            targets = list(self._listeners)
        logger.debug(f"{notification.channel} {notification.topic} -> {len(targets)} listener(s)")
        for listener in targets:
            try:
                listener(notification)
            except Exception:
                logger.exception(f"listener failed on {notification.topic}")
        return len(targets)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def close(self) -> None:
        if self._store_unsubscribe is not None:
            self._store_unsubscribe()
            self._store_unsubscribe = None
        with self._lock:
            self._listeners.clear()
