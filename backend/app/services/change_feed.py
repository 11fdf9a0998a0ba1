"""In-process change feed for live views.

Every committed store write is published here as a ``ChangeEvent``. A view
subscribes to one collection (optionally narrowed by a predicate) and drains
its ``Subscription`` lazily. Subscriptions hold a queue on the feed until
``cancel()`` is called; nothing is released on garbage collection.
"""

import logging
import queue
from dataclasses import dataclass, field
from itertools import count
from threading import Lock
from typing import Any, Callable, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    collection: str
    doc_id: str
    kind: str
    data: Dict[str, Any] = field(default_factory=dict)
    seq: int = 0


Predicate = Callable[[ChangeEvent], bool]


class Subscription:
    def __init__(self, feed: "ChangeFeed", collection: str, predicate: Optional[Predicate]) -> None:
        self.collection = collection
        self._feed = feed
        self._predicate = predicate
        self._queue: "queue.Queue[Optional[ChangeEvent]]" = queue.Queue()
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def matches(self, event: ChangeEvent) -> bool:
        if event.collection != self.collection:
            return False
        if self._predicate is None:
            return True
        try:
            return bool(self._predicate(event))
        except Exception:
            logger.exception("Subscription predicate failed for %s/%s", event.collection, event.doc_id)
            return False

    def _deliver(self, event: ChangeEvent) -> None:
        if not self._cancelled:
            self._queue.put(event)

    def poll(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Next event, or None on timeout or once cancelled."""
        if self._cancelled and self._queue.empty():
            return None
        try:
            event = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        return event

    def drain(self) -> List[ChangeEvent]:
        events: List[ChangeEvent] = []
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return events
            if event is not None:
                events.append(event)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._feed._remove(self)
        # Wake a consumer blocked in poll().
        self._queue.put(None)

    def __iter__(self) -> Iterator[ChangeEvent]:
        while True:
            event = self.poll()
            if event is None:
                return
            yield event

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.cancel()


class ChangeFeed:
    def __init__(self) -> None:
        self._lock = Lock()
        self._subscriptions: List[Subscription] = []
        self._seq = count(1)

    def subscribe(self, collection: str, predicate: Optional[Predicate] = None) -> Subscription:
        subscription = Subscription(self, collection, predicate)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def publish(self, collection: str, doc_id: str, kind: str, data: Optional[Dict[str, Any]] = None) -> ChangeEvent:
        with self._lock:
            event = ChangeEvent(
                collection=collection,
                doc_id=doc_id,
                kind=kind,
                data=dict(data or {}),
                seq=next(self._seq),
            )
            # Delivery under the lock keeps each subscription's stream in publish order.
            for subscription in self._subscriptions:
                if subscription.matches(event):
                    subscription._deliver(event)
        return event

    def active_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
