"""Bounded, durable event queue.

The queue keeps an ordered in-memory index of pending events and mirrors
every change into a DurableStore under ``events/<uuid>``. At startup the
store is the source of truth: ``load()`` rebuilds the index from it.
"""

import logging
import threading
from collections import OrderedDict
from typing import Callable, Iterable

from pydantic import ValidationError

from telemeter.core.errors import StorageError
from telemeter.core.event import CapturedEvent
from telemeter.storage.base import EVENT_PREFIX, DurableStore, event_key

logger = logging.getLogger("telemeter.queue")


class EventQueue:
    """Thread-safe FIFO of CapturedEvents with oldest-first eviction.

    enqueue, peek_batch, remove and clear are atomic with respect to each
    other. Only local store I/O happens while the lock is held; network
    delivery is done by the dispatcher after peek_batch returns.

    Args:
        store: Durable store the queue mirrors into.
        max_queue_size: Maximum number of pending events.
        on_enqueued: Called with the new size after each enqueue, outside the lock.
    """

    def __init__(
        self,
        store: DurableStore,
        max_queue_size: int = 1000,
        on_enqueued: Callable[[int], None] | None = None,
    ) -> None:
        if max_queue_size < 1:
            raise ValueError("max_queue_size must be >= 1")
        self._store = store
        self._max_queue_size = max_queue_size
        self._events: OrderedDict[str, CapturedEvent] = OrderedDict()
        self._lock = threading.RLock()
        self._evicted_count = 0
        self.on_enqueued = on_enqueued

    @property
    def max_queue_size(self) -> int:
        return self._max_queue_size

    @property
    def evicted_count(self) -> int:
        """Number of events dropped because the queue was full."""
        return self._evicted_count

    def load(self) -> int:
        """Rebuild the in-memory index from the store.

        Entries that cannot be decoded are deleted. If the store holds more
        events than max_queue_size, the oldest are evicted.

        Returns:
            Number of events restored.
        """
        with self._lock:
            self._events.clear()
            try:
                keys = self._store.list_keys(EVENT_PREFIX)
            except StorageError as e:
                logger.error(f"Failed to list stored events: {e}")
                return 0

            for key in keys:
                try:
                    raw = self._store.get(key)
                    if raw is None:
                        continue
                    event = CapturedEvent.model_validate_json(raw)
                except (StorageError, ValidationError, ValueError) as e:
                    logger.warning(f"Dropping unreadable stored event {key}: {e}", extra={"key": key})
                    self._delete_key(key)
                    continue
                self._events[event.uuid] = event

            while len(self._events) > self._max_queue_size:
                self._evict_oldest()

            restored = len(self._events)

        if restored:
            logger.info(f"Restored {restored} queued events", extra={"batch_size": restored})
        return restored

    def enqueue(self, event: CapturedEvent | None) -> bool:
        """Persist and append an event, evicting the oldest when full.

        A persist failure leaves the event queued in memory only.

        Returns:
            True if the event was queued, False if it was rejected.
        """
        if event is None or not isinstance(event, CapturedEvent):
            logger.warning(f"Ignoring enqueue of non-event value: {type(event).__name__}")
            return False
        if not event.event.strip():
            logger.warning("Ignoring event with empty name", extra={"event_uuid": event.uuid})
            return False

        with self._lock:
            if event.uuid in self._events:
                logger.debug("Event already queued", extra={"event_uuid": event.uuid})
                return False

            while len(self._events) >= self._max_queue_size:
                self._evict_oldest()

            try:
                self._store.put(event_key(event.uuid), event.model_dump_json())
            except StorageError as e:
                logger.error(
                    f"Failed to persist event, keeping it in memory only: {e}",
                    extra={"event_uuid": event.uuid, "event_name": event.event},
                )
            self._events[event.uuid] = event
            size = len(self._events)

        logger.debug(
            f"Enqueued {event.event}",
            extra={"event_uuid": event.uuid, "event_name": event.event, "queue_size": size},
        )
        if self.on_enqueued is not None:
            try:
                self.on_enqueued(size)
            except Exception as e:
                logger.error(f"on_enqueued callback failed: {e}", exc_info=True)
        return True

    def _evict_oldest(self) -> None:
        uuid, evicted = self._events.popitem(last=False)
        self._evicted_count += 1
        self._delete_key(event_key(uuid))
        logger.warning(
            f"Queue full, evicted oldest event {evicted.event}",
            extra={"event_uuid": uuid, "event_name": evicted.event},
        )

    def _delete_key(self, key: str) -> None:
        try:
            self._store.delete(key)
        except StorageError as e:
            logger.error(f"Failed to delete stored event {key}: {e}", extra={"key": key})

    def peek_batch(self, max_batch_size: int) -> list[CapturedEvent]:
        """Return up to max_batch_size oldest events without removing them."""
        if max_batch_size < 1:
            return []
        with self._lock:
            batch = []
            for event in self._events.values():
                batch.append(event)
                if len(batch) >= max_batch_size:
                    break
            return batch

    def remove(self, ids: Iterable[str]) -> int:
        """Delete the given events from memory and store. Unknown ids are ignored.

        Returns:
            Number of events removed.
        """
        removed = 0
        with self._lock:
            for uuid in ids:
                if self._events.pop(uuid, None) is None:
                    continue
                self._delete_key(event_key(uuid))
                removed += 1
        return removed

    def size(self) -> int:
        with self._lock:
            return len(self._events)

    def __len__(self) -> int:
        return self.size()

    def clear(self) -> None:
        """Drop every pending event."""
        with self._lock:
            dropped = len(self._events)
            self._events.clear()
            try:
                self._store.clear(EVENT_PREFIX)
            except StorageError as e:
                logger.error(f"Failed to clear stored events: {e}")
        if dropped:
            logger.info(f"Cleared {dropped} queued events", extra={"batch_size": dropped})

    def snapshot(self) -> list[CapturedEvent]:
        """All pending events, oldest first."""
        with self._lock:
            return list(self._events.values())
