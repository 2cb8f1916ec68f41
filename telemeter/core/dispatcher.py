"""Batch dispatcher.

Drains the queue one bounded slice at a time. The dispatcher never holds the
queue lock while a send is in flight: it peeks a batch, sends it, then
removes the delivered (or permanently rejected) ids.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from pydantic import ValidationError

from telemeter.core.event import Batch
from telemeter.core.queue import EventQueue
from telemeter.transport.base import DeliveryResult, DeliveryStatus, Transport

logger = logging.getLogger("telemeter.dispatcher")


class FlushOutcome(Enum):
    """Result of one flush_once call."""

    EMPTY = "empty"
    DELIVERED = "delivered"
    REJECTED = "rejected"
    RETRY = "retry"


@dataclass
class DispatcherStats:
    """Counters since the dispatcher was created."""

    batches_sent: int = 0
    events_delivered: int = 0
    events_rejected: int = 0
    transient_failures: int = 0


class BatchDispatcher:
    """Sends the oldest queued events through a transport.

    Args:
        queue: Queue to drain.
        transport: Delivery capability.
        api_key: Project credential placed on every batch.
        max_batch_size: Upper bound of events per batch.
    """

    def __init__(
        self,
        queue: EventQueue,
        transport: Transport,
        api_key: str,
        max_batch_size: int = 50,
    ) -> None:
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        self.queue = queue
        self.transport = transport
        self._api_key = api_key
        self._max_batch_size = max_batch_size
        self._batch_size = max_batch_size
        self._stats = DispatcherStats()

    @property
    def batch_size(self) -> int:
        """Current batch size; shrinks after the collector reports payloads too large."""
        return self._batch_size

    @property
    def stats(self) -> DispatcherStats:
        return DispatcherStats(**vars(self._stats))

    async def flush_once(self) -> FlushOutcome:
        """Send at most one batch of the oldest events and apply the outcome."""
        events = self.queue.peek_batch(self._batch_size)
        if not events:
            return FlushOutcome.EMPTY

        try:
            batch = Batch(api_key=self._api_key, batch=events)
        except ValidationError as e:
            # Events are validated on creation, so this only trips on a broken store entry
            logger.error(f"Dropping {len(events)} events that cannot form a batch: {e}")
            self.queue.remove(event.uuid for event in events)
            return FlushOutcome.REJECTED

        self._stats.batches_sent += 1
        try:
            result = await self.transport.send(batch)
        except Exception as e:
            logger.error(
                f"Transport raised while sending batch: {e}",
                extra={"batch_size": len(batch)},
                exc_info=True,
            )
            result = DeliveryResult.transient(error=str(e))

        return self._apply(batch, result)

    def _apply(self, batch: Batch, result: DeliveryResult) -> FlushOutcome:
        if result.status is DeliveryStatus.DELIVERED:
            removed = self.queue.remove(batch.ids)
            self._stats.events_delivered += removed
            logger.info(
                f"Delivered batch of {len(batch)} events",
                extra={"batch_size": len(batch), "status_code": result.status_code},
            )
            return FlushOutcome.DELIVERED

        if result.status is DeliveryStatus.REJECTED:
            removed = self.queue.remove(batch.ids)
            self._stats.events_rejected += removed
            logger.error(
                f"Collector rejected batch of {len(batch)} events, dropping it: {result.error}",
                extra={"batch_size": len(batch), "status_code": result.status_code},
            )
            return FlushOutcome.REJECTED

        self._stats.transient_failures += 1
        if result.payload_too_large and self._batch_size > 1:
            self._batch_size = max(1, self._batch_size // 2)
            logger.warning(
                f"Batch too large, reducing batch size to {self._batch_size}",
                extra={"batch_size": self._batch_size, "status_code": result.status_code},
            )
        logger.warning(
            f"Batch delivery failed, keeping {len(batch)} events queued: {result.error}",
            extra={"batch_size": len(batch), "status_code": result.status_code},
        )
        return FlushOutcome.RETRY

    async def flush_all(self) -> FlushOutcome:
        """Send batches until the queue is empty or a send must be retried.

        Returns:
            RETRY if the last send failed transiently, otherwise the outcome of
            the last batch (EMPTY if nothing was queued).
        """
        outcome = FlushOutcome.EMPTY
        while True:
            step = await self.flush_once()
            if step is FlushOutcome.EMPTY:
                return outcome
            outcome = step
            if step is FlushOutcome.RETRY:
                return outcome
