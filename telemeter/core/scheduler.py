"""Flush scheduler.

Every flush trigger (queue size, periodic timer, manual request, retry timer)
funnels into ``_trigger``, which enforces single-flight: while a cycle is
running, new triggers only mark it pending. A cycle drains the queue batch by
batch until it is empty or a send fails transiently, in which case the next
attempt is scheduled with exponential backoff.
"""

import asyncio
import concurrent.futures
import contextlib
import logging
from enum import Enum
from typing import Any, Callable

from telemeter.core.dispatcher import BatchDispatcher, FlushOutcome

logger = logging.getLogger("telemeter.scheduler")


class FlushState(Enum):
    IDLE = "idle"
    FLUSHING = "flushing"


class FlushScheduler:
    """Drives a BatchDispatcher on size, time and manual triggers.

    All state is owned by the event loop passed to ``start``. The methods
    safe to call from other threads are ``notify_enqueued`` and
    ``request_flush``.

    Args:
        dispatcher: The dispatcher to run.
        flush_at: Queue size that triggers a flush.
        flush_interval: Seconds between periodic flushes.
        retry_base_delay: Delay before the first retry after a transient failure.
        retry_max_delay: Upper bound of the retry delay.
    """

    def __init__(
        self,
        dispatcher: BatchDispatcher,
        flush_at: int = 20,
        flush_interval: float = 30.0,
        retry_base_delay: float = 5.0,
        retry_max_delay: float = 30.0,
    ) -> None:
        self._dispatcher = dispatcher
        self._queue = dispatcher.queue
        self._flush_at = flush_at
        self._flush_interval = flush_interval
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay

        self._loop: asyncio.AbstractEventLoop | None = None
        self._state = FlushState.IDLE
        self._pending = False
        self._waiters: list[asyncio.Future[None]] = []
        self._task: asyncio.Task[None] | None = None
        self._timer_task: asyncio.Task[None] | None = None
        self._retry_handle: asyncio.TimerHandle | None = None
        self._retry_at: float | None = None
        self._attempt = 0
        self._suppressed = False
        self._cycles = 0

    @property
    def state(self) -> FlushState:
        return self._state

    @property
    def attempt(self) -> int:
        """Consecutive transient failures since the last successful send."""
        return self._attempt

    @property
    def cycles(self) -> int:
        return self._cycles

    @property
    def suppressed(self) -> bool:
        return self._suppressed

    def retry_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = self._retry_base_delay * (2 ** max(0, attempt - 1))
        return min(delay, self._retry_max_delay)

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Bind to the event loop and start the periodic timer."""
        self._loop = loop or asyncio.get_running_loop()
        if self._timer_task is None:
            self._timer_task = self._loop.create_task(self._run_timer())

    async def stop(self) -> None:
        """Cancel timers and any running cycle."""
        if self._timer_task is not None:
            self._timer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._timer_task
            self._timer_task = None
        self._cancel_retry()
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def suppress(self, suppressed: bool) -> None:
        """Ignore (or stop ignoring) every trigger. Used for opt-out."""
        self._suppressed = suppressed
        if suppressed:
            self._cancel_retry()
            self._attempt = 0

    # Triggers

    def notify_enqueued(self, size: int) -> None:
        """Size trigger. Safe to call from any thread."""
        if size < self._flush_at or self._suppressed:
            return
        self._call_on_loop(self._trigger, "size")

    def request_flush(self) -> "asyncio.Future[None] | concurrent.futures.Future[None]":
        """Manual trigger. Bypasses retry backoff.

        Called from a thread other than the scheduler's loop, the request is
        handed to the loop and a ``concurrent.futures.Future`` is returned.

        Returns:
            A future resolved when the flush cycle covering this request ends.

        Raises:
            RuntimeError: If there is no usable event loop.
        """
        loop = self._loop
        if loop is not None and not self._on_loop_thread():
            if loop.is_closed():
                raise RuntimeError("Scheduler event loop is closed")
            return asyncio.run_coroutine_threadsafe(self._flush_requested(), loop)
        return self._trigger("manual", bypass_backoff=True)

    async def _flush_requested(self) -> None:
        await self._trigger("manual", bypass_backoff=True)

    async def flush_and_wait(self, timeout: float | None = None) -> bool:
        """Request a flush and wait for it, at most ``timeout`` seconds.

        Returns:
            False if the wait timed out.
        """
        waiter = self.request_flush()
        try:
            await asyncio.wait_for(asyncio.shield(waiter), timeout)
        except TimeoutError:
            logger.warning(
                f"Flush did not finish within {timeout}s",
                extra={"queue_size": self._queue.size()},
            )
            return False
        return True

    async def wait_idle(self) -> None:
        """Wait until no flush cycle is running."""
        while self._task is not None:
            await asyncio.wait({self._task})

    def _on_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def _call_on_loop(self, fn: Callable[..., Any], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("Flush trigger ignored, scheduler not running")
            return
        if self._on_loop_thread():
            fn(*args)
            return
        try:
            loop.call_soon_threadsafe(fn, *args)
        except RuntimeError as e:
            logger.debug(f"Flush trigger ignored, loop closed: {e}")

    def _in_backoff(self) -> bool:
        return (
            self._retry_at is not None
            and self._loop is not None
            and self._loop.time() < self._retry_at
        )

    def _trigger(self, reason: str, bypass_backoff: bool = False) -> asyncio.Future[None]:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        waiter: asyncio.Future[None] = self._loop.create_future()

        if self._suppressed:
            waiter.set_result(None)
            return waiter
        if not bypass_backoff and self._in_backoff():
            logger.debug(f"Flush trigger '{reason}' deferred to pending retry")
            waiter.set_result(None)
            return waiter

        self._waiters.append(waiter)
        if self._state is FlushState.FLUSHING:
            self._pending = True
            return waiter

        cycle = self._run_cycle(reason)
        try:
            task = self._loop.create_task(cycle)
        except RuntimeError as e:
            cycle.close()
            logger.error(f"Could not start flush cycle ({reason}): {e}")
            self._waiters.remove(waiter)
            waiter.set_result(None)
            return waiter
        self._state = FlushState.FLUSHING
        self._task = task
        return waiter

    # Cycle

    async def _run_cycle(self, reason: str) -> None:
        self._cycles += 1
        logger.debug(f"Flush started ({reason})", extra={"queue_size": self._queue.size()})
        try:
            while True:
                self._pending = False
                outcome = await self._dispatcher.flush_all()
                if outcome is FlushOutcome.RETRY:
                    self._schedule_retry()
                    break
                if outcome is not FlushOutcome.EMPTY:
                    self._reset_backoff()
                if self._suppressed or not self._pending or self._queue.size() == 0:
                    break
        except Exception as e:
            logger.error(f"Flush cycle failed: {e}", exc_info=True)
        finally:
            self._state = FlushState.IDLE
            self._task = None
            waiters, self._waiters = self._waiters, []
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_result(None)

    def _schedule_retry(self) -> None:
        assert self._loop is not None
        self._attempt += 1
        delay = self.retry_delay(self._attempt)
        self._cancel_retry()
        self._retry_at = self._loop.time() + delay
        self._retry_handle = self._loop.call_later(delay, self._on_retry_due)
        logger.warning(
            f"Flush failed, retrying in {delay:.1f}s (attempt {self._attempt})",
            extra={"attempt": self._attempt, "queue_size": self._queue.size()},
        )

    def _on_retry_due(self) -> None:
        self._retry_handle = None
        self._retry_at = None
        if self._queue.size() > 0:
            self._trigger("retry", bypass_backoff=True)

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        self._retry_at = None

    def _reset_backoff(self) -> None:
        self._attempt = 0
        self._cancel_retry()

    async def _run_timer(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            if self._queue.size() > 0:
                self._trigger("timer")
