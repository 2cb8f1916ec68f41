"""Exception capture pipeline."""

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable

from telemeter.errortracking.builder import (
    EXCEPTION_EVENT,
    MAX_EXCEPTION_DEPTH,
    MAX_EXCEPTIONS,
    build_exception_properties,
    build_properties_from_text,
)
from telemeter.errortracking.sources import ErrorSource
from telemeter.errortracking.stacktrace import MAX_STACK_FRAMES

logger = logging.getLogger("telemeter.errortracking")

CaptureFn = Callable[[str, dict[str, Any]], None]


class CaptureState(Enum):
    STOPPED = "stopped"
    STARTED = "started"


class ExceptionManager:
    """Turns exceptions into ``$exception`` events.

    Manual captures (``capture_exception``) are always emitted. Automatic
    captures arriving through the error source are debounced: one arriving
    less than ``debounce_interval_ms`` after the previous emitted capture is
    dropped. Nothing raised inside the pipeline reaches the caller.

    Args:
        capture: Shared capture entry point of the client.
        source: Error source registered on start, or None for manual only.
        debounce_interval_ms: Minimum gap between automatic captures.
        person_url: Returns a deep link to the current person, if known.
        clock: Monotonic clock in seconds.
    """

    def __init__(
        self,
        capture: CaptureFn,
        source: ErrorSource | None = None,
        debounce_interval_ms: int = 1000,
        person_url: Callable[[], str | None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        max_depth: int = MAX_EXCEPTION_DEPTH,
        max_exceptions: int = MAX_EXCEPTIONS,
        max_frames: int = MAX_STACK_FRAMES,
    ) -> None:
        self._capture = capture
        self._source = source
        self._debounce_interval = debounce_interval_ms / 1000.0
        self._person_url = person_url
        self._clock = clock
        self._max_depth = max_depth
        self._max_exceptions = max_exceptions
        self._max_frames = max_frames
        self._state = CaptureState.STOPPED
        self._last_capture_at: float | None = None
        self._lock = threading.Lock()

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def source(self) -> ErrorSource | None:
        return self._source

    def start(self, source: ErrorSource | None = None) -> None:
        """Register with the error source (replacing the configured one if given)."""
        if self._state is CaptureState.STARTED:
            return
        if source is not None:
            self._source = source
        if self._source is not None:
            try:
                self._source.register(self)
            except Exception as e:
                logger.error(f"Failed to register error source {self._source.name}: {e}", exc_info=True)
                return
        self._state = CaptureState.STARTED
        logger.debug("Exception capture started")

    def stop(self) -> None:
        if self._state is CaptureState.STOPPED:
            return
        if self._source is not None:
            try:
                self._source.unregister()
            except Exception as e:
                logger.error(f"Failed to unregister error source {self._source.name}: {e}", exc_info=True)
        self._state = CaptureState.STOPPED
        logger.debug("Exception capture stopped")

    # Entry points

    def capture_exception(
        self, exc: BaseException | None, properties: dict[str, Any] | None = None
    ) -> bool:
        """Capture a handled exception. Never debounced.

        Returns:
            True if an event was emitted.
        """
        if exc is None:
            logger.warning("capture_exception called without an exception")
            return False
        try:
            props = build_exception_properties(
                exc,
                handled=True,
                mechanism_type="generic",
                max_depth=self._max_depth,
                max_exceptions=self._max_exceptions,
                max_frames=self._max_frames,
            )
            self._emit(props, properties)
            return True
        except Exception as e:
            logger.error(f"Failed to capture exception: {e}", exc_info=True)
            return False

    def on_exception(self, exc: BaseException, mechanism: str) -> None:
        """Automatic capture from the structured error source."""
        if self._state is not CaptureState.STARTED or self._debounced():
            return
        try:
            props = build_exception_properties(
                exc,
                handled=False,
                mechanism_type=mechanism,
                max_depth=self._max_depth,
                max_exceptions=self._max_exceptions,
                max_frames=self._max_frames,
            )
            self._emit(props, None)
        except Exception as e:
            logger.error(f"Failed to capture unhandled exception: {e}", exc_info=True)

    def on_raw(self, message: str, stack_trace: str | None, mechanism: str) -> None:
        """Automatic capture from log text."""
        if self._state is not CaptureState.STARTED or self._debounced():
            return
        try:
            props = build_properties_from_text(
                message,
                stack_trace,
                handled=False,
                mechanism_type=mechanism,
                max_frames=self._max_frames,
            )
            self._emit(props, None)
        except Exception as e:
            logger.error(f"Failed to capture logged exception: {e}", exc_info=True)

    def _debounced(self) -> bool:
        now = self._clock()
        with self._lock:
            last = self._last_capture_at
            if last is not None and now - last < self._debounce_interval:
                logger.debug("Exception dropped by debounce")
                return True
            self._last_capture_at = now
        return False

    def _emit(self, props: dict[str, Any], extra: dict[str, Any] | None) -> None:
        if extra:
            for key, value in extra.items():
                props.setdefault(key, value)
        if self._person_url is not None:
            url = self._person_url()
            if url:
                props["$exception_personURL"] = url
        with self._lock:
            self._last_capture_at = self._clock()
        self._capture(EXCEPTION_EVENT, props)
