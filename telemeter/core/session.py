"""Session id rotation."""

import threading
import time
from typing import Callable

from telemeter.core.ids import uuid7_str
from telemeter.storage.state import StateStore

STATE_NAME = "session"

SESSION_INACTIVITY_TIMEOUT = 30 * 60
SESSION_MAX_LENGTH = 24 * 60 * 60


class SessionManager:
    """Tracks the current session id.

    A session ends after 30 minutes without activity or 24 hours after it
    started, whichever comes first. Timestamps are wall-clock seconds so a
    session can be resumed after a restart.
    """

    def __init__(
        self,
        state: StateStore,
        clock: Callable[[], float] = time.time,
        inactivity_timeout: float = SESSION_INACTIVITY_TIMEOUT,
        max_length: float = SESSION_MAX_LENGTH,
    ) -> None:
        self._state = state
        self._clock = clock
        self._inactivity_timeout = inactivity_timeout
        self._max_length = max_length
        self._lock = threading.Lock()
        self._session_id: str | None = None
        self._started_at = 0.0
        self._last_activity_at = 0.0
        self._persisted_at = 0.0

    def restore(self) -> None:
        data = self._state.load(STATE_NAME)
        if not isinstance(data, dict) or not data.get("session_id"):
            return
        with self._lock:
            self._session_id = str(data["session_id"])
            self._started_at = float(data.get("started_at", 0.0))
            self._last_activity_at = float(data.get("last_activity_at", 0.0))

    def _expired(self, now: float) -> bool:
        return (
            self._session_id is None
            or now - self._last_activity_at > self._inactivity_timeout
            or now - self._started_at > self._max_length
        )

    def touch(self) -> str:
        """Record activity and return the (possibly new) session id."""
        now = self._clock()
        with self._lock:
            new_session = self._expired(now)
            if new_session:
                self._session_id = uuid7_str()
                self._started_at = now
            self._last_activity_at = now
            # activity alone is persisted at most once a minute
            persist = new_session or now - self._persisted_at >= 60
            if persist:
                self._persisted_at = now
            record = {
                "session_id": self._session_id,
                "started_at": self._started_at,
                "last_activity_at": self._last_activity_at,
            }
            session_id = self._session_id
        if persist:
            self._state.save(STATE_NAME, record)
        return session_id

    @property
    def session_id(self) -> str | None:
        with self._lock:
            return self._session_id

    def reset(self) -> None:
        """End the current session; the next touch starts a new one."""
        with self._lock:
            self._session_id = None
        self._state.delete(STATE_NAME)
