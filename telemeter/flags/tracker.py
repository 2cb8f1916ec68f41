"""De-duplication of $feature_flag_called events."""

import threading

from cachetools import LRUCache

DEFAULT_CAPACITY = 1000


class FlagCalledTracker:
    """Remembers which (distinct id, flag, value) exposures were reported.

    Bounded by an LRU so a long-lived process reading many flags for many
    identities cannot grow without limit. Cleared whenever a new flag
    generation is loaded, so the first read after a reload is reported again.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._seen: LRUCache[tuple[str, str, str], bool] = LRUCache(maxsize=capacity)
        self._generation = -1
        self._lock = threading.Lock()

    def should_track(self, distinct_id: str, key: str, value: object, generation: int) -> bool:
        """Record the exposure; True only the first time it is seen this generation."""
        entry = (distinct_id, key, str(value))
        with self._lock:
            if generation != self._generation:
                self._seen.clear()
                self._generation = generation
            if entry in self._seen:
                # touch to keep it recent
                self._seen[entry] = True
                return False
            self._seen[entry] = True
            return True

    def reset(self) -> None:
        with self._lock:
            self._seen.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
