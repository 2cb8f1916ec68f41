"""In-memory durable store."""

import threading

from telemeter.core.errors import StorageError


class MemoryStore:
    """Store backed by an insertion-ordered dict.

    Unbounded by default, which makes it suitable for tests and for processes
    that accept losing queued events on exit.

    With ``max_entries`` set it behaves like a constrained preference store:
    when full, creating a new key evicts the oldest key sharing the new key's
    namespace (the text up to and including the first "/"), or the oldest key
    overall if that namespace is empty. Values larger than
    ``max_value_bytes`` are rejected.

    Evictions are not reported to the EventQueue, so a bounded store used by
    the client needs room for ``max_queue_size`` events plus
    ``STATE_RECORD_COUNT`` state records. ``Telemeter`` rejects a smaller one.

    Args:
        max_entries: Maximum number of keys. 0 means unbounded (default).
        max_value_bytes: Maximum UTF-8 size of a value. 0 means unlimited.
    """

    def __init__(self, max_entries: int = 0, max_value_bytes: int = 0) -> None:
        self._data: dict[str, str] = {}
        self._max_entries = max_entries
        self._max_value_bytes = max_value_bytes
        self._evicted_count = 0
        self._lock = threading.Lock()

    def put(self, key: str, value: str) -> None:
        if self._max_value_bytes and len(value.encode("utf-8")) > self._max_value_bytes:
            raise StorageError(
                f"value for {key!r} exceeds {self._max_value_bytes} bytes"
            )
        with self._lock:
            if key not in self._data and self._max_entries:
                while len(self._data) >= self._max_entries:
                    self._evict_for(key)
            self._data[key] = value

    def _evict_for(self, key: str) -> None:
        namespace = key.split("/", 1)[0] + "/" if "/" in key else ""
        victim = next((k for k in self._data if namespace and k.startswith(namespace)), None)
        if victim is None:
            victim = next(iter(self._data))
        del self._data[victim]
        self._evicted_count += 1

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def list_keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return [k for k in self._data if k.startswith(prefix)]

    def clear(self, prefix: str = "") -> None:
        with self._lock:
            for key in [k for k in self._data if k.startswith(prefix)]:
                del self._data[key]

    def close(self) -> None:
        pass

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    @property
    def evicted_count(self) -> int:
        """Number of keys dropped to stay within max_entries."""
        return self._evicted_count
