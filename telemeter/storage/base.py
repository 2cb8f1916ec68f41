"""Durable store protocol.

ALL persistence goes through a store. The queue, the flag cache and the
identity/session records keep in-memory views, but the store is the source
of truth that is reloaded at startup.
"""

from typing import Protocol

EVENT_PREFIX = "events/"
STATE_PREFIX = "state/"

# Named state records the client keeps next to queued events: identity, session,
# super properties, cached flags, person and group targeting properties, opt-out.
STATE_RECORD_COUNT = 7


class DurableStore(Protocol):
    """Protocol defining the interface for key/value stores.

    Stores are responsible for:
    - Per-key atomic writes (put) and reads (get)
    - Remembering the order in which keys were first created (list_keys)
    - Reporting every I/O failure to the caller as StorageError

    Stores contain no business logic; eviction, retries and decisions about
    dropping data belong to their callers.
    """

    def put(self, key: str, value: str) -> None:
        """Create or overwrite a value.

        Overwriting keeps the key's original creation position.

        Raises:
            StorageError: If the value could not be written.
        """
        ...

    def get(self, key: str) -> str | None:
        """Return the stored value, or None if the key does not exist.

        Raises:
            StorageError: If the value exists but could not be read.
        """
        ...

    def delete(self, key: str) -> None:
        """Remove a key. Deleting a missing key is not an error.

        Raises:
            StorageError: If the key could not be removed.
        """
        ...

    def list_keys(self, prefix: str = "") -> list[str]:
        """Return keys starting with prefix, oldest first (creation order)."""
        ...

    def clear(self, prefix: str = "") -> None:
        """Remove every key starting with prefix.

        Raises:
            StorageError: If any key could not be removed.
        """
        ...

    def close(self) -> None:
        """Release resources held by the store."""
        ...


def event_key(event_uuid: str) -> str:
    return f"{EVENT_PREFIX}{event_uuid}"


def state_key(name: str) -> str:
    return f"{STATE_PREFIX}{name}"
