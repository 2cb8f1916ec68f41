"""Named JSON state records kept in a durable store."""

import json
import logging
from typing import Any

from telemeter.core.errors import StorageError
from telemeter.storage.base import DurableStore, state_key

logger = logging.getLogger("telemeter.storage")


class StateStore:
    """Load and save small JSON records under ``state/<name>``.

    State records are best effort: a failed read is treated as "no record"
    and a failed write is logged, since the in-memory copy held by the
    caller stays authoritative for the running process.
    """

    def __init__(self, store: DurableStore) -> None:
        self._store = store

    def load(self, name: str) -> Any | None:
        try:
            raw = self._store.get(state_key(name))
        except StorageError as e:
            logger.warning(f"Failed to read state {name!r}: {e}", extra={"state": name})
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            logger.warning(f"Discarding corrupted state {name!r}: {e}", extra={"state": name})
            self.delete(name)
            return None

    def save(self, name: str, data: Any) -> bool:
        try:
            self._store.put(state_key(name), json.dumps(data))
            return True
        except (StorageError, TypeError, ValueError) as e:
            logger.error(f"Failed to save state {name!r}: {e}", extra={"state": name})
            return False

    def delete(self, name: str) -> None:
        try:
            self._store.delete(state_key(name))
        except StorageError as e:
            logger.error(f"Failed to delete state {name!r}: {e}", extra={"state": name})
