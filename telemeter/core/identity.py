"""Distinct id, anonymous id and group membership."""

import logging
import threading
from typing import Any

from telemeter.core.ids import uuid7_str
from telemeter.storage.state import StateStore

logger = logging.getLogger("telemeter.identity")

STATE_NAME = "identity"
STATE_VERSION = 1


class IdentityManager:
    """Persisted identity record.

    Events are attributed to ``distinct_id``. Until ``identify`` is called
    that is the anonymous id, a UUIDv7 minted on first use.

    Args:
        state: State store holding the record.
        reuse_anonymous_id: Keep the anonymous id across ``reset``.
    """

    def __init__(self, state: StateStore, reuse_anonymous_id: bool = False) -> None:
        self._state = state
        self._reuse_anonymous_id = reuse_anonymous_id
        self._lock = threading.Lock()
        self._anonymous_id = uuid7_str()
        self._distinct_id = self._anonymous_id
        self._is_identified = False
        self._groups: dict[str, str] = {}

    def restore(self) -> None:
        data = self._state.load(STATE_NAME)
        if not isinstance(data, dict) or not data.get("anonymousId"):
            self._save()
            return
        with self._lock:
            self._anonymous_id = str(data["anonymousId"])
            self._distinct_id = str(data.get("distinctId") or self._anonymous_id)
            self._is_identified = bool(data.get("isIdentified", False))
            groups = data.get("groups") or {}
            self._groups = {str(k): str(v) for k, v in groups.items()}

    def _save(self) -> None:
        with self._lock:
            record: dict[str, Any] = {
                "_version": STATE_VERSION,
                "anonymousId": self._anonymous_id,
                "distinctId": self._distinct_id,
                "isIdentified": self._is_identified,
                "groups": dict(self._groups),
            }
        self._state.save(STATE_NAME, record)

    @property
    def distinct_id(self) -> str:
        with self._lock:
            return self._distinct_id

    @property
    def anonymous_id(self) -> str:
        with self._lock:
            return self._anonymous_id

    @property
    def is_identified(self) -> bool:
        with self._lock:
            return self._is_identified

    @property
    def groups(self) -> dict[str, str]:
        with self._lock:
            return dict(self._groups)

    def identify(self, distinct_id: str) -> str | None:
        """Switch to a known identity.

        Returns:
            The previous distinct id, or None if nothing changed.
        """
        with self._lock:
            if distinct_id == self._distinct_id and self._is_identified:
                return None
            previous = self._distinct_id
            self._distinct_id = distinct_id
            self._is_identified = True
        self._save()
        return previous

    def set_group(self, group_type: str, group_key: str) -> None:
        with self._lock:
            self._groups[group_type] = group_key
        self._save()

    def reset(self) -> None:
        """Forget the known identity and groups; mint a new anonymous id."""
        with self._lock:
            if not self._reuse_anonymous_id:
                self._anonymous_id = uuid7_str()
            self._distinct_id = self._anonymous_id
            self._is_identified = False
            self._groups = {}
        self._save()
