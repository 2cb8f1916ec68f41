"""Persistent cache of the latest flag evaluation."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from telemeter.flags.models import FeatureFlag, FlagsResponse
from telemeter.storage.state import StateStore

logger = logging.getLogger("telemeter.flags")

STATE_NAME = "feature_flags"


@dataclass(frozen=True)
class FlagGeneration:
    """One successfully loaded set of flags. Replaced as a whole, never mutated."""

    flags: dict[str, FeatureFlag] = field(default_factory=dict)
    request_id: str | None = None
    evaluated_at: int | None = None
    number: int = 0


class FlagCache:
    """Holds the current FlagGeneration and mirrors it into the state store."""

    def __init__(self, state: StateStore) -> None:
        self._state = state
        self._lock = threading.Lock()
        self._current = FlagGeneration()
        self._loaded = False

    @property
    def current(self) -> FlagGeneration:
        with self._lock:
            return self._current

    @property
    def is_loaded(self) -> bool:
        """True once flags were fetched or restored from the store."""
        with self._lock:
            return self._loaded

    def restore(self) -> bool:
        """Load the persisted generation, if any."""
        data = self._state.load(STATE_NAME)
        if not isinstance(data, dict):
            return False
        try:
            flags = {
                key: FeatureFlag.model_validate(value)
                for key, value in (data.get("flags") or {}).items()
            }
        except ValidationError as e:
            logger.warning(f"Discarding persisted flags: {e}")
            self._state.delete(STATE_NAME)
            return False
        with self._lock:
            self._current = FlagGeneration(
                flags=flags,
                request_id=data.get("request_id"),
                evaluated_at=data.get("evaluated_at"),
                number=self._current.number + 1,
            )
            self._loaded = True
        logger.debug(f"Restored {len(flags)} cached flags")
        return True

    def replace(self, response: FlagsResponse) -> FlagGeneration:
        """Atomically install the flags from a successful response and persist them."""
        flags = {} if response.is_quota_limited else response.to_flags()
        if response.is_quota_limited:
            logger.warning("Feature flags are quota limited, clearing cached flags")
        with self._lock:
            generation = FlagGeneration(
                flags=flags,
                request_id=response.request_id,
                evaluated_at=response.evaluated_at,
                number=self._current.number + 1,
            )
            self._current = generation
            self._loaded = True
        self._state.save(STATE_NAME, self._to_state(generation))
        return generation

    @staticmethod
    def _to_state(generation: FlagGeneration) -> dict[str, Any]:
        return {
            "flags": {key: flag.model_dump(mode="json") for key, flag in generation.flags.items()},
            "request_id": generation.request_id,
            "evaluated_at": generation.evaluated_at,
        }

    def get(self, key: str) -> FeatureFlag | None:
        with self._lock:
            return self._current.flags.get(key)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._current.flags)

    def clear(self) -> None:
        with self._lock:
            self._current = FlagGeneration(number=self._current.number + 1)
            self._loaded = False
        self._state.delete(STATE_NAME)
