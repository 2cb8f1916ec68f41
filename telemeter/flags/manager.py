"""Feature flag manager.

Fetches evaluations, serves them from the cache without touching the
network, manages the person and group properties used for targeting, and
reports flag exposures as ``$feature_flag_called`` events.
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Callable, Protocol, TypeVar

from telemeter.core.json_value import NULL, JsonValue
from telemeter.core.observers import ObserverRegistry
from telemeter.flags.cache import FlagCache
from telemeter.flags.models import FeatureFlag, FlagsResponse
from telemeter.flags.tracker import FlagCalledTracker
from telemeter.storage.state import StateStore
from telemeter.transport.base import FlagFetcher, FlagsRequest

logger = logging.getLogger("telemeter.flags")

T = TypeVar("T")

FLAG_CALLED_EVENT = "$feature_flag_called"
PERSON_PROPERTIES_STATE = "person_properties_for_flags"
GROUP_PROPERTIES_STATE = "group_properties_for_flags"


class FlagLoadState(Enum):
    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    LOADED = "loaded"
    LOADED_STALE = "loaded_stale"


class IdentitySource(Protocol):
    """Who flags are evaluated for."""

    @property
    def distinct_id(self) -> str: ...

    @property
    def anonymous_id(self) -> str: ...

    @property
    def groups(self) -> dict[str, str]: ...


CaptureFn = Callable[[str, dict[str, Any]], None]


class FeatureFlagManager:
    """Owns the flag cache and its reload life cycle.

    Args:
        fetcher: Evaluation capability.
        state: State store for the cache and targeting properties.
        identity: Source of distinct id, anonymous id and groups.
        capture: Entry point used to emit $feature_flag_called events.
        send_feature_flag_event: Emit exposure events on tracked reads.
        default_person_properties: Sent with every request, overridden by custom ones.
    """

    def __init__(
        self,
        fetcher: FlagFetcher,
        state: StateStore,
        identity: IdentitySource,
        capture: CaptureFn,
        send_feature_flag_event: bool = True,
        default_person_properties: dict[str, Any] | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._state = state
        self._identity = identity
        self._capture = capture
        self._send_feature_flag_event = send_feature_flag_event
        self._default_person_properties = dict(default_person_properties or {})

        self.cache = FlagCache(state)
        self.tracker = FlagCalledTracker()
        self.flags_loaded: ObserverRegistry[[]] = ObserverRegistry("flags_loaded")

        self._load_state = FlagLoadState.NOT_LOADED
        self._person_properties: dict[str, Any] = {}
        self._group_properties: dict[str, dict[str, Any]] = {}
        self._reload_task: asyncio.Task[bool] | None = None
        self._inflight_request: FlagsRequest | None = None
        self._epoch = 0

    @property
    def load_state(self) -> FlagLoadState:
        return self._load_state

    def restore(self) -> None:
        """Load cached flags and targeting properties persisted by an earlier run."""
        person = self._state.load(PERSON_PROPERTIES_STATE)
        if isinstance(person, dict):
            self._person_properties = person
        groups = self._state.load(GROUP_PROPERTIES_STATE)
        if isinstance(groups, dict):
            self._group_properties = {
                k: v for k, v in groups.items() if isinstance(v, dict)
            }
        if self.cache.restore():
            self._load_state = FlagLoadState.LOADED_STALE

    # Reload

    def build_request(self) -> FlagsRequest:
        distinct_id = self._identity.distinct_id
        anonymous_id = self._identity.anonymous_id
        return FlagsRequest(
            distinct_id=distinct_id,
            anon_distinct_id=anonymous_id if anonymous_id != distinct_id else None,
            groups=dict(self._identity.groups),
            person_properties=self.person_properties,
            group_properties={k: dict(v) for k, v in self._group_properties.items()},
        )

    def reload(self) -> "asyncio.Task[bool]":
        """Fetch flags in the background.

        Concurrent calls for the same identity and targeting snapshot share
        one in-flight fetch. A call made after the snapshot changed queues a
        fresh fetch behind the running one, so it never observes results
        computed for the previous identity.

        Returns:
            A task resolving to True if the cache was refreshed.
        """
        request = self.build_request()
        running = self._reload_task
        if running is not None and not running.done():
            if request == self._inflight_request:
                return running
            self._reload_task = asyncio.get_running_loop().create_task(
                self._reload_after(running, request)
            )
        else:
            self._reload_task = asyncio.get_running_loop().create_task(self._reload(request))
        self._inflight_request = request
        return self._reload_task

    async def _reload_after(self, previous: "asyncio.Task[bool]", request: FlagsRequest) -> bool:
        await asyncio.wait({previous})
        return await self._reload(request)

    async def _reload(self, request: FlagsRequest) -> bool:
        epoch = self._epoch
        had_flags = self.cache.is_loaded
        self._load_state = FlagLoadState.LOADING
        try:
            data = await self._fetcher.fetch(request)
            response = FlagsResponse.model_validate(data)
        except Exception as e:
            self._load_state = FlagLoadState.LOADED_STALE if had_flags else FlagLoadState.NOT_LOADED
            logger.warning(
                f"Failed to load feature flags, keeping cached values: {e}",
                extra={"distinct_id": request.distinct_id},
            )
            return False

        if epoch != self._epoch:
            self._load_state = FlagLoadState.LOADED_STALE if self.cache.is_loaded else FlagLoadState.NOT_LOADED
            logger.debug("Discarding feature flags fetched before the cache was cleared")
            return False

        generation = self.cache.replace(response)
        self._load_state = FlagLoadState.LOADED
        logger.info(
            f"Loaded {len(generation.flags)} feature flags",
            extra={"request_id": generation.request_id},
        )
        self.flags_loaded.notify()
        return True

    async def wait_for_reload(self) -> None:
        task = self._reload_task
        if task is not None:
            await asyncio.wait({task})

    def clear(self) -> None:
        """Drop cached flags and ignore results of any fetch already in flight."""
        self._epoch += 1
        self.cache.clear()
        self.tracker.reset()
        self._load_state = FlagLoadState.NOT_LOADED

    def discard_inflight(self) -> None:
        """Ignore results of any fetch already in flight, keeping the cache."""
        self._epoch += 1

    # Reads

    def get_flag(self, key: str) -> FeatureFlag:
        """Raw cache peek. Never tracked, never fetches."""
        return self.cache.get(key) or FeatureFlag.missing(key)

    def get_feature_flag(self, key: str) -> FeatureFlag:
        flag = self.cache.get(key)
        if flag is None:
            return FeatureFlag.missing(key)
        self._track(flag)
        return flag

    def is_enabled(self, key: str, default: bool = False) -> bool:
        flag = self.cache.get(key)
        if flag is None:
            return default
        self._track(flag)
        return flag.is_enabled

    def get_variant(self, key: str, default: str | None = None) -> str | None:
        flag = self.cache.get(key)
        if flag is None:
            return default
        self._track(flag)
        return flag.variant or default

    def get_payload(self, key: str) -> JsonValue:
        flag = self.cache.get(key)
        if flag is None:
            return NULL
        return flag.payload_json()

    def get_payload_as(self, key: str, type_: type[T], default: T | None = None) -> T | None:
        flag = self.cache.get(key)
        if flag is None:
            return default
        return flag.payload_as(type_, default)

    def _track(self, flag: FeatureFlag) -> None:
        if not self._send_feature_flag_event:
            return
        generation = self.cache.current
        distinct_id = self._identity.distinct_id
        if not self.tracker.should_track(distinct_id, flag.key, flag.value, generation.number):
            return

        properties: dict[str, Any] = {
            "$feature_flag": flag.key,
            "$feature_flag_response": flag.value,
        }
        if generation.request_id:
            properties["$feature_flag_request_id"] = generation.request_id
        if generation.evaluated_at is not None:
            properties["$feature_flag_evaluated_at"] = generation.evaluated_at
        if flag.id is not None:
            properties["$feature_flag_id"] = flag.id
        if flag.version is not None:
            properties["$feature_flag_version"] = flag.version
        if flag.reason:
            properties["$feature_flag_reason"] = flag.reason
        self._capture(FLAG_CALLED_EVENT, properties)

    # Targeting properties

    @property
    def person_properties(self) -> dict[str, Any]:
        """Default person properties overlaid with the custom ones."""
        merged = dict(self._default_person_properties)
        merged.update(self._person_properties)
        return merged

    @property
    def group_properties(self) -> dict[str, dict[str, Any]]:
        return {k: dict(v) for k, v in self._group_properties.items()}

    def _targeting_properties(self, properties: Any, what: str) -> bool:
        if not isinstance(properties, dict):
            logger.warning(f"Ignoring {what}: expected a dict, got {type(properties).__name__}")
            return False
        try:
            json.dumps(properties)
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring {what}: not JSON-serializable: {e}")
            return False
        return True

    def set_person_properties(self, properties: dict[str, Any]) -> None:
        if not properties or not self._targeting_properties(properties, "person properties"):
            return
        self._person_properties.update(properties)
        self._state.save(PERSON_PROPERTIES_STATE, self._person_properties)

    def reset_person_properties(self) -> None:
        self._person_properties = {}
        self._state.delete(PERSON_PROPERTIES_STATE)

    def set_group_properties(self, group_type: str, properties: dict[str, Any]) -> None:
        if not group_type or not properties:
            return
        if not self._targeting_properties(properties, f"{group_type!r} group properties"):
            return
        self._group_properties.setdefault(group_type, {}).update(properties)
        self._state.save(GROUP_PROPERTIES_STATE, self._group_properties)

    def reset_group_properties(self, group_type: str | None = None) -> None:
        if group_type is None:
            self._group_properties = {}
            self._state.delete(GROUP_PROPERTIES_STATE)
            return
        self._group_properties.pop(group_type, None)
        self._state.save(GROUP_PROPERTIES_STATE, self._group_properties)

    async def close(self) -> None:
        task = self._reload_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
