"""Telemeter client.

The client wires the pipeline together and is the only public entry point:

    capture -> EventQueue -> FlushScheduler -> BatchDispatcher -> Transport

Feature flag exposures and captured exceptions re-enter the same ``capture``
path. No public method raises; failures are logged on ``telemeter.client``
and, for flags, answered from the cache.
"""

import asyncio
import concurrent.futures
import json
import logging
from datetime import datetime
from types import TracebackType
from typing import Any, Callable, TypeVar

from pydantic import ValidationError

from telemeter.core.config import PersonProfiles, TelemetryConfig
from telemeter.core.dispatcher import BatchDispatcher
from telemeter.core.errors import ConfigError, StorageError
from telemeter.core.event import CapturedEvent
from telemeter.core.identity import IdentityManager
from telemeter.core.json_value import NULL, JsonValue
from telemeter.core.logging import configure_logging
from telemeter.core.platform import default_person_properties, sdk_properties
from telemeter.core.queue import EventQueue
from telemeter.core.scheduler import FlushScheduler
from telemeter.core.session import SessionManager
from telemeter.errortracking.manager import ExceptionManager
from telemeter.errortracking.sources import ErrorSource, select_error_source
from telemeter.flags.manager import FeatureFlagManager
from telemeter.flags.models import FeatureFlag
from telemeter.storage.base import STATE_RECORD_COUNT, DurableStore
from telemeter.storage.file import FileStore
from telemeter.storage.memory import MemoryStore
from telemeter.storage.state import StateStore
from telemeter.transport.base import FlagFetcher, Transport
from telemeter.transport.http import HttpFlagFetcher, HttpTransport

T = TypeVar("T")

SUPER_PROPERTIES_STATE = "super_properties"
OPT_OUT_STATE = "opt_out"

IDENTIFY_EVENT = "$identify"
ALIAS_EVENT = "$create_alias"
GROUP_IDENTIFY_EVENT = "$groupidentify"
SCREEN_EVENT = "$screen"


class Telemeter:
    """Client-side telemetry pipeline.

    Construction restores persisted state (queued events, identity, session,
    cached flags) synchronously; ``start`` binds the client to the running
    event loop, starts the flush timer, installs the error source and
    preloads flags. Use it as an async context manager to get a bounded
    final flush on exit::

        async with Telemeter(TelemetryConfig(api_key="phc_...")) as client:
            client.capture("checkout_started", {"cart_size": 3})

    Args:
        config: Client configuration.
        store: Durable store; defaults to a FileStore at ``config.storage_path``
            or a MemoryStore when no path is configured.
        transport: Batch delivery capability; defaults to HttpTransport.
        flag_fetcher: Flag evaluation capability; defaults to HttpFlagFetcher.
        error_source: Error source for automatic exception capture; selected
            from ``config.exception_source`` when not given.
        logger: Logger used for client level messages.

    Raises:
        ConfigError: If a bounded MemoryStore is too small for the queue.
    """

    def __init__(
        self,
        config: TelemetryConfig,
        *,
        store: DurableStore | None = None,
        transport: Transport | None = None,
        flag_fetcher: FlagFetcher | None = None,
        error_source: ErrorSource | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self._injected_logger = logger is not None
        self._log = logger or logging.getLogger("telemeter.client")

        self._store = store if store is not None else self._default_store(config)
        self._check_store_capacity(self._store, config)
        self._state = StateStore(self._store)

        self.identity = IdentityManager(self._state, reuse_anonymous_id=config.reuse_anonymous_id)
        self.session = SessionManager(self._state)

        self.queue = EventQueue(self._store, max_queue_size=config.max_queue_size)
        self._transport = transport or HttpTransport(
            config.batch_url, timeout=config.request_timeout_seconds
        )
        self.dispatcher = BatchDispatcher(
            self.queue, self._transport, config.api_key, max_batch_size=config.max_batch_size
        )
        self.scheduler = FlushScheduler(
            self.dispatcher,
            flush_at=config.flush_at,
            flush_interval=config.flush_interval_seconds,
            retry_base_delay=config.retry_base_delay_seconds,
            retry_max_delay=config.retry_max_delay_seconds,
        )
        self.queue.on_enqueued = self.scheduler.notify_enqueued

        self._fetcher = flag_fetcher or HttpFlagFetcher(
            config.flags_url, config.api_key, timeout=config.request_timeout_seconds
        )
        self.flags = FeatureFlagManager(
            self._fetcher,
            self._state,
            self.identity,
            self.capture,
            send_feature_flag_event=config.send_feature_flag_event,
            default_person_properties=(
                default_person_properties(config.app_version)
                if config.send_default_person_properties_for_flags
                else None
            ),
        )

        self._error_source = error_source
        self.exceptions = ExceptionManager(
            self.capture,
            debounce_interval_ms=config.exception_debounce_interval_ms,
            person_url=self._person_url,
        )

        self._super_properties: dict[str, Any] = {}
        self._opted_out = False
        self._started = False
        self._closed = False
        self._background: set[asyncio.Task[Any]] = set()

        self._restore()

    @staticmethod
    def _check_store_capacity(store: DurableStore, config: TelemetryConfig) -> None:
        if not isinstance(store, MemoryStore) or not store.max_entries:
            return
        needed = config.max_queue_size + STATE_RECORD_COUNT
        if store.max_entries < needed:
            raise ConfigError(
                f"MemoryStore max_entries={store.max_entries} cannot hold "
                f"max_queue_size={config.max_queue_size} events plus state; need at least {needed}"
            )

    def _default_store(self, config: TelemetryConfig) -> DurableStore:
        if not config.storage_path:
            return MemoryStore()
        try:
            return FileStore(config.storage_path)
        except StorageError as e:
            self._log.error(f"Cannot open storage, events will not survive a restart: {e}")
            return MemoryStore()

    def _restore(self) -> None:
        self.identity.restore()
        self.session.restore()
        supers = self._state.load(SUPER_PROPERTIES_STATE)
        if isinstance(supers, dict):
            self._super_properties = supers
        self._opted_out = bool(self._state.load(OPT_OUT_STATE))
        self.queue.load()
        self.flags.restore()

    # Life cycle

    async def start(self) -> None:
        """Bind to the running loop and start background work."""
        if self._started or self._closed:
            return
        try:
            if not self._injected_logger:
                configure_logging(self.config.log_level)
            loop = asyncio.get_running_loop()
            self.scheduler.start(loop)
            self.scheduler.suppress(self._opted_out)
            if self.config.capture_exceptions:
                source = self._error_source or select_error_source(
                    self.config.exception_source, loop=loop
                )
                self.exceptions.start(source)
            self._started = True
            if self.config.preload_feature_flags and not self._opted_out:
                self._reload_in_background()
            self.scheduler.notify_enqueued(self.queue.size())
            self._log.info(
                "Telemeter started",
                extra={"queue_size": self.queue.size(), "distinct_id": self.identity.distinct_id},
            )
        except Exception as e:
            self._log.error(f"Failed to start telemeter: {e}", exc_info=True)

    async def shutdown(self, timeout: float | None = None) -> None:
        """Unregister the error source, flush once (bounded) and release resources."""
        if self._closed:
            return
        self._closed = True
        self.exceptions.stop()
        try:
            if not self._opted_out and self.queue.size() > 0:
                await self.scheduler.flush_and_wait(timeout or self.config.shutdown_timeout_seconds)
            await self.scheduler.stop()
            await self.flags.close()
            for task in list(self._background):
                task.cancel()
            if self._background:
                await asyncio.wait(self._background)
            await self._transport.close()
            await self._fetcher.close()
            self._store.close()
        except Exception as e:
            self._log.error(f"Error during telemeter shutdown: {e}", exc_info=True)
        self._started = False
        self._log.info("Telemeter stopped", extra={"queue_size": self.queue.size()})

    async def __aenter__(self) -> "Telemeter":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.shutdown()

    def _spawn(self, task: "asyncio.Task[T]") -> "asyncio.Task[T]":
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _reload_in_background(self) -> None:
        if self._opted_out:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self._log.debug("No running event loop, feature flag reload skipped")
            return
        self._spawn(self.flags.reload())

    # Capture

    @property
    def distinct_id(self) -> str:
        return self.identity.distinct_id

    @property
    def queue_size(self) -> int:
        return self.queue.size()

    @property
    def is_opted_out(self) -> bool:
        return self._opted_out

    def _process_person_profile(self) -> bool:
        mode = self.config.person_profiles
        if mode is PersonProfiles.ALWAYS:
            return True
        if mode is PersonProfiles.NEVER:
            return False
        return self.identity.is_identified

    def _event_properties(self, properties: dict[str, Any] | None) -> dict[str, Any]:
        props = sdk_properties()
        if self.config.app_version:
            props["$app_version"] = self.config.app_version
        props.update(self._super_properties)
        groups = self.identity.groups
        if groups:
            props["$groups"] = groups
        props["$session_id"] = self.session.touch()
        props["$process_person_profile"] = self._process_person_profile()
        if properties:
            props.update(properties)
        return props

    def capture(
        self,
        event: str,
        properties: dict[str, Any] | None = None,
        *,
        distinct_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> str | None:
        """Queue an event.

        Returns:
            The event uuid, or None if the event was dropped.
        """
        try:
            if self._opted_out:
                self._log.debug(f"Opted out, dropping {event}")
                return None
            if not isinstance(event, str) or not event.strip():
                self._log.warning("Ignoring capture with an empty event name")
                return None
            fields: dict[str, Any] = {
                "event": event,
                "distinct_id": distinct_id or self.identity.distinct_id,
                "properties": self._event_properties(properties),
            }
            if timestamp is not None:
                fields["timestamp"] = timestamp
            captured = CapturedEvent(**fields)
        except ValidationError as e:
            self._log.warning(f"Ignoring malformed {event!r} event: {e}", extra={"event_name": event})
            return None
        except Exception as e:
            self._log.error(f"Failed to capture {event!r}: {e}", exc_info=True)
            return None

        if not self.queue.enqueue(captured):
            return None
        return captured.uuid

    def screen(self, screen_name: str, properties: dict[str, Any] | None = None) -> str | None:
        if not screen_name:
            self._log.warning("Ignoring screen with an empty name")
            return None
        props = dict(properties or {})
        props["$screen_name"] = screen_name
        return self.capture(SCREEN_EVENT, props)

    def alias(self, alias: str) -> str | None:
        if not alias:
            self._log.warning("Ignoring alias with an empty value")
            return None
        return self.capture(ALIAS_EVENT, {"alias": alias})

    def group(
        self,
        group_type: str,
        group_key: str,
        properties: dict[str, Any] | None = None,
    ) -> str | None:
        """Associate the current identity with a group and describe the group."""
        if not group_type or not group_key:
            self._log.warning("Ignoring group without type or key")
            return None
        try:
            changed = self.identity.groups.get(group_type) != group_key
            self.identity.set_group(group_type, group_key)
        except Exception as e:
            self._log.error(f"Failed to set group {group_type!r}: {e}", exc_info=True)
            return None
        uuid = self.capture(
            GROUP_IDENTIFY_EVENT,
            {"$group_type": group_type, "$group_key": group_key, "$group_set": properties or {}},
        )
        if changed and not self._opted_out:
            self._reload_in_background()
        return uuid

    def register(self, key: str, value: Any) -> None:
        """Attach a property to every future event."""
        if not isinstance(key, str) or not key:
            self._log.warning("Ignoring register with an empty key")
            return
        try:
            json.dumps({key: value})
        except (TypeError, ValueError) as e:
            self._log.warning(f"Ignoring super property {key!r}: not JSON-serializable: {e}")
            return
        try:
            self._super_properties[key] = value
            self._state.save(SUPER_PROPERTIES_STATE, self._super_properties)
        except Exception as e:
            self._log.error(f"Failed to register {key!r}: {e}", exc_info=True)

    def unregister(self, key: str) -> None:
        try:
            if self._super_properties.pop(key, None) is not None:
                self._state.save(SUPER_PROPERTIES_STATE, self._super_properties)
        except Exception as e:
            self._log.error(f"Failed to unregister {key!r}: {e}", exc_info=True)

    def capture_exception(
        self, exc: BaseException | None, properties: dict[str, Any] | None = None
    ) -> bool:
        """Capture a handled exception as a ``$exception`` event."""
        if self._opted_out:
            return False
        return self.exceptions.capture_exception(exc, properties)

    def _person_url(self) -> str | None:
        distinct_id = self.identity.distinct_id
        if not distinct_id:
            return None
        return f"{self.config.ui_host}/project/{self.config.api_key}/person/{distinct_id}"

    # Identity

    async def identify(
        self,
        distinct_id: str,
        properties: dict[str, Any] | None = None,
        properties_set_once: dict[str, Any] | None = None,
    ) -> bool:
        """Switch to a known identity, then reload flags for it.

        The identity change and the ``$identify`` event happen immediately;
        the returned coroutine completes when the flag reload has finished.

        Returns:
            True if flags were reloaded for the new identity.
        """
        if self._opted_out:
            return False
        if not isinstance(distinct_id, str) or not distinct_id.strip():
            self._log.warning("Ignoring identify with an empty distinct id")
            return False
        try:
            person_properties: dict[str, Any] = {}
            person_properties.update(properties_set_once or {})
            person_properties.update(properties or {})
            self.flags.set_person_properties(person_properties)

            anonymous_id = self.identity.anonymous_id
            previous = self.identity.identify(distinct_id)
            if previous is None and not person_properties:
                return True

            event_properties: dict[str, Any] = {"$anon_distinct_id": anonymous_id}
            if properties:
                event_properties["$set"] = dict(properties)
            if properties_set_once:
                event_properties["$set_once"] = dict(properties_set_once)
            self.capture(IDENTIFY_EVENT, event_properties)
        except Exception as e:
            self._log.error(f"Failed to identify {distinct_id!r}: {e}", exc_info=True)
            return False
        return await self.reload_feature_flags()

    async def reset(self) -> bool:
        """Forget the identity, session, groups and targeting properties, then reload flags."""
        try:
            self.identity.reset()
            self.session.reset()
            self._super_properties = {}
            self._state.delete(SUPER_PROPERTIES_STATE)
            self.flags.reset_person_properties()
            self.flags.reset_group_properties()
            self.flags.clear()
        except Exception as e:
            self._log.error(f"Failed to reset: {e}", exc_info=True)
            return False
        if self._opted_out:
            return False
        return await self.reload_feature_flags()

    # Delivery

    def flush(self) -> "asyncio.Future[None] | concurrent.futures.Future[None] | None":
        """Request a flush without waiting for it.

        Safe to call from any thread. Off the client's loop the returned
        future is a ``concurrent.futures.Future``.

        Returns:
            A future resolved when the flush cycle ends, or None if there is
            no running event loop.
        """
        try:
            return self.scheduler.request_flush()
        except RuntimeError as e:
            self._log.warning(f"Cannot flush without a running event loop: {e}")
            return None

    def opt_out(self) -> None:
        """Stop capturing and drop everything queued."""
        self._opted_out = True
        self._state.save(OPT_OUT_STATE, True)
        self.scheduler.suppress(True)
        self.flags.discard_inflight()
        self.queue.clear()

    def opt_in(self) -> None:
        self._opted_out = False
        self._state.save(OPT_OUT_STATE, False)
        self.scheduler.suppress(False)

    # Feature flags

    async def reload_feature_flags(self) -> bool:
        """Fetch flags now; concurrent calls share one request."""
        if self._opted_out:
            return False
        try:
            return await self.flags.reload()
        except Exception as e:
            self._log.error(f"Failed to reload feature flags: {e}", exc_info=True)
            return False

    def get_feature_flag(self, key: str) -> FeatureFlag:
        try:
            return self.flags.get_feature_flag(key)
        except Exception as e:
            self._log.error(f"Failed to read flag {key!r}: {e}", extra={"flag_key": key})
            return FeatureFlag.missing(key)

    def is_feature_enabled(self, key: str, default: bool = False) -> bool:
        try:
            return self.flags.is_enabled(key, default)
        except Exception as e:
            self._log.error(f"Failed to read flag {key!r}: {e}", extra={"flag_key": key})
            return default

    def get_feature_flag_variant(self, key: str, default: str | None = None) -> str | None:
        try:
            return self.flags.get_variant(key, default)
        except Exception as e:
            self._log.error(f"Failed to read flag {key!r}: {e}", extra={"flag_key": key})
            return default

    def get_feature_flag_payload(self, key: str) -> JsonValue:
        try:
            return self.flags.get_payload(key)
        except Exception as e:
            self._log.error(f"Failed to read payload of {key!r}: {e}", extra={"flag_key": key})
            return NULL

    def get_feature_flag_payload_as(self, key: str, type_: type[T], default: T | None = None) -> T | None:
        try:
            return self.flags.get_payload_as(key, type_, default)
        except Exception as e:
            self._log.error(f"Failed to read payload of {key!r}: {e}", extra={"flag_key": key})
            return default

    def set_person_properties_for_flags(
        self, properties: dict[str, Any], reload_feature_flags: bool = True
    ) -> None:
        try:
            self.flags.set_person_properties(properties)
        except Exception as e:
            self._log.error(f"Failed to set person properties for flags: {e}", exc_info=True)
            return
        if reload_feature_flags:
            self._reload_in_background()

    def reset_person_properties_for_flags(self, reload_feature_flags: bool = True) -> None:
        try:
            self.flags.reset_person_properties()
        except Exception as e:
            self._log.error(f"Failed to reset person properties for flags: {e}", exc_info=True)
            return
        if reload_feature_flags:
            self._reload_in_background()

    def set_group_properties_for_flags(
        self, group_type: str, properties: dict[str, Any], reload_feature_flags: bool = True
    ) -> None:
        try:
            self.flags.set_group_properties(group_type, properties)
        except Exception as e:
            self._log.error(f"Failed to set {group_type!r} group properties for flags: {e}", exc_info=True)
            return
        if reload_feature_flags:
            self._reload_in_background()

    def reset_group_properties_for_flags(
        self, group_type: str | None = None, reload_feature_flags: bool = True
    ) -> None:
        try:
            self.flags.reset_group_properties(group_type)
        except Exception as e:
            self._log.error(f"Failed to reset group properties for flags: {e}", exc_info=True)
            return
        if reload_feature_flags:
            self._reload_in_background()

    def on_feature_flags_loaded(self, callback: Callable[[], object]) -> Callable[[], None]:
        """Subscribe to successful flag loads. Returns a callable that unsubscribes."""
        return self.flags.flags_loaded.subscribe(callback)
