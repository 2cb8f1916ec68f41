"""End-to-end tests of the Telemeter client with stub transport and fetcher."""

import asyncio
import concurrent.futures
import logging
import sys
import threading
from datetime import UTC, datetime

import pytest

from telemeter import Telemeter
from telemeter.core.config import PersonProfiles
from telemeter.core.errors import ConfigError
from telemeter.errortracking.sources import LoggingErrorSource
from telemeter.flags.manager import FLAG_CALLED_EVENT
from telemeter.storage.base import EVENT_PREFIX, STATE_RECORD_COUNT
from telemeter.storage.file import FileStore
from telemeter.storage.memory import MemoryStore
from telemeter.transport.base import DeliveryResult
from tests.conftest import StubFlagFetcher, StubTransport

FLAGS = {
    "flags": {
        "checkout-flow": {"key": "checkout-flow", "enabled": True, "variant": "B"},
        "new-nav": {"key": "new-nav", "enabled": True, "metadata": {"payload": '{"items": 5}'}},
    },
    "requestId": "req-1",
}


@pytest.fixture
def transport() -> StubTransport:
    return StubTransport()


@pytest.fixture
def fetcher() -> StubFlagFetcher:
    return StubFlagFetcher(FLAGS)


@pytest.fixture
def make_client(config, store, transport, fetcher):
    def factory(**overrides):
        options = {"store": store, "transport": transport, "flag_fetcher": fetcher}
        cfg = overrides.pop("config", config)
        options.update(overrides)
        return Telemeter(cfg, **options)

    return factory


def queued(client: Telemeter, name: str | None = None):
    return [e for e in client.queue.snapshot() if name is None or e.event == name]


# ============================================================================
# Capture
# ============================================================================


class TestCapture:
    def test_capture_enriches_properties(self, make_client):
        client = make_client()
        client.register("plan", "free")
        uuid = client.capture("checkout.started", {"cart_size": 3, "plan": "pro"})

        (event,) = queued(client)
        assert event.uuid == uuid
        assert event.distinct_id == client.distinct_id == client.identity.anonymous_id
        props = event.properties
        assert props["cart_size"] == 3
        assert props["plan"] == "pro"
        assert props["$lib"] == "telemeter-python"
        assert props["$session_id"] == client.session.session_id
        assert props["$process_person_profile"] is False

    def test_super_properties_persist(self, make_client, store, config, transport, fetcher):
        client = make_client()
        client.register("tenant", "acme")
        client.register("temp", 1)
        client.unregister("temp")

        restarted = Telemeter(config, store=store, transport=transport, flag_fetcher=fetcher)
        restarted.capture("e")
        props = queued(restarted)[-1].properties
        assert props["tenant"] == "acme"
        assert "temp" not in props

    def test_invalid_captures_are_dropped(self, make_client, log_capture):
        client = make_client()
        assert client.capture("") is None
        assert client.capture("   ") is None
        assert client.capture("e", {"when": object()}) is None
        assert client.queue_size == 0

    def test_register_ignores_non_json_values(self, make_client, log_capture):
        """A bad super property is refused and later captures still go through."""
        client = make_client()
        client.register("started_at", object())
        client.register("", "empty key")

        assert client.capture("after_register") is not None
        assert client.capture("second_event", {"x": 1}) is not None
        assert client.queue_size == 2
        assert all("started_at" not in e.properties for e in queued(client))
        assert any("started_at" in m for m in log_capture.messages(logging.WARNING))

    def test_unregister_unknown_or_unhashable_key(self, make_client, log_capture):
        client = make_client()
        client.unregister("never-registered")
        client.unregister(["not", "hashable"])
        assert client.capture("e") is not None

    def test_explicit_distinct_id_and_timestamp(self, make_client):
        client = make_client()
        when = datetime(2024, 5, 1, tzinfo=UTC)
        client.capture("e", distinct_id="server-side", timestamp=when)
        (event,) = queued(client)
        assert event.distinct_id == "server-side"
        assert event.timestamp == when

    def test_screen_and_alias(self, make_client):
        client = make_client()
        client.screen("Checkout", {"step": 2})
        client.alias("legacy-id")
        assert client.screen("") is None

        screen, alias = queued(client)
        assert screen.event == "$screen"
        assert screen.properties["$screen_name"] == "Checkout"
        assert alias.event == "$create_alias"
        assert alias.properties["alias"] == "legacy-id"

    def test_person_profiles_always(self, make_client, config):
        client = make_client(config=config.model_copy(update={"person_profiles": PersonProfiles.ALWAYS}))
        client.capture("e")
        assert queued(client)[0].properties["$process_person_profile"] is True

    def test_queue_survives_restart(self, tmp_path, config, transport, fetcher):
        store = FileStore(tmp_path)
        client = Telemeter(config, store=store, transport=transport, flag_fetcher=fetcher)
        first = client.capture("first")
        second = client.capture("second")

        restarted = Telemeter(config, store=FileStore(tmp_path), transport=transport, flag_fetcher=fetcher)
        assert [e.uuid for e in restarted.queue.snapshot()] == [first, second]
        assert restarted.distinct_id == client.distinct_id


# ============================================================================
# Life cycle and delivery
# ============================================================================


class TestLifecycle:
    async def test_shutdown_flushes_queue(self, make_client, transport):
        async with make_client() as client:
            ids = [client.capture(f"e.{i}") for i in range(3)]
        assert transport.sent_ids == ids
        assert client.queue_size == 0
        assert transport.closed

    async def test_size_trigger_flushes(self, make_client, transport, config):
        client = make_client(config=config.model_copy(update={"flush_at": 2}))
        await client.start()
        client.capture("a")
        client.capture("b")
        await client.scheduler.wait_idle()
        assert len(transport.sent_ids) == 2
        await client.shutdown()

    async def test_manual_flush(self, make_client, transport):
        client = make_client()
        await client.start()
        client.capture("a")
        await client.flush()
        assert client.queue_size == 0
        await client.shutdown()

    @pytest.mark.timeout(5)
    async def test_flush_from_another_thread(self, make_client, transport):
        client = make_client()
        await client.start()
        uuid = client.capture("from.main")

        futures = []
        worker = threading.Thread(target=lambda: futures.append(client.flush()))
        worker.start()
        worker.join()

        (future,) = futures
        assert isinstance(future, concurrent.futures.Future)
        await asyncio.wait_for(asyncio.wrap_future(future), timeout=2.0)
        assert transport.sent_ids == [uuid]
        assert client.queue_size == 0
        await client.shutdown()

    def test_flush_without_loop(self, make_client, log_capture):
        assert make_client().flush() is None

    async def test_shutdown_is_bounded(self, make_client, config, log_capture):
        slow = StubTransport(delay=5.0)
        client = make_client(transport=slow, config=config.model_copy(update={"shutdown_timeout_seconds": 0.05}))
        await client.start()
        client.capture("a")
        await client.shutdown()
        # The event stays queued for the next run
        assert client.queue_size == 1

    async def test_transient_failures_are_retried(self, make_client):
        transport = StubTransport([DeliveryResult.transient(503)])
        client = make_client(transport=transport)
        await client.start()
        uuid = client.capture("a")
        await client.flush()
        assert client.queue_size == 1
        await client.shutdown()
        assert transport.sent_ids == [uuid, uuid]

    async def test_restored_events_flush_on_start(self, store, config, transport, fetcher):
        Telemeter(config, store=store, transport=transport, flag_fetcher=fetcher).capture("left.over")

        cfg = config.model_copy(update={"flush_at": 1})
        async with Telemeter(cfg, store=store, transport=transport, flag_fetcher=fetcher) as client:
            await client.scheduler.wait_idle()
            assert client.queue_size == 0
        assert len(transport.sent_ids) == 1


# ============================================================================
# Identity
# ============================================================================


class TestIdentity:
    async def test_identify(self, make_client, fetcher):
        client = make_client()
        anonymous_id = client.distinct_id

        assert await client.identify("user-42", {"email": "a@example.com"}, {"first_seen": "today"}) is True

        (event,) = queued(client, "$identify")
        assert event.distinct_id == "user-42"
        assert event.properties["$anon_distinct_id"] == anonymous_id
        assert event.properties["$set"] == {"email": "a@example.com"}
        assert event.properties["$set_once"] == {"first_seen": "today"}

        request = fetcher.requests[-1]
        assert request.distinct_id == "user-42"
        assert request.anon_distinct_id == anonymous_id
        assert request.person_properties["email"] == "a@example.com"
        assert client.get_feature_flag_variant("checkout-flow") == "B"

        client.capture("after")
        assert queued(client, "after")[0].properties["$process_person_profile"] is True

    async def test_identify_same_id_is_noop(self, make_client, fetcher):
        client = make_client()
        await client.identify("user-42")
        requests = len(fetcher.requests)
        assert await client.identify("user-42") is True
        assert len(queued(client, "$identify")) == 1
        assert len(fetcher.requests) == requests

    async def test_identify_rejects_empty_id(self, make_client, log_capture):
        client = make_client()
        assert await client.identify("") is False
        assert queued(client) == []

    async def test_reset(self, make_client, fetcher):
        client = make_client()
        await client.identify("user-42", {"plan": "premium"})
        client.register("tenant", "acme")
        client.group("company", "acme")
        old_session = client.session.session_id

        assert await client.reset() is True

        assert client.distinct_id != "user-42"
        assert client.identity.is_identified is False
        assert client.identity.groups == {}
        request = fetcher.requests[-1]
        assert request.distinct_id == client.distinct_id
        assert "plan" not in request.person_properties
        assert request.group_properties == {}

        client.capture("after.reset")
        props = queued(client, "after.reset")[0].properties
        assert "tenant" not in props
        assert "$groups" not in props
        assert props["$session_id"] != old_session

    async def test_reset_reuses_anonymous_id(self, make_client, config):
        client = make_client(config=config.model_copy(update={"reuse_anonymous_id": True}))
        anonymous_id = client.distinct_id
        await client.identify("user-42")
        await client.reset()
        assert client.distinct_id == anonymous_id

    async def test_group(self, make_client, fetcher):
        client = make_client()
        await client.start()
        client.group("company", "acme", {"size": 50})
        await client.flags.wait_for_reload()

        (event,) = queued(client, "$groupidentify")
        assert event.properties["$group_type"] == "company"
        assert event.properties["$group_key"] == "acme"
        assert event.properties["$group_set"] == {"size": 50}
        assert event.properties["$groups"] == {"company": "acme"}
        assert fetcher.requests[-1].groups == {"company": "acme"}
        await client.shutdown()


# ============================================================================
# Opt out
# ============================================================================


class TestOptOut:
    async def test_opt_out_drops_everything(self, make_client, transport, fetcher):
        client = make_client()
        await client.start()
        client.capture("before")
        client.opt_out()

        assert client.queue_size == 0
        assert client.capture("during") is None
        assert client.capture_exception(ValueError("x")) is False
        assert await client.identify("user-42") is False
        assert await client.reload_feature_flags() is False
        await client.flush()
        await client.shutdown()

        assert transport.batches == []
        assert fetcher.requests == []

    def test_opt_out_persists(self, make_client, store, config, transport, fetcher):
        make_client().opt_out()
        restarted = Telemeter(config, store=store, transport=transport, flag_fetcher=fetcher)
        assert restarted.is_opted_out
        restarted.opt_in()
        assert restarted.capture("back") is not None


# ============================================================================
# Feature flags through the client
# ============================================================================


class TestClientFlags:
    async def test_preload_on_start(self, make_client, config):
        calls = []
        client = make_client(config=config.model_copy(update={"preload_feature_flags": True}))
        unsubscribe = client.on_feature_flags_loaded(lambda: calls.append(1))
        await client.start()
        await client.flags.wait_for_reload()

        assert calls == [1]
        assert client.is_feature_enabled("new-nav")
        unsubscribe()
        await client.reload_feature_flags()
        assert calls == [1]
        await client.shutdown()

    async def test_flag_reads_and_exposure_events(self, make_client):
        client = make_client()
        await client.reload_feature_flags()

        assert client.is_feature_enabled("checkout-flow") is True
        assert client.get_feature_flag_variant("checkout-flow") == "B"
        assert client.get_feature_flag("checkout-flow").value == "B"
        assert client.get_feature_flag_payload("new-nav")["items"].get_int() == 5
        assert client.get_feature_flag_payload_as("new-nav", dict) == {"items": 5}
        assert client.is_feature_enabled("unknown", default=True) is True

        (exposure,) = queued(client, FLAG_CALLED_EVENT)
        assert exposure.properties["$feature_flag"] == "checkout-flow"
        assert exposure.properties["$feature_flag_response"] == "B"
        assert exposure.properties["$feature_flag_request_id"] == "req-1"

    async def test_flags_survive_restart_and_failed_reload(self, make_client, store, config, transport, log_capture):
        client = make_client()
        await client.reload_feature_flags()

        offline = StubFlagFetcher(ConnectionError("offline"))
        restarted = Telemeter(config, store=store, transport=transport, flag_fetcher=offline)
        assert restarted.is_feature_enabled("checkout-flow") is True
        assert await restarted.reload_feature_flags() is False
        assert restarted.get_feature_flag_variant("checkout-flow") == "B"

    async def test_person_properties_for_flags(self, make_client, fetcher):
        client = make_client()
        await client.start()
        client.set_person_properties_for_flags({"plan": "premium"})
        await client.flags.wait_for_reload()
        assert fetcher.requests[-1].person_properties["plan"] == "premium"
        assert "$os_name" in fetcher.requests[-1].person_properties

        client.reset_person_properties_for_flags(reload_feature_flags=False)
        client.set_group_properties_for_flags("company", {"size": 50}, reload_feature_flags=False)
        request = client.flags.build_request()
        assert "plan" not in request.person_properties
        assert request.group_properties == {"company": {"size": 50}}

        client.reset_group_properties_for_flags(reload_feature_flags=False)
        assert client.flags.build_request().group_properties == {}
        await client.shutdown()

    async def test_bad_targeting_properties_are_ignored(self, make_client, fetcher, log_capture):
        client = make_client()
        client.set_person_properties_for_flags({"plan": "free"}, reload_feature_flags=False)

        client.set_person_properties_for_flags(["plan"], reload_feature_flags=False)
        client.set_person_properties_for_flags({"joined": object()}, reload_feature_flags=False)
        client.set_group_properties_for_flags("company", "big", reload_feature_flags=False)
        client.reset_group_properties_for_flags(["company"], reload_feature_flags=False)

        request = client.flags.build_request()
        assert request.person_properties["plan"] == "free"
        assert "joined" not in request.person_properties
        assert request.group_properties == {}
        assert fetcher.requests == []
        assert len(log_capture.messages(logging.WARNING)) >= 3

    def test_capacity_of_bounded_memory_store_is_checked(self, config, transport, fetcher):
        cfg = config.model_copy(update={"max_queue_size": 10})
        with pytest.raises(ConfigError):
            Telemeter(cfg, store=MemoryStore(max_entries=10), transport=transport, flag_fetcher=fetcher)

        client = Telemeter(
            cfg,
            store=MemoryStore(max_entries=10 + STATE_RECORD_COUNT),
            transport=transport,
            flag_fetcher=fetcher,
        )
        for i in range(12):
            client.capture(f"e.{i}")
        assert client.queue_size == 10
        assert len(client.queue.snapshot()) == len(client._store.list_keys(EVENT_PREFIX))


# ============================================================================
# Exceptions through the client
# ============================================================================


class TestClientExceptions:
    def test_capture_exception(self, make_client):
        client = make_client()
        try:
            raise ValueError("card declined")
        except ValueError as e:
            assert client.capture_exception(e, {"order_id": 7}) is True

        (event,) = queued(client, "$exception")
        props = event.properties
        assert props["$exception_message"] == "card declined"
        assert props["$exception_handled"] is True
        assert props["order_id"] == 7
        assert props["$exception_personURL"] == (
            f"https://us.posthog.com/project/phc_test/person/{client.distinct_id}"
        )
        assert "$session_id" in props

    async def test_logged_errors_are_captured_automatically(self, make_client, config):
        cfg = config.model_copy(update={"capture_exceptions": True})
        client = make_client(config=cfg, error_source=LoggingErrorSource(logger_name="shop"))
        await client.start()
        try:
            raise KeyError("sku-1")
        except KeyError:
            logging.getLogger("shop").exception("inventory lookup failed")

        captured = queued(client, "$exception")
        await client.shutdown()

        assert len(captured) == 1
        assert captured[0].properties["$exception_type"] == "KeyError"
        assert captured[0].properties["$exception_handled"] is False
        assert not logging.getLogger("shop").handlers

    async def test_error_source_removed_on_shutdown(self, make_client, config):
        saved = sys.excepthook, threading.excepthook
        try:
            cfg = config.model_copy(update={"capture_exceptions": True, "exception_source": "excepthook"})
            client = make_client(config=cfg)
            await client.start()
            assert sys.excepthook is not saved[0]
            await client.shutdown()
            assert sys.excepthook is saved[0]
            assert threading.excepthook is saved[1]
        finally:
            sys.excepthook, threading.excepthook = saved
