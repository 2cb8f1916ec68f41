"""Tests for flag parsing, caching, reloads and exposure tracking."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from telemeter.core.errors import FlagFetchError
from telemeter.flags.cache import STATE_NAME, FlagCache
from telemeter.flags.manager import (
    FLAG_CALLED_EVENT,
    FeatureFlagManager,
    FlagLoadState,
)
from telemeter.flags.models import FeatureFlag, FlagsResponse
from telemeter.flags.tracker import FlagCalledTracker
from telemeter.storage.memory import MemoryStore
from telemeter.storage.state import StateStore
from tests.conftest import StubFlagFetcher

V4_RESPONSE = {
    "flags": {
        "checkout-flow": {
            "key": "checkout-flow",
            "enabled": True,
            "variant": "B",
            "metadata": {"id": 7, "version": 3, "payload": '{"steps": 2}'},
            "reason": {"code": "condition_match", "description": "Matched condition set 1"},
        },
        "dark-mode": {"key": "dark-mode", "enabled": False},
    },
    "requestId": "req-1",
    "evaluatedAt": 1700000000000,
}

V3_RESPONSE = {
    "featureFlags": {"beta": True, "pricing": "annual", "off": False},
    "featureFlagPayloads": {"pricing": '{"discount": 20}'},
}


@dataclass
class FakeIdentity:
    distinct_id: str = "anon-1"
    anonymous_id: str = "anon-1"
    groups: dict[str, str] = field(default_factory=dict)


class Recorder:
    """Collects captured events."""

    def __init__(self):
        self.events: list[tuple[str, dict[str, Any]]] = []

    def __call__(self, event: str, properties: dict[str, Any]) -> None:
        self.events.append((event, properties))

    def named(self, name: str) -> list[dict[str, Any]]:
        return [props for event, props in self.events if event == name]


def make_manager(fetcher, store=None, identity=None, **kwargs):
    state = StateStore(store if store is not None else MemoryStore())
    capture = Recorder()
    manager = FeatureFlagManager(
        fetcher,
        state,
        identity or FakeIdentity(),
        capture,
        **kwargs,
    )
    return manager, capture


# ============================================================================
# Response parsing
# ============================================================================


class TestFlagsResponse:
    def test_detailed_flags(self):
        flags = FlagsResponse.model_validate(V4_RESPONSE).to_flags()
        checkout = flags["checkout-flow"]
        assert checkout.variant == "B"
        assert checkout.value == "B"
        assert checkout.id == 7
        assert checkout.version == 3
        assert checkout.reason == "Matched condition set 1"
        assert checkout.payload_json()["steps"].get_int() == 2
        assert flags["dark-mode"].value is False

    def test_legacy_flags(self):
        flags = FlagsResponse.model_validate(V3_RESPONSE).to_flags()
        assert flags["beta"].is_enabled
        assert flags["pricing"].variant == "annual"
        assert flags["pricing"].payload_json()["discount"].get_int() == 20
        assert not flags["off"]

    def test_detailed_entries_override_legacy(self):
        response = FlagsResponse.model_validate(
            {
                "featureFlags": {"beta": False},
                "flags": {"beta": {"key": "beta", "enabled": True}},
            }
        )
        assert response.to_flags()["beta"].enabled is True

    def test_null_sections_and_unknown_fields(self):
        response = FlagsResponse.model_validate(
            {"flags": None, "featureFlags": None, "quotaLimited": None, "somethingNew": 1}
        )
        assert response.to_flags() == {}
        assert not response.is_quota_limited

    def test_quota_limited(self):
        response = FlagsResponse.model_validate({"quotaLimited": ["feature_flags"], **V3_RESPONSE})
        assert response.is_quota_limited


class TestFeatureFlagPayload:
    class Theme(BaseModel):
        color: str
        size: int = 12

    def test_payload_as_model(self):
        flag = FeatureFlag(key="theme", enabled=True, payload='{"color": "teal"}')
        theme = flag.payload_as(self.Theme)
        assert theme == self.Theme(color="teal")

    def test_payload_as_default_on_mismatch(self):
        flag = FeatureFlag(key="theme", enabled=True, payload='{"size": "huge"}')
        fallback = self.Theme(color="blue")
        assert flag.payload_as(self.Theme, fallback) is fallback

    def test_plain_string_payload(self):
        flag = FeatureFlag(key="greeting", enabled=True, payload="hello")
        assert flag.payload_json().get_str() == "hello"
        assert flag.payload_as(str) == "hello"

    def test_missing_payload(self):
        flag = FeatureFlag.missing("x")
        assert flag.payload_json().is_null
        assert flag.payload_as(int, 5) == 5
        assert not flag.has_payload


# ============================================================================
# Cache and tracker
# ============================================================================


class TestFlagCache:
    def test_replace_persists_and_restores(self, store):
        cache = FlagCache(StateStore(store))
        cache.replace(FlagsResponse.model_validate(V4_RESPONSE))

        restored = FlagCache(StateStore(store))
        assert restored.restore() is True
        assert restored.is_loaded
        assert restored.get("checkout-flow") == cache.get("checkout-flow")
        assert restored.current.request_id == "req-1"

    def test_quota_limited_clears_flags(self, store):
        cache = FlagCache(StateStore(store))
        cache.replace(FlagsResponse.model_validate(V4_RESPONSE))
        cache.replace(FlagsResponse.model_validate({"quotaLimited": ["feature_flags"]}))
        assert cache.keys() == []
        assert cache.is_loaded

    def test_generation_numbers_increase(self, store):
        cache = FlagCache(StateStore(store))
        first = cache.replace(FlagsResponse.model_validate(V3_RESPONSE)).number
        second = cache.replace(FlagsResponse.model_validate(V3_RESPONSE)).number
        cache.clear()
        assert first < second < cache.current.number
        assert not cache.is_loaded
        assert StateStore(store).load(STATE_NAME) is None

    def test_invalid_persisted_flags_discarded(self, store, log_capture):
        StateStore(store).save(STATE_NAME, {"flags": {"x": {"key": "x", "enabled": "maybe?"}}})
        cache = FlagCache(StateStore(store))
        assert cache.restore() is False
        assert StateStore(store).load(STATE_NAME) is None


class TestFlagCalledTracker:
    def test_dedupes_within_generation(self):
        tracker = FlagCalledTracker()
        assert tracker.should_track("u", "beta", True, 1) is True
        assert tracker.should_track("u", "beta", True, 1) is False
        assert tracker.should_track("u", "beta", False, 1) is True
        assert tracker.should_track("other", "beta", True, 1) is True

    def test_new_generation_tracks_again(self):
        tracker = FlagCalledTracker()
        tracker.should_track("u", "beta", True, 1)
        assert tracker.should_track("u", "beta", True, 2) is True

    def test_bounded(self):
        tracker = FlagCalledTracker(capacity=3)
        for i in range(10):
            tracker.should_track("u", f"flag-{i}", True, 1)
        assert len(tracker) == 3


# ============================================================================
# Manager
# ============================================================================


class TestReload:
    async def test_reload_populates_cache_and_notifies_once(self):
        manager, _ = make_manager(StubFlagFetcher(V4_RESPONSE))
        calls = []
        manager.flags_loaded.subscribe(lambda: calls.append(1))

        assert await manager.reload() is True
        assert manager.load_state is FlagLoadState.LOADED
        assert manager.get_flag("checkout-flow").variant == "B"
        assert calls == [1]

    async def test_failure_serves_stale_flags(self, store, log_capture):
        manager, _ = make_manager(StubFlagFetcher(V4_RESPONSE), store=store)
        await manager.reload()

        failing, _ = make_manager(StubFlagFetcher(FlagFetchError("HTTP 500", status_code=500)), store=store)
        failing.restore()
        calls = []
        failing.flags_loaded.subscribe(lambda: calls.append(1))

        assert await failing.reload() is False
        assert failing.load_state is FlagLoadState.LOADED_STALE
        assert failing.is_enabled("checkout-flow") is True
        assert calls == []

    async def test_failure_without_cache_is_not_loaded(self, log_capture):
        manager, _ = make_manager(StubFlagFetcher(FlagFetchError("offline")))
        assert await manager.reload() is False
        assert manager.load_state is FlagLoadState.NOT_LOADED
        assert manager.is_enabled("anything", default=True) is True

    async def test_malformed_response_keeps_cache(self, log_capture):
        fetcher = StubFlagFetcher(V4_RESPONSE)
        manager, _ = make_manager(fetcher)
        await manager.reload()

        fetcher.response = {"flags": "not-a-map"}
        assert await manager.reload() is False
        assert manager.get_flag("checkout-flow").variant == "B"

    async def test_concurrent_reloads_share_one_fetch(self):
        fetcher = StubFlagFetcher(V4_RESPONSE, delay=0.01)
        manager, _ = make_manager(fetcher)
        calls = []
        manager.flags_loaded.subscribe(lambda: calls.append(1))

        first = manager.reload()
        second = manager.reload()
        assert first is second
        await asyncio.gather(first, second)
        assert len(fetcher.requests) == 1
        assert calls == [1]

    async def test_identity_change_queues_fresh_fetch(self):
        identity = FakeIdentity()
        fetcher = StubFlagFetcher(lambda request: {"featureFlags": {"who": request.distinct_id}}, delay=0.01)
        manager, _ = make_manager(fetcher, identity=identity)

        first = manager.reload()
        identity.distinct_id = "user-42"
        second = manager.reload()
        assert first is not second

        await second
        assert [r.distinct_id for r in fetcher.requests] == ["anon-1", "user-42"]
        assert fetcher.requests[1].anon_distinct_id == "anon-1"
        assert manager.get_flag("who").variant == "user-42"

    async def test_clear_discards_inflight_result(self):
        fetcher = StubFlagFetcher(V4_RESPONSE, delay=0.02)
        manager, _ = make_manager(fetcher)

        task = manager.reload()
        await asyncio.sleep(0)
        manager.clear()
        assert await task is False
        assert manager.cache.keys() == []
        assert manager.load_state is FlagLoadState.NOT_LOADED

    async def test_quota_limited_response(self):
        fetcher = StubFlagFetcher(V4_RESPONSE)
        manager, _ = make_manager(fetcher)
        await manager.reload()

        fetcher.response = {"quotaLimited": ["feature_flags"]}
        assert await manager.reload() is True
        assert manager.cache.keys() == []
        assert manager.load_state is FlagLoadState.LOADED

    async def test_close_cancels_reload(self):
        manager, _ = make_manager(StubFlagFetcher(V4_RESPONSE, delay=1.0))
        task = manager.reload()
        await manager.close()
        assert task.cancelled()

    async def test_unsubscribe_during_notification(self):
        manager, _ = make_manager(StubFlagFetcher(V4_RESPONSE))
        calls = []
        handles = {}

        def first():
            calls.append("first")
            handles["second"]()

        handles["first"] = manager.flags_loaded.subscribe(first)
        handles["second"] = manager.flags_loaded.subscribe(lambda: calls.append("second"))

        await manager.reload()
        await manager.reload()
        assert calls == ["first", "second", "first"]


class TestTargeting:
    async def test_premium_person_gets_variant(self):
        """Setting person properties only affects the next reload."""

        def evaluate(request):
            plan = request.person_properties.get("plan")
            variant = "B" if plan == "premium" else "A"
            return {"flags": {"checkout-flow": {"key": "checkout-flow", "enabled": True, "variant": variant}}}

        fetcher = StubFlagFetcher(evaluate)
        manager, _ = make_manager(fetcher)
        await manager.reload()
        assert manager.get_variant("checkout-flow") == "A"

        manager.set_person_properties({"plan": "premium"})
        assert len(fetcher.requests) == 1
        assert manager.get_variant("checkout-flow") == "A"

        await manager.reload()
        assert manager.get_variant("checkout-flow") == "B"

    def test_default_person_properties_overlaid(self):
        manager, _ = make_manager(
            StubFlagFetcher({}),
            default_person_properties={"$os_name": "Linux", "plan": "free"},
        )
        manager.set_person_properties({"plan": "premium"})
        assert manager.build_request().person_properties == {"$os_name": "Linux", "plan": "premium"}

        manager.reset_person_properties()
        assert manager.build_request().person_properties == {"$os_name": "Linux", "plan": "free"}

    def test_group_properties(self):
        identity = FakeIdentity(groups={"company": "acme"})
        manager, _ = make_manager(StubFlagFetcher({}), identity=identity)
        manager.set_group_properties("company", {"size": 50})
        manager.set_group_properties("company", {"tier": "gold"})
        manager.set_group_properties("team", {"name": "core"})

        request = manager.build_request()
        assert request.groups == {"company": "acme"}
        assert request.group_properties == {"company": {"size": 50, "tier": "gold"}, "team": {"name": "core"}}

        manager.reset_group_properties("team")
        assert manager.group_properties == {"company": {"size": 50, "tier": "gold"}}
        manager.reset_group_properties()
        assert manager.group_properties == {}

    def test_non_dict_or_unserializable_properties_ignored(self, log_capture):
        manager, _ = make_manager(StubFlagFetcher({}))
        manager.set_person_properties({"plan": "free"})

        manager.set_person_properties(["plan"])
        manager.set_person_properties({"signed_up": object()})
        manager.set_group_properties("company", [("size", 50)])

        assert manager.person_properties == {"plan": "free"}
        assert manager.group_properties == {}
        assert len(log_capture.messages(logging.WARNING)) == 3

    def test_targeting_properties_persist(self, store):
        manager, _ = make_manager(StubFlagFetcher({}), store=store)
        manager.set_person_properties({"plan": "premium"})
        manager.set_group_properties("company", {"size": 50})

        restarted, _ = make_manager(StubFlagFetcher({}), store=store)
        restarted.restore()
        assert restarted.person_properties == {"plan": "premium"}
        assert restarted.group_properties == {"company": {"size": 50}}

    def test_anon_id_omitted_when_same_as_distinct_id(self):
        manager, _ = make_manager(StubFlagFetcher({}))
        assert manager.build_request().anon_distinct_id is None


class TestExposureTracking:
    async def test_tracked_read_emits_event_once(self):
        manager, capture = make_manager(StubFlagFetcher(V4_RESPONSE))
        await manager.reload()

        assert manager.is_enabled("checkout-flow") is True
        assert manager.get_variant("checkout-flow") == "B"
        manager.get_feature_flag("checkout-flow")

        (props,) = capture.named(FLAG_CALLED_EVENT)
        assert props == {
            "$feature_flag": "checkout-flow",
            "$feature_flag_response": "B",
            "$feature_flag_request_id": "req-1",
            "$feature_flag_evaluated_at": 1700000000000,
            "$feature_flag_id": 7,
            "$feature_flag_version": 3,
            "$feature_flag_reason": "Matched condition set 1",
        }

    async def test_reload_resets_tracking(self):
        manager, capture = make_manager(StubFlagFetcher(V4_RESPONSE))
        await manager.reload()
        manager.is_enabled("checkout-flow")
        await manager.reload()
        manager.is_enabled("checkout-flow")
        assert len(capture.named(FLAG_CALLED_EVENT)) == 2

    async def test_untracked_reads(self):
        manager, capture = make_manager(StubFlagFetcher(V4_RESPONSE))
        await manager.reload()

        manager.get_flag("checkout-flow")
        manager.get_payload("checkout-flow")
        manager.get_payload_as("checkout-flow", dict)
        assert manager.is_enabled("unknown-flag") is False
        assert capture.events == []

    async def test_tracking_can_be_disabled(self):
        manager, capture = make_manager(StubFlagFetcher(V4_RESPONSE), send_feature_flag_event=False)
        await manager.reload()
        manager.is_enabled("checkout-flow")
        assert capture.events == []

    async def test_payload_reads(self):
        manager, _ = make_manager(StubFlagFetcher(V4_RESPONSE))
        await manager.reload()
        assert manager.get_payload("checkout-flow")["steps"].get_int() == 2
        assert manager.get_payload_as("checkout-flow", dict) == {"steps": 2}
        assert manager.get_payload("dark-mode").is_null
        assert manager.get_payload("missing").is_null
