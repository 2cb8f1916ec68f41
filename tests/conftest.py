"""Pytest configuration, Hypothesis profiles, strategies and pipeline stubs."""

import asyncio
import logging
from typing import Any, Callable

import pytest
from hypothesis import settings
from hypothesis import strategies as st

from telemeter.core.config import TelemetryConfig
from telemeter.core.event import CapturedEvent
from telemeter.core.queue import EventQueue
from telemeter.storage.memory import MemoryStore
from telemeter.transport.base import DeliveryResult, FlagsRequest

# Register Hypothesis profiles
settings.register_profile("ci", max_examples=100)
settings.register_profile("dev", max_examples=20)

# Load dev profile by default, CI can override via --hypothesis-profile=ci
settings.load_profile("dev")


# ============================================================================
# Strategies
# ============================================================================


def valid_event_names() -> st.SearchStrategy[str]:
    """Non-empty event names such as "checkout.started" or "$screen"."""
    word = st.text(alphabet="abcdefghijklmnopqrstuvwxyz_", min_size=1, max_size=12)
    return st.builds(lambda a, b: f"{a}.{b}", word, word) | st.sampled_from(
        ["$screen", "$identify", "$exception", "$feature_flag_called"]
    )


def json_scalars() -> st.SearchStrategy[Any]:
    return (
        st.none()
        | st.booleans()
        | st.integers(min_value=-(2**53), max_value=2**53)
        | st.floats(allow_nan=False, allow_infinity=False)
        | st.text(max_size=30)
    )


def valid_properties() -> st.SearchStrategy[dict[str, Any]]:
    """JSON-compatible property maps, nested up to a few levels."""
    values = st.recursive(
        json_scalars(),
        lambda children: st.lists(children, max_size=4)
        | st.dictionaries(st.text(max_size=10), children, max_size=4),
        max_leaves=10,
    )
    return st.dictionaries(st.text(min_size=1, max_size=15), values, max_size=6)


@st.composite
def captured_events(draw: st.DrawFn) -> CapturedEvent:
    return CapturedEvent(
        event=draw(valid_event_names()),
        distinct_id=draw(st.text(alphabet="abcdef0123456789-", min_size=1, max_size=36)),
        properties=draw(valid_properties()),
    )


# ============================================================================
# Stubs
# ============================================================================


class StubTransport:
    """Transport returning scripted results (DELIVERED once the script runs out).

    Entries of ``results`` may be DeliveryResults or exceptions to raise.
    """

    def __init__(self, results: list[Any] | None = None, delay: float = 0.0) -> None:
        self.results = list(results or [])
        self.delay = delay
        self.batches: list[list[str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def send(self, batch) -> DeliveryResult:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.batches.append(batch.ids)
            result = self.results.pop(0) if self.results else DeliveryResult.delivered(200)
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            self.in_flight -= 1

    async def close(self) -> None:
        self.closed = True

    @property
    def sent_ids(self) -> list[str]:
        return [uuid for batch in self.batches for uuid in batch]


class StubFlagFetcher:
    """Fetcher answering with a dict, a function of the request, or an exception."""

    def __init__(
        self,
        response: dict[str, Any] | Callable[[FlagsRequest], dict[str, Any]] | Exception,
        delay: float = 0.0,
    ) -> None:
        self.response = response
        self.delay = delay
        self.requests: list[FlagsRequest] = []
        self.closed = False

    async def fetch(self, request: FlagsRequest) -> dict[str, Any]:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.response, Exception):
            raise self.response
        if callable(self.response):
            return self.response(request)
        return self.response

    async def close(self) -> None:
        self.closed = True


class LogCapture(logging.Handler):
    """Custom handler to capture log records for testing."""

    def __init__(self):
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)

    def messages(self, level: int | None = None) -> list[str]:
        return [r.getMessage() for r in self.records if level is None or r.levelno == level]


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def queue(store: MemoryStore) -> EventQueue:
    return EventQueue(store, max_queue_size=100)


@pytest.fixture
def config() -> TelemetryConfig:
    return TelemetryConfig(
        api_key="phc_test",
        host="https://us.i.posthog.com",
        flush_at=20,
        flush_interval_seconds=3600,
        retry_base_delay_seconds=0.01,
        retry_max_delay_seconds=0.04,
        capture_exceptions=False,
        preload_feature_flags=False,
    )


@pytest.fixture
def make_event() -> Callable[..., CapturedEvent]:
    def factory(name: str = "test.event", distinct_id: str = "user-1", **properties: Any) -> CapturedEvent:
        return CapturedEvent(event=name, distinct_id=distinct_id, properties=properties)

    return factory


@pytest.fixture
def log_capture():
    """Capture records of every telemeter logger, whatever their propagation."""
    logger = logging.getLogger("telemeter")
    handler = LogCapture()
    handler.setLevel(logging.DEBUG)
    original_level = logger.level
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    yield handler
    logger.removeHandler(handler)
    logger.setLevel(original_level)
