"""Core components of the telemeter pipeline.

Types:
    CapturedEvent: Immutable, validated event with UUIDv7 id, name, distinct id,
        timestamp and properties.
    Batch: Envelope of events sent in one delivery attempt.
    TelemetryConfig: Validated client configuration.
    JsonValue: Safe, default-taking accessor over untyped JSON.

Pipeline:
    EventQueue: Bounded durable FIFO with oldest-first eviction.
    BatchDispatcher: Sends one bounded batch and applies the outcome.
    FlushScheduler: Single-flight flushing on size, time and manual triggers.

Errors:
    TelemeterError and its subclasses StorageError,
    FlagFetchError and ConfigError.
"""

from telemeter.core.config import PersonProfiles, TelemetryConfig
from telemeter.core.dispatcher import BatchDispatcher, DispatcherStats, FlushOutcome
from telemeter.core.errors import (
    ConfigError,
    FlagFetchError,
    StorageError,
    TelemeterError,
)
from telemeter.core.event import MAX_PROPERTIES_SIZE, Batch, CapturedEvent
from telemeter.core.identity import IdentityManager
from telemeter.core.json_value import JsonValue
from telemeter.core.observers import ObserverRegistry
from telemeter.core.queue import EventQueue
from telemeter.core.scheduler import FlushScheduler, FlushState
from telemeter.core.session import SessionManager

__all__ = [
    "Batch",
    "BatchDispatcher",
    "CapturedEvent",
    "ConfigError",
    "DispatcherStats",
    "EventQueue",
    "FlagFetchError",
    "FlushOutcome",
    "FlushScheduler",
    "FlushState",
    "IdentityManager",
    "JsonValue",
    "MAX_PROPERTIES_SIZE",
    "ObserverRegistry",
    "PersonProfiles",
    "SessionManager",
    "StorageError",
    "TelemeterError",
    "TelemetryConfig",
]
