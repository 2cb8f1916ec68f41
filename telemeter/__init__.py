"""telemeter - Async-first client-side telemetry pipeline for Python."""

from telemeter.client import Telemeter
from telemeter.core import (
    Batch,
    BatchDispatcher,
    CapturedEvent,
    ConfigError,
    EventQueue,
    FlagFetchError,
    FlushScheduler,
    JsonValue,
    PersonProfiles,
    StorageError,
    TelemeterError,
    TelemetryConfig,
)
from telemeter.core.platform import LIB_VERSION
from telemeter.errortracking import ExceptHookErrorSource, LoggingErrorSource
from telemeter.flags import FeatureFlag
from telemeter.storage import DurableStore, FileStore, MemoryStore, RedisStore
from telemeter.transport import DeliveryResult, DeliveryStatus, HttpTransport, Transport

__version__ = LIB_VERSION

__all__ = [
    # Client
    "Telemeter",
    "TelemetryConfig",
    "PersonProfiles",
    # Events and pipeline
    "CapturedEvent",
    "Batch",
    "EventQueue",
    "BatchDispatcher",
    "FlushScheduler",
    # Flags
    "FeatureFlag",
    "JsonValue",
    # Errors
    "TelemeterError",
    "StorageError",
    "FlagFetchError",
    "ConfigError",
    # Exception capture
    "ExceptHookErrorSource",
    "LoggingErrorSource",
    # Storage
    "DurableStore",
    "FileStore",
    "MemoryStore",
    "RedisStore",
    # Transport
    "Transport",
    "DeliveryResult",
    "DeliveryStatus",
    "HttpTransport",
    # Meta
    "__version__",
]
