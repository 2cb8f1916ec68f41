"""Durable store implementations."""

from telemeter.storage.base import EVENT_PREFIX, STATE_PREFIX, DurableStore
from telemeter.storage.file import FileStore
from telemeter.storage.memory import MemoryStore
from telemeter.storage.redis import RedisStore
from telemeter.storage.state import StateStore

__all__ = [
    "DurableStore",
    "EVENT_PREFIX",
    "FileStore",
    "MemoryStore",
    "RedisStore",
    "STATE_PREFIX",
    "StateStore",
]
