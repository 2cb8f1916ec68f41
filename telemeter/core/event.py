"""Captured event and batch envelope models."""

import json
import re
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from telemeter.core.ids import uuid7_str

# UUID regex pattern (any version; events mint v7, but restored ids are not re-minted)
_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

# Maximum properties size (1MB)
MAX_PROPERTIES_SIZE = 1_000_000


class CapturedEvent(BaseModel):
    """Immutable, validated telemetry event.

    Events are created by every producer (user captures, flag usage tracking,
    exception capture) and travel unchanged from the queue to the collector:
    - Immutable (frozen after creation)
    - Identified by a time-ordered UUIDv7 assigned at creation
    - Serializable to the wire shape via model_dump(mode="json")

    Attributes:
        uuid: UUID string, a fresh UUIDv7 if not provided.
        event: Non-empty event name.
        distinct_id: Identity the event is attributed to.
        timestamp: UTC datetime, auto-generated if not provided.
        properties: JSON-serializable dictionary (max 1MB when serialized).
    """

    uuid: str = Field(default_factory=uuid7_str)
    event: str
    distinct_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    properties: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "extra": "forbid",
        "frozen": True,
    }

    @field_validator("uuid")
    @classmethod
    def validate_uuid(cls, v: str) -> str:
        if not _UUID_PATTERN.match(v):
            raise ValueError(f"uuid must be a valid UUID string, got: {v!r}")
        return v.lower()

    @field_validator("event")
    @classmethod
    def validate_event(cls, v: str) -> str:
        """Ensure the event name is non-empty after whitespace stripping."""
        v = v.strip()
        if not v:
            raise ValueError("event must not be empty")
        return v

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: datetime) -> datetime:
        """Naive datetimes are taken to be UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    @field_validator("properties")
    @classmethod
    def validate_properties(cls, v: dict[str, Any]) -> dict[str, Any]:
        """Ensure properties are strictly JSON-serializable and within size limits."""
        try:
            serialized = json.dumps(v)
        except (TypeError, ValueError) as e:
            raise ValueError(f"properties must be JSON-serializable: {e}") from e

        byte_length = len(serialized.encode("utf-8"))
        if byte_length > MAX_PROPERTIES_SIZE:
            raise ValueError(
                f"properties exceed maximum size of {MAX_PROPERTIES_SIZE} bytes "
                f"(got {byte_length} bytes)"
            )
        return v


class Batch(BaseModel):
    """Envelope for one delivery attempt. Rebuilt from the queue on every flush."""

    api_key: str
    batch: list[CapturedEvent]
    sent_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    model_config = {
        "extra": "forbid",
        "frozen": True,
    }

    @property
    def ids(self) -> list[str]:
        return [e.uuid for e in self.batch]

    def __len__(self) -> int:
        return len(self.batch)

    def to_wire(self) -> dict[str, Any]:
        """Return the JSON-ready body posted to the collector."""
        return self.model_dump(mode="json")
