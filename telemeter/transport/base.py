"""Delivery and flag-evaluation capabilities consumed by the pipeline."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from telemeter.core.event import Batch


class DeliveryStatus(Enum):
    """How the collector answered one batch."""

    DELIVERED = "delivered"
    REJECTED = "rejected"
    TRANSIENT_FAILURE = "transient_failure"


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of a single send.

    Attributes:
        status: Delivered, permanently rejected, or worth retrying.
        status_code: Response status, if a response was received.
        payload_too_large: The collector refused the batch for its size.
        error: Human readable reason for failures.
    """

    status: DeliveryStatus
    status_code: int | None = None
    payload_too_large: bool = False
    error: str | None = None

    @classmethod
    def delivered(cls, status_code: int | None = None) -> "DeliveryResult":
        return cls(DeliveryStatus.DELIVERED, status_code)

    @classmethod
    def rejected(cls, status_code: int | None = None, error: str | None = None) -> "DeliveryResult":
        return cls(DeliveryStatus.REJECTED, status_code, error=error)

    @classmethod
    def transient(
        cls,
        status_code: int | None = None,
        error: str | None = None,
        payload_too_large: bool = False,
    ) -> "DeliveryResult":
        return cls(DeliveryStatus.TRANSIENT_FAILURE, status_code, payload_too_large, error)


class Transport(Protocol):
    """Protocol for delivering batches to the collector."""

    async def send(self, batch: Batch) -> DeliveryResult:
        """Deliver one batch atomically.

        Implementations should classify failures into a DeliveryResult rather
        than raise; an exception is treated as a transient failure.
        """
        ...

    async def close(self) -> None:
        ...


@dataclass(frozen=True)
class FlagsRequest:
    """Snapshot of identity and targeting properties for one evaluation."""

    distinct_id: str
    anon_distinct_id: str | None = None
    groups: dict[str, str] = field(default_factory=dict)
    person_properties: dict[str, Any] = field(default_factory=dict)
    group_properties: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_wire(self, api_key: str) -> dict[str, Any]:
        body: dict[str, Any] = {"api_key": api_key, "distinct_id": self.distinct_id}
        if self.anon_distinct_id:
            body["$anon_distinct_id"] = self.anon_distinct_id
        if self.groups:
            body["$groups"] = dict(self.groups)
        if self.person_properties:
            body["person_properties"] = dict(self.person_properties)
        if self.group_properties:
            body["group_properties"] = {k: dict(v) for k, v in self.group_properties.items()}
        return body


class FlagFetcher(Protocol):
    """Protocol for obtaining flag evaluation results."""

    async def fetch(self, request: FlagsRequest) -> dict[str, Any]:
        """Return the decoded evaluation response.

        Raises:
            FlagFetchError: If no usable response could be obtained.
        """
        ...

    async def close(self) -> None:
        ...
