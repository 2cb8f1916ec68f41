"""Transports for batches and flag evaluation."""

from telemeter.transport.base import (
    DeliveryResult,
    DeliveryStatus,
    FlagFetcher,
    FlagsRequest,
    Transport,
)
from telemeter.transport.http import HttpFlagFetcher, HttpTransport, classify_status

__all__ = [
    "DeliveryResult",
    "DeliveryStatus",
    "FlagFetcher",
    "FlagsRequest",
    "HttpFlagFetcher",
    "HttpTransport",
    "Transport",
    "classify_status",
]
