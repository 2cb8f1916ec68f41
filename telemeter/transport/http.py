"""HTTP transport and flag fetcher built on httpx."""

import logging
from typing import Any

import httpx

from telemeter.core.errors import FlagFetchError
from telemeter.core.event import Batch
from telemeter.transport.base import DeliveryResult, FlagsRequest

logger = logging.getLogger("telemeter.transport")

HTTP_PAYLOAD_TOO_LARGE = 413


def classify_status(status_code: int) -> DeliveryResult:
    """Map a collector response status onto a delivery outcome.

    2xx delivered; 413 retried with a smaller batch; other 4xx rejected
    because resending the same payload cannot succeed; 0, 3xx and 5xx retried.
    """
    if 200 <= status_code < 300:
        return DeliveryResult.delivered(status_code)
    if status_code == HTTP_PAYLOAD_TOO_LARGE:
        return DeliveryResult.transient(
            status_code, error="payload too large", payload_too_large=True
        )
    if 400 <= status_code < 500:
        return DeliveryResult.rejected(status_code, error=f"HTTP {status_code}")
    return DeliveryResult.transient(status_code, error=f"HTTP {status_code}")


class _HttpClientOwner:
    """Lazily created httpx.AsyncClient, optionally supplied by the caller."""

    def __init__(self, timeout: float, client: httpx.AsyncClient | None) -> None:
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "_HttpClientOwner":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


class HttpTransport(_HttpClientOwner):
    """POSTs batches as JSON to ``{host}/batch``.

    Args:
        batch_url: Full collector URL.
        timeout: Request timeout in seconds.
        client: Optional shared httpx.AsyncClient (not closed by this transport).
    """

    def __init__(
        self,
        batch_url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout, client)
        self.batch_url = batch_url

    async def send(self, batch: Batch) -> DeliveryResult:
        try:
            response = await self._get_client().post(self.batch_url, json=batch.to_wire())
        except httpx.TimeoutException as e:
            logger.warning(f"Batch request timed out: {e}", extra={"batch_size": len(batch)})
            return DeliveryResult.transient(error=f"timeout: {e}")
        except httpx.HTTPError as e:
            logger.warning(f"Batch request failed: {e}", extra={"batch_size": len(batch)})
            return DeliveryResult.transient(error=str(e))

        result = classify_status(response.status_code)
        logger.debug(
            f"Batch request answered {response.status_code}",
            extra={"batch_size": len(batch), "status_code": response.status_code},
        )
        return result


class HttpFlagFetcher(_HttpClientOwner):
    """POSTs evaluation requests to ``{host}/flags/?v=2&config=true``."""

    def __init__(
        self,
        flags_url: str,
        api_key: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout, client)
        self.flags_url = flags_url
        self._api_key = api_key

    async def fetch(self, request: FlagsRequest) -> dict[str, Any]:
        try:
            response = await self._get_client().post(
                self.flags_url, json=request.to_wire(self._api_key)
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise FlagFetchError(
                f"flags request returned HTTP {e.response.status_code}",
                e,
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise FlagFetchError("flags request failed", e) from e
        except ValueError as e:
            raise FlagFetchError("flags response is not valid JSON", e) from e

        if not isinstance(data, dict):
            raise FlagFetchError(f"flags response must be an object, got {type(data).__name__}")
        return data
