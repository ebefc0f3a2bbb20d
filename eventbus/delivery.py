"""HTTP callback delivery: POST the envelope to a subscriber, 2xx means delivered."""

import logging
from typing import Awaitable, Callable

import httpx

from eventbus.errors import DeliveryFailed
from eventbus.models import EventEnvelope

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

DeliverFn = Callable[[str, EventEnvelope], Awaitable[None]]


def delivery_headers(envelope: EventEnvelope) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "X-Event-ID": envelope.event_id,
        "X-Event-Type": envelope.event_type,
        "X-Source-Service": envelope.source_service,
        "X-Correlation-ID": envelope.correlation_id,
    }


class CallbackDelivery:
    """Shared httpx client for all subscriptions. Callable as a DeliverFn."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def __call__(self, callback_url: str, envelope: EventEnvelope) -> None:
        await self.deliver(callback_url, envelope)

    async def deliver(self, callback_url: str, envelope: EventEnvelope) -> None:
        """Raises DeliveryFailed on non-2xx, timeout or network error."""
        try:
            resp = await self._client.post(
                callback_url,
                json=envelope.to_dict(),
                headers=delivery_headers(envelope),
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise DeliveryFailed(
                f"Timed out after {self._timeout}s delivering to {callback_url}"
            ) from e
        except httpx.HTTPError as e:
            raise DeliveryFailed(f"Could not reach {callback_url}: {e}") from e
        if not resp.is_success:
            raise DeliveryFailed(
                f"HTTP {resp.status_code} from {callback_url}", status_code=resp.status_code
            )
        logger.debug("Delivered %s to %s (HTTP %d)", envelope.event_id, callback_url, resp.status_code)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
