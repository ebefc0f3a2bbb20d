"""Tests for CallbackDelivery against a mocked HTTP transport."""

import json

import httpx
import pytest
from pytest_httpx import HTTPXMock

from eventbus.delivery import CallbackDelivery
from eventbus.errors import DeliveryFailed
from eventbus.models import EventEnvelope

CALLBACK = "http://billing.local/events"


@pytest.fixture
def envelope() -> EventEnvelope:
    return EventEnvelope(
        event_id="e-1",
        event_type="order.created",
        data={"order_id": "O1"},
        source_service="order-service",
        correlation_id="c-1",
        timestamp="2026-03-01T12:00:00+00:00",
    )


@pytest.fixture
async def delivery() -> CallbackDelivery:
    d = CallbackDelivery(timeout=2.0)
    yield d
    await d.aclose()


class TestCallbackDelivery:
    """2xx delivers; anything else raises DeliveryFailed."""

    @pytest.mark.asyncio
    async def test_posts_envelope_with_trace_headers(
        self, httpx_mock: HTTPXMock, delivery: CallbackDelivery, envelope: EventEnvelope
    ) -> None:
        httpx_mock.add_response(url=CALLBACK, method="POST", status_code=202)

        await delivery(CALLBACK, envelope)

        request = httpx_mock.get_request()
        assert request.headers["X-Event-ID"] == "e-1"
        assert request.headers["X-Event-Type"] == "order.created"
        assert request.headers["X-Correlation-ID"] == "c-1"
        assert json.loads(request.content)["data"] == {"order_id": "O1"}

    @pytest.mark.asyncio
    async def test_non_2xx_fails(
        self, httpx_mock: HTTPXMock, delivery: CallbackDelivery, envelope: EventEnvelope
    ) -> None:
        httpx_mock.add_response(url=CALLBACK, method="POST", status_code=503)
        with pytest.raises(DeliveryFailed) as exc_info:
            await delivery.deliver(CALLBACK, envelope)
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_timeout_fails(
        self, httpx_mock: HTTPXMock, delivery: CallbackDelivery, envelope: EventEnvelope
    ) -> None:
        httpx_mock.add_exception(httpx.ReadTimeout("too slow"))
        with pytest.raises(DeliveryFailed, match="Timed out"):
            await delivery.deliver(CALLBACK, envelope)

    @pytest.mark.asyncio
    async def test_unreachable_fails(
        self, httpx_mock: HTTPXMock, delivery: CallbackDelivery, envelope: EventEnvelope
    ) -> None:
        httpx_mock.add_exception(httpx.ConnectError("connection refused"))
        with pytest.raises(DeliveryFailed) as exc_info:
            await delivery.deliver(CALLBACK, envelope)
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_borrowed_client_is_not_closed(self) -> None:
        client = httpx.AsyncClient()
        delivery = CallbackDelivery(client=client)
        await delivery.aclose()
        assert not client.is_closed
        await client.aclose()
