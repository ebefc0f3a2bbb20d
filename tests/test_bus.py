"""Tests for EventBus wiring: settings, end-to-end flow, static subscriptions, shutdown."""

import asyncio

import pytest

from eventbus.broker import InMemoryTransport
from eventbus.bus import EventBus
from eventbus.delivery import CallbackDelivery
from eventbus.settings import get_default_settings

BILLING = "http://billing.local/events"
ALERTS = "http://alerts.local/events"


class TestEndToEnd:
    """Publish reaches exactly the subscribers of that type."""

    @pytest.mark.asyncio
    async def test_order_created_scenario(self, bus: EventBus, recorder, wait_until) -> None:
        await bus.control.create_subscription(
            {"event_types": ["order.created"], "callback_url": BILLING, "service_name": "billing"}
        )
        await bus.control.create_subscription(
            {"event_types": ["payment.failed"], "callback_url": ALERTS, "service_name": "alerts"}
        )

        published = await bus.control.publish(
            {"event_type": "order.created", "data": {"order_id": "O1"}, "source_service": "order-service"}
        )

        await wait_until(lambda: len(recorder.delivered[BILLING]) == 1)
        await asyncio.sleep(0.02)
        [envelope] = recorder.delivered[BILLING]
        assert envelope.event_id == published["event_id"]
        assert envelope.data["order_id"] == "O1"
        assert recorder.attempts_for(ALERTS) == []


class TestFromSettings:
    """Composition from the settings dict."""

    @pytest.mark.asyncio
    async def test_builds_memory_bus_with_overrides(self) -> None:
        settings = get_default_settings()
        settings["broker"]["transport"] = "memory"
        settings["history"]["capacity"] = 5
        settings["event_types"] = {"audit.logged": {"topic": "system"}}
        settings["dead_letter"]["queue"] = "graveyard"

        bus = EventBus.from_settings(settings)
        try:
            assert isinstance(bus.connection.transport, InMemoryTransport)
            assert bus.history.capacity == 5
            assert "audit.logged" in bus.registry
            assert bus.connection.dead_letter.queue == "graveyard"
            assert await bus.start()
            assert bus.connection.transport.has_queue("graveyard")
        finally:
            await bus.stop()

    def test_unknown_transport(self) -> None:
        settings = get_default_settings()
        settings["broker"]["transport"] = "carrier-pigeon"
        with pytest.raises(ValueError):
            EventBus.from_settings(settings)

    @pytest.mark.asyncio
    async def test_default_delivery_is_http_callback(self, transport: InMemoryTransport) -> None:
        bus = EventBus(transport=transport)
        assert isinstance(bus._callback_delivery, CallbackDelivery)
        await bus.stop()


class TestStaticSubscriptions:
    """Subscriptions declared in settings are created on start."""

    STATIC = [
        {"event_types": ["order.created"], "callback_url": BILLING, "service_name": "billing"},
        {"event_types": ["order.nope"], "callback_url": ALERTS, "service_name": "alerts"},
    ]

    @pytest.mark.asyncio
    async def test_created_on_start(self, make_bus) -> None:
        bus = make_bus(static_subscriptions=self.STATIC)
        try:
            await bus.start()
            [sub] = bus.subscriptions.list_subscriptions()
            assert sub.service_name == "billing"
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_created_once_broker_comes_up(
        self, make_bus, transport: InMemoryTransport, wait_until
    ) -> None:
        transport.refuse_connections = True
        bus = make_bus(static_subscriptions=self.STATIC[:1])
        try:
            assert not await bus.start()
            assert bus.subscriptions.active_count == 0
            transport.refuse_connections = False
            await wait_until(lambda: bus.subscriptions.active_count == 1)
        finally:
            await bus.stop()


class TestShutdown:
    """Stop keeps durable queues and pending messages."""

    @pytest.mark.asyncio
    async def test_queues_survive_stop(
        self, make_bus, transport: InMemoryTransport, recorder
    ) -> None:
        bus = make_bus()
        await bus.start()
        sub_id = await bus.subscriptions.create_subscription(["order.created"], BILLING, "billing")
        queue = f"billing_{sub_id}"

        await bus.stop()

        assert transport.has_queue(queue)
        assert not bus.connection.is_connected
        await transport.connect()
        await transport.publish("orders", "order.created", b"{}")
        await asyncio.sleep(0.02)
        assert len(transport.queue_messages(queue)) == 1
        assert recorder.attempts == []
