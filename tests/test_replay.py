"""Tests for replay_events: new identity, same correlation, history untouched."""

import pytest

from eventbus.broker import InMemoryTransport
from eventbus.bus import EventBus
from eventbus.models import ReplayStatus
from eventbus.replay import REPLAY_SOURCE, replay_events


class TestReplay:
    """Replaying events from history."""

    @pytest.mark.asyncio
    async def test_replay_found_and_missing(self, bus: EventBus) -> None:
        original_id = await bus.publisher.publish(
            "order.created", {"order_id": "O1"}, "order-service", correlation_id="c-1"
        )

        results = await replay_events(bus.history, bus.publisher, [original_id, "missing"])

        replayed, missing = results
        assert replayed.status is ReplayStatus.REPLAYED
        assert replayed.new_event_id and replayed.new_event_id != original_id
        assert missing.status is ReplayStatus.NOT_FOUND

        original = bus.history.find(original_id).envelope
        copy = bus.history.find(replayed.new_event_id).envelope
        assert original.source_service == "order-service"
        assert copy.source_service == REPLAY_SOURCE
        assert copy.event_type == original.event_type
        assert copy.data is not original.data
        assert copy.correlation_id == "c-1"
        assert copy.data == original.data
        assert len(bus.history) == 2

    @pytest.mark.asyncio
    async def test_replay_reaches_subscribers(
        self, bus: EventBus, recorder, wait_until
    ) -> None:
        event_id = await bus.publisher.publish("user.registered", {"id": 1}, "user-service")
        await bus.subscriptions.create_subscription(
            ["user.registered"], "http://crm.local/hook", "crm"
        )

        await replay_events(bus.history, bus.publisher, [event_id], target_service="crm")

        await wait_until(lambda: len(recorder.delivered["http://crm.local/hook"]) == 1)
        assert recorder.delivered["http://crm.local/hook"][0].source_service == REPLAY_SOURCE

    @pytest.mark.asyncio
    async def test_publish_failure_is_reported_per_event(
        self, bus: EventBus, transport: InMemoryTransport
    ) -> None:
        first = await bus.publisher.publish("order.created", {}, "order-service")
        second = await bus.publisher.publish("order.updated", {}, "order-service")
        transport.fail_next_publish()

        results = await replay_events(bus.history, bus.publisher, [first, second])

        assert [r.status for r in results] == [ReplayStatus.FAILED, ReplayStatus.REPLAYED]
        assert results[0].error.startswith("PUBLISH_FAILED")
