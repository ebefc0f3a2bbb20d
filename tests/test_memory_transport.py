"""Tests for InMemoryTransport: routing, dead-lettering, disconnect semantics."""

import asyncio

import pytest

from eventbus.broker.memory import InMemoryTransport, topic_matches


@pytest.fixture
async def open_transport() -> InMemoryTransport:
    transport = InMemoryTransport()
    await transport.connect()
    await transport.declare_topic("orders")
    await transport.declare_topic("dlx", "direct")
    await transport.declare_queue("failed_events")
    await transport.bind_queue("failed_events", "dlx", "failed")
    await transport.declare_queue(
        "billing_1",
        arguments={"x-dead-letter-exchange": "dlx", "x-dead-letter-routing-key": "failed"},
    )
    await transport.bind_queue("billing_1", "orders", "order.created")
    return transport


async def _next(transport: InMemoryTransport, queue: str):
    gen = transport.consume(queue)
    message = await asyncio.wait_for(gen.__anext__(), timeout=1.0)
    return gen, message


class TestTopicMatching:
    """AMQP wildcard semantics."""

    @pytest.mark.parametrize(
        ("pattern", "key", "expected"),
        [
            ("order.created", "order.created", True),
            ("order.*", "order.created", True),
            ("order.*", "order.created.v2", False),
            ("order.#", "order", True),
            ("#", "anything.at.all", True),
            ("*.created", "payment.created", True),
            ("order.created", "order.updated", False),
        ],
    )
    def test_topic_matches(self, pattern: str, key: str, expected: bool) -> None:
        assert topic_matches(pattern, key) is expected


class TestRouting:
    """Publish and consume."""

    @pytest.mark.asyncio
    async def test_publish_reaches_bound_queue_only(self, open_transport: InMemoryTransport) -> None:
        await open_transport.publish("orders", "order.created", b"{}", message_id="m1")
        await open_transport.publish("orders", "order.updated", b"{}", message_id="m2")
        messages = open_transport.queue_messages("billing_1")
        assert [m.message_id for m in messages] == ["m1"]

    @pytest.mark.asyncio
    async def test_publish_to_missing_exchange(self, open_transport: InMemoryTransport) -> None:
        with pytest.raises(LookupError):
            await open_transport.publish("nowhere", "x", b"{}")

    @pytest.mark.asyncio
    async def test_fail_next_publish_is_one_shot(self, open_transport: InMemoryTransport) -> None:
        open_transport.fail_next_publish()
        with pytest.raises(RuntimeError):
            await open_transport.publish("orders", "order.created", b"{}")
        await open_transport.publish("orders", "order.created", b"{}")
        assert len(open_transport.queue_messages("billing_1")) == 1

    @pytest.mark.asyncio
    async def test_redeclare_with_other_arguments_fails(
        self, open_transport: InMemoryTransport
    ) -> None:
        await open_transport.declare_queue(
            "billing_1",
            arguments={"x-dead-letter-exchange": "dlx", "x-dead-letter-routing-key": "failed"},
        )
        with pytest.raises(ValueError):
            await open_transport.declare_queue("billing_1")

    @pytest.mark.asyncio
    async def test_reject_dead_letters(self, open_transport: InMemoryTransport) -> None:
        await open_transport.publish("orders", "order.created", b"bad", message_id="m1")
        gen, message = await _next(open_transport, "billing_1")
        await message.reject()
        await gen.aclose()
        dead = open_transport.queue_messages("failed_events")
        assert [m.body for m in dead] == [b"bad"]
        assert dead[0].headers["x-first-death-queue"] == "billing_1"

    @pytest.mark.asyncio
    async def test_double_settle_raises(self, open_transport: InMemoryTransport) -> None:
        await open_transport.publish("orders", "order.created", b"{}")
        gen, message = await _next(open_transport, "billing_1")
        await message.ack()
        with pytest.raises(RuntimeError):
            await message.ack()
        await gen.aclose()

    @pytest.mark.asyncio
    async def test_delete_queue_ends_consumer(self, open_transport: InMemoryTransport) -> None:
        gen = open_transport.consume("billing_1")
        waiting = asyncio.create_task(gen.__anext__())
        await asyncio.sleep(0)
        await open_transport.delete_queue("billing_1")
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(waiting, timeout=1.0)
        assert not open_transport.has_queue("billing_1")
        assert open_transport.bindings("billing_1") == []


class TestDisconnect:
    """Broker state survives a dropped connection; unacked messages come back."""

    @pytest.mark.asyncio
    async def test_unacked_message_is_requeued(self, open_transport: InMemoryTransport) -> None:
        closed: list[BaseException | None] = []
        open_transport.add_close_callback(closed.append)
        await open_transport.publish("orders", "order.created", b"{}", message_id="m1")
        gen, message = await _next(open_transport, "billing_1")

        open_transport.simulate_disconnect()

        assert not open_transport.is_open
        assert len(closed) == 1
        with pytest.raises(ConnectionError):
            await message.ack()
        with pytest.raises(ConnectionError):
            await gen.__anext__()
        requeued = open_transport.queue_messages("billing_1")
        assert [m.message_id for m in requeued] == ["m1"]
        assert requeued[0].redelivered

    @pytest.mark.asyncio
    async def test_refused_connection(self) -> None:
        transport = InMemoryTransport()
        transport.refuse_connections = True
        with pytest.raises(ConnectionError):
            await transport.connect()
        assert not transport.is_open
