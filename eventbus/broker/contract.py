"""Broker transport protocols. Connection manager, publisher and subscriptions depend only on these."""

from typing import Any, AsyncIterator, Callable, Protocol, runtime_checkable

CloseCallback = Callable[[BaseException | None], None]


@runtime_checkable
class IncomingMessage(Protocol):
    """One delivery from a subscriber queue."""

    body: bytes
    headers: dict[str, Any]
    topic: str  # exchange the message was published to
    routing_key: str

    async def ack(self) -> None:
        """Remove the message from the queue."""

    async def reject(self) -> None:
        """Discard without redelivery. Queues with dead-letter arguments forward it there."""


@runtime_checkable
class BrokerTransport(Protocol):
    """Single connection + channel to the broker."""

    @property
    def is_open(self) -> bool:
        """True while the connection and channel are usable."""

    def add_close_callback(self, callback: CloseCallback) -> None:
        """Called once per unexpected connection loss, with the cause if known."""

    async def connect(self) -> None:
        """Open connection and channel. Raises on failure."""

    async def close(self) -> None:
        """Close channel and connection. Does not fire close callbacks."""

    async def declare_topic(self, name: str, kind: str = "topic", durable: bool = True) -> None:
        """Declare an exchange. Idempotent."""

    async def declare_queue(
        self,
        name: str,
        durable: bool = True,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        """Declare a queue. Idempotent for identical arguments."""

    async def bind_queue(self, queue: str, topic: str, routing_key: str) -> None:
        """Bind queue to exchange with a routing pattern."""

    async def delete_queue(self, name: str) -> None:
        """Delete a queue and any messages in it."""

    async def publish(
        self,
        topic: str,
        routing_key: str,
        body: bytes,
        *,
        persistent: bool = True,
        priority: int | None = None,
        message_id: str | None = None,
        headers: dict[str, Any] | None = None,
    ) -> None:
        """Hand a message to the broker. Raises if the broker refuses it."""

    def consume(self, queue: str) -> AsyncIterator[IncomingMessage]:
        """Iterate deliveries from queue until cancelled or the queue goes away."""
