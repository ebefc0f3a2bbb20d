"""RabbitMQ transport over aio-pika. One plain connection, one channel; reconnection is owned by BrokerConnection."""

import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator
from urllib.parse import urlsplit, urlunsplit

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)

from eventbus.broker.contract import CloseCallback

logger = logging.getLogger(__name__)

_EXCHANGE_TYPES = {
    "topic": ExchangeType.TOPIC,
    "direct": ExchangeType.DIRECT,
    "fanout": ExchangeType.FANOUT,
    "headers": ExchangeType.HEADERS,
}


def sanitize_url(url: str) -> str:
    """Drop the password from an amqp:// URL for logging."""
    parts = urlsplit(url)
    if parts.password is None:
        return url
    netloc = parts.hostname or ""
    if parts.username:
        netloc = f"{parts.username}:***@{netloc}"
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


class AmqpMessage:
    """IncomingMessage adapter over aio-pika's AbstractIncomingMessage."""

    def __init__(self, message: AbstractIncomingMessage) -> None:
        self._message = message
        self.body = message.body
        self.headers: dict[str, Any] = dict(message.headers or {})
        self.topic = message.exchange or ""
        self.routing_key = message.routing_key or ""

    async def ack(self) -> None:
        await self._message.ack()

    async def reject(self) -> None:
        await self._message.reject(requeue=False)


class AmqpTransport:
    """BrokerTransport backed by a RabbitMQ server."""

    def __init__(self, url: str, prefetch_count: int = 10, heartbeat: int = 60) -> None:
        self._url = url
        self._prefetch_count = prefetch_count
        self._heartbeat = heartbeat
        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchanges: dict[str, AbstractExchange] = {}
        self._queues: dict[str, AbstractQueue] = {}
        self._close_callbacks: list[CloseCallback] = []
        self._closing = False

    @property
    def url(self) -> str:
        return sanitize_url(self._url)

    @property
    def is_open(self) -> bool:
        return (
            self._connection is not None
            and not self._connection.is_closed
            and self._channel is not None
            and not self._channel.is_closed
        )

    def add_close_callback(self, callback: CloseCallback) -> None:
        self._close_callbacks.append(callback)

    async def connect(self) -> None:
        if self._connection is not None and not self._connection.is_closed:
            # channel died under a live connection; start over
            await self.close()
        self._closing = False
        self._exchanges.clear()
        self._queues.clear()
        self._connection = await aio_pika.connect(self._url, heartbeat=self._heartbeat)
        self._connection.close_callbacks.add(self._on_connection_close)
        self._channel = await self._connection.channel()
        self._channel.close_callbacks.add(self._on_connection_close)
        await self._channel.set_qos(prefetch_count=self._prefetch_count)
        logger.info("AMQP connection opened to %s", self.url)

    async def close(self) -> None:
        self._closing = True
        if self._channel and not self._channel.is_closed:
            await self._channel.close()
        if self._connection and not self._connection.is_closed:
            await self._connection.close()
        self._channel = None
        self._connection = None
        self._exchanges.clear()
        self._queues.clear()

    def _on_connection_close(self, _sender: Any, exc: BaseException | None = None) -> None:
        if self._closing:
            return
        logger.warning("AMQP connection to %s closed: %s", self.url, exc)
        for callback in list(self._close_callbacks):
            callback(exc)

    def _require_channel(self) -> AbstractChannel:
        if self._channel is None or self._channel.is_closed:
            raise ConnectionError("AMQP channel is not open")
        return self._channel

    async def _exchange(self, name: str) -> AbstractExchange:
        exchange = self._exchanges.get(name)
        if exchange is None:
            exchange = await self._require_channel().get_exchange(name, ensure=True)
            self._exchanges[name] = exchange
        return exchange

    async def _queue(self, name: str) -> AbstractQueue:
        queue = self._queues.get(name)
        if queue is None:
            queue = await self._require_channel().get_queue(name, ensure=True)
            self._queues[name] = queue
        return queue

    async def declare_topic(self, name: str, kind: str = "topic", durable: bool = True) -> None:
        self._exchanges[name] = await self._require_channel().declare_exchange(
            name, _EXCHANGE_TYPES[kind], durable=durable
        )

    async def declare_queue(
        self,
        name: str,
        durable: bool = True,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        self._queues[name] = await self._require_channel().declare_queue(
            name, durable=durable, arguments=arguments
        )

    async def bind_queue(self, queue: str, topic: str, routing_key: str) -> None:
        q = await self._queue(queue)
        await q.bind(await self._exchange(topic), routing_key=routing_key)

    async def delete_queue(self, name: str) -> None:
        self._queues.pop(name, None)
        await self._require_channel().queue_delete(name)

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
        exchange = await self._exchange(topic)
        message = Message(
            body,
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT if persistent else DeliveryMode.NOT_PERSISTENT,
            priority=priority,
            message_id=message_id,
            headers=headers or {},
            timestamp=datetime.now(timezone.utc),
        )
        await exchange.publish(message, routing_key=routing_key)

    async def consume(self, queue: str) -> AsyncIterator[AmqpMessage]:
        q = await self._queue(queue)
        async with q.iterator() as iterator:
            async for message in iterator:
                yield AmqpMessage(message)
