"""In-process broker emulation: topic/direct/fanout exchanges, durable queues, dead-lettering.

Used by the test suite and for local runs without RabbitMQ (broker.transport: memory).
Broker state (exchanges, queues, messages) survives simulate_disconnect(), like a real broker
outliving a client connection; unacknowledged deliveries are requeued on disconnect.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from eventbus.broker.contract import CloseCallback

logger = logging.getLogger(__name__)


def topic_matches(pattern: str, routing_key: str) -> bool:
    """AMQP topic matching: '*' is exactly one word, '#' is zero or more words."""
    return _match(pattern.split("."), routing_key.split("."))


def _match(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match(rest, words[1:])
    return False


@dataclass
class StoredMessage:
    body: bytes
    topic: str
    routing_key: str
    headers: dict[str, Any] = field(default_factory=dict)
    persistent: bool = True
    priority: int | None = None
    message_id: str | None = None
    redelivered: bool = False


@dataclass
class _Exchange:
    name: str
    kind: str
    durable: bool
    bindings: list[tuple[str, str]] = field(default_factory=list)  # (routing pattern, queue)

    def routes(self, routing_key: str) -> list[str]:
        if self.kind == "fanout":
            return list(dict.fromkeys(q for _, q in self.bindings))
        if self.kind == "direct":
            return list(dict.fromkeys(q for key, q in self.bindings if key == routing_key))
        return list(dict.fromkeys(q for key, q in self.bindings if topic_matches(key, routing_key)))


@dataclass
class _Queue:
    name: str
    durable: bool
    arguments: dict[str, Any]
    ready: deque[StoredMessage] = field(default_factory=deque)
    unacked: list["MemoryMessage"] = field(default_factory=list)
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    deleted: bool = False


class MemoryMessage:
    """Delivery handed to a consumer of InMemoryTransport."""

    def __init__(self, transport: "InMemoryTransport", queue: _Queue, stored: StoredMessage) -> None:
        self._transport = transport
        self._queue = queue
        self._stored = stored
        self._generation = transport.generation
        self._settled = False
        self.body = stored.body
        self.headers = dict(stored.headers)
        self.topic = stored.topic
        self.routing_key = stored.routing_key
        self.redelivered = stored.redelivered

    def _settle(self) -> None:
        if self._settled:
            raise RuntimeError("Message already acknowledged or rejected")
        if not self._transport.is_open or self._generation != self._transport.generation:
            raise ConnectionError("Channel closed before the message was settled")
        self._settled = True
        if self in self._queue.unacked:
            self._queue.unacked.remove(self)

    async def ack(self) -> None:
        self._settle()

    async def reject(self) -> None:
        self._settle()
        self._transport._dead_letter(self._queue, self._stored)


class InMemoryTransport:
    """BrokerTransport that keeps all broker state in memory."""

    def __init__(self) -> None:
        self._exchanges: dict[str, _Exchange] = {}
        self._queues: dict[str, _Queue] = {}
        self._close_callbacks: list[CloseCallback] = []
        self._open = False
        self._publish_failures: deque[BaseException] = deque()
        self.generation = 0
        self.refuse_connections = False
        self.published: list[StoredMessage] = []

    @property
    def is_open(self) -> bool:
        return self._open

    def add_close_callback(self, callback: CloseCallback) -> None:
        self._close_callbacks.append(callback)

    async def connect(self) -> None:
        if self.refuse_connections:
            raise ConnectionError("Connection refused")
        self._open = True

    async def close(self) -> None:
        self._drop_connection()

    def simulate_disconnect(self, exc: BaseException | None = None) -> None:
        """Drop the connection as if the broker went away; fires close callbacks."""
        self._drop_connection()
        for callback in list(self._close_callbacks):
            callback(exc or ConnectionError("Connection reset by broker"))

    def fail_next_publish(self, exc: BaseException | None = None) -> None:
        self._publish_failures.append(exc or RuntimeError("Broker refused the message"))

    def _drop_connection(self) -> None:
        if not self._open:
            return
        self._open = False
        self.generation += 1
        for queue in self._queues.values():
            for message in reversed(queue.unacked):
                message._stored.redelivered = True
                queue.ready.appendleft(message._stored)
            queue.unacked.clear()
            queue.wakeup.set()

    def _require_open(self) -> None:
        if not self._open:
            raise ConnectionError("Connection is closed")

    async def declare_topic(self, name: str, kind: str = "topic", durable: bool = True) -> None:
        self._require_open()
        existing = self._exchanges.get(name)
        if existing is not None:
            if existing.kind != kind:
                raise ValueError(f"Exchange {name!r} already declared as {existing.kind}")
            return
        self._exchanges[name] = _Exchange(name=name, kind=kind, durable=durable)

    async def declare_queue(
        self,
        name: str,
        durable: bool = True,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        self._require_open()
        arguments = dict(arguments or {})
        existing = self._queues.get(name)
        if existing is not None:
            if existing.arguments != arguments:
                raise ValueError(f"Queue {name!r} already declared with different arguments")
            return
        self._queues[name] = _Queue(name=name, durable=durable, arguments=arguments)

    async def bind_queue(self, queue: str, topic: str, routing_key: str) -> None:
        self._require_open()
        if queue not in self._queues:
            raise LookupError(f"No queue {queue!r}")
        exchange = self._exchanges.get(topic)
        if exchange is None:
            raise LookupError(f"No exchange {topic!r}")
        if (routing_key, queue) not in exchange.bindings:
            exchange.bindings.append((routing_key, queue))

    async def delete_queue(self, name: str) -> None:
        self._require_open()
        queue = self._queues.pop(name, None)
        if queue is None:
            return
        queue.deleted = True
        queue.wakeup.set()
        for exchange in self._exchanges.values():
            exchange.bindings = [(key, q) for key, q in exchange.bindings if q != name]

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
        self._require_open()
        if self._publish_failures:
            raise self._publish_failures.popleft()
        if topic not in self._exchanges:
            raise LookupError(f"No exchange {topic!r}")
        stored = StoredMessage(
            body=body,
            topic=topic,
            routing_key=routing_key,
            headers=dict(headers or {}),
            persistent=persistent,
            priority=priority,
            message_id=message_id,
        )
        self.published.append(stored)
        self._route(topic, routing_key, stored)

    def _route(self, topic: str, routing_key: str, stored: StoredMessage) -> None:
        for queue_name in self._exchanges[topic].routes(routing_key):
            queue = self._queues[queue_name]
            queue.ready.append(
                StoredMessage(
                    body=stored.body,
                    topic=stored.topic,
                    routing_key=stored.routing_key,
                    headers=dict(stored.headers),
                    persistent=stored.persistent,
                    priority=stored.priority,
                    message_id=stored.message_id,
                )
            )
            queue.wakeup.set()

    def _dead_letter(self, queue: _Queue, stored: StoredMessage) -> None:
        dlx = queue.arguments.get("x-dead-letter-exchange")
        if not dlx or dlx not in self._exchanges:
            return
        routing_key = queue.arguments.get("x-dead-letter-routing-key", stored.routing_key)
        headers = dict(stored.headers)
        headers.setdefault("x-first-death-queue", queue.name)
        headers.setdefault("x-first-death-reason", "rejected")
        headers.setdefault("x-first-death-exchange", stored.topic)
        dead = StoredMessage(
            body=stored.body,
            topic=stored.topic,
            routing_key=stored.routing_key,
            headers=headers,
            persistent=stored.persistent,
            message_id=stored.message_id,
        )
        self._route(dlx, routing_key, dead)

    async def consume(self, queue: str) -> AsyncIterator[MemoryMessage]:
        self._require_open()
        q = self._queues.get(queue)
        if q is None:
            raise LookupError(f"No queue {queue!r}")
        generation = self.generation
        while True:
            if generation != self.generation or not self._open:
                raise ConnectionError("Connection lost while consuming")
            if q.deleted:
                return
            if q.ready:
                message = MemoryMessage(self, q, q.ready.popleft())
                q.unacked.append(message)
                yield message
                continue
            q.wakeup.clear()
            await q.wakeup.wait()

    # Inspection helpers for tests and operators.

    def has_queue(self, name: str) -> bool:
        return name in self._queues

    def has_exchange(self, name: str) -> bool:
        return name in self._exchanges

    def exchange_kind(self, name: str) -> str:
        return self._exchanges[name].kind

    def queue_arguments(self, name: str) -> dict[str, Any]:
        return dict(self._queues[name].arguments)

    def bindings(self, queue: str) -> list[tuple[str, str]]:
        """(exchange, routing pattern) pairs bound to queue."""
        return [
            (exchange.name, key)
            for exchange in self._exchanges.values()
            for key, q in exchange.bindings
            if q == queue
        ]

    def queue_messages(self, name: str) -> list[StoredMessage]:
        """Messages waiting in a queue (not yet delivered)."""
        return list(self._queues[name].ready)
