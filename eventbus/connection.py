"""Broker Connection Manager: single connection, topology setup, fixed-delay reconnection."""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from eventbus.broker.contract import BrokerTransport
from eventbus.errors import NotConnected
from eventbus.topics import TopicRegistry

logger = logging.getLogger(__name__)

_DAY_MS = 24 * 60 * 60 * 1000

ReconnectListener = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class DeadLetterConfig:
    """Dead-letter exchange and its single overflow queue."""

    exchange: str = "dlx"
    queue: str = "failed_events"
    routing_key: str = "failed"
    ttl_days: float = 7

    @property
    def ttl_ms(self) -> int:
        return int(self.ttl_days * _DAY_MS)

    def subscriber_queue_arguments(self) -> dict[str, Any]:
        """Arguments that route rejected subscriber messages to the dead-letter exchange."""
        return {
            "x-dead-letter-exchange": self.exchange,
            "x-dead-letter-routing-key": self.routing_key,
        }


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class BrokerConnection:
    """Owns the broker transport. Publish and subscription calls fail fast while disconnected."""

    def __init__(
        self,
        transport: BrokerTransport,
        registry: TopicRegistry,
        dead_letter: DeadLetterConfig | None = None,
        reconnect_delay: float = 5.0,
    ) -> None:
        self._transport = transport
        self._registry = registry
        self._dead_letter = dead_letter or DeadLetterConfig()
        self._reconnect_delay = reconnect_delay
        self._state = ConnectionState.DISCONNECTED
        self._connected = asyncio.Event()
        self._topology_lock = asyncio.Lock()
        self._listeners: list[ReconnectListener] = []
        self._reconnect_task: asyncio.Task[None] | None = None
        self._stopped = False
        self._connected_at: float | None = None
        transport.add_close_callback(self._on_transport_closed)

    @property
    def transport(self) -> BrokerTransport:
        return self._transport

    @property
    def dead_letter(self) -> DeadLetterConfig:
        return self._dead_letter

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def topology_lock(self) -> asyncio.Lock:
        """Serializes declare/bind/delete. Publish and consume do not take it."""
        return self._topology_lock

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._transport.is_open

    @property
    def connected_at(self) -> float | None:
        return self._connected_at

    def require_connected(self) -> None:
        """Raise NotConnected unless the connection is up. Nothing is queued while disconnected."""
        if not self.is_connected:
            raise NotConnected()

    async def check_connection(self) -> bool:
        return self.is_connected

    def add_reconnect_listener(self, listener: ReconnectListener) -> None:
        """Awaited after every successful reconnection (not after the first connect)."""
        self._listeners.append(listener)

    async def start(self) -> bool:
        """Connect and declare topology once. On failure, keep retrying in the background.

        Returns True when connected on the first attempt.
        """
        self._stopped = False
        try:
            await self._establish()
        except Exception as e:
            logger.error("Initial broker connection failed: %s", e)
            await self._discard_transport()
            self._schedule_reconnect()
            return False
        return True

    async def stop(self) -> None:
        self._stopped = True
        if self._reconnect_task:
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
            self._reconnect_task = None
        self._set_disconnected()
        await self._transport.close()
        logger.info("Broker connection closed")

    async def wait_connected(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _establish(self) -> None:
        self._state = ConnectionState.CONNECTING
        try:
            await self._transport.connect()
            async with self._topology_lock:
                await self._declare_topology()
        except BaseException:
            self._set_disconnected()
            raise
        self._state = ConnectionState.CONNECTED
        self._connected_at = time.time()
        self._connected.set()
        logger.info("Broker connected, topology ready (%d topics)", len(self._registry.topics))

    async def _declare_topology(self) -> None:
        for topic in self._registry.topics:
            await self._transport.declare_topic(topic, "topic", durable=True)
            logger.debug("Exchange %r declared", topic)
        dlq = self._dead_letter
        await self._transport.declare_topic(dlq.exchange, "direct", durable=True)
        await self._transport.declare_queue(
            dlq.queue, durable=True, arguments={"x-message-ttl": dlq.ttl_ms}
        )
        await self._transport.bind_queue(dlq.queue, dlq.exchange, dlq.routing_key)
        logger.debug("Dead-letter exchange %r -> queue %r configured", dlq.exchange, dlq.queue)

    def _set_disconnected(self) -> None:
        self._state = ConnectionState.DISCONNECTED
        self._connected.clear()
        self._connected_at = None

    async def _discard_transport(self) -> None:
        try:
            await self._transport.close()
        except Exception as e:
            logger.debug("Ignoring error while closing broken transport: %s", e)

    def _on_transport_closed(self, exc: BaseException | None) -> None:
        if self._stopped:
            return
        logger.warning("Broker connection lost: %s", exc)
        self._set_disconnected()
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._stopped or (self._reconnect_task and not self._reconnect_task.done()):
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        """Retry every reconnect_delay seconds until topology is re-established."""
        attempt = 0
        while not self._stopped:
            await asyncio.sleep(self._reconnect_delay)
            attempt += 1
            logger.info("Reconnecting to broker (attempt %d)", attempt)
            try:
                await self._establish()
            except Exception as e:
                logger.error("Reconnection attempt %d failed: %s", attempt, e)
                await self._discard_transport()
                continue
            logger.info("Broker connection re-established after %d attempt(s)", attempt)
            for listener in list(self._listeners):
                try:
                    await listener()
                except Exception as e:
                    logger.exception("Reconnect listener failed: %s", e)
            return
