"""Subscription Manager: durable per-subscriber queues, consumer loops, retry and dead-lettering.

Per-message policy:
  - body that is not an envelope -> reject (broker dead-letters it verbatim)
  - filter mismatch              -> ack, not delivered
  - callback 2xx                 -> ack
  - callback failure             -> re-publish with x-retry-count + 1 after unit * 2**count
                                    seconds, then ack the original; once max_attempts
                                    deliveries have failed -> reject to dead-letter
"""

import asyncio
import logging
import uuid
from collections import Counter
from contextlib import aclosing
from dataclasses import replace
from typing import Any, Iterable

from eventbus.broker.contract import IncomingMessage
from eventbus.connection import BrokerConnection
from eventbus.delivery import DeliverFn
from eventbus.errors import (
    BindingFailed,
    DeliveryFailed,
    EventBusError,
    NotConnected,
    SubscriptionNotFound,
    UnknownEventType,
)
from eventbus.models import EventEnvelope, RetryEnvelope, Subscription, SubscriptionState
from eventbus.publisher import Publisher
from eventbus.topics import TopicRegistry, TopicRoute

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


class SubscriptionManager:
    """Owns subscriber queues. Registry entry and broker queue are created and destroyed together."""

    def __init__(
        self,
        connection: BrokerConnection,
        registry: TopicRegistry,
        publisher: Publisher,
        deliver: DeliverFn,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_unit: float = 1.0,
    ) -> None:
        self._connection = connection
        self._registry = registry
        self._publisher = publisher
        self._deliver = deliver
        self._max_attempts = max_attempts
        self._backoff_unit = backoff_unit
        self._subscriptions: dict[str, Subscription] = {}
        self._consumers: dict[str, asyncio.Task[None]] = {}
        self._inflight: set[asyncio.Task[None]] = set()
        self._retries: set[asyncio.Task[None]] = set()
        self.counters: Counter[str] = Counter()
        connection.add_reconnect_listener(self._resume_all)

    @property
    def active_count(self) -> int:
        return len(self._subscriptions)

    def list_subscriptions(self) -> list[Subscription]:
        """Snapshot copies; mutating them does not affect the manager."""
        return [replace(sub) for sub in self._subscriptions.values()]

    def get_subscription(self, subscription_id: str) -> Subscription:
        sub = self._subscriptions.get(subscription_id)
        if sub is None:
            raise SubscriptionNotFound(subscription_id)
        return replace(sub)

    def _routes(self, event_types: Iterable[str]) -> list[TopicRoute]:
        try:
            return [self._registry.resolve(t) for t in event_types]
        except UnknownEventType as e:
            raise BindingFailed(f"Cannot subscribe to unknown event type {e.event_type!r}") from e

    async def create_subscription(
        self,
        event_types: Iterable[str],
        callback_url: str,
        service_name: str,
        filter_criteria: dict[str, Any] | None = None,
        created_by: str | None = None,
    ) -> str:
        """Declare and bind the subscriber queue, start its consumer. Returns subscription_id."""
        types = tuple(dict.fromkeys(event_types))
        if not types:
            raise BindingFailed("At least one event type is required")
        routes = self._routes(types)
        self._connection.require_connected()

        sub = Subscription(
            subscription_id=str(uuid.uuid4()),
            event_types=types,
            callback_url=callback_url,
            service_name=service_name,
            filter_criteria=dict(filter_criteria) if filter_criteria else None,
            created_by=created_by,
        )
        try:
            await self._bind(sub, routes)
        except Exception as e:
            logger.error("Binding %s for %s failed: %s", sub.queue_name, service_name, e)
            await self._discard_queue(sub.queue_name)
            raise BindingFailed(f"Could not bind queue for {service_name}: {e}") from e

        self._subscriptions[sub.subscription_id] = sub
        self._start_consumer(sub)
        sub.state = SubscriptionState.CONSUMING
        logger.info(
            "Subscription %s created for %s: %s",
            sub.subscription_id,
            service_name,
            ", ".join(types),
        )
        return sub.subscription_id

    async def delete_subscription(self, subscription_id: str) -> None:
        """Stop the consumer, delete the queue, drop the record. In-flight deliveries finish on their own."""
        sub = self._subscriptions.get(subscription_id)
        if sub is None:
            raise SubscriptionNotFound(subscription_id)
        self._connection.require_connected()

        await self._stop_consumer(subscription_id)
        try:
            async with self._connection.topology_lock:
                await self._connection.transport.delete_queue(sub.queue_name)
        except Exception as e:
            logger.error("Deleting queue %s failed, consumer restarted: %s", sub.queue_name, e)
            self._start_consumer(sub)
            raise NotConnected(f"Could not delete queue {sub.queue_name}: {e}") from e

        sub.state = SubscriptionState.DELETED
        del self._subscriptions[subscription_id]
        logger.info("Subscription %s deleted (%s)", subscription_id, sub.service_name)

    async def close(self) -> None:
        """Stop all consumers and pending retries. Durable queues stay on the broker."""
        for subscription_id in list(self._consumers):
            await self._stop_consumer(subscription_id)
        pending = list(self._retries) + list(self._inflight)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _bind(self, sub: Subscription, routes: list[TopicRoute]) -> None:
        transport = self._connection.transport
        async with self._connection.topology_lock:
            await transport.declare_queue(
                sub.queue_name,
                durable=True,
                arguments=self._connection.dead_letter.subscriber_queue_arguments(),
            )
            for route in routes:
                await transport.bind_queue(sub.queue_name, route.topic, route.routing_key)

    async def _discard_queue(self, queue_name: str) -> None:
        try:
            async with self._connection.topology_lock:
                await self._connection.transport.delete_queue(queue_name)
        except Exception as e:
            logger.warning("Could not clean up queue %s: %s", queue_name, e)

    def _start_consumer(self, sub: Subscription) -> None:
        self._consumers[sub.subscription_id] = asyncio.create_task(
            self._consume(sub), name=f"consumer:{sub.queue_name}"
        )

    async def _stop_consumer(self, subscription_id: str) -> None:
        task = self._consumers.pop(subscription_id, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _resume_all(self) -> None:
        """After reconnect: re-declare every live queue and restart its consumer."""
        for sub in list(self._subscriptions.values()):
            await self._stop_consumer(sub.subscription_id)
            try:
                await self._bind(sub, self._routes(sub.event_types))
            except Exception as e:
                logger.error("Could not restore subscription %s: %s", sub.subscription_id, e)
                continue
            self._start_consumer(sub)
            logger.info("Subscription %s resumed on %s", sub.subscription_id, sub.queue_name)

    async def _consume(self, sub: Subscription) -> None:
        """One loop per subscription. Each message is handled in a shielded task so that
        cancelling the loop never interrupts a delivery already in progress."""
        try:
            async with aclosing(self._connection.transport.consume(sub.queue_name)) as messages:
                async for message in messages:
                    handling = asyncio.create_task(self._handle(sub, message))
                    self._inflight.add(handling)
                    handling.add_done_callback(self._inflight.discard)
                    await asyncio.shield(handling)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if sub.state is not SubscriptionState.DELETED:
                logger.warning("Consumer for %s stopped: %s", sub.queue_name, e)
            return
        if sub.state is not SubscriptionState.DELETED:
            logger.warning("Queue %s went away; consumer stopped", sub.queue_name)

    async def _handle(self, sub: Subscription, message: IncomingMessage) -> None:
        try:
            await self._process(sub, message)
        except Exception as e:
            logger.exception("Unexpected error handling message on %s: %s", sub.queue_name, e)

    async def _process(self, sub: Subscription, message: IncomingMessage) -> None:
        try:
            envelope = EventEnvelope.from_json(message.body)
        except ValueError as e:
            logger.warning("Poison message on %s sent to dead-letter: %s", sub.queue_name, e)
            self.counters["poison"] += 1
            await self._settle(sub, message, reject=True)
            return

        retry = RetryEnvelope.from_headers(
            envelope,
            message.topic or self._fallback_topic(envelope),
            message.routing_key or envelope.event_type,
            message.headers,
        )
        if not retry.is_for(sub.queue_name):
            await self._settle(sub, message)
            return
        if not sub.matches(envelope):
            self.counters["filtered"] += 1
            await self._settle(sub, message)
            return

        try:
            await self._deliver(sub.callback_url, envelope)
        except Exception as e:
            failure = e if isinstance(e, DeliveryFailed) else DeliveryFailed(str(e))
            await self._on_delivery_failed(sub, message, retry, failure)
            return

        self.counters["delivered"] += 1
        await self._settle(sub, message)
        logger.info(
            "Event %s (%s) delivered to %s",
            envelope.event_id,
            envelope.event_type,
            sub.service_name,
        )

    def _fallback_topic(self, envelope: EventEnvelope) -> str:
        try:
            return self._registry.resolve(envelope.event_type).topic
        except UnknownEventType:
            return ""

    async def _settle(self, sub: Subscription, message: IncomingMessage, reject: bool = False) -> None:
        """Ack or reject, unless the queue was deleted while the message was in flight."""
        if sub.state is SubscriptionState.DELETED:
            return
        if reject:
            await message.reject()
        else:
            await message.ack()

    async def _on_delivery_failed(
        self,
        sub: Subscription,
        message: IncomingMessage,
        retry: RetryEnvelope,
        error: DeliveryFailed,
    ) -> None:
        attempt = retry.next_attempt(target_queue=sub.queue_name)
        event_id = retry.envelope.event_id
        if attempt.exhausted(self._max_attempts):
            self.counters["dead_lettered"] += 1
            logger.error(
                "Event %s dead-lettered for %s after %d attempts: %s",
                event_id,
                sub.service_name,
                attempt.retry_count,
                error,
            )
            await self._settle(sub, message, reject=True)
            return

        delay = attempt.backoff(self._backoff_unit)
        self.counters["retried"] += 1
        logger.warning(
            "Delivery of %s to %s failed (attempt %d/%d), retrying in %.1fs: %s",
            event_id,
            sub.service_name,
            attempt.retry_count,
            self._max_attempts,
            delay,
            error,
        )
        task = asyncio.create_task(self._retry_later(sub, message, attempt, delay))
        self._retries.add(task)
        task.add_done_callback(self._retries.discard)

    async def _retry_later(
        self,
        sub: Subscription,
        message: IncomingMessage,
        attempt: RetryEnvelope,
        delay: float,
    ) -> None:
        """Sleep off the backoff, re-publish as a new message, then ack the original."""
        await asyncio.sleep(delay)
        if sub.state is SubscriptionState.DELETED:
            return
        try:
            await self._publisher.republish(attempt)
        except EventBusError as e:
            logger.error(
                "Re-publish of %s failed, dead-lettering original: %s",
                attempt.envelope.event_id,
                e,
            )
            try:
                await self._settle(sub, message, reject=True)
            except Exception as reject_error:
                logger.warning(
                    "Could not reject %s, broker will redeliver: %s",
                    attempt.envelope.event_id,
                    reject_error,
                )
            return
        try:
            await self._settle(sub, message)
        except Exception as e:
            logger.warning("Ack after re-publish of %s failed: %s", attempt.envelope.event_id, e)
