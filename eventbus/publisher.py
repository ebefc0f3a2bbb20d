"""Publisher: domain event -> stamped envelope -> topic exchange -> history."""

import logging
import copy
import uuid
from datetime import datetime, timezone
from typing import Any

from eventbus.connection import BrokerConnection
from eventbus.errors import PublishFailed
from eventbus.history import EventHistory
from eventbus.models import EventEnvelope, RetryEnvelope
from eventbus.topics import TopicRegistry

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5

# Fixed producer names for the domain helpers.
_DOMAIN_SOURCES = {
    "order": "order-service",
    "payment": "payment-service",
    "inventory": "product-service",
    "system": "system",
}


class Publisher:
    """Assigns identity, routes through the registry, records successful handoffs in history.

    Never retries on its own: a failed publish is surfaced to the caller as PublishFailed.
    """

    def __init__(
        self,
        connection: BrokerConnection,
        registry: TopicRegistry,
        history: EventHistory,
    ) -> None:
        self._connection = connection
        self._registry = registry
        self._history = history
        self._last_timestamp: datetime | None = None

    def _next_timestamp(self) -> str:
        """Wall clock, clamped so timestamps never go backwards in publish order."""
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now < self._last_timestamp:
            now = self._last_timestamp
        self._last_timestamp = now
        return now.isoformat()

    async def publish(
        self,
        event_type: str,
        data: dict[str, Any],
        source_service: str,
        correlation_id: str | None = None,
        priority: int | None = DEFAULT_PRIORITY,
        user_id: str | None = None,
    ) -> str:
        """Publish one event. Returns the new event_id.

        Raises UnknownEventType before touching the broker, NotConnected while
        disconnected, PublishFailed when the broker refuses the message.
        """
        route = self._registry.resolve(event_type)
        self._connection.require_connected()

        envelope = EventEnvelope(
            event_id=str(uuid.uuid4()),
            event_type=event_type,
            data=copy.deepcopy(data),
            source_service=source_service,
            correlation_id=correlation_id or str(uuid.uuid4()),
            timestamp=self._next_timestamp(),
            user_id=user_id,
        )
        message = RetryEnvelope(envelope=envelope, topic=route.topic, routing_key=route.routing_key)
        try:
            await self._connection.transport.publish(
                route.topic,
                route.routing_key,
                envelope.to_json(),
                persistent=route.durable,
                priority=priority,
                message_id=envelope.event_id,
                headers=message.headers(),
            )
        except Exception as e:
            logger.error("Publish of %s from %s failed: %s", event_type, source_service, e)
            raise PublishFailed(f"Broker rejected {event_type}: {e}") from e

        self._history.append(envelope)
        logger.info(
            "Event published: %s from %s (event_id=%s, correlation_id=%s)",
            event_type,
            source_service,
            envelope.event_id,
            envelope.correlation_id,
        )
        return envelope.event_id

    async def republish(self, retry: RetryEnvelope) -> None:
        """Put a retry back on its original topic and routing key as a new message.

        Not recorded in history: it is the same event, not a new one.
        """
        self._connection.require_connected()
        route = self._registry.resolve(retry.envelope.event_type)
        try:
            await self._connection.transport.publish(
                retry.topic,
                retry.routing_key,
                retry.envelope.to_json(),
                persistent=route.durable,
                message_id=retry.envelope.event_id,
                headers=retry.headers(),
            )
        except Exception as e:
            raise PublishFailed(f"Retry re-publish of {retry.envelope.event_id} failed: {e}") from e

    async def _publish_domain(
        self, domain: str, action: str, data: dict[str, Any], user_id: str | None
    ) -> str:
        return await self.publish(
            event_type=f"{domain}.{action}",
            data=data,
            source_service=_DOMAIN_SOURCES[domain],
            user_id=user_id,
        )

    async def publish_order_event(
        self, action: str, data: dict[str, Any], user_id: str | None = None
    ) -> str:
        return await self._publish_domain("order", action, data, user_id)

    async def publish_payment_event(
        self, action: str, data: dict[str, Any], user_id: str | None = None
    ) -> str:
        return await self._publish_domain("payment", action, data, user_id)

    async def publish_inventory_event(
        self, action: str, data: dict[str, Any], user_id: str | None = None
    ) -> str:
        return await self._publish_domain("inventory", action, data, user_id)

    async def publish_system_event(
        self, action: str, data: dict[str, Any], user_id: str | None = None
    ) -> str:
        return await self._publish_domain("system", action, data, user_id)
