"""EventBus: wires registry, connection, publisher, history, subscriptions and control surface."""

import logging
from typing import Any

from eventbus.broker import BrokerTransport, build_transport
from eventbus.connection import BrokerConnection, DeadLetterConfig
from eventbus.control import ControlSurface
from eventbus.delivery import CallbackDelivery, DeliverFn
from eventbus.errors import EventBusError
from eventbus.history import EventHistory
from eventbus.publisher import Publisher
from eventbus.settings import get_setting
from eventbus.subscriptions import SubscriptionManager
from eventbus.topics import TopicRegistry

logger = logging.getLogger(__name__)


class EventBus:
    """Composition root. One instance per process."""

    def __init__(
        self,
        transport: BrokerTransport,
        registry: TopicRegistry | None = None,
        dead_letter: DeadLetterConfig | None = None,
        deliver: DeliverFn | None = None,
        reconnect_delay: float = 5.0,
        history_capacity: int = 1000,
        delivery_timeout: float = 30.0,
        max_attempts: int = 3,
        backoff_unit: float = 1.0,
        static_subscriptions: list[dict[str, Any]] | None = None,
    ) -> None:
        self.registry = registry or TopicRegistry()
        self.connection = BrokerConnection(
            transport, self.registry, dead_letter=dead_letter, reconnect_delay=reconnect_delay
        )
        self.history = EventHistory(capacity=history_capacity)
        self.publisher = Publisher(self.connection, self.registry, self.history)
        self._callback_delivery: CallbackDelivery | None = None
        if deliver is None:
            self._callback_delivery = CallbackDelivery(timeout=delivery_timeout)
            deliver = self._callback_delivery
        self.subscriptions = SubscriptionManager(
            self.connection,
            self.registry,
            self.publisher,
            deliver,
            max_attempts=max_attempts,
            backoff_unit=backoff_unit,
        )
        self.control = ControlSurface(self)
        self._pending_static = list(static_subscriptions or [])
        self.connection.add_reconnect_listener(self._create_static_subscriptions)

    @classmethod
    def from_settings(
        cls, settings: dict[str, Any], transport: BrokerTransport | None = None
    ) -> "EventBus":
        dl = settings.get("dead_letter", {})
        return cls(
            transport=transport or build_transport(settings.get("broker", {})),
            registry=TopicRegistry.from_settings(settings.get("event_types")),
            dead_letter=DeadLetterConfig(
                exchange=dl.get("exchange", "dlx"),
                queue=dl.get("queue", "failed_events"),
                routing_key=dl.get("routing_key", "failed"),
                ttl_days=dl.get("ttl_days", 7),
            ),
            reconnect_delay=float(get_setting(settings, "broker.reconnect_delay", 5.0)),
            history_capacity=int(get_setting(settings, "history.capacity", 1000)),
            delivery_timeout=float(get_setting(settings, "delivery.timeout", 30.0)),
            max_attempts=int(get_setting(settings, "delivery.max_attempts", 3)),
            backoff_unit=float(get_setting(settings, "delivery.backoff_unit", 1.0)),
            static_subscriptions=settings.get("subscriptions") or [],
        )

    async def start(self) -> bool:
        """Connect and create static subscriptions. Returns False if the broker is not up yet;
        the connection keeps retrying and static subscriptions are created once it is."""
        connected = await self.connection.start()
        if connected:
            await self._create_static_subscriptions()
        else:
            logger.warning("Event bus started without broker; reconnecting in background")
        return connected

    async def stop(self) -> None:
        """Stop consumers and retries, close the HTTP client and the broker. Queues stay."""
        await self.subscriptions.close()
        if self._callback_delivery is not None:
            await self._callback_delivery.aclose()
        await self.connection.stop()
        logger.info("Event bus stopped")

    async def _create_static_subscriptions(self) -> None:
        pending, self._pending_static = self._pending_static, []
        for cfg in pending:
            try:
                await self.control.create_subscription(cfg)
            except EventBusError as e:
                logger.error(
                    "Static subscription for %s failed: %s", cfg.get("service_name", "?"), e
                )
