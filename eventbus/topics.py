"""Topic Registry: event-type name -> topic exchange and routing key. Built once, read everywhere."""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterator, Mapping

from eventbus.errors import UnknownEventType

__all__ = ["DEFAULT_EVENT_TYPES", "Domains", "TopicRegistry", "TopicRoute"]


class Domains:
    """Business domains. One topic exchange per domain."""

    ORDERS = "orders"
    PAYMENTS = "payments"
    INVENTORY = "inventory"
    USERS = "users"
    SHIPMENTS = "shipments"
    SYSTEM = "system"
    NOTIFICATIONS = "notifications"
    REPORTS = "reports"

    ALL = (ORDERS, PAYMENTS, INVENTORY, USERS, SHIPMENTS, SYSTEM, NOTIFICATIONS, REPORTS)


@dataclass(frozen=True)
class TopicRoute:
    """Where an event type is published: exchange, routing key, persistence."""

    topic: str
    routing_key: str
    durable: bool = True


def _routes(topic: str, *event_types: str) -> dict[str, TopicRoute]:
    return {name: TopicRoute(topic=topic, routing_key=name) for name in event_types}


DEFAULT_EVENT_TYPES: Mapping[str, TopicRoute] = MappingProxyType(
    {
        **_routes(
            Domains.ORDERS,
            "order.created",
            "order.updated",
            "order.cancelled",
            "order.completed",
        ),
        **_routes(
            Domains.PAYMENTS,
            "payment.created",
            "payment.verified",
            "payment.failed",
            "payment.refunded",
        ),
        **_routes(
            Domains.INVENTORY,
            "inventory.low_stock",
            "inventory.out_of_stock",
            "inventory.restocked",
            "inventory.updated",
        ),
        **_routes(Domains.USERS, "user.registered", "user.updated", "user.deleted"),
        **_routes(
            Domains.SHIPMENTS,
            "shipment.created",
            "shipment.shipped",
            "shipment.delivered",
        ),
        **_routes(
            Domains.SYSTEM,
            "system.exchange_rate_updated",
            "system.backup_completed",
            "system.maintenance_started",
        ),
        **_routes(Domains.NOTIFICATIONS, "notification.sent", "notification.failed"),
        **_routes(Domains.REPORTS, "report.generated", "report.scheduled"),
    }
)


class TopicRegistry:
    """Immutable event-type table. Inject one instance into publisher, connection and subscriptions."""

    def __init__(self, routes: Mapping[str, TopicRoute] | None = None) -> None:
        self._routes = MappingProxyType(dict(DEFAULT_EVENT_TYPES if routes is None else routes))

    @classmethod
    def from_settings(cls, overrides: Mapping[str, Any] | None) -> "TopicRegistry":
        """Defaults plus `event_types` entries from settings ({name: {topic, routing_key, durable}})."""
        routes = dict(DEFAULT_EVENT_TYPES)
        for name, cfg in (overrides or {}).items():
            cfg = cfg or {}
            topic = cfg.get("topic") or name.split(".", 1)[0]
            routes[name] = TopicRoute(
                topic=topic,
                routing_key=cfg.get("routing_key", name),
                durable=bool(cfg.get("durable", True)),
            )
        return cls(routes)

    def resolve(self, event_type: str) -> TopicRoute:
        """Route for event_type. Raises UnknownEventType when absent."""
        try:
            return self._routes[event_type]
        except KeyError:
            raise UnknownEventType(event_type) from None

    def __contains__(self, event_type: object) -> bool:
        return event_type in self._routes

    def __iter__(self) -> Iterator[str]:
        return iter(self._routes)

    def __len__(self) -> int:
        return len(self._routes)

    @property
    def topics(self) -> tuple[str, ...]:
        """Distinct topic exchanges, in first-seen order."""
        return tuple(dict.fromkeys(route.topic for route in self._routes.values()))

    def event_types(self) -> list[str]:
        return list(self._routes)
