"""Broker transports: RabbitMQ (aio-pika) and an in-process emulation."""

from typing import Any

from eventbus.broker.contract import BrokerTransport, IncomingMessage
from eventbus.broker.memory import InMemoryTransport

__all__ = ["BrokerTransport", "IncomingMessage", "InMemoryTransport", "build_transport"]


def build_transport(broker_cfg: dict[str, Any]) -> BrokerTransport:
    """Transport from the `broker` settings section. 'amqp' (default) or 'memory'."""
    kind = broker_cfg.get("transport", "amqp")
    if kind == "memory":
        return InMemoryTransport()
    if kind == "amqp":
        from eventbus.broker.amqp import AmqpTransport

        return AmqpTransport(
            url=broker_cfg.get("url", "amqp://localhost:5672"),
            prefetch_count=int(broker_cfg.get("prefetch_count", 10)),
            heartbeat=int(broker_cfg.get("heartbeat", 60)),
        )
    raise ValueError(f"Unknown broker transport: {kind!r}")
