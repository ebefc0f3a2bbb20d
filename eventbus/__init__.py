"""Event Bus: topic-routed event distribution between services over a message broker."""

from eventbus.bus import EventBus
from eventbus.errors import (
    BindingFailed,
    DeliveryFailed,
    EventBusError,
    InvalidRequest,
    NotConnected,
    PublishFailed,
    SubscriptionNotFound,
    UnknownEventType,
)
from eventbus.models import EventEnvelope, Subscription
from eventbus.topics import TopicRegistry, TopicRoute

__all__ = [
    "BindingFailed",
    "DeliveryFailed",
    "EventBus",
    "EventBusError",
    "EventEnvelope",
    "InvalidRequest",
    "NotConnected",
    "PublishFailed",
    "Subscription",
    "SubscriptionNotFound",
    "TopicRegistry",
    "TopicRoute",
    "UnknownEventType",
]
