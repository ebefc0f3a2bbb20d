"""Event bus error taxonomy. Caller misuse vs. transient infrastructure failure."""

from typing import Any

__all__ = [
    "BindingFailed",
    "DeliveryFailed",
    "ErrorCodes",
    "EventBusError",
    "InvalidRequest",
    "NotConnected",
    "PublishFailed",
    "SubscriptionNotFound",
    "UnknownEventType",
]


class ErrorCodes:
    """Stable error codes exposed to Control Surface callers."""

    UNKNOWN_EVENT_TYPE = "UNKNOWN_EVENT_TYPE"
    NOT_CONNECTED = "NOT_CONNECTED"
    PUBLISH_FAILED = "PUBLISH_FAILED"
    BINDING_FAILED = "BINDING_FAILED"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    SUBSCRIPTION_NOT_FOUND = "SUBSCRIPTION_NOT_FOUND"
    INVALID_REQUEST = "INVALID_REQUEST"


class EventBusError(Exception):
    """Base class for all event bus errors."""

    code = "EVENT_BUS_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class UnknownEventType(EventBusError):
    """Event type is not in the Topic Registry. Configuration error, never retried."""

    code = ErrorCodes.UNKNOWN_EVENT_TYPE

    def __init__(self, event_type: str) -> None:
        super().__init__(f"Unknown event type: {event_type!r}")
        self.event_type = event_type


class NotConnected(EventBusError):
    """Broker is unreachable. Caller retries after backoff; topology recovers in background."""

    code = ErrorCodes.NOT_CONNECTED

    def __init__(self, message: str = "Event bus is not connected to the broker") -> None:
        super().__init__(message)


class PublishFailed(EventBusError):
    """Broker refused the publish. No automatic retry."""

    code = ErrorCodes.PUBLISH_FAILED


class BindingFailed(EventBusError):
    """Subscription could not be created; nothing was registered."""

    code = ErrorCodes.BINDING_FAILED


class DeliveryFailed(EventBusError):
    """Callback returned non-2xx, timed out or was unreachable. Internal to the Subscription Manager."""

    code = ErrorCodes.DELIVERY_FAILED

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SubscriptionNotFound(EventBusError):
    code = ErrorCodes.SUBSCRIPTION_NOT_FOUND

    def __init__(self, subscription_id: str) -> None:
        super().__init__(f"Subscription not found: {subscription_id}")
        self.subscription_id = subscription_id


class InvalidRequest(EventBusError):
    """Control Surface request body failed validation."""

    code = ErrorCodes.INVALID_REQUEST

    def __init__(self, message: str, details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.details = details or []
