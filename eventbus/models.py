"""Data model for the event bus: envelope, retry wrapper, subscription, history entry."""

import json
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

__all__ = [
    "ENVELOPE_VERSION",
    "RETRY_COUNT_HEADER",
    "RETRY_TARGET_HEADER",
    "EventEnvelope",
    "HistoryEntry",
    "ReplayResult",
    "ReplayStatus",
    "RetryEnvelope",
    "SubscriberKey",
    "Subscription",
    "SubscriptionState",
]

ENVELOPE_VERSION = "1.0"
RETRY_COUNT_HEADER = "x-retry-count"
RETRY_TARGET_HEADER = "x-retry-target"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: str | datetime) -> datetime:
    """ISO-8601 string or datetime -> timezone-aware datetime (naive values are taken as UTC)."""
    dt = value if isinstance(value, datetime) else datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class EventEnvelope:
    """Canonical event record. event_id and timestamp are assigned once, by the Publisher."""

    event_id: str
    event_type: str
    data: dict[str, Any]
    source_service: str
    correlation_id: str
    timestamp: str
    user_id: str | None = None
    version: str = ENVELOPE_VERSION

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str).encode("utf-8")

    @classmethod
    def from_json(cls, body: bytes | str) -> "EventEnvelope":
        """Parse a message body. Raises ValueError for anything that is not a complete envelope."""
        try:
            raw = json.loads(body)
        except (TypeError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError(f"Malformed envelope body: {e}") from e
        if not isinstance(raw, dict):
            raise ValueError("Envelope body must be a JSON object")
        missing = [k for k in ("event_id", "event_type", "source_service", "timestamp") if not raw.get(k)]
        if missing:
            raise ValueError(f"Envelope missing fields: {', '.join(missing)}")
        data = raw.get("data")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError("Envelope data must be a JSON object")
        return cls(
            event_id=str(raw["event_id"]),
            event_type=str(raw["event_type"]),
            data=data,
            source_service=str(raw["source_service"]),
            correlation_id=str(raw.get("correlation_id") or ""),
            timestamp=str(raw["timestamp"]),
            user_id=raw.get("user_id"),
            version=str(raw.get("version") or ENVELOPE_VERSION),
        )

    @property
    def published(self) -> datetime:
        return parse_timestamp(self.timestamp)


@dataclass(frozen=True)
class RetryEnvelope:
    """An envelope re-enqueued after failed deliveries.

    retry_count is the number of failed attempts so far; it travels in the
    x-retry-count message header. The original envelope is never modified.
    """

    envelope: EventEnvelope
    topic: str
    routing_key: str
    retry_count: int = 0
    target_queue: str | None = None  # only this subscriber queue handles the retry

    @classmethod
    def from_headers(
        cls,
        envelope: EventEnvelope,
        topic: str,
        routing_key: str,
        headers: dict[str, Any] | None,
    ) -> "RetryEnvelope":
        headers = headers or {}
        try:
            count = max(int(headers.get(RETRY_COUNT_HEADER, 0)), 0)
        except (TypeError, ValueError):
            count = 0
        target = headers.get(RETRY_TARGET_HEADER)
        if isinstance(target, bytes):
            target = target.decode("utf-8", "replace")
        return cls(
            envelope=envelope,
            topic=topic,
            routing_key=routing_key,
            retry_count=count,
            target_queue=target or None,
        )

    def next_attempt(self, target_queue: str | None = None) -> "RetryEnvelope":
        return replace(
            self,
            retry_count=self.retry_count + 1,
            target_queue=target_queue or self.target_queue,
        )

    def is_for(self, queue_name: str) -> bool:
        return self.target_queue is None or self.target_queue == queue_name

    def exhausted(self, max_attempts: int) -> bool:
        """True once retry_count failed attempts have used up the budget."""
        return self.retry_count >= max_attempts

    def backoff(self, unit: float = 1.0) -> float:
        """Delay before this retry is re-published: unit * 2**retry_count seconds."""
        return unit * (2**self.retry_count)

    def headers(self) -> dict[str, Any]:
        headers: dict[str, Any] = {
            "event_type": self.envelope.event_type,
            "source_service": self.envelope.source_service,
            "correlation_id": self.envelope.correlation_id,
            RETRY_COUNT_HEADER: self.retry_count,
        }
        if self.target_queue:
            headers[RETRY_TARGET_HEADER] = self.target_queue
        return headers


@dataclass(frozen=True)
class SubscriberKey:
    """Composite identity of a subscriber queue: (service_name, subscription_id)."""

    service_name: str
    subscription_id: str

    @property
    def queue_name(self) -> str:
        return f"{self.service_name}_{self.subscription_id}"


class SubscriptionState(str, Enum):
    BINDING = "binding"
    CONSUMING = "consuming"
    DELETED = "deleted"


@dataclass
class Subscription:
    """A subscriber's durable queue bound to one or more event types."""

    subscription_id: str
    event_types: tuple[str, ...]
    callback_url: str
    service_name: str
    filter_criteria: dict[str, Any] | None = None
    created_by: str | None = None
    created_at: str = field(default_factory=utc_now_iso)
    state: SubscriptionState = SubscriptionState.BINDING

    @property
    def key(self) -> SubscriberKey:
        return SubscriberKey(self.service_name, self.subscription_id)

    @property
    def queue_name(self) -> str:
        return self.key.queue_name

    @property
    def status(self) -> str:
        return "deleted" if self.state is SubscriptionState.DELETED else "active"

    def matches(self, envelope: EventEnvelope) -> bool:
        """Every filter key must equal the corresponding value in envelope.data."""
        if not self.filter_criteria:
            return True
        missing = object()
        return all(
            envelope.data.get(key, missing) == value
            for key, value in self.filter_criteria.items()
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.subscription_id,
            "event_types": list(self.event_types),
            "callback_url": self.callback_url,
            "service_name": self.service_name,
            "filter_criteria": self.filter_criteria,
            "queue_name": self.queue_name,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "status": self.status,
        }


@dataclass(frozen=True)
class HistoryEntry:
    """Published envelope as recorded in the Event History."""

    envelope: EventEnvelope
    published_at: str
    status: str = "published"

    @property
    def event_id(self) -> str:
        return self.envelope.event_id

    def to_dict(self) -> dict[str, Any]:
        return {**self.envelope.to_dict(), "published_at": self.published_at, "status": self.status}


class ReplayStatus(str, Enum):
    REPLAYED = "replayed"
    FAILED = "failed"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ReplayResult:
    event_id: str
    status: ReplayStatus
    new_event_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"event_id": self.event_id, "status": self.status.value}
        if self.new_event_id:
            result["new_event_id"] = self.new_event_id
        if self.error:
            result["error"] = self.error
        return result
