"""Control Surface: request/response marshaling over the publisher, subscriptions, history and replay.

Transport-agnostic: an HTTP layer (or a test) passes plain dicts in and gets plain dicts back.
Request bodies are validated with pydantic; failures raise InvalidRequest.
"""

import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

from eventbus.errors import EventBusError, InvalidRequest
from eventbus.replay import replay_events

if TYPE_CHECKING:
    from eventbus.bus import EventBus

logger = logging.getLogger(__name__)

SERVICE_NAME = "event-bus"
SERVICE_VERSION = "1.0.0"
MAX_STATS_DAYS = 3650

_Model = TypeVar("_Model", bound=BaseModel)


class PublishRequest(BaseModel):
    event_type: str = Field(min_length=1)
    data: dict[str, Any]
    source_service: str = Field(min_length=1)
    correlation_id: str | None = None
    priority: int = Field(default=5, ge=1, le=10)
    user_id: str | None = None


class SubscriptionRequest(BaseModel):
    event_types: list[str] = Field(min_length=1)
    callback_url: str
    service_name: str = Field(min_length=1)
    filter_criteria: dict[str, Any] | None = None
    created_by: str | None = None

    @field_validator("callback_url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("callback_url must be an http(s) URL")
        return value


class HistoryQuery(BaseModel):
    event_type: str | None = None
    source_service: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    limit: int = Field(default=50, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class ReplayRequest(BaseModel):
    event_ids: list[str] = Field(min_length=1)
    target_service: str | None = None


def _validate(model: type[_Model], payload: Any) -> _Model:
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise InvalidRequest(
            f"{model.__name__} validation failed",
            details=e.errors(include_url=False, include_context=False),
        ) from e


class ControlSurface:
    """Operations exposed to operators and other services."""

    def __init__(self, bus: "EventBus") -> None:
        self._bus = bus
        self._started_at = time.monotonic()

    async def publish(self, payload: dict[str, Any], user_id: str | None = None) -> dict[str, Any]:
        req = _validate(PublishRequest, payload)
        event_id = await self._bus.publisher.publish(
            event_type=req.event_type,
            data=req.data,
            source_service=req.source_service,
            correlation_id=req.correlation_id,
            priority=req.priority,
            user_id=user_id or req.user_id,
        )
        return {
            "event_id": event_id,
            "event_type": req.event_type,
            "source_service": req.source_service,
        }

    async def publish_batch(
        self, events: list[dict[str, Any]], user_id: str | None = None
    ) -> dict[str, Any]:
        """Publish each event independently; one failure does not stop the rest."""
        if not isinstance(events, list) or not events:
            raise InvalidRequest("Events array is required")
        results: list[dict[str, Any]] = []
        for event in events:
            event_type = event.get("event_type") if isinstance(event, dict) else None
            try:
                published = await self.publish(event, user_id=user_id)
            except EventBusError as e:
                results.append({"success": False, "error": str(e), "event_type": event_type})
                continue
            results.append(
                {"success": True, "event_id": published["event_id"], "event_type": event_type}
            )
        successful = sum(1 for r in results if r["success"])
        logger.info("Batch publish: %d/%d events published", successful, len(events))
        return {
            "total": len(events),
            "successful": successful,
            "failed": len(events) - successful,
            "results": results,
        }

    async def create_subscription(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = _validate(SubscriptionRequest, payload)
        subscription_id = await self._bus.subscriptions.create_subscription(
            event_types=req.event_types,
            callback_url=req.callback_url,
            service_name=req.service_name,
            filter_criteria=req.filter_criteria,
            created_by=req.created_by,
        )
        return {
            "subscription_id": subscription_id,
            "event_types": req.event_types,
            "service_name": req.service_name,
        }

    def list_subscriptions(self) -> list[dict[str, Any]]:
        return [sub.to_dict() for sub in self._bus.subscriptions.list_subscriptions()]

    async def delete_subscription(self, subscription_id: str) -> dict[str, Any]:
        await self._bus.subscriptions.delete_subscription(subscription_id)
        return {"subscription_id": subscription_id, "deleted": True}

    def history(self, query: dict[str, Any] | None = None) -> dict[str, Any]:
        q = _validate(HistoryQuery, query or {})
        entries = self._bus.history.query(
            event_type=q.event_type,
            source_service=q.source_service,
            date_from=q.date_from,
            date_to=q.date_to,
            limit=q.limit,
            offset=q.offset,
        )
        return {
            "events": [entry.to_dict() for entry in entries],
            "pagination": {"limit": q.limit, "offset": q.offset},
        }

    def stats(self, days: int = 7) -> dict[str, Any]:
        if not 1 <= days <= MAX_STATS_DAYS:
            raise InvalidRequest(f"days must be between 1 and {MAX_STATS_DAYS}")
        stats = self._bus.history.stats(
            days=days, active_subscriptions=self._bus.subscriptions.active_count
        )
        stats["deliveries"] = dict(self._bus.subscriptions.counters)
        return stats

    async def replay(self, payload: dict[str, Any]) -> list[dict[str, Any]]:
        req = _validate(ReplayRequest, payload)
        results = await replay_events(
            self._bus.history, self._bus.publisher, req.event_ids, req.target_service
        )
        return [r.to_dict() for r in results]

    async def health(self) -> dict[str, Any]:
        connected = await self._bus.connection.check_connection()
        return {
            "status": "healthy" if connected else "degraded",
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "broker": "connected" if connected else "disconnected",
            "uptime": round(time.monotonic() - self._started_at, 3),
        }
