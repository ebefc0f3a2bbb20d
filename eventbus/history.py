"""Event History: bounded in-memory ledger of published events for audit and replay.

Best-effort only. Durability of events is the broker's job; this buffer is lost on restart.
"""

import threading
from collections import Counter, deque
from datetime import datetime, timedelta, timezone
from typing import Any

from eventbus.models import EventEnvelope, HistoryEntry, parse_timestamp

DEFAULT_CAPACITY = 1000


class EventHistory:
    """Append-only ring buffer. Oldest entries are evicted first; entries are never mutated."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("History capacity must be positive")
        self._entries: deque[HistoryEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, envelope: EventEnvelope) -> HistoryEntry:
        entry = HistoryEntry(envelope=envelope, published_at=envelope.timestamp)
        with self._lock:
            self._entries.append(entry)
        return entry

    def snapshot(self) -> list[HistoryEntry]:
        """Copy of all entries in insertion order."""
        with self._lock:
            return list(self._entries)

    def find(self, event_id: str) -> HistoryEntry | None:
        for entry in self.snapshot():
            if entry.event_id == event_id:
                return entry
        return None

    def query(
        self,
        event_type: str | None = None,
        source_service: str | None = None,
        date_from: str | datetime | None = None,
        date_to: str | datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[HistoryEntry]:
        """Filter then paginate, in insertion order. Date bounds are inclusive."""
        lower = parse_timestamp(date_from) if date_from else None
        upper = parse_timestamp(date_to) if date_to else None
        matched = []
        for entry in self.snapshot():
            envelope = entry.envelope
            if event_type and envelope.event_type != event_type:
                continue
            if source_service and envelope.source_service != source_service:
                continue
            if lower or upper:
                published = envelope.published
                if lower and published < lower:
                    continue
                if upper and published > upper:
                    continue
            matched.append(entry)
        offset = max(offset, 0)
        return matched[offset : offset + max(limit, 0)]

    def stats(self, days: int = 7, active_subscriptions: int = 0) -> dict[str, Any]:
        """Counts by event type and by source service over the last `days` days."""
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(days=days)
        recent = [e for e in self.snapshot() if e.envelope.published >= cutoff]
        return {
            "period_days": days,
            "total_events": len(recent),
            "event_types": dict(Counter(e.envelope.event_type for e in recent)),
            "services": dict(Counter(e.envelope.source_service for e in recent)),
            "active_subscriptions": active_subscriptions,
            "generated_at": now.isoformat(),
        }
