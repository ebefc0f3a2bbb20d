"""Replay: re-publish events from history as new events (fresh event_id, same correlation_id)."""

import logging
from typing import Iterable

from eventbus.errors import EventBusError
from eventbus.history import EventHistory
from eventbus.models import ReplayResult, ReplayStatus
from eventbus.publisher import Publisher

logger = logging.getLogger(__name__)

REPLAY_SOURCE = "event-bus-replay"


async def replay_events(
    history: EventHistory,
    publisher: Publisher,
    event_ids: Iterable[str],
    target_service: str | None = None,
) -> list[ReplayResult]:
    """Replay each id found in history. Never touches the original entries.

    target_service is recorded in the log only: replayed events are routed
    like any other publish and reach every subscriber of their type.
    """
    results: list[ReplayResult] = []
    for event_id in event_ids:
        entry = history.find(event_id)
        if entry is None:
            results.append(ReplayResult(event_id=event_id, status=ReplayStatus.NOT_FOUND))
            continue
        original = entry.envelope
        try:
            new_id = await publisher.publish(
                event_type=original.event_type,
                data=original.data,
                source_service=REPLAY_SOURCE,
                correlation_id=original.correlation_id,
                user_id=original.user_id,
            )
        except EventBusError as e:
            logger.warning("Replay of %s failed: %s", event_id, e)
            results.append(
                ReplayResult(event_id=event_id, status=ReplayStatus.FAILED, error=str(e))
            )
            continue
        results.append(
            ReplayResult(event_id=event_id, status=ReplayStatus.REPLAYED, new_event_id=new_id)
        )
    replayed = sum(1 for r in results if r.status is ReplayStatus.REPLAYED)
    logger.info(
        "Replayed %d/%d events (target_service=%s)", replayed, len(results), target_service
    )
    return results
