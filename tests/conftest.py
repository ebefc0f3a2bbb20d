"""Shared fixtures: in-memory broker, recording callback, running bus."""

import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Callable

import pytest

from eventbus.broker import InMemoryTransport
from eventbus.bus import EventBus
from eventbus.errors import DeliveryFailed
from eventbus.models import EventEnvelope


class CallbackRecorder:
    """DeliverFn double: records every attempt, fails a configured number of times per URL."""

    def __init__(self) -> None:
        self.attempts: list[tuple[str, EventEnvelope]] = []
        self.delivered: dict[str, list[EventEnvelope]] = defaultdict(list)
        self._failures: dict[str, int] = {}

    def fail(self, url: str, times: int) -> None:
        self._failures[url] = times

    def attempts_for(self, url: str) -> list[EventEnvelope]:
        return [env for u, env in self.attempts if u == url]

    async def __call__(self, url: str, envelope: EventEnvelope) -> None:
        self.attempts.append((url, envelope))
        remaining = self._failures.get(url, 0)
        if remaining:
            self._failures[url] = remaining - 1
            raise DeliveryFailed(f"HTTP 500 from {url}", status_code=500)
        self.delivered[url].append(envelope)


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    return _wait_until


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest.fixture
def recorder() -> CallbackRecorder:
    return CallbackRecorder()


@pytest.fixture
def make_bus(transport: InMemoryTransport, recorder: CallbackRecorder) -> Callable[..., EventBus]:
    """Unstarted bus on the shared transport with fast reconnect and retry timings."""

    def _make(**kwargs: Any) -> EventBus:
        kwargs.setdefault("reconnect_delay", 0.01)
        kwargs.setdefault("backoff_unit", 0.001)
        return EventBus(transport=transport, deliver=recorder, **kwargs)

    return _make


@pytest.fixture
async def bus(make_bus: Callable[..., EventBus]) -> EventBus:
    event_bus = make_bus()
    assert await event_bus.start()
    yield event_bus
    await event_bus.stop()
