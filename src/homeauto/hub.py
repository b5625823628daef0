"""State store interface and in-process notification channels.

Apps never talk to the home-automation hub directly; they read and write
entity state through a StateStore and exchange derived values over Topics.
"""

import asyncio
import inspect
import logging
import math
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Generic, Protocol, TypeVar

from .models import StateChange

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

Callback = Callable[[T], Awaitable[None] | None]

UNAVAILABLE = "unavailable"


def parse_state_float(value: str | None) -> float | None:
    """Parse an entity state as a finite number, or None if it is not one."""
    if value is None or value in (UNAVAILABLE, "unknown"):
        return None
    try:
        number = float(value)
    except (ValueError, TypeError):
        return None
    return number if math.isfinite(number) else None


class Subscription:
    """Handle returned by subscribe(); cancel() stops delivery."""

    def __init__(self, unsubscribe: Callable[[], None]):
        self._unsubscribe = unsubscribe
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._unsubscribe()


class Topic(Generic[T]):
    """Ordered fan-out of values to subscribers.

    Publishes are serialized: a value is delivered to every subscriber, one
    at a time, before the next value is delivered. A failing subscriber is
    logged and does not prevent delivery to the others. Subscribers must not
    publish to the same topic they are handling.
    """

    def __init__(self, name: str):
        self.name = name
        self._subscribers: list[Callback] = []
        self._lock = asyncio.Lock()

    def subscribe(self, callback: Callback) -> Subscription:
        self._subscribers.append(callback)
        return Subscription(lambda: self._subscribers.remove(callback))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, value: T) -> None:
        async with self._lock:
            for callback in list(self._subscribers):
                try:
                    result = callback(value)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    _LOGGER.exception("Subscriber %r on %s failed", callback, self.name)


class StateStore(Protocol):
    """Entity read/write access to the home-automation hub."""

    async def read_state(self, entity_id: str) -> str | None: ...

    def subscribe_changes(
        self, entity_id: str, callback: Callback[StateChange]
    ) -> Subscription: ...

    async def write_state(self, entity_id: str, value: str) -> None: ...

    async def set_availability(self, entity_id: str, status: str) -> None: ...

    async def create_entity(self, entity_id: str, metadata: dict[str, Any]) -> None: ...


class MemoryStateStore:
    """StateStore kept in process memory. Used for dry runs and tests."""

    def __init__(
        self,
        states: dict[str, str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.states: dict[str, str] = dict(states or {})
        self.availability: dict[str, str] = {}
        self.entities: dict[str, dict[str, Any]] = {}
        self.writes: list[tuple[str, str]] = []
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._topics: dict[str, Topic[StateChange]] = {}

    async def read_state(self, entity_id: str) -> str | None:
        return self.states.get(entity_id)

    def subscribe_changes(self, entity_id: str, callback: Callback[StateChange]) -> Subscription:
        topic = self._topics.setdefault(entity_id, Topic(entity_id))
        return topic.subscribe(callback)

    async def write_state(self, entity_id: str, value: str) -> None:
        old = self.states.get(entity_id)
        self.states[entity_id] = value
        self.writes.append((entity_id, value))
        _LOGGER.debug("%s: %s -> %s", entity_id, old, value)

        topic = self._topics.get(entity_id)
        if topic is not None:
            await topic.publish(StateChange(entity_id, old, value, self._clock()))

    async def set_availability(self, entity_id: str, status: str) -> None:
        self.availability[entity_id] = status

    async def create_entity(self, entity_id: str, metadata: dict[str, Any]) -> None:
        self.entities[entity_id] = dict(metadata)

    def writes_for(self, entity_id: str) -> list[str]:
        return [value for eid, value in self.writes if eid == entity_id]
