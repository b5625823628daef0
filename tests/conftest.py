"""Shared fixtures: a controllable clock and a scheduler that fires on demand."""

import inspect
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable
from zoneinfo import ZoneInfo

import pytest

from homeauto.hub import MemoryStateStore
from homeauto.scheduler import ScheduledTask, add_elapsed

OSLO = ZoneInfo("Europe/Oslo")
T0 = datetime(2025, 3, 10, 14, 20, tzinfo=OSLO)


class Clock:
    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@dataclass
class FakeJob:
    kind: str
    name: str
    action: Callable[[], Any]
    handle: ScheduledTask
    when: datetime | None = None
    interval: timedelta | None = None
    next_fire: Callable[[datetime], datetime | None] | None = None

    async def fire(self) -> None:
        result = self.action()
        if inspect.isawaitable(result):
            await result

    def upcoming(self, count: int) -> list[datetime]:
        """The next `count` fire times, stepped the way Scheduler steps them."""
        times = [self.when]
        while len(times) < count:
            if self.kind == "every":
                times.append(add_elapsed(times[-1], self.interval))
            else:
                times.append(self.next_fire(times[-1]))
        return times


class FakeScheduler:
    """Records scheduled actions instead of running them."""

    def __init__(self, clock: Clock):
        self.clock = clock
        self.jobs: list[FakeJob] = []

    def now(self) -> datetime:
        return self.clock()

    def _add(self, kind, action, name, **kwargs) -> ScheduledTask:
        handle = ScheduledTask(name or kind)
        self.jobs.append(FakeJob(kind, handle.name, action, handle, **kwargs))
        return handle

    def run_at(self, when, action, name=None):
        return self._add("at", action, name, when=when)

    def run_every(self, interval, action, first=None, name=None):
        return self._add("every", action, name, interval=interval, when=first)

    def schedule_recurring(self, next_fire, action, name=None):
        return self._add("recurring", action, name, next_fire=next_fire, when=next_fire(self.now()))

    def dispose(self) -> None:
        for job in self.jobs:
            job.handle.cancel()

    def pending(self, kind: str | None = None) -> list[FakeJob]:
        return [
            j for j in self.jobs
            if not j.handle.cancelled and (kind is None or j.kind == kind)
        ]

    def named(self, name: str) -> FakeJob:
        matches = [j for j in self.pending() if j.name == name]
        assert matches, f"no pending job named {name}"
        return matches[-1]


@pytest.fixture
def clock():
    return Clock(T0)


@pytest.fixture
def scheduler(clock):
    return FakeScheduler(clock)


@pytest.fixture
def store(clock):
    return MemoryStateStore(clock=clock)
