"""Asyncio scheduler service shared by all apps.

Every scheduled action returns a ScheduledTask handle. The owner keeps the
handles it creates and cancels them when it is disposed; Scheduler.dispose()
cancels everything still pending.
"""

import asyncio
import inspect
import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Awaitable, Callable

from .models import ResetSchedule

_LOGGER = logging.getLogger(__name__)

Action = Callable[[], Awaitable[Any] | Any]


def next_midnight(now: datetime) -> datetime:
    return _midnight(now.date() + timedelta(days=1), now.tzinfo)


def add_elapsed(when: datetime, delta: timedelta) -> datetime:
    """Add real elapsed time, so DST changes neither skip nor repeat an interval."""
    return (when.astimezone(timezone.utc) + delta).astimezone(when.tzinfo)


def next_hour(now: datetime) -> datetime:
    return add_elapsed(now.replace(minute=0, second=0, microsecond=0), timedelta(hours=1))


def next_reset(schedule: ResetSchedule, after: datetime) -> datetime | None:
    """Return the first reset time strictly after `after`, in its timezone."""
    if schedule is ResetSchedule.DAILY:
        return next_midnight(after)
    if schedule is ResetSchedule.MONTHLY:
        if after.month == 12:
            return _midnight(date(after.year + 1, 1, 1), after.tzinfo)
        return _midnight(date(after.year, after.month + 1, 1), after.tzinfo)
    if schedule is ResetSchedule.YEARLY:
        return _midnight(date(after.year + 1, 1, 1), after.tzinfo)
    return None


def _midnight(day: date, tz: tzinfo | None) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


class ScheduledTask:
    """Handle for a scheduled action."""

    def __init__(self, name: str):
        self.name = name
        self._task: asyncio.Task | None = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        # An action may cancel its own handle; let it run to completion.
        if self._task is not None and not self._task.done() and self._task is not _current_task():
            self._task.cancel()

    def __repr__(self) -> str:
        return f"ScheduledTask({self.name!r}, cancelled={self._cancelled})"


class Scheduler:
    """Runs actions at a time, at a fixed interval or on a recurring rule.

    Must be used from inside a running event loop. Actions can be plain
    callables or coroutine functions; exceptions they raise are logged and
    do not stop the schedule.
    """

    def __init__(self, tz: tzinfo | None = None):
        self.tz = tz
        self._handles: set[ScheduledTask] = set()

    def now(self) -> datetime:
        return datetime.now(self.tz) if self.tz else datetime.now().astimezone()

    def run_at(self, when: datetime, action: Action, name: str | None = None) -> ScheduledTask:
        handle = ScheduledTask(name or _action_name(action))

        async def runner():
            await self._sleep_until(when)
            await self._invoke(handle, action)

        return self._start(handle, runner())

    def run_every(
        self,
        interval: timedelta,
        action: Action,
        first: datetime | None = None,
        name: str | None = None,
    ) -> ScheduledTask:
        """Run `action` every `interval`, starting at `first` (default: now + interval)."""
        if interval <= timedelta(0):
            raise ValueError("interval must be positive")
        handle = ScheduledTask(name or _action_name(action))

        async def runner():
            due = first or self.now() + interval
            while not handle.cancelled:
                await self._sleep_until(due)
                await self._invoke(handle, action)
                due = add_elapsed(due, interval)

        return self._start(handle, runner())

    def schedule_recurring(
        self,
        next_fire: Callable[[datetime], datetime | None],
        action: Action,
        name: str | None = None,
    ) -> ScheduledTask:
        """Run `action` at each time produced by `next_fire(previous)`.

        The rule is evaluated from now for the first run; returning None ends
        the schedule.
        """
        handle = ScheduledTask(name or _action_name(action))

        async def runner():
            due = next_fire(self.now())
            while due is not None and not handle.cancelled:
                await self._sleep_until(due)
                await self._invoke(handle, action)
                due = next_fire(due)

        return self._start(handle, runner())

    def dispose(self) -> None:
        for handle in list(self._handles):
            handle.cancel()
        self._handles.clear()

    def _start(self, handle: ScheduledTask, coro) -> ScheduledTask:
        task = asyncio.get_running_loop().create_task(coro, name=handle.name)
        handle._task = task
        self._handles.add(handle)
        task.add_done_callback(lambda _: self._handles.discard(handle))
        return handle

    async def _sleep_until(self, when: datetime) -> None:
        delay = (when.astimezone(timezone.utc) - self.now().astimezone(timezone.utc)).total_seconds()
        await asyncio.sleep(max(0.0, delay))

    async def _invoke(self, handle: ScheduledTask, action: Action) -> None:
        if handle.cancelled:
            return
        try:
            result = action()
            if inspect.isawaitable(result):
                await result
        except Exception:
            _LOGGER.exception("Scheduled action %s failed", handle.name)


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


def _action_name(action: Action) -> str:
    return getattr(action, "__qualname__", None) or repr(action)
