"""Day-ahead price storage and the current price sensors."""

import asyncio
import logging
from datetime import date, datetime, timedelta, tzinfo
from typing import Callable, Iterable

from .hub import UNAVAILABLE, StateStore, Subscription, Topic, parse_state_float
from .models import PriceEntry, StateChange
from .scheduler import ScheduledTask, Scheduler, next_hour, next_midnight

_LOGGER = logging.getLogger(__name__)

# Feed prices are per MWh; we bill per kWh including 25% VAT
MWH_TO_KWH = 1000
TAX_MULTIPLIER = 1.25

# Above the threshold the state covers 90% of the excess
SUBSIDY_THRESHOLD = 0.9375
SUBSIDY_CUSTOMER_SHARE = 0.1

PURGE_DELAY = timedelta(minutes=1)

PRICE_SENSOR_ATTRIBUTES = {
    "device_class": "monetary",
    "unit_of_measurement": "kr",
    "state_class": "measurement",
}


def subsidized_price(price: float) -> float:
    """Price after the electricity subsidy."""
    if price <= SUBSIDY_THRESHOLD:
        return price
    return SUBSIDY_THRESHOLD + SUBSIDY_CUSTOMER_SHARE * (price - SUBSIDY_THRESHOLD)


def average_entries(entries: list[PriceEntry]) -> PriceEntry | None:
    """Average several sub-hour entries into one entry in billing units.

    Areas are taken from the first entry; an area missing from any later
    entry is left out of the result.
    """
    if not entries:
        return None

    areas = {}
    for area in entries[0].price_per_area:
        if not all(area in e.price_per_area for e in entries):
            continue
        mean = sum(e.price_per_area[area] for e in entries) / len(entries)
        areas[area] = mean / MWH_TO_KWH * TAX_MULTIPLIER

    return PriceEntry(
        delivery_start=min(e.delivery_start for e in entries),
        delivery_end=max(e.delivery_end for e in entries),
        price_per_area=areas,
    )


class PriceTable:
    """Fetched day-ahead prices keyed by local delivery date.

    Each date is stored once; later additions for the same date are ignored.
    Every addition, and every hour boundary once started, publishes the
    current interval price on `current_price` (None when there is none).
    """

    def __init__(self, tz: tzinfo, clock: Callable[[], datetime] | None = None):
        self.tz = tz
        self.current_price: Topic[PriceEntry | None] = Topic("current_price")
        self._clock = clock
        self._days: dict[date, tuple[PriceEntry, ...]] = {}
        self._lock = asyncio.Lock()
        self._handles: list[ScheduledTask] = []

    def now(self) -> datetime:
        return self._clock().astimezone(self.tz) if self._clock else datetime.now(self.tz)

    def has_prices_for(self, day: date) -> bool:
        return day in self._days

    def entries_for(self, day: date) -> tuple[PriceEntry, ...]:
        return self._days.get(day, ())

    async def add_prices(self, day: date, entries: Iterable[PriceEntry]) -> bool:
        """Store prices for `day`. Returns False if the date was already present."""
        async with self._lock:
            if day in self._days:
                return False
            self._days[day] = tuple(entries)
            _LOGGER.info("Added %d prices for %s", len(self._days[day]), day)
            await self.current_price.publish(self.current_interval_price())
        return True

    def current_interval_price(self, now: datetime | None = None) -> PriceEntry | None:
        """Average price for the hour containing `now`, or None."""
        now = (now or self.now()).astimezone(self.tz)
        entries = self._days.get(now.date())
        if not entries:
            return None

        start = now.replace(minute=0, second=0, microsecond=0)
        end = start + timedelta(hours=1)
        hour = [e for e in entries if e.delivery_start >= start and e.delivery_end <= end]
        return average_entries(hour)

    def purge(self, day: date) -> bool:
        if self._days.pop(day, None) is None:
            return False
        _LOGGER.info("Purged prices for %s", day)
        return True

    def purge_yesterday(self) -> None:
        self.purge(self.now().date() - timedelta(days=1))

    async def update_current_price(self) -> None:
        """Recompute and republish the current price."""
        price = self.current_interval_price()
        if price is None:
            _LOGGER.warning("No current price for %s", self.now())
        async with self._lock:
            await self.current_price.publish(price)

    def start(self, scheduler: Scheduler) -> None:
        """Schedule the hourly republish and the daily purge."""
        now = self.now()
        self._handles.append(
            scheduler.run_every(
                timedelta(hours=1), self.update_current_price, first=next_hour(now),
                name="prices.hourly",
            )
        )
        self._handles.append(
            scheduler.schedule_recurring(self._next_purge, self.purge_yesterday, name="prices.purge")
        )

    def _next_purge(self, after: datetime) -> datetime:
        # 00:01 local wall-clock time, whatever the UTC offset
        return next_midnight(after.astimezone(self.tz)) + PURGE_DELAY

    def dispose(self) -> None:
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()


class PriceBroadcaster:
    """Publishes the current area price and the subsidized price.

    Holds the latest area price as `current_price` for cost sensors, and
    re-emits every price table notification on `prices`.
    """

    def __init__(
        self,
        table: PriceTable,
        store: StateStore,
        area: str,
        price_entity: str,
        subsidized_entity: str,
    ):
        self.table = table
        self.store = store
        self.area = area
        self.price_entity = price_entity
        self.subsidized_entity = subsidized_entity
        self.prices: Topic[PriceEntry | None] = Topic("prices")
        self.current_price: float | None = None
        self._subscriptions: list[Subscription] = []

    async def initialize(self) -> None:
        await self._ensure_entity(self.price_entity, f"Nord Pool {self.area}")
        await self._ensure_entity(self.subsidized_entity, f"Nord Pool {self.area} med strømstøtte")

        self._subscriptions.append(
            self.store.subscribe_changes(self.price_entity, self._on_price_state)
        )
        self._subscriptions.append(self.table.current_price.subscribe(self._on_price))

        await self._on_price(self.table.current_interval_price())

    async def _ensure_entity(self, entity_id: str, name: str) -> None:
        existing = await self.store.read_state(entity_id)
        if existing and existing.strip():
            return
        _LOGGER.info("Adding sensor %s", entity_id)
        await self.store.create_entity(
            entity_id, {"name": name, "unique_id": entity_id, **PRICE_SENSOR_ATTRIBUTES}
        )

    async def _on_price(self, entry: PriceEntry | None) -> None:
        price = entry.price_for(self.area) if entry is not None else None
        self.current_price = price

        if price is None:
            _LOGGER.warning("%s: No current price, setting to unavailable", self.area)
            await self.store.write_state(self.price_entity, UNAVAILABLE)
        else:
            _LOGGER.info("Price changed to %.4f", price)
            await self.store.write_state(self.price_entity, f"{price:.2f}")

        await self.prices.publish(entry)

    async def _on_price_state(self, change: StateChange) -> None:
        price = parse_state_float(change.new_state)
        if price is None:
            _LOGGER.warning("Price sensor %s is unavailable", self.price_entity)
            await self.store.write_state(self.subsidized_entity, UNAVAILABLE)
            return

        subsidized = subsidized_price(price)
        _LOGGER.info("New subsidized price %.2f", subsidized)
        await self.store.write_state(self.subsidized_entity, f"{subsidized:.2f}")

    def dispose(self) -> None:
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions.clear()
