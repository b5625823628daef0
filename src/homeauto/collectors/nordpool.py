"""Nord Pool day-ahead price collector.

Fetches day-ahead prices from the Nord Pool data portal API and keeps the
PriceTable supplied with today's and (once published) tomorrow's prices.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any

import httpx

from ..models import DayPrices, PriceEntry
from ..prices import PriceTable
from ..scheduler import ScheduledTask, Scheduler

_LOGGER = logging.getLogger(__name__)

API_BASE_URL = "https://dataportal-api.nordpoolgroup.com/api/DayAheadPrices"

DEFAULT_AREA = "NO2"
DEFAULT_CURRENCY = "NOK"

# Tomorrow's prices are published early afternoon; we look for them after 16:00
TOMORROW_AFTER_HOUR = 16
FETCH_HOUR = 18
RETRY_DELAY = timedelta(minutes=10)


class NordPoolError(Exception):
    """Base exception for Nord Pool collector errors."""
    pass


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def parse_prices(data: dict[str, Any], delivery_date: date) -> DayPrices:
    """Parse a DayAheadPrices response body."""
    entries = []
    for entry in data.get("multiAreaEntries") or []:
        try:
            areas = {
                area: float(price)
                for area, price in (entry.get("entryPerArea") or {}).items()
                if price is not None
            }
            entries.append(
                PriceEntry(
                    delivery_start=_parse_timestamp(entry["deliveryStart"]),
                    delivery_end=_parse_timestamp(entry["deliveryEnd"]),
                    price_per_area=areas,
                )
            )
        except (KeyError, ValueError, TypeError):
            _LOGGER.warning("Skipping malformed price entry: %r", entry)
            continue

    entries.sort(key=lambda e: e.delivery_start)
    return DayPrices(delivery_date=delivery_date, entries=tuple(entries))


class NordPoolClient:
    """Async client for the day-ahead price API."""

    def __init__(
        self,
        area: str = DEFAULT_AREA,
        currency: str = DEFAULT_CURRENCY,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.area = area
        self.currency = currency
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def fetch_prices(self, delivery_date: date) -> DayPrices:
        """Fetch prices for one delivery date.

        Returns a DayPrices with no entries if the date is not published yet.
        """
        params = {
            "date": delivery_date.isoformat(),
            "market": "DayAhead",
            "deliveryArea": self.area,
            "currency": self.currency,
        }
        try:
            response = await self._client.get(API_BASE_URL, params=params)
            if response.status_code == 204:
                return DayPrices(delivery_date=delivery_date, entries=())
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise NordPoolError(
                f"HTTP error from Nord Pool: {e.response.status_code} - {e.response.reason_phrase}"
            ) from e
        except httpx.HTTPError as e:
            raise NordPoolError(f"Network error connecting to Nord Pool: {e}") from e
        except ValueError as e:
            raise NordPoolError(f"Invalid response from Nord Pool: {e}") from e

        return parse_prices(data, delivery_date)

    async def aclose(self) -> None:
        await self._client.aclose()


class NordPoolFetcher:
    """Fetches missing days into the price table on a daily schedule."""

    def __init__(self, client: NordPoolClient, table: PriceTable, scheduler: Scheduler):
        self.client = client
        self.table = table
        self.scheduler = scheduler
        self._handle: ScheduledTask | None = None

    async def fetch(self, now: datetime) -> None:
        today = now.date()
        if not self.table.has_prices_for(today):
            await self._fetch_day(today)

        tomorrow = today + timedelta(days=1)
        if now.hour > TOMORROW_AFTER_HOUR and not self.table.has_prices_for(tomorrow):
            await self._fetch_day(tomorrow)

    async def _fetch_day(self, day: date) -> None:
        prices = await self.client.fetch_prices(day)
        if not prices.entries:
            _LOGGER.info("Prices for %s are not published yet", day)
            return
        await self.table.add_prices(day, prices.entries)

    def next_run(self, now: datetime) -> datetime:
        """18:00 today, or tomorrow once tomorrow's prices are in."""
        due = now.replace(hour=FETCH_HOUR, minute=0, second=0, microsecond=0)
        tomorrow = now.date() + timedelta(days=1)
        if now.hour > TOMORROW_AFTER_HOUR and self.table.has_prices_for(tomorrow):
            due += timedelta(days=1)
        if due <= now:
            due = now + RETRY_DELAY
        return due

    async def run(self) -> None:
        now = self.table.now()
        try:
            await self.fetch(now)
        except NordPoolError as e:
            _LOGGER.error("Error fetching price data: %s", e)
            self._schedule(now + RETRY_DELAY)
            return
        self._schedule(self.next_run(now))

    def _schedule(self, when: datetime) -> None:
        if self._handle is not None:
            self._handle.cancel()
        _LOGGER.info("Next price fetch at %s", when)
        self._handle = self.scheduler.run_at(when, self.run, name="nordpool.fetch")

    def dispose(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
