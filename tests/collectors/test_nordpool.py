"""Tests for the Nord Pool collector."""

import asyncio
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

import httpx
import pytest

from homeauto.collectors import nordpool
from homeauto.collectors.nordpool import (
    NordPoolClient,
    NordPoolError,
    NordPoolFetcher,
    parse_prices,
)
from homeauto.models import DayPrices, PriceEntry
from homeauto.prices import PriceTable

OSLO = ZoneInfo("Europe/Oslo")


def response_body(day: date) -> dict:
    """A DayAheadPrices body with hourly NO1/NO2 prices, deliberately unsorted."""
    start = datetime(day.year, day.month, day.day, tzinfo=OSLO)
    entries = []
    for h in reversed(range(24)):
        begin = (start + timedelta(hours=h)).astimezone(ZoneInfo("UTC"))
        entries.append({
            "deliveryStart": begin.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "deliveryEnd": (begin + timedelta(hours=1)).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "entryPerArea": {"NO1": 500.0 + h, "NO2": 1000.0 + h},
        })
    return {"deliveryDateCET": day.isoformat(), "market": "DayAhead", "multiAreaEntries": entries}


def make_client(handler) -> NordPoolClient:
    return NordPoolClient("NO2", "NOK", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_parse_prices_sorts_and_converts():
    prices = parse_prices(response_body(date(2025, 3, 10)), date(2025, 3, 10))

    assert len(prices.entries) == 24
    first = prices.entries[0]
    assert first.delivery_start == datetime(2025, 3, 10, tzinfo=OSLO)
    assert first.price_per_area == {"NO1": 500.0, "NO2": 1000.0}
    assert prices.entries[-1].price_for("NO2") == 1023.0


def test_parse_prices_skips_bad_entries():
    data = {
        "multiAreaEntries": [
            {"deliveryStart": "2025-03-10T00:00:00Z", "deliveryEnd": "2025-03-10T01:00:00Z",
             "entryPerArea": {"NO2": 10.0, "NO1": None}},
            {"deliveryStart": "2025-03-10T01:00:00Z", "entryPerArea": {"NO2": 11.0}},
            {"deliveryStart": "garbage", "deliveryEnd": "2025-03-10T03:00:00Z",
             "entryPerArea": {"NO2": 12.0}},
        ]
    }

    prices = parse_prices(data, date(2025, 3, 10))

    assert len(prices.entries) == 1
    assert prices.entries[0].price_per_area == {"NO2": 10.0}


def test_fetch_prices_sends_query():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=response_body(date(2025, 3, 10)))

    async def scenario():
        client = make_client(handler)
        try:
            return await client.fetch_prices(date(2025, 3, 10))
        finally:
            await client.aclose()

    prices = asyncio.run(scenario())

    assert len(prices.entries) == 24
    params = seen[0].url.params
    assert str(seen[0].url).startswith(nordpool.API_BASE_URL)
    assert params["date"] == "2025-03-10"
    assert params["market"] == "DayAhead"
    assert params["deliveryArea"] == "NO2"
    assert params["currency"] == "NOK"


def test_fetch_prices_not_published():
    client = make_client(lambda request: httpx.Response(204))

    prices = asyncio.run(client.fetch_prices(date(2025, 3, 11)))

    assert prices == DayPrices(date(2025, 3, 11), ())


@pytest.mark.parametrize(
    "handler,message",
    [
        (lambda request: httpx.Response(500), "HTTP error from Nord Pool: 500"),
        (lambda request: httpx.Response(200, text="<html>"), "Invalid response"),
    ],
)
def test_fetch_prices_errors(handler, message):
    client = make_client(handler)

    with pytest.raises(NordPoolError, match=message):
        asyncio.run(client.fetch_prices(date(2025, 3, 10)))


def test_fetch_prices_network_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(NordPoolError, match="Network error"):
        asyncio.run(make_client(handler).fetch_prices(date(2025, 3, 10)))


class FakeNordPoolClient:
    def __init__(self, published: set[date], fail: bool = False):
        self.published = published
        self.fail = fail
        self.requested: list[date] = []

    async def fetch_prices(self, delivery_date: date) -> DayPrices:
        self.requested.append(delivery_date)
        if self.fail:
            raise NordPoolError("HTTP error from Nord Pool: 503 - Service Unavailable")
        if delivery_date not in self.published:
            return DayPrices(delivery_date, ())
        start = datetime(delivery_date.year, delivery_date.month, delivery_date.day, tzinfo=OSLO)
        entry = PriceEntry(start, start + timedelta(hours=1), {"NO2": 1000.0})
        return DayPrices(delivery_date, (entry,))


def make_fetcher(clock, scheduler, client) -> NordPoolFetcher:
    return NordPoolFetcher(client, PriceTable(OSLO, clock=clock), scheduler)


def test_morning_run_fetches_today_and_waits_until_evening(clock, scheduler):
    clock.current = datetime(2025, 3, 10, 9, 0, tzinfo=OSLO)
    client = FakeNordPoolClient({date(2025, 3, 10), date(2025, 3, 11)})
    fetcher = make_fetcher(clock, scheduler, client)

    asyncio.run(fetcher.run())

    assert client.requested == [date(2025, 3, 10)]
    assert fetcher.table.has_prices_for(date(2025, 3, 10))
    assert not fetcher.table.has_prices_for(date(2025, 3, 11))
    assert scheduler.named("nordpool.fetch").when == datetime(2025, 3, 10, 18, 0, tzinfo=OSLO)


def test_evening_run_fetches_tomorrow(clock, scheduler):
    clock.current = datetime(2025, 3, 10, 18, 0, tzinfo=OSLO)
    client = FakeNordPoolClient({date(2025, 3, 10), date(2025, 3, 11)})
    fetcher = make_fetcher(clock, scheduler, client)

    asyncio.run(fetcher.run())

    assert fetcher.table.has_prices_for(date(2025, 3, 10))
    assert fetcher.table.has_prices_for(date(2025, 3, 11))
    assert scheduler.named("nordpool.fetch").when == datetime(2025, 3, 11, 18, 0, tzinfo=OSLO)


def test_tomorrow_not_published_retries(clock, scheduler):
    clock.current = datetime(2025, 3, 10, 18, 0, tzinfo=OSLO)
    client = FakeNordPoolClient({date(2025, 3, 10)})
    fetcher = make_fetcher(clock, scheduler, client)

    asyncio.run(fetcher.run())

    assert fetcher.table.has_prices_for(date(2025, 3, 10))
    assert not fetcher.table.has_prices_for(date(2025, 3, 11))
    assert scheduler.named("nordpool.fetch").when == clock.current + nordpool.RETRY_DELAY


def test_prices_are_not_fetched_twice(clock, scheduler):
    clock.current = datetime(2025, 3, 10, 17, 0, tzinfo=OSLO)
    client = FakeNordPoolClient({date(2025, 3, 10), date(2025, 3, 11)})
    fetcher = make_fetcher(clock, scheduler, client)

    asyncio.run(fetcher.run())
    asyncio.run(fetcher.run())

    assert client.requested == [date(2025, 3, 10), date(2025, 3, 11)]


def test_failed_fetch_retries_after_delay(clock, scheduler):
    client = FakeNordPoolClient(set(), fail=True)
    fetcher = make_fetcher(clock, scheduler, client)

    asyncio.run(fetcher.run())

    assert not fetcher.table.has_prices_for(clock().date())
    assert scheduler.named("nordpool.fetch").when == clock() + nordpool.RETRY_DELAY


def test_reschedule_replaces_previous_handle(clock, scheduler):
    client = FakeNordPoolClient({date(2025, 3, 10)})
    fetcher = make_fetcher(clock, scheduler, client)

    asyncio.run(fetcher.run())
    asyncio.run(scheduler.named("nordpool.fetch").fire())

    assert len(scheduler.pending()) == 1

    fetcher.dispose()
    assert scheduler.pending() == []
