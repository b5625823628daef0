"""App host: builds the apps from configuration and owns their lifetime."""

import asyncio
import logging
from datetime import timedelta
from pathlib import Path
from typing import Awaitable, Callable, Protocol
from zoneinfo import ZoneInfo

from .collectors.nordpool import NordPoolClient, NordPoolFetcher
from .collectors.unifi import UnifiClient, UnifiError, UnifiPoller
from .config import (
    COST_SENSORS_FILE,
    NORDPOOL_FILE,
    UNIFI_FILE,
    ConfigError,
    NordPoolSettings,
    UnifiSettings,
    get_config_dir,
    load_cost_sensors_from_yaml,
    load_nordpool_from_yaml,
    load_unifi_from_yaml,
)
from .cost import CostSensor, TariffSensor, TariffSource
from .hub import StateStore, Subscription
from .models import ClientDevice, CostSensorEntry
from .network import DeviceSnapshot, VlanDeviceCountSensor
from .presence import DeviceTrackerGroup
from .prices import PriceBroadcaster, PriceTable
from .scheduler import Scheduler

_LOGGER = logging.getLogger(__name__)


class App(Protocol):
    name: str

    async def initialize(self) -> None: ...

    def dispose(self) -> None: ...

    async def aclose(self) -> None: ...


class NordPoolApp:
    """Price table, fetcher and the two price sensors."""

    name = "nordpool"

    def __init__(
        self,
        store: StateStore,
        scheduler: Scheduler,
        settings: NordPoolSettings,
        client: NordPoolClient | None = None,
    ):
        self.scheduler = scheduler
        self.settings = settings
        self.table = PriceTable(ZoneInfo(settings.timezone), clock=scheduler.now)
        self.broadcaster = PriceBroadcaster(
            self.table, store, settings.area, settings.price_entity, settings.subsidized_entity
        )
        self.fetcher = NordPoolFetcher(
            client or NordPoolClient(settings.area, settings.currency), self.table, scheduler
        )

    async def initialize(self) -> None:
        await self.broadcaster.initialize()
        self.table.start(self.scheduler)
        await self.fetcher.run()

    def dispose(self) -> None:
        self.fetcher.dispose()
        self.table.dispose()
        self.broadcaster.dispose()

    async def aclose(self) -> None:
        await self.fetcher.client.aclose()


class CostSensorApp:
    """One CostSensor per configured entry, sharing tariff sensors."""

    name = "cost_sensors"

    def __init__(
        self,
        store: StateStore,
        scheduler: Scheduler,
        entries: list[CostSensorEntry],
        broadcaster: PriceBroadcaster | None = None,
    ):
        self.store = store
        self.scheduler = scheduler
        self.entries = entries
        self.broadcaster = broadcaster
        self.tariffs: dict[str, TariffSource] = {}
        self.sensors: list[CostSensor] = []

    async def initialize(self) -> None:
        if not self.entries:
            _LOGGER.info("No cost sensors configured, cost sensor app will do nothing")
            return

        _LOGGER.info("Initializing %d cost sensors", len(self.entries))
        for entry in self.entries:
            sensor = CostSensor(self.store, self.scheduler, await self._tariff(entry.tariff), entry)
            await sensor.initialize()
            self.sensors.append(sensor)

    async def _tariff(self, entity_id: str) -> TariffSource:
        if entity_id not in self.tariffs:
            if self.broadcaster is not None and entity_id == self.broadcaster.price_entity:
                self.tariffs[entity_id] = self.broadcaster
            else:
                sensor = TariffSensor(self.store, entity_id)
                await sensor.initialize()
                self.tariffs[entity_id] = sensor
        return self.tariffs[entity_id]

    def dispose(self) -> None:
        for sensor in self.sensors:
            sensor.dispose()
        self.sensors.clear()
        for tariff in self.tariffs.values():
            if isinstance(tariff, TariffSensor):
                tariff.dispose()
        self.tariffs.clear()

    async def aclose(self) -> None:
        pass


class UnifiApp:
    """Device trackers and VLAN device counts fed from one controller poller."""

    name = "unifi"

    def __init__(
        self,
        store: StateStore,
        scheduler: Scheduler,
        settings: UnifiSettings,
        client: UnifiClient | None = None,
    ):
        self.settings = settings
        self.snapshot = DeviceSnapshot()
        self.trackers = DeviceTrackerGroup(store, settings.trackers)
        self.vlans = [VlanDeviceCountSensor(store, n) for n in settings.networks]
        self.poller = UnifiPoller(
            client or UnifiClient(settings.base_url, verify_ssl=settings.verify_ssl),
            self.snapshot,
            scheduler,
            timedelta(seconds=settings.poll_interval_seconds),
        )
        self._subscriptions: list[Subscription] = []

    async def initialize(self) -> None:
        await self.trackers.initialize()
        for sensor in self.vlans:
            await sensor.initialize()

        self._subscriptions.append(self.snapshot.polls.subscribe(self.trackers.on_poll))
        self._subscriptions.append(self.snapshot.changes.subscribe(self._update_counts))
        self.poller.start()

    async def _update_counts(self, devices: tuple[ClientDevice, ...]) -> None:
        for sensor in self.vlans:
            await sensor.update(devices)

    def dispose(self) -> None:
        self.poller.dispose()
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions.clear()

    async def aclose(self) -> None:
        await self.poller.client.aclose()


class AppHost:
    """Starts every app independently and disposes them together.

    A configuration or startup failure in one app is logged and that app is
    skipped; the others still start.
    """

    def __init__(
        self,
        store: StateStore,
        scheduler: Scheduler,
        config_dir: Path | None = None,
        nordpool_client: NordPoolClient | None = None,
        unifi_client: UnifiClient | None = None,
    ):
        self.store = store
        self.scheduler = scheduler
        self.config_dir = config_dir
        self.nordpool_client = nordpool_client
        self.unifi_client = unifi_client
        self.apps: list[App] = []

    def _config_path(self, filename: str) -> Path:
        return (self.config_dir or get_config_dir()) / filename

    def _find(self, app_type: type) -> App | None:
        return next((a for a in self.apps if isinstance(a, app_type)), None)

    async def _create_nordpool(self) -> App | None:
        settings = load_nordpool_from_yaml(self._config_path(NORDPOOL_FILE))
        return NordPoolApp(self.store, self.scheduler, settings, self.nordpool_client)

    async def _create_cost_sensors(self) -> App | None:
        entries = load_cost_sensors_from_yaml(self._config_path(COST_SENSORS_FILE))
        nordpool = self._find(NordPoolApp)
        broadcaster = nordpool.broadcaster if nordpool is not None else None
        return CostSensorApp(self.store, self.scheduler, entries, broadcaster)

    async def _create_unifi(self) -> App | None:
        settings = load_unifi_from_yaml(self._config_path(UNIFI_FILE))
        if settings is None:
            _LOGGER.critical("No UniFi config loaded, device trackers are disabled")
            return None
        return UnifiApp(self.store, self.scheduler, settings, self.unifi_client)

    async def _start(self, name: str, factory: Callable[[], Awaitable[App | None]]) -> None:
        app = None
        try:
            app = await factory()
            if app is None:
                return
            await app.initialize()
        except (ConfigError, UnifiError) as e:
            _LOGGER.critical("App %s not started: %s", name, e)
        except Exception:
            _LOGGER.exception("App %s failed to start", name)
        else:
            self.apps.append(app)
            _LOGGER.info("App %s started", name)
            return

        if app is not None:
            app.dispose()
            await app.aclose()

    async def start(self) -> None:
        await self._start("nordpool", self._create_nordpool)
        await self._start("cost_sensors", self._create_cost_sensors)
        await self._start("unifi", self._create_unifi)

    async def stop(self) -> None:
        for app in reversed(self.apps):
            app.dispose()
            await app.aclose()
        self.apps.clear()
        self.scheduler.dispose()

    async def run_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()
