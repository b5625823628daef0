"""Network client snapshots and per-VLAN device counts."""

import ipaddress
import logging
from collections import Counter
from datetime import datetime
from typing import Iterable

from .hub import StateStore, Topic
from .models import ClientDevice, DevicePoll, NetworkConfig

_LOGGER = logging.getLogger(__name__)

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


def count_in_subnet(subnet: str | IPNetwork, devices: Iterable[ClientDevice]) -> int:
    """Count devices whose IP address is inside `subnet`.

    Devices without a parsable IP address are not counted.
    """
    network = ipaddress.ip_network(subnet, strict=False) if isinstance(subnet, str) else subnet
    count = 0
    for device in devices:
        if not device.ip_address:
            continue
        try:
            address = ipaddress.ip_address(device.ip_address)
        except ValueError:
            _LOGGER.debug("Ignoring device %s with invalid IP '%s'", device.id, device.ip_address)
            continue
        if address in network:
            count += 1
    return count


class VlanCounter:
    """Counts devices in one subnet and remembers the last count."""

    def __init__(self, subnet: str):
        self.network = ipaddress.ip_network(subnet, strict=False)
        self.last_count: int | None = None

    def count(self, devices: Iterable[ClientDevice]) -> int:
        self.last_count = count_in_subnet(self.network, devices)
        return self.last_count


class VlanDeviceCountSensor:
    def __init__(self, store: StateStore, config: NetworkConfig):
        self.store = store
        self.config = config
        self.counter = VlanCounter(config.vlan)

    async def initialize(self) -> None:
        state = await self.store.read_state(self.config.unique_id)
        try:
            self.counter.last_count = int(state) if state is not None else None
        except ValueError:
            self.counter.last_count = None

        await self.store.create_entity(
            self.config.unique_id,
            {
                "name": self.config.name,
                "unique_id": self.config.unique_id,
                "persist": True,
                "state_class": "measurement",
            },
        )
        # Publish the restored count until the first poll arrives
        await self.republish()

    async def update(self, devices: Iterable[ClientDevice]) -> int:
        count = self.counter.count(devices)
        await self.store.write_state(self.config.unique_id, str(count))
        return count

    async def republish(self) -> None:
        if self.counter.last_count is not None:
            await self.store.write_state(self.config.unique_id, str(self.counter.last_count))


def same_devices(a: Iterable[ClientDevice], b: Iterable[ClientDevice]) -> bool:
    """Order-insensitive comparison of two client lists."""
    return Counter(a) == Counter(b)


class DeviceSnapshot:
    """Latest client list from the network controller.

    Every poll is published on `polls`; `changes` only sees lists that
    differ from the previous one.
    """

    def __init__(self):
        self.current: tuple[ClientDevice, ...] = ()
        self.polls: Topic[DevicePoll] = Topic("device_polls")
        self.changes: Topic[tuple[ClientDevice, ...]] = Topic("device_changes")

    async def set_current(self, devices: Iterable[ClientDevice], observed_at: datetime) -> bool:
        """Record a poll result. Returns True if the list changed."""
        devices = tuple(devices)
        await self.polls.publish(DevicePoll(devices, observed_at))

        if same_devices(self.current, devices):
            return False
        self.current = devices
        _LOGGER.debug("Client list changed, %d devices", len(devices))
        await self.changes.publish(devices)
        return True
