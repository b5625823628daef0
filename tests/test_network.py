"""Tests for VLAN device counting and the client snapshot."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from homeauto.models import AccessInfo, ClientDevice, NetworkConfig
from homeauto.network import (
    DeviceSnapshot,
    VlanCounter,
    VlanDeviceCountSensor,
    count_in_subnet,
    same_devices,
)

T = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)

DEVICES = (
    ClientDevice(id="1", name="Phone", ip_address="10.100.5.10", mac_address="aa:00:00:00:00:01"),
    ClientDevice(id="2", name="Laptop", ip_address="10.100.5.200", mac_address="aa:00:00:00:00:02"),
    ClientDevice(id="3", name="Camera", ip_address="10.100.6.10", mac_address="aa:00:00:00:00:03"),
    ClientDevice(id="4", name="Printer", ip_address=None),
    ClientDevice(id="5", name="Broken", ip_address="not-an-ip"),
)

IOT = NetworkConfig("IoT devices", "10.100.5.0/24")


def test_count_in_subnet():
    assert count_in_subnet("10.100.5.0/24", DEVICES) == 2
    assert count_in_subnet("10.100.0.0/16", DEVICES) == 3
    assert count_in_subnet("192.168.1.0/24", DEVICES) == 0


def test_count_in_subnet_ipv6_ignores_ipv4_clients():
    devices = DEVICES + (ClientDevice(id="6", ip_address="2001:db8::10"),)

    assert count_in_subnet("2001:db8::/64", devices) == 1


def test_counter_accepts_host_bits():
    counter = VlanCounter("10.100.5.1/24")

    assert counter.count(DEVICES) == 2
    assert counter.last_count == 2


def test_same_devices_ignores_order_and_connection_time():
    reordered = tuple(reversed(DEVICES))
    reconnected = (
        ClientDevice(id="1", name="Phone", ip_address="10.100.5.10",
                     mac_address="aa:00:00:00:00:01", connected_at=T),
    ) + DEVICES[1:]

    assert same_devices(DEVICES, reordered)
    assert same_devices(DEVICES, reconnected)
    assert not same_devices(DEVICES, DEVICES[:-1])
    assert not same_devices(
        DEVICES[:1], (ClientDevice(id="1", name="Phone", ip_address="10.100.5.10",
                                   mac_address="aa:00:00:00:00:01", access=AccessInfo("wireless")),)
    )


def test_sensor_initialize_restores_count(store):
    store.states[IOT.unique_id] = "7"
    sensor = VlanDeviceCountSensor(store, IOT)

    asyncio.run(sensor.initialize())

    assert IOT.unique_id == "sensor.unifi_vlan_iot_devices_devices"
    assert sensor.counter.last_count == 7
    assert store.writes_for(IOT.unique_id) == ["7"]
    assert store.entities[IOT.unique_id]["state_class"] == "measurement"
    assert store.entities[IOT.unique_id]["persist"] is True


@pytest.mark.parametrize("state", [None, "unavailable"])
def test_sensor_initialize_without_count(store, state):
    if state is not None:
        store.states[IOT.unique_id] = state
    sensor = VlanDeviceCountSensor(store, IOT)

    async def scenario():
        await sensor.initialize()
        await sensor.republish()

    asyncio.run(scenario())

    assert sensor.counter.last_count is None
    assert store.writes_for(IOT.unique_id) == []


def test_sensor_update_and_republish(store):
    sensor = VlanDeviceCountSensor(store, IOT)

    async def scenario():
        await sensor.initialize()
        assert await sensor.update(DEVICES) == 2
        await sensor.republish()

    asyncio.run(scenario())

    assert store.writes_for(IOT.unique_id) == ["2", "2"]


def test_snapshot_publishes_every_poll_but_only_changes():
    snapshot = DeviceSnapshot()
    polls, changes = [], []
    snapshot.polls.subscribe(polls.append)
    snapshot.changes.subscribe(changes.append)

    async def scenario():
        results = [
            await snapshot.set_current(DEVICES, T),
            await snapshot.set_current(reversed(DEVICES), T + timedelta(seconds=5)),
            await snapshot.set_current(DEVICES[:2], T + timedelta(seconds=10)),
        ]
        return results

    assert asyncio.run(scenario()) == [True, False, True]
    assert [p.observed_at for p in polls] == [T, T + timedelta(seconds=5), T + timedelta(seconds=10)]
    assert changes == [DEVICES, DEVICES[:2]]
    assert snapshot.current == DEVICES[:2]


def test_snapshot_empty_first_poll_is_not_a_change():
    snapshot = DeviceSnapshot()
    changes = []
    snapshot.changes.subscribe(changes.append)

    assert asyncio.run(snapshot.set_current([], T)) is False
    assert changes == []
