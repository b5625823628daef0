"""Data models for prices, devices, sensors and their configuration."""

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any


class ResetSchedule(Enum):
    """When a cost sensor is reset to zero."""

    NONE = 0
    DAILY = 1  # every day at local midnight
    MONTHLY = 2  # 1st of every month at midnight
    YEARLY = 3  # January 1st at midnight

    @classmethod
    def parse(cls, value: str | None) -> "ResetSchedule":
        """Parse a config value. Unknown or empty values mean no reset."""
        if value is None:
            return cls.NONE
        return {
            "daily": cls.DAILY,
            "monthly": cls.MONTHLY,
            "yearly": cls.YEARLY,
        }.get(str(value).strip().lower(), cls.NONE)


class PresenceState(Enum):
    HOME = "home"
    NOT_HOME = "not_home"


@dataclass(frozen=True)
class PriceEntry:
    """Prices for one delivery window, keyed by area code."""

    delivery_start: datetime
    delivery_end: datetime
    price_per_area: dict[str, float]

    def price_for(self, area: str) -> float | None:
        return self.price_per_area.get(area)


@dataclass(frozen=True)
class DayPrices:
    """All price entries fetched for one delivery date."""

    delivery_date: date
    entries: tuple[PriceEntry, ...]


@dataclass(frozen=True)
class StateChange:
    """A state change notification for one entity."""

    entity_id: str
    old_state: str | None
    new_state: str | None
    timestamp: datetime


@dataclass(frozen=True)
class AccessInfo:
    type: str | None = None


@dataclass(frozen=True)
class ClientDevice:
    """A client device as reported by the network controller.

    Equality covers id, name, ip, type, mac and access type; the
    connection time and uplink do not affect it.
    """

    id: str
    name: str | None = None
    ip_address: str | None = None
    type: str | None = None
    mac_address: str | None = None
    access: AccessInfo | None = None
    connected_at: datetime | None = field(default=None, compare=False)
    uplink_device_id: str | None = field(default=None, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClientDevice":
        access = data.get("access")
        connected_at = data.get("connectedAt")
        return cls(
            id=str(data["id"]),
            name=data.get("name"),
            ip_address=data.get("ipAddress"),
            type=data.get("type"),
            mac_address=data.get("macAddress"),
            access=AccessInfo(type=access.get("type")) if access is not None else None,
            connected_at=(
                datetime.fromisoformat(connected_at.replace("Z", "+00:00"))
                if connected_at
                else None
            ),
            uplink_device_id=data.get("uplinkDeviceId"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "connectedAt": self.connected_at.isoformat() if self.connected_at else None,
            "ipAddress": self.ip_address,
            "access": {"type": self.access.type} if self.access is not None else None,
            "type": self.type,
            "macAddress": self.mac_address,
            "uplinkDeviceId": self.uplink_device_id,
        }


def sanitize_name(name: str) -> str:
    """Replace runs of non-alphanumeric characters with underscores."""
    return re.sub(r"[^a-zA-Z0-9]+", "_", name)


@dataclass
class CostSensorEntry:
    """Configuration for a single cost sensor."""

    name: str
    unique_id: str
    tariff: str  # entity id of the tariff (price per kWh) sensor
    energy: str  # entity id of the cumulative energy sensor
    cron: ResetSchedule = ResetSchedule.NONE


@dataclass
class NetworkConfig:
    """A named VLAN, e.g. vlan='10.100.5.0/24'."""

    name: str
    vlan: str

    @property
    def unique_id(self) -> str:
        return f"sensor.unifi_vlan_{sanitize_name(self.name)}_devices".lower()


@dataclass
class DeviceTrackerConfig:
    name: str
    mac_address: str

    @property
    def unique_id(self) -> str:
        return f"device_tracker.unifi_{sanitize_name(self.name)}".lower()


@dataclass(frozen=True)
class DevicePoll:
    """One poll of the network controller's client list."""

    devices: tuple[ClientDevice, ...]
    observed_at: datetime
