"""Configuration loading from the YAML config folder."""

import ipaddress
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .models import CostSensorEntry, DeviceTrackerConfig, NetworkConfig, ResetSchedule

_LOGGER = logging.getLogger(__name__)

CONTAINER_CONFIG_DIR = Path("/config")
DEFAULT_CONFIG_DIR = Path(__file__).parent.parent.parent / "config"

COST_SENSORS_FILE = "cost_sensors.yaml"
UNIFI_FILE = "unifi.yaml"
NORDPOOL_FILE = "nordpool.yaml"

SAMPLE_COST_SENSORS = """\
# Cost sensors configuration
# Each cost sensor multiplies the growth of an energy sensor (kWh) by the
# value of a tariff sensor (price per kWh) and accumulates the result.
#
# cost_sensors:
#   - name: <name of cost sensor>           # Human-readable name
#     unique_id: <unique id of sensor>      # e.g. sensor.my_cost
#     tariff: <entity id of tariff sensor>  # e.g. sensor.strompris_nordpool_no2
#     energy: <entity id of energy sensor>  # e.g. sensor.my_energy
#     cron: <reset schedule>                # null, "daily", "monthly" or "yearly"
#
# Example configuration (remove the # to enable):

# cost_sensors:
#   - name: "Living Room Cost"
#     unique_id: "sensor.living_room_energy_cost"
#     tariff: "sensor.strompris_nordpool_no2"
#     energy: "sensor.living_room_energy"
#     cron: null
#
#   - name: "Total Energy Cost"
#     unique_id: "sensor.total_energy_cost"
#     tariff: "sensor.strompris_nordpool_no2"
#     energy: "sensor.total_energy"
#     cron: "monthly"
"""

SAMPLE_UNIFI = """\
# UniFi network controller configuration
# base_url: "https://192.168.1.1/proxy/network/integration/"
# poll_interval_seconds: 5
# verify_ssl: false
#
# networks:
#   - name: "Default"
#     vlan: "192.168.1.0/24"
#   - name: "IOT"
#     vlan: "192.168.55.0/24"
#
# trackers:
#   - name: "Phone"
#     mac_address: "3c:6d:89:86:ba:a6"
"""


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


@dataclass
class UnifiSettings:
    base_url: str = "https://localhost/proxy/network/integration/"
    poll_interval_seconds: int = 5
    verify_ssl: bool = False
    networks: list[NetworkConfig] = field(default_factory=list)
    trackers: list[DeviceTrackerConfig] = field(default_factory=list)


@dataclass
class NordPoolSettings:
    area: str = "NO2"
    currency: str = "NOK"
    timezone: str = "Europe/Oslo"
    price_entity: str = "sensor.strompris_nordpool_no2"
    subsidized_entity: str = "sensor.strompris_nordpool_no2_med_stromstotte"


def is_running_in_container() -> bool:
    value = os.environ.get("HOMEAUTO_RUNNING_IN_CONTAINER", "")
    return value.strip().lower() in ("1", "true", "yes")


def get_config_dir() -> Path:
    """Resolve the config folder.

    In a container the folder must be mounted at /config.
    """
    if is_running_in_container():
        if not CONTAINER_CONFIG_DIR.is_dir():
            raise ConfigError(
                f"Configuration directory {CONTAINER_CONFIG_DIR} does not exist.\n"
                "Mount a volume to /config, e.g. volumes: - ./config:/config"
            )
        return CONTAINER_CONFIG_DIR

    configured = os.environ.get("HOMEAUTO_CONFIG_DIR")
    return Path(configured) if configured else DEFAULT_CONFIG_DIR


def _read_yaml(path: Path) -> dict:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    return data or {}


def write_sample_config(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def load_cost_sensors_from_yaml(config_path: Path) -> list[CostSensorEntry]:
    """Load cost sensor definitions.

    A missing file is replaced by a commented sample and yields no sensors.
    """
    if not config_path.exists():
        _LOGGER.info("Configuration file not found at %s, creating sample configuration", config_path)
        write_sample_config(config_path, SAMPLE_COST_SENSORS)
        return []

    data = _read_yaml(config_path)
    sensors = []
    for s in data.get("cost_sensors") or []:
        try:
            sensors.append(
                CostSensorEntry(
                    name=s["name"],
                    unique_id=s["unique_id"],
                    tariff=s["tariff"],
                    energy=s["energy"],
                    cron=ResetSchedule.parse(s.get("cron")),
                )
            )
        except (KeyError, TypeError) as e:
            raise ConfigError(f"Invalid cost sensor entry in {config_path}: {s!r}") from e

    _LOGGER.info("Loaded configuration with %d cost sensors", len(sensors))
    return sensors


def load_unifi_from_yaml(config_path: Path) -> UnifiSettings | None:
    """Load UniFi settings. Returns None when the file does not exist."""
    if not config_path.exists():
        return None

    data = _read_yaml(config_path)
    try:
        settings = UnifiSettings(
            base_url=data.get("base_url", UnifiSettings.base_url),
            poll_interval_seconds=int(data.get("poll_interval_seconds", 5)),
            verify_ssl=bool(data.get("verify_ssl", False)),
        )
        networks = [NetworkConfig(name=n["name"], vlan=str(n["vlan"])) for n in data.get("networks") or []]
        trackers = [
            DeviceTrackerConfig(name=t["name"], mac_address=t["mac_address"])
            for t in data.get("trackers") or []
        ]
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"Invalid UniFi configuration in {config_path}: {e}") from e

    for network in networks:
        try:
            ipaddress.ip_network(network.vlan, strict=False)
        except ValueError:
            _LOGGER.warning("Skipping network %s: invalid CIDR '%s'", network.name, network.vlan)
            continue
        settings.networks.append(network)
    settings.trackers.extend(trackers)

    _LOGGER.info(
        "Loaded UniFi configuration with %d networks and %d trackers",
        len(settings.networks), len(settings.trackers),
    )
    return settings


def load_nordpool_from_yaml(config_path: Path) -> NordPoolSettings:
    """Load Nord Pool settings, falling back to defaults for anything missing."""
    settings = NordPoolSettings()
    if not config_path.exists():
        return settings

    data = _read_yaml(config_path)
    for key in ("area", "currency", "timezone", "price_entity", "subsidized_entity"):
        if data.get(key):
            setattr(settings, key, str(data[key]))
    return settings
