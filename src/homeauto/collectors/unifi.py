"""UniFi Network integration API collector.

Polls the controller's client list and feeds it into a DeviceSnapshot.
"""

import logging
import os
from datetime import timedelta
from typing import Any

import httpx

from ..models import ClientDevice
from ..network import DeviceSnapshot
from ..scheduler import ScheduledTask, Scheduler

_LOGGER = logging.getLogger(__name__)

PAGE_SIZE = 200


class UnifiError(Exception):
    """Base exception for UniFi collector errors."""
    pass


def get_api_key() -> str:
    """Get the UniFi API key from environment variables."""
    key = os.environ.get("UNIFI_API_KEY")
    if not key:
        raise UnifiError(
            "UNIFI_API_KEY environment variable not set.\n"
            "Create a key in UniFi Network under Settings > Control Plane > Integrations."
        )
    return key


class UnifiClient:
    """Async client for the UniFi Network integration API."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        verify_ssl: bool = False,
        client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ):
        if client is None:
            client = httpx.AsyncClient(
                base_url=base_url,
                headers={"X-API-KEY": api_key or get_api_key(), "Accept": "application/json"},
                verify=verify_ssl,
                timeout=timeout,
            )
        self._client = client
        self._site_id: str | None = None

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            response = await self._client.get(path, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise UnifiError(
                f"HTTP error from UniFi: {e.response.status_code} - {e.response.reason_phrase}"
            ) from e
        except httpx.HTTPError as e:
            raise UnifiError(f"Network error connecting to UniFi: {e}") from e
        except ValueError as e:
            raise UnifiError(f"Invalid response from UniFi: {e}") from e

    async def get_site_id(self) -> str:
        """Resolve the (single) site id once and cache it."""
        if self._site_id is None:
            data = await self._get("v1/sites")
            sites = data.get("data") or []
            if len(sites) != 1:
                raise UnifiError(f"Expected exactly one site, got {len(sites)}")
            self._site_id = str(sites[0]["id"])
            _LOGGER.info("UniFi returned siteId '%s'", self._site_id)
        return self._site_id

    async def get_devices(self) -> list[ClientDevice]:
        """Fetch every connected client, following pagination."""
        site_id = await self.get_site_id()
        devices: list[ClientDevice] = []
        offset = 0
        while True:
            data = await self._get(
                f"v1/sites/{site_id}/clients", params={"offset": offset, "limit": PAGE_SIZE}
            )
            page = data.get("data") or []
            for item in page:
                try:
                    devices.append(ClientDevice.from_dict(item))
                except (KeyError, ValueError, TypeError):
                    _LOGGER.warning("Skipping malformed client record: %r", item)

            offset += len(page)
            if not page or offset >= int(data.get("totalCount", offset)):
                return devices

    async def aclose(self) -> None:
        await self._client.aclose()


class UnifiPoller:
    """Polls the client list every `interval`."""

    def __init__(
        self,
        client: UnifiClient,
        snapshot: DeviceSnapshot,
        scheduler: Scheduler,
        interval: timedelta,
    ):
        self.client = client
        self.snapshot = snapshot
        self.scheduler = scheduler
        self.interval = interval
        self._handle: ScheduledTask | None = None

    async def poll(self) -> None:
        try:
            devices = await self.client.get_devices()
        except UnifiError as e:
            _LOGGER.error("Failed to poll UniFi controller: %s", e)
            return
        await self.snapshot.set_current(devices, self.scheduler.now())

    def start(self) -> None:
        self._handle = self.scheduler.run_every(self.interval, self.poll, name="unifi.poll")

    def dispose(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
