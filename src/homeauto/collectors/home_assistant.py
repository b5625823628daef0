"""Home Assistant state store.

Reads and writes entity states through Home Assistant's REST API. The REST
API has no push channel, so state changes are detected by polling each
subscribed entity.
"""

import logging
import os
from datetime import datetime, timedelta
from functools import partial
from typing import Any

import httpx

from ..hub import UNAVAILABLE, Callback, Subscription, Topic
from ..models import StateChange
from ..scheduler import ScheduledTask, Scheduler

_LOGGER = logging.getLogger(__name__)

# Default configuration
DEFAULT_BASE_URL = "http://homeassistant.local:8123"
DEFAULT_POLL_INTERVAL = timedelta(seconds=5)

# Metadata keys that are not entity attributes
_NON_ATTRIBUTE_KEYS = {"name", "unique_id", "persist"}


class HomeAssistantError(Exception):
    """Base exception for Home Assistant errors."""
    pass


def get_token() -> str:
    """Get the HA token from environment variables."""
    token = os.environ.get("HA_TOKEN")
    if not token:
        raise HomeAssistantError("HA_TOKEN environment variable not set")
    return token


def get_base_url() -> str:
    return os.environ.get("HA_URL", DEFAULT_BASE_URL)


class HomeAssistantStateStore:
    """StateStore backed by the Home Assistant REST API."""

    def __init__(
        self,
        scheduler: Scheduler,
        base_url: str | None = None,
        token: str | None = None,
        poll_interval: timedelta = DEFAULT_POLL_INTERVAL,
        client: httpx.AsyncClient | None = None,
    ):
        self.scheduler = scheduler
        self.poll_interval = poll_interval
        if client is None:
            client = httpx.AsyncClient(
                base_url=(base_url or get_base_url()).rstrip("/"),
                headers={
                    "Authorization": f"Bearer {token or get_token()}",
                    "Content-Type": "application/json",
                },
                timeout=60.0,
            )
        self._client = client
        self._attributes: dict[str, dict[str, Any]] = {}
        self._topics: dict[str, Topic[StateChange]] = {}
        self._known: dict[str, tuple[str | None, str | None]] = {}
        self._pollers: dict[str, ScheduledTask] = {}

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise HomeAssistantError(f"Network error connecting to Home Assistant: {e}") from e
        if response.status_code == 404:
            return response
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise HomeAssistantError(
                f"HTTP error from Home Assistant: {e.response.status_code} - {e.response.reason_phrase}"
            ) from e
        return response

    async def read_entity(self, entity_id: str) -> dict[str, Any] | None:
        """Full state object for an entity, or None if it does not exist."""
        response = await self._request("GET", f"/api/states/{entity_id}")
        if response.status_code == 404:
            return None
        data = response.json()
        # POST replaces all attributes, so keep what the entity already has
        if entity_id not in self._attributes and data.get("attributes"):
            self._attributes[entity_id] = dict(data["attributes"])
        return data

    async def read_state(self, entity_id: str) -> str | None:
        data = await self.read_entity(entity_id)
        return data.get("state") if data else None

    async def write_state(self, entity_id: str, value: str) -> None:
        await self._request(
            "POST",
            f"/api/states/{entity_id}",
            json={"state": value, "attributes": self._attributes.get(entity_id, {})},
        )

    async def set_availability(self, entity_id: str, status: str) -> None:
        # REST states have no separate availability; offline shows as unavailable
        if status != "online":
            await self.write_state(entity_id, UNAVAILABLE)

    async def create_entity(self, entity_id: str, metadata: dict[str, Any]) -> None:
        attributes = {k: v for k, v in metadata.items() if k not in _NON_ATTRIBUTE_KEYS}
        if metadata.get("name"):
            attributes["friendly_name"] = metadata["name"]
        self._attributes[entity_id] = attributes

    def subscribe_changes(self, entity_id: str, callback: Callback[StateChange]) -> Subscription:
        topic = self._topics.setdefault(entity_id, Topic(entity_id))
        subscription = topic.subscribe(callback)
        if entity_id not in self._pollers:
            self._pollers[entity_id] = self.scheduler.run_every(
                self.poll_interval, partial(self.poll, entity_id), name=f"ha.poll.{entity_id}"
            )
        return subscription

    async def poll(self, entity_id: str) -> None:
        """Check one entity and publish a StateChange if it changed.

        The first poll only records the current state.
        """
        try:
            data = await self.read_entity(entity_id)
        except HomeAssistantError as e:
            _LOGGER.warning("Polling %s failed: %s", entity_id, e)
            return

        state = data.get("state") if data else None
        updated = data.get("last_updated") if data else None
        previous = self._known.get(entity_id)
        self._known[entity_id] = (state, updated)
        if previous is None or previous == (state, updated):
            return

        timestamp = datetime.fromisoformat(updated) if updated else self.scheduler.now()
        await self._topics[entity_id].publish(
            StateChange(entity_id, previous[0], state, timestamp)
        )

    def dispose(self) -> None:
        for handle in self._pollers.values():
            handle.cancel()
        self._pollers.clear()

    async def aclose(self) -> None:
        self.dispose()
        await self._client.aclose()
