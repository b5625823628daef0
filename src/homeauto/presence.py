"""Debounced home/away tracking for network devices."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from .hub import StateStore
from .models import DevicePoll, DeviceTrackerConfig, PresenceState

_LOGGER = logging.getLogger(__name__)

DEBOUNCE_WINDOW = timedelta(seconds=60)


def normalize_key(key: str) -> str:
    return key.strip().lower()


@dataclass
class PresenceRecord:
    identity_key: str
    last_seen: datetime | None = None
    state: PresenceState | None = None  # None until the first observation


class PresenceTracker:
    """Home/away state machine per identity key.

    A positive observation means home immediately. A negative one means
    not_home only if the device was never seen, or was last seen at least
    `debounce` ago. observe() returns the new state on a transition and
    None otherwise.
    """

    def __init__(self, debounce: timedelta = DEBOUNCE_WINDOW):
        self.debounce = debounce
        self._records: dict[str, PresenceRecord] = {}

    def record(self, identity_key: str) -> PresenceRecord:
        key = normalize_key(identity_key)
        return self._records.setdefault(key, PresenceRecord(key))

    def state_of(self, identity_key: str) -> PresenceState | None:
        return self.record(identity_key).state

    def observe(self, identity_key: str, is_present: bool, now: datetime) -> PresenceState | None:
        record = self.record(identity_key)

        if is_present:
            record.last_seen = now
            return self._transition(record, PresenceState.HOME)

        if record.last_seen is None or now - record.last_seen >= self.debounce:
            return self._transition(record, PresenceState.NOT_HOME)
        return None

    @staticmethod
    def _transition(record: PresenceRecord, state: PresenceState) -> PresenceState | None:
        if record.state is state:
            return None
        record.state = state
        return state


class DeviceTracker:
    """Publishes one tracked device's presence to its device_tracker entity."""

    def __init__(self, store: StateStore, presence: PresenceTracker, config: DeviceTrackerConfig):
        self.store = store
        self.presence = presence
        self.config = config

    @property
    def mac_address(self) -> str:
        return normalize_key(self.config.mac_address)

    async def initialize(self) -> None:
        state = await self.store.read_state(self.config.unique_id)
        if not state:
            await self.store.create_entity(
                self.config.unique_id,
                {
                    "device_class": "device_tracker",
                    "name": self.config.name,
                    "unique_id": self.config.unique_id,
                },
            )

    async def update(self, is_home: bool, now: datetime) -> None:
        new_state = self.presence.observe(self.mac_address, is_home, now)
        if new_state is None:
            return
        await self.store.write_state(self.config.unique_id, new_state.value)
        _LOGGER.info("%s is %s", self.config.name, new_state.value)


class DeviceTrackerGroup:
    """Applies each device poll to every configured tracker, one poll at a time."""

    def __init__(self, store: StateStore, trackers: list[DeviceTrackerConfig]):
        self.presence = PresenceTracker()
        self.trackers = [DeviceTracker(store, self.presence, t) for t in trackers]
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        for tracker in self.trackers:
            await tracker.initialize()

    async def on_poll(self, poll: DevicePoll) -> None:
        present = {normalize_key(d.mac_address) for d in poll.devices if d.mac_address}
        async with self._lock:
            for tracker in self.trackers:
                await tracker.update(tracker.mac_address in present, poll.observed_at)
