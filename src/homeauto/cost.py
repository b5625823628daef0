"""Energy cost sensors.

A cost sensor follows a cumulative energy sensor and adds
`delta kWh * current tariff` to a running total, which can be reset on a
daily, monthly or yearly schedule.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from functools import partial
from typing import Protocol

from .hub import StateStore, Subscription, parse_state_float
from .models import CostSensorEntry, ResetSchedule, StateChange
from .scheduler import ScheduledTask, Scheduler, next_reset

_LOGGER = logging.getLogger(__name__)

# A jump of SPIKE_THRESHOLD kWh or more within SPIKE_WINDOW is a meter glitch
SPIKE_WINDOW = timedelta(seconds=60)
SPIKE_THRESHOLD = 10.0

COST_SENSOR_ATTRIBUTES = {
    "device_class": "monetary",
    "unit_of_measurement": "kr",
    "state_class": "measurement",
}


class SampleOutcome(Enum):
    BASELINE = "baseline"  # first reading, nothing to diff against
    SPIKE = "spike"  # rejected, state unchanged
    NO_TARIFF = "no_tariff"  # baseline advanced, cost unchanged
    APPLIED = "applied"


@dataclass
class CostAccumulator:
    """Running cost for one energy meter."""

    cumulative_cost: float = 0.0
    last_reading: float | None = None
    last_accepted_at: datetime | None = None

    def apply_sample(self, timestamp: datetime, reading: float, tariff: float | None) -> SampleOutcome:
        if self.last_reading is None:
            self.last_reading = reading
            self.last_accepted_at = timestamp
            return SampleOutcome.BASELINE

        delta = reading - self.last_reading
        if (
            self.last_accepted_at is not None
            and timestamp - self.last_accepted_at < SPIKE_WINDOW
            and abs(delta) >= SPIKE_THRESHOLD
        ):
            return SampleOutcome.SPIKE

        self.last_reading = reading
        self.last_accepted_at = timestamp
        if tariff is None:
            return SampleOutcome.NO_TARIFF

        self.cumulative_cost += delta * tariff
        return SampleOutcome.APPLIED

    def reset(self) -> None:
        # The meter baseline is kept so the next delta is not a jump from zero
        self.cumulative_cost = 0.0


class TariffSource(Protocol):
    @property
    def current_price(self) -> float | None: ...


class TariffSensor:
    """Tracks the numeric value of a tariff entity."""

    def __init__(self, store: StateStore, entity_id: str):
        self.store = store
        self.entity_id = entity_id
        self.current_price: float | None = None
        self._subscription: Subscription | None = None

    async def initialize(self) -> None:
        state = await self.store.read_state(self.entity_id)
        self.current_price = parse_state_float(state)
        if state is None:
            _LOGGER.warning("Tariff sensor %s not found or has no state", self.entity_id)
        elif self.current_price is None:
            _LOGGER.warning("Could not parse tariff value '%s' for %s", state, self.entity_id)
        else:
            _LOGGER.info("Tariff sensor %s has value %s", self.entity_id, self.current_price)

        self._subscription = self.store.subscribe_changes(self.entity_id, self._on_change)

    def _on_change(self, change: StateChange) -> None:
        value = parse_state_float(change.new_state)
        if value is None:
            _LOGGER.warning(
                "Could not parse new tariff value '%s' for %s", change.new_state, self.entity_id
            )
            return
        self.current_price = value
        _LOGGER.info("Tariff sensor %s changed to %s", self.entity_id, value)

    def dispose(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None


class CostSensor:
    """Binds a CostAccumulator to its energy entity, cost entity and reset schedule."""

    def __init__(
        self,
        store: StateStore,
        scheduler: Scheduler,
        tariff: TariffSource,
        config: CostSensorEntry,
    ):
        self.store = store
        self.scheduler = scheduler
        self.tariff = tariff
        self.config = config
        self.accumulator = CostAccumulator()
        self._lock = asyncio.Lock()
        self._subscription: Subscription | None = None
        self._reset_handle: ScheduledTask | None = None

    @property
    def cumulative_cost(self) -> float:
        return self.accumulator.cumulative_cost

    async def initialize(self) -> None:
        config = self.config
        _LOGGER.info("Setting up cost sensor: %s (ID: %s)", config.name, config.unique_id)

        energy_state = await self.store.read_state(config.energy)
        reading = parse_state_float(energy_state)
        if energy_state is None:
            _LOGGER.warning("Energy sensor %s not found or has no state", config.energy)
        elif reading is None:
            _LOGGER.warning("Could not parse energy value '%s' for %s", energy_state, config.energy)
        else:
            # Seed the baseline so the first change after startup is costed
            self.accumulator.apply_sample(self.scheduler.now(), reading, self.tariff.current_price)
            _LOGGER.info("Energy sensor %s has state %s", config.energy, energy_state)

        existing = parse_state_float(await self.store.read_state(config.unique_id))
        if existing is not None and existing >= 0:
            self.accumulator.cumulative_cost = existing
            _LOGGER.info("Cost sensor %s exists with value %s", config.unique_id, existing)
        else:
            _LOGGER.info("Cost sensor %s does not exist, creating it", config.unique_id)
            await self.store.create_entity(
                config.unique_id,
                {
                    "name": config.name,
                    "unique_id": config.unique_id.removeprefix("sensor."),
                    "persist": True,
                    **COST_SENSOR_ATTRIBUTES,
                },
            )
            await self.store.write_state(config.unique_id, "0.00")
            await self.store.set_availability(config.unique_id, "online")

        self._setup_reset_schedule()
        self._subscription = self.store.subscribe_changes(config.energy, self.on_energy_change)

    def _setup_reset_schedule(self) -> None:
        if self.config.cron is ResetSchedule.NONE:
            _LOGGER.info("Cost sensor %s has no reset schedule", self.config.name)
            return

        _LOGGER.info(
            "Setting up %s reset schedule for cost sensor %s",
            self.config.cron.name.lower(), self.config.name,
        )
        self._reset_handle = self.scheduler.schedule_recurring(
            partial(next_reset, self.config.cron),
            self.reset,
            name=f"cost.reset.{self.config.unique_id}",
        )

    async def on_energy_change(self, change: StateChange) -> None:
        reading = parse_state_float(change.new_state)
        if reading is None:
            _LOGGER.warning(
                "Could not parse energy value '%s' for %s", change.new_state, self.config.energy
            )
            return

        async with self._lock:
            previous = self.accumulator.last_reading
            tariff = self.tariff.current_price
            outcome = self.accumulator.apply_sample(change.timestamp, reading, tariff)

            if outcome is SampleOutcome.BASELINE:
                _LOGGER.debug("Baseline for %s set to %s", self.config.energy, reading)
            elif outcome is SampleOutcome.SPIKE:
                _LOGGER.warning(
                    "Spike detected for %s: %s -> %s kWh within %ss. Ignoring this state change.",
                    self.config.energy, previous, reading, SPIKE_WINDOW.total_seconds(),
                )
            elif outcome is SampleOutcome.NO_TARIFF:
                _LOGGER.warning(
                    "No tariff available for %s, energy delta not costed", self.config.name
                )
            else:
                _LOGGER.debug(
                    "Cost update for %s: delta = %s kWh, tariff = %s, total cost = %s",
                    self.config.name, reading - previous, tariff, self.cumulative_cost,
                )
                await self.store.write_state(self.config.unique_id, f"{self.cumulative_cost:.4f}")

    async def reset(self) -> None:
        async with self._lock:
            _LOGGER.info("Resetting cost for %s to 0", self.config.name)
            self.accumulator.reset()
            await self.store.write_state(self.config.unique_id, "0.00")

    def dispose(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None
