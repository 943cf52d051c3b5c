"""
Value types shared by the projection engine, the inverter driver and the
control loop.

The engine-facing types are frozen dataclasses: they are created once per
tick from a fresh reading and never mutated afterwards. The telemetry record
is a pydantic model because it is serialized into the telemetry buffer.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from pydantic import BaseModel

# ---------------------------------------------------------------------------
# Battery and site description
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BatteryState:
    """Battery snapshot taken at the start of a tick.

    Attributes:
        capacity_wh: Usable battery capacity in watt-hours.
        soc: State of charge as a percentage (0-100).
        ts: Host time at which the reading was taken.
    """

    capacity_wh: float
    soc: float
    ts: datetime

    def __post_init__(self) -> None:
        if not 0.0 <= self.soc <= 100.0:
            msg = f"Battery SoC must be within 0-100 (got {self.soc})"
            raise ValueError(msg)
        if self.capacity_wh <= 0.0:
            msg = f"Battery capacity must be positive (got {self.capacity_wh})"
            raise ValueError(msg)


@dataclass(frozen=True, slots=True)
class PowerProfile:
    """Site consumption model and SoC policy.

    Attributes:
        min_discharge_power: Optimistic household load in W, used while the
            grid is available.
        max_discharge_power: Pessimistic household load in W, used during
            outages.
        charge_power: Maximum rate at which the battery can absorb solar
            power, in W. ``None`` means uncapped.
        min_soc: SoC floor the battery must never drop below.
        fallback_soc: Static floor used when no fresh forecast is available.
        low_margin: Distance between the high and low targets, in percent.
        alarm_margin: Distance between the low target and the alarm level.
    """

    min_discharge_power: float
    max_discharge_power: float
    min_soc: float
    fallback_soc: float
    charge_power: float | None = None
    low_margin: float = 5.0
    alarm_margin: float = 5.0

    def with_charge_cap(self, rated_max_charge_power: float | None) -> PowerProfile:
        """Return a copy whose charge power is also capped by the inverter."""
        if rated_max_charge_power is None or rated_max_charge_power <= 0:
            return self
        if self.charge_power is None:
            cap = rated_max_charge_power
        else:
            cap = min(self.charge_power, rated_max_charge_power)
        return replace(self, charge_power=cap)


@dataclass(frozen=True, slots=True)
class PanelSpec:
    """A group of panels sharing one orientation.

    Angles are in degrees. ``azimuth`` is measured clockwise from true
    north and ``tilt`` from the horizontal (0 = flat, 90 = vertical).
    """

    latitude: float
    longitude: float
    azimuth: float
    tilt: float
    power: float


# ---------------------------------------------------------------------------
# Forecast and projection
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class OutageInterval:
    """A forecast window during which the grid is expected to be down."""

    start: datetime
    end: datetime
    note: str = ""

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


@dataclass(frozen=True, slots=True)
class ProjectionResult:
    """Thresholds computed for one tick.

    ``alarm_soc <= target_soc_low <= target_soc_high`` always holds.

    Attributes:
        target_soc_low: Below this level the grid charges the battery.
        target_soc_high: The battery does not discharge below this level.
        alarm_soc: Advisory low-battery level.
        feasible: False when the required SoC had to be clamped to 100.
        stale: True when the result was pinned to the fallback SoC.
        worst_energy_wh: Most negative cumulative energy delta seen during
            an outage (0 when there is none).
        worst_time: Time at which ``worst_energy_wh`` occurs.
        predicted_pv: Estimated solar power at ``now`` in W.
        is_outage: Whether the grid is expected to be down at ``now``.
        next_change: When the grid state is next expected to change.
    """

    target_soc_low: float
    target_soc_high: float
    alarm_soc: float
    feasible: bool = True
    stale: bool = False
    worst_energy_wh: float = 0.0
    worst_time: datetime | None = None
    predicted_pv: float = 0.0
    is_outage: bool = False
    next_change: datetime | None = None


# ---------------------------------------------------------------------------
# Inverter and control state
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class InverterReading:
    """Everything read from the inverter at the start of a tick.

    Attributes:
        battery: Battery capacity and state of charge.
        inverter_time: The inverter's own clock, or ``None`` when the clock
            registers do not hold a valid date.
        non_essential_power: Power measured on the non-essential load port (W).
        rated_max_charge_power: Charge power limit derived from the battery
            settings (W).
        trickle: Current zero-export (trickle) setting in W.
    """

    battery: BatteryState
    inverter_time: datetime | None
    non_essential_power: float
    rated_max_charge_power: float
    trickle: float


@dataclass(frozen=True, slots=True)
class CoilBiasState:
    """Trickle setting carried from one tick to the next."""

    trickle: float
    active: bool = False


class TelemetryRecord(BaseModel):
    """One row of telemetry emitted per tick.

    Attributes:
        ts: Host time of the tick.
        target_soc_low: Low threshold written (or that would be written).
        target_soc_high: High threshold.
        alarm_soc: Advisory alarm level.
        current_soc: Battery SoC read at the start of the tick.
        predicted_pv: Estimated solar power at the tick in W.
        is_loadshedding: Whether an outage is in progress.
        next_change_seconds: Seconds until the grid state next changes.
        clock_offset_s: Host time minus inverter time, in seconds.
        trickle: Trickle setting after correction, in W.
        coil_active: Whether the trickle correction ran this tick.
        coil_target: Configured trickle target, when the corrector is enabled.
    """

    ts: datetime
    target_soc_low: float
    target_soc_high: float
    alarm_soc: float
    current_soc: float
    predicted_pv: float
    is_loadshedding: bool
    next_change_seconds: float | None = None
    clock_offset_s: float
    trickle: float | None = None
    coil_active: bool = False
    coil_target: float | None = None
