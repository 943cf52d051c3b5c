"""
Sunsynk hybrid inverter Modbus register map -- single source of truth.

Defines the holding register addresses, data types and scaling used by the
inverter driver, plus the pure encode/decode helpers for the registers that
are not plain integers (clock and program times).

All registers are holding registers (function code 0x03 to read, 0x10 to
write) on the Sunsynk/Deye single-phase protocol.

References:
    - Sunsynk single-phase Modbus RTU protocol
    - https://github.com/kellerza/sunsynk

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time

# ---------------------------------------------------------------------------
# Data definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RegisterDef:
    """Definition of a holding register (or a block of them).

    Attributes:
        address: First holding register address.
        name: Unique identifier used as dict key.
        reg_type: ``"U16"``, ``"S16"``, ``"CLOCK"`` or ``"HHMM"``.
        unit: Engineering unit string.
        scale: Multiplier from raw integer to engineering value.
        count: Number of consecutive words.
        description: Free-text description.
    """

    address: int
    name: str
    reg_type: str
    unit: str = ""
    scale: float = 1.0
    count: int = 1
    description: str = ""


NUM_PROGRAMS: int = 6
"""Number of time-of-use program slots on the inverter."""

CLOCK = RegisterDef(22, "clock", "CLOCK", count=3, description="YY/MM, DD/hh, mm/ss")
NON_ESSENTIAL_POWER = RegisterDef(
    172, "non_essential_power", "S16", "W", description="Non-essential port power (external CT)"
)
BATTERY_SOC = RegisterDef(184, "battery_soc", "U16", "%")
BATTERY_CAPACITY_AH = RegisterDef(204, "battery_capacity_ah", "U16", "Ah")
ZERO_EXPORT_POWER = RegisterDef(
    206, "zero_export_power", "U16", "W", description="Trickle import held by zero-export mode"
)
BATTERY_LOW_CAPACITY = RegisterDef(219, "battery_low_capacity", "U16", "%", description="Alarm SoC")
BATTERY_RESTART_VOLTAGE = RegisterDef(221, "battery_restart_voltage", "U16", "V", scale=0.01)
GRID_CHARGE_CURRENT = RegisterDef(230, "grid_charge_current", "U16", "A")
PROGRAM_TIME = RegisterDef(250, "program_time", "HHMM", count=NUM_PROGRAMS)
PROGRAM_SOC = RegisterDef(268, "program_soc", "U16", "%", count=NUM_PROGRAMS)
PROGRAM_GRID_CHARGE = RegisterDef(
    274, "program_grid_charge", "U16", count=NUM_PROGRAMS, description="Bit 0: charge from grid"
)

READ_REGISTERS: list[RegisterDef] = [
    CLOCK,
    NON_ESSENTIAL_POWER,
    BATTERY_SOC,
    BATTERY_CAPACITY_AH,
    ZERO_EXPORT_POWER,
    BATTERY_RESTART_VOLTAGE,
    GRID_CHARGE_CURRENT,
]
"""Registers read at the start of every tick, in read order."""


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------


def to_s16(raw: int) -> int:
    """Interpret a raw 16-bit value as signed (two's complement)."""
    val = raw & 0xFFFF
    if val >= 0x8000:
        val -= 0x10000
    return val


def decode_time(raw: int) -> time | None:
    """Decode a program time stored as ``hours * 100 + minutes``.

    Returns ``None`` when the register does not hold a valid time of day.
    """
    hours, minutes = divmod(raw & 0xFFFF, 100)
    if hours > 23 or minutes > 59:
        return None
    return time(hours, minutes)


def encode_time(value: time) -> int:
    """Encode a time of day as ``hours * 100 + minutes`` (seconds dropped)."""
    return value.hour * 100 + value.minute


def decode_clock(words: list[int]) -> datetime | None:
    """Decode the three clock registers into a naive local datetime.

    The layout is ``(year - 2000) << 8 | month``, ``day << 8 | hour``,
    ``minute << 8 | second``. Returns ``None`` if the registers do not
    describe a real date and time.
    """
    if len(words) < 3:
        return None
    try:
        return datetime(
            2000 + (words[0] >> 8),
            words[0] & 0xFF,
            words[1] >> 8,
            words[1] & 0xFF,
            words[2] >> 8,
            words[2] & 0xFF,
        )
    except ValueError:
        return None


def encode_clock(value: datetime) -> list[int]:
    """Encode a naive local datetime into the three clock registers."""
    return [
        ((value.year - 2000) << 8) | value.month,
        (value.day << 8) | value.hour,
        (value.minute << 8) | value.second,
    ]
