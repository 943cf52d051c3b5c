"""
Unit tests for the Sunsynk register map and conversion helpers.

Tests verify:
- Register addresses match the Sunsynk single-phase protocol.
- Register names are unique.
- Signed 16-bit conversion.
- Program time (HHMM) encode/decode, including invalid values.
- Clock encode/decode, including invalid dates.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime, time

import pytest
from socit.src import registers
from socit.src.registers import (
    NUM_PROGRAMS,
    READ_REGISTERS,
    decode_clock,
    decode_time,
    encode_clock,
    encode_time,
    to_s16,
)


class TestRegisterMap:
    """Addresses and layout."""

    @pytest.mark.parametrize(
        ("reg", "address", "count"),
        [
            (registers.CLOCK, 22, 3),
            (registers.NON_ESSENTIAL_POWER, 172, 1),
            (registers.BATTERY_SOC, 184, 1),
            (registers.BATTERY_CAPACITY_AH, 204, 1),
            (registers.ZERO_EXPORT_POWER, 206, 1),
            (registers.BATTERY_LOW_CAPACITY, 219, 1),
            (registers.BATTERY_RESTART_VOLTAGE, 221, 1),
            (registers.GRID_CHARGE_CURRENT, 230, 1),
            (registers.PROGRAM_TIME, 250, NUM_PROGRAMS),
            (registers.PROGRAM_SOC, 268, NUM_PROGRAMS),
            (registers.PROGRAM_GRID_CHARGE, 274, NUM_PROGRAMS),
        ],
    )
    def test_address_and_count(self, reg: registers.RegisterDef, address: int, count: int) -> None:
        assert reg.address == address
        assert reg.count == count

    def test_read_registers_unique_names(self) -> None:
        names = [reg.name for reg in READ_REGISTERS]
        assert len(names) == len(set(names))

    def test_restart_voltage_scale(self) -> None:
        assert registers.BATTERY_RESTART_VOLTAGE.scale == 0.01


class TestToS16:
    """Two's complement interpretation."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [(0, 0), (1, 1), (0x7FFF, 32767), (0x8000, -32768), (0xFFFF, -1), (0xFFF6, -10)],
    )
    def test_values(self, raw: int, expected: int) -> None:
        assert to_s16(raw) == expected


class TestProgramTime:
    """HHMM encoding."""

    def test_encode(self) -> None:
        assert encode_time(time(23, 45, 59)) == 2345

    def test_decode(self) -> None:
        assert decode_time(130) == time(1, 30)

    def test_decode_midnight(self) -> None:
        assert decode_time(0) == time(0, 0)

    @pytest.mark.parametrize("raw", [2400, 1260, 9999])
    def test_decode_invalid(self, raw: int) -> None:
        assert decode_time(raw) is None


class TestClock:
    """Three-word clock layout."""

    def test_encode(self) -> None:
        words = encode_clock(datetime(2026, 3, 1, 12, 34, 56))
        assert words == [(26 << 8) | 3, (1 << 8) | 12, (34 << 8) | 56]

    def test_decode(self) -> None:
        words = [(26 << 8) | 3, (1 << 8) | 12, (34 << 8) | 56]
        assert decode_clock(words) == datetime(2026, 3, 1, 12, 34, 56)

    def test_decode_invalid_month(self) -> None:
        assert decode_clock([(26 << 8) | 13, (1 << 8) | 12, 0]) is None

    def test_decode_all_zero(self) -> None:
        assert decode_clock([0, 0, 0]) is None

    def test_decode_short(self) -> None:
        assert decode_clock([1, 2]) is None
