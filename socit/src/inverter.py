"""
Async Modbus driver for Sunsynk hybrid inverters.

Reads the battery state, inverter clock and non-essential load from the
holding registers defined in registers.py, and writes the SoC programs,
alarm level and trickle setting back. Works over Modbus TCP (device string
``host[:port]``) or Modbus RTU (device string is a serial port path).

The connection is opened lazily and dropped on any error so that the next
call starts from a fresh connection. Every failure surfaces as
:class:`InverterError`; deciding what to do about it is the caller's job.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta, tzinfo

from pymodbus.client import AsyncModbusSerialClient, AsyncModbusTcpClient
from pymodbus.exceptions import ModbusException

from socit.src.models import BatteryState, InverterReading
from socit.src.projection import round_soc
from socit.src.registers import (
    BATTERY_CAPACITY_AH,
    BATTERY_LOW_CAPACITY,
    BATTERY_RESTART_VOLTAGE,
    BATTERY_SOC,
    CLOCK,
    GRID_CHARGE_CURRENT,
    NON_ESSENTIAL_POWER,
    NUM_PROGRAMS,
    PROGRAM_GRID_CHARGE,
    PROGRAM_SOC,
    PROGRAM_TIME,
    READ_REGISTERS,
    ZERO_EXPORT_POWER,
    RegisterDef,
    decode_clock,
    encode_clock,
    encode_time,
    to_s16,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_TCP_PORT: int = 502
SERIAL_BAUDRATE: int = 9600

PROGRAM_STEP: timedelta = timedelta(minutes=5)
"""The inverter truncates program times to 5-minute boundaries."""


class InverterError(Exception):
    """Communication with the inverter failed or returned nonsense."""


# ---------------------------------------------------------------------------
# Time-of-use programs
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Program:
    """One time-of-use slot: from ``time`` until the next slot starts."""

    time: time
    soc: int
    grid_charge: bool = False


def _round_to(value: datetime, step: timedelta) -> datetime:
    """Round to the nearest multiple of *step* since midnight (half up)."""
    midnight = value.replace(hour=0, minute=0, second=0, microsecond=0)
    discard = (value - midnight) % step
    if discard * 2 >= step:
        return value + (step - discard)
    return value - discard


def make_programs(
    target: float,
    fallback: float,
    now_local: datetime,
    *,
    grid_charge: bool = False,
    num_programs: int = NUM_PROGRAMS,
) -> list[Program]:
    """Build the program table for the inverter's current local time.

    The target applies in a 20-minute window centred on *now_local*; every
    other slot holds the fallback SoC. If a new target is not written within
    ten minutes the inverter therefore reverts to the fallback on its own.
    Slots are rotated so their start times stay sorted across midnight.
    """
    starts = [
        _round_to(now_local - 2 * PROGRAM_STEP, PROGRAM_STEP),
        _round_to(now_local + 2 * PROGRAM_STEP, PROGRAM_STEP),
    ]
    while len(starts) < num_programs:
        starts.append(starts[-1] + PROGRAM_STEP)

    programs = [Program(starts[0].time(), round_soc(target), grid_charge)]
    programs.extend(Program(start.time(), round_soc(fallback)) for start in starts[1:])

    for i in range(1, num_programs):
        if programs[i].time < programs[i - 1].time:
            programs = programs[i:] + programs[:i]
            break
    return programs


# ---------------------------------------------------------------------------
# Device string parsing
# ---------------------------------------------------------------------------


def parse_device(device: str) -> tuple[str, int | None]:
    """Split a device string into ``(host_or_path, tcp_port)``.

    Serial device paths return ``None`` for the port.
    """
    if device.startswith("/") or device.upper().startswith("COM"):
        return device, None
    host, sep, port = device.rpartition(":")
    if not sep:
        return device, DEFAULT_TCP_PORT
    try:
        return host, int(port)
    except ValueError as exc:
        raise ValueError(f"Invalid port in inverter device '{device}'") from exc


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------


class SunsynkInverter:
    """Modbus driver implementing the inverter port.

    Args:
        device: ``host[:port]`` for Modbus TCP, or a serial device path.
        modbus_id: Modbus slave / unit ID.
        timeout_s: Timeout per Modbus request.
        zone: Timezone the inverter clock runs in; the host's local zone
            when ``None``.
    """

    def __init__(
        self,
        *,
        device: str,
        modbus_id: int = 1,
        timeout_s: float = 10.0,
        zone: tzinfo | None = None,
    ) -> None:
        self._target, self._port = parse_device(device)
        self._modbus_id = modbus_id
        self._timeout_s = timeout_s
        self._zone = zone
        self._client: AsyncModbusTcpClient | AsyncModbusSerialClient | None = None

    def __repr__(self) -> str:
        if self._port is None:
            return f"SunsynkInverter(rtu={self._target}, id={self._modbus_id})"
        return f"SunsynkInverter(tcp={self._target}:{self._port}, id={self._modbus_id})"

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def _make_client(self) -> AsyncModbusTcpClient | AsyncModbusSerialClient:
        if self._port is None:
            return AsyncModbusSerialClient(
                self._target,
                baudrate=SERIAL_BAUDRATE,
                timeout=self._timeout_s,
            )
        return AsyncModbusTcpClient(self._target, port=self._port, timeout=self._timeout_s)

    async def _connected_client(self) -> AsyncModbusTcpClient | AsyncModbusSerialClient:
        if self._client is not None and self._client.connected:
            return self._client
        self.close()
        client = self._make_client()
        try:
            ok = await client.connect()
        except Exception as exc:
            client.close()
            raise InverterError(f"Failed to connect to inverter {self!r}") from exc
        if not ok:
            client.close()
            raise InverterError(f"Failed to connect to inverter {self!r} (connect returned False)")
        self._client = client
        return client

    def close(self) -> None:
        """Close the Modbus connection, if any."""
        if self._client is not None:
            self._client.close()
            self._client = None

    async def _read(self, reg: RegisterDef) -> list[int]:
        client = await self._connected_client()
        try:
            response = await client.read_holding_registers(
                reg.address,
                count=reg.count,
                device_id=self._modbus_id,
            )
        except ModbusException as exc:
            self.close()
            raise InverterError(f"Modbus error reading '{reg.name}' at {reg.address}") from exc
        if response.isError():
            self.close()
            raise InverterError(f"Modbus error response reading '{reg.name}' at {reg.address}")
        return list(response.registers)

    async def _write(self, reg: RegisterDef, values: list[int]) -> None:
        client = await self._connected_client()
        try:
            response = await client.write_registers(
                reg.address,
                values,
                device_id=self._modbus_id,
            )
        except ModbusException as exc:
            self.close()
            raise InverterError(f"Modbus error writing '{reg.name}' at {reg.address}") from exc
        if response.isError():
            self.close()
            raise InverterError(f"Modbus error response writing '{reg.name}' at {reg.address}")

    def _to_local_naive(self, value: datetime) -> datetime:
        local = value.astimezone(self._zone) if self._zone is not None else value.astimezone()
        return local.replace(tzinfo=None)

    def _from_local_naive(self, value: datetime) -> datetime:
        if self._zone is not None:
            return value.replace(tzinfo=self._zone)
        return value.astimezone()

    # ------------------------------------------------------------------
    # Inverter port
    # ------------------------------------------------------------------

    async def read_state(self, host_now: datetime | None = None) -> InverterReading:
        """Read battery state, clock, non-essential load and trickle setting.

        Raises:
            InverterError: On any communication failure or invalid battery
                reading.
        """
        if host_now is None:
            host_now = datetime.now(tz=UTC)
        raw = {reg.name: await self._read(reg) for reg in READ_REGISTERS}

        voltage = raw[BATTERY_RESTART_VOLTAGE.name][0] * BATTERY_RESTART_VOLTAGE.scale
        capacity_wh = raw[BATTERY_CAPACITY_AH.name][0] * voltage
        charge_power = raw[GRID_CHARGE_CURRENT.name][0] * voltage
        try:
            battery = BatteryState(
                capacity_wh=capacity_wh,
                soc=float(raw[BATTERY_SOC.name][0]),
                ts=host_now,
            )
        except ValueError as exc:
            raise InverterError(f"Implausible battery reading: {exc}") from exc

        clock = decode_clock(raw[CLOCK.name])
        if clock is None:
            logger.warning("Inverter clock registers hold no valid date: %s", raw[CLOCK.name])

        return InverterReading(
            battery=battery,
            inverter_time=self._from_local_naive(clock) if clock is not None else None,
            non_essential_power=float(to_s16(raw[NON_ESSENTIAL_POWER.name][0])),
            rated_max_charge_power=charge_power,
            trickle=float(raw[ZERO_EXPORT_POWER.name][0]),
        )

    async def write_settings(
        self,
        *,
        target_soc_low: float,
        target_soc_high: float,
        alarm_soc: float,
        trickle: float | None,
        current_soc: float,
        fallback_soc: float,
        inverter_now: datetime,
    ) -> None:
        """Write the SoC programs, alarm level and trickle setting.

        The current program slot holds ``target_soc_high``; grid charging is
        enabled in it only while the battery is below ``target_soc_low``.

        Args:
            target_soc_low: Grid charging threshold.
            target_soc_high: Discharge floor for the current window.
            alarm_soc: Written to the battery-low register.
            trickle: Zero-export power in W, or ``None`` to leave it alone.
            current_soc: SoC read at the start of the tick.
            fallback_soc: SoC held by the other program slots.
            inverter_now: Current time on the inverter's clock.

        Raises:
            InverterError: If any register write fails.
        """
        programs = make_programs(
            target_soc_high,
            fallback_soc,
            self._to_local_naive(inverter_now),
            grid_charge=current_soc < target_soc_low,
        )
        for i, program in enumerate(programs):
            logger.info(
                "Setting program %d to %s: %d%%%s",
                i + 1,
                program.time.strftime("%H:%M"),
                program.soc,
                " (grid charge)" if program.grid_charge else "",
            )
        await self._write(PROGRAM_TIME, [encode_time(p.time) for p in programs])
        await self._write(PROGRAM_SOC, [p.soc for p in programs])
        await self._write(PROGRAM_GRID_CHARGE, [int(p.grid_charge) for p in programs])
        await self._write(BATTERY_LOW_CAPACITY, [round_soc(alarm_soc)])
        if trickle is not None:
            await self._write(ZERO_EXPORT_POWER, [max(0, int(round(trickle)))])

    async def set_clock(self, host_now: datetime) -> None:
        """Set the inverter clock to *host_now* in the inverter's zone."""
        local = self._to_local_naive(host_now)
        logger.info("Setting inverter time to %s", local.isoformat(sep=" "))
        await self._write(CLOCK, encode_clock(local))
