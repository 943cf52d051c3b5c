"""
One control tick, and the state carried between ticks.

``ControlLoop`` owns every piece of long-lived mutable state (the last good
outage timeline, the clock offset and the trickle setting) and threads it
into the pure components on each tick:

1. read the inverter (bounded, abandoned on shutdown);
2. measure the clock offset;
3. project the required SoC from the cached forecast;
4. correct the trickle setting;
5. write the settings back, unless in dry-run mode or shutting down;
6. emit telemetry and update the health file.

Any failure of an external collaborator degrades the tick (logged, prior
settings stay on the inverter) and never escapes ``tick()``.

CHANGELOG:
- 2026-10-19: Initial creation
- 2026-10-19: Writes rely on the per-request Modbus timeout so a sequence is never cut short

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Protocol, TypeVar

from socit.src import coil
from socit.src.clock import ClockOffset, ClockSkewCompensator
from socit.src.models import (
    CoilBiasState,
    InverterReading,
    PanelSpec,
    PowerProfile,
    ProjectionResult,
    TelemetryRecord,
)
from socit.src.outages import DEFAULT_STALE_AFTER, OutageTimeline
from socit.src.projection import DEFAULT_STEP, project

if TYPE_CHECKING:
    from socit.src.health import HealthWriter
    from socit.src.telemetry import TelemetryBuffer

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


class InverterPort(Protocol):
    async def read_state(self, host_now: datetime | None = None) -> InverterReading: ...

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
    ) -> None: ...

    async def set_clock(self, host_now: datetime) -> None: ...


class ForecastPort(Protocol):
    async def fetch(self, area: str) -> OutageTimeline: ...


class ShutdownRequested(Exception):
    """An external call was abandoned because shutdown was requested."""


@dataclass(frozen=True, slots=True)
class TickOutcome:
    """What a tick did.

    Attributes:
        result: The projection, or ``None`` if the tick ended before it.
        wrote: Whether the settings were written to the inverter.
        degraded: Whether any step failed or was skipped.
    """

    result: ProjectionResult | None = None
    wrote: bool = False
    degraded: bool = False


# ---------------------------------------------------------------------------
# Control loop
# ---------------------------------------------------------------------------


class ControlLoop:
    """Orchestrates control ticks against the inverter and forecast ports.

    Args:
        inverter: Inverter port.
        forecast: Outage forecast port.
        area: Forecast area ID.
        profile: Consumption model and SoC policy.
        panels: Panel groups.
        coil_config: Trickle correction settings, or ``None`` to disable it.
        shutdown_event: Set when the process should stop.
        telemetry: Telemetry buffer, or ``None``.
        health: Health file writer, or ``None``.
        dry_run: Compute and log only; never write to the inverter.
        set_clock: Write the host time to the inverter clock every tick.
        io_timeout_s: Bound on each inverter read. Writes rely on the
            per-request Modbus timeout instead.
        forecast_timeout_s: Bound on each forecast fetch.
        stale_after: Forecast age at which the fallback SoC is used.
        step: Solar integration sub-step.
        initial_trickle: Trickle setting found on the inverter at startup.
    """

    def __init__(
        self,
        *,
        inverter: InverterPort,
        forecast: ForecastPort,
        area: str,
        profile: PowerProfile,
        panels: Iterable[PanelSpec] = (),
        coil_config: coil.CoilConfig | None = None,
        shutdown_event: asyncio.Event | None = None,
        telemetry: TelemetryBuffer | None = None,
        health: HealthWriter | None = None,
        dry_run: bool = False,
        set_clock: bool = False,
        io_timeout_s: float = 10.0,
        forecast_timeout_s: float = 15.0,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        step: timedelta = DEFAULT_STEP,
        initial_trickle: float = 0.0,
    ) -> None:
        self._inverter = inverter
        self._forecast = forecast
        self._area = area
        self._profile = profile
        self._panels = tuple(panels)
        self._coil_config = coil_config
        self._shutdown = shutdown_event if shutdown_event is not None else asyncio.Event()
        self._telemetry = telemetry
        self._health = health
        self._dry_run = dry_run
        self._set_clock = set_clock
        self._io_timeout_s = io_timeout_s
        self._forecast_timeout_s = forecast_timeout_s
        self._stale_after = stale_after
        self._step = step

        self._timeline = OutageTimeline.unknown()
        self._clock = ClockSkewCompensator()
        self._coil_state = CoilBiasState(trickle=initial_trickle)
        self._last_result: ProjectionResult | None = None

    # ------------------------------------------------------------------
    # Read-only views of the carried state
    # ------------------------------------------------------------------

    @property
    def timeline(self) -> OutageTimeline:
        return self._timeline

    @property
    def clock_offset(self) -> ClockOffset:
        return self._clock.offset

    @property
    def coil_state(self) -> CoilBiasState:
        return self._coil_state

    @property
    def last_result(self) -> ProjectionResult | None:
        return self._last_result

    # ------------------------------------------------------------------
    # Bounded external calls
    # ------------------------------------------------------------------

    async def _abandonable(self, aw: Awaitable[T], timeout: float) -> T:
        """Await *aw* for at most *timeout* seconds, giving up on shutdown.

        Raises:
            TimeoutError: If *aw* did not finish in time.
            ShutdownRequested: If shutdown was requested first.
        """
        task = asyncio.ensure_future(aw)
        stop = asyncio.ensure_future(self._shutdown.wait())
        try:
            done, _ = await asyncio.wait(
                {task, stop},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except BaseException:
            # The tick itself was cancelled from outside; do not leave the
            # call running behind it.
            task.cancel()
            raise
        finally:
            stop.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.debug("Abandoned call failed while being cancelled", exc_info=True)
        if self._shutdown.is_set():
            raise ShutdownRequested
        raise TimeoutError(f"External call did not complete within {timeout}s")

    # ------------------------------------------------------------------
    # Forecast
    # ------------------------------------------------------------------

    async def refresh_forecast(self) -> bool:
        """Fetch a fresh forecast; keep the last good one on failure.

        Returns:
            ``True`` if the cached timeline was replaced.
        """
        if self._shutdown.is_set():
            return False
        try:
            timeline = await self._abandonable(
                self._forecast.fetch(self._area),
                self._forecast_timeout_s,
            )
        except ShutdownRequested:
            return False
        except Exception:
            logger.warning(
                "Failed to update outage forecast, keeping the one fetched at %s",
                self._timeline.fetched_at,
                exc_info=True,
            )
            return False

        self._timeline = timeline
        logger.info("Updated outage forecast for %s (%d intervals)", self._area, len(timeline))
        if self._health is not None:
            try:
                self._health.record_forecast()
            except OSError:
                logger.warning("Failed to write health file", exc_info=True)
        return True

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self, now: datetime | None = None) -> TickOutcome:
        """Run one control tick. Never raises for external failures."""
        if self._shutdown.is_set():
            return TickOutcome(degraded=True)
        host_now = now if now is not None else datetime.now(tz=UTC)

        try:
            reading = await self._abandonable(
                self._inverter.read_state(host_now),
                self._io_timeout_s,
            )
        except ShutdownRequested:
            logger.info("Shutdown requested during inverter read, abandoning tick")
            return TickOutcome(degraded=True)
        except Exception:
            logger.error("Failed to read inverter state, keeping prior settings", exc_info=True)
            return TickOutcome(degraded=True)

        offset = self._clock.update(host_now, reading.inverter_time)
        profile = self._profile.with_charge_cap(reading.rated_max_charge_power)
        result = project(
            host_now,
            reading.battery,
            profile,
            self._panels,
            self._timeline,
            step=self._step,
            stale_after=self._stale_after,
        )
        self._last_result = result
        logger.info(
            "SoC %.0f%%: target low=%.1f%% high=%.1f%% alarm=%.1f%%%s",
            reading.battery.soc,
            result.target_soc_low,
            result.target_soc_high,
            result.alarm_soc,
            " (fallback)" if result.stale else "",
        )

        coil_state: CoilBiasState | None = None
        if self._coil_config is not None:
            coil_state = coil.correct(reading.non_essential_power, self._coil_state, self._coil_config)

        wrote = False
        degraded = False
        if self._dry_run:
            logger.info("Dry run: not writing settings to the inverter")
        elif self._shutdown.is_set():
            logger.info("Shutdown requested, not writing settings")
            degraded = True
        else:
            wrote = await self._apply(host_now, reading, result, coil_state)
            degraded = not wrote

        if wrote and coil_state is not None:
            self._coil_state = coil_state

        await self._emit(host_now, reading, result, offset, coil_state)
        if self._health is not None:
            try:
                self._health.record_tick(result)
                if wrote:
                    self._health.record_write()
            except OSError:
                logger.warning("Failed to write health file", exc_info=True)

        return TickOutcome(result=result, wrote=wrote, degraded=degraded)

    async def _apply(
        self,
        host_now: datetime,
        reading: InverterReading,
        result: ProjectionResult,
        coil_state: CoilBiasState | None,
    ) -> bool:
        """Write the thresholds (and optionally the clock) to the inverter.

        Writes are never cancelled from here, neither by a timeout nor on
        shutdown: each Modbus request is bounded by the transport timeout,
        so a started write sequence completes or fails as a whole.
        """
        if self._set_clock:
            try:
                await self._inverter.set_clock(host_now)
                self._clock.reset()
            except Exception:
                logger.warning("Failed to set inverter clock", exc_info=True)

        try:
            await self._inverter.write_settings(
                target_soc_low=result.target_soc_low,
                target_soc_high=result.target_soc_high,
                alarm_soc=result.alarm_soc,
                trickle=coil_state.trickle if coil_state is not None else None,
                current_soc=reading.battery.soc,
                fallback_soc=self._profile.fallback_soc,
                inverter_now=self._clock.to_inverter_time(host_now),
            )
        except Exception:
            logger.error("Failed to write inverter settings, keeping prior settings", exc_info=True)
            return False
        return True

    async def _emit(
        self,
        host_now: datetime,
        reading: InverterReading,
        result: ProjectionResult,
        offset: ClockOffset,
        coil_state: CoilBiasState | None,
    ) -> None:
        """Queue a telemetry record (best-effort)."""
        if self._telemetry is None:
            return
        record = TelemetryRecord(
            ts=host_now,
            target_soc_low=result.target_soc_low,
            target_soc_high=result.target_soc_high,
            alarm_soc=result.alarm_soc,
            current_soc=reading.battery.soc,
            predicted_pv=result.predicted_pv,
            is_loadshedding=result.is_outage,
            next_change_seconds=(
                (result.next_change - host_now).total_seconds()
                if result.next_change is not None
                else None
            ),
            clock_offset_s=offset.total_seconds(),
            trickle=coil_state.trickle if coil_state is not None else None,
            coil_active=coil_state.active if coil_state is not None else False,
            coil_target=(
                self._coil_config.trickle_target if self._coil_config is not None else None
            ),
        )
        try:
            await self._telemetry.enqueue(record)
            if self._health is not None:
                self._health.set_telemetry_pending(await self._telemetry.count())
        except Exception:
            logger.warning("Failed to queue telemetry record", exc_info=True)
