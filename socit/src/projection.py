"""
Projection engine: how much charge must the battery hold right now?

The next 24 hours are split into outage segments and grid-available
segments. Each segment gets a net power rate:

- outage: ``-max_discharge_power`` (pessimistic: worst-case load, no solar);
- grid available: ``-min_discharge_power + solar`` (optimistic: light load,
  clear-sky solar capped at the charge power), integrated over fixed
  sub-steps so the cumulative energy curve E(t) stays piecewise linear.

With a current SoC of X the trajectory is ``X + E(t) / capacity``. The
battery is only relied upon while the grid is down, so the floor must hold
at every break point inside an outage:

    X_required = min_soc - min(E) / capacity

where the minimum runs over ``t = 0`` and the outage break points. A single
forward sweep computes it.

Everything here is pure. The caller supplies ``now`` and all inputs.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

from socit.src.models import BatteryState, PanelSpec, PowerProfile, ProjectionResult
from socit.src.outages import DEFAULT_HORIZON, DEFAULT_STALE_AFTER, OutageTimeline
from socit.src.sun import estimate_total

logger = logging.getLogger(__name__)

DEFAULT_STEP: timedelta = timedelta(seconds=60)
"""Sub-step used to integrate solar generation over grid-available segments."""


def _hours(delta: timedelta) -> float:
    return delta.total_seconds() / 3600.0


def round_soc(soc: float) -> int:
    """Clamp a percentage to 0-100 and round half up to an integer."""
    if soc <= 0.0:
        return 0
    if soc >= 100.0:
        return 100
    return int(math.floor(soc + 0.5))


# ---------------------------------------------------------------------------
# Energy sweep
# ---------------------------------------------------------------------------


def _grid_energy_wh(
    start: datetime,
    end: datetime,
    profile: PowerProfile,
    panels: Sequence[PanelSpec],
    step: timedelta,
) -> float:
    """Energy delta over a grid-available segment, in Wh."""
    if not panels:
        return -profile.min_discharge_power * _hours(end - start)

    energy = 0.0
    t = start
    while t < end:
        dt = min(step, end - t)
        solar = estimate_total(panels, t + dt / 2)
        if profile.charge_power is not None:
            solar = min(solar, profile.charge_power)
        energy += (solar - profile.min_discharge_power) * _hours(dt)
        t += dt
    return energy


def worst_drawdown(
    segments: Sequence[tuple[datetime, bool]],
    goal: datetime,
    profile: PowerProfile,
    panels: Sequence[PanelSpec] = (),
    step: timedelta = DEFAULT_STEP,
) -> tuple[float, datetime | None]:
    """Sweep the segments and return the lowest E(t) seen during an outage.

    Args:
        segments: ``(start, is_outage)`` pairs as produced by
            :meth:`OutageTimeline.breakpoints`.
        goal: End of the horizon.
        profile: Consumption model.
        panels: Panel groups contributing solar power.
        step: Solar integration sub-step.

    Returns:
        ``(worst_wh, worst_time)``. ``worst_wh`` is at most 0 (``E(0)``);
        ``worst_time`` is ``None`` when no outage break point lowers it.
    """
    energy = 0.0
    worst = 0.0
    worst_time: datetime | None = None
    ends = [t for t, _ in segments[1:]]
    ends.append(goal)
    for (start, is_outage), end in zip(segments, ends, strict=True):
        if end <= start:
            continue
        if is_outage:
            # Linear and non-increasing within the segment, so the end is
            # the only break point that can lower the minimum.
            energy -= profile.max_discharge_power * _hours(end - start)
            if energy < worst:
                worst, worst_time = energy, end
        else:
            energy += _grid_energy_wh(start, end, profile, panels, step)
    return worst, worst_time


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def fallback_result(profile: PowerProfile, *, predicted_pv: float = 0.0) -> ProjectionResult:
    """Result pinned to the fallback SoC, used when the forecast is stale."""
    soc = profile.fallback_soc
    return ProjectionResult(
        target_soc_low=soc,
        target_soc_high=soc,
        alarm_soc=soc,
        stale=True,
        predicted_pv=predicted_pv,
    )


def project(
    now: datetime,
    battery: BatteryState,
    profile: PowerProfile,
    panels: Iterable[PanelSpec],
    timeline: OutageTimeline,
    *,
    horizon: timedelta = DEFAULT_HORIZON,
    step: timedelta = DEFAULT_STEP,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> ProjectionResult:
    """Compute the SoC the battery must hold now and the derived thresholds.

    Args:
        now: Current host time (timezone-aware).
        battery: Battery capacity and current state of charge.
        profile: Consumption model and SoC policy.
        panels: Panel groups on the site (may be empty).
        timeline: Outage forecast.
        horizon: Projection window.
        step: Solar integration sub-step.
        stale_after: Forecast age at which the fallback SoC is used instead.

    Returns:
        The thresholds for this tick. When the required SoC exceeds 100 it
        is clamped and the result is flagged as not feasible.
    """
    panels = tuple(panels)
    predicted_pv = estimate_total(panels, now)

    if timeline.is_stale(now, stale_after):
        logger.warning(
            "Outage forecast is stale (fetched_at=%s), holding fallback SoC %s",
            timeline.fetched_at,
            profile.fallback_soc,
        )
        return fallback_result(profile, predicted_pv=predicted_pv)

    for iv in timeline.clipped(now, horizon):
        logger.debug("Load-shedding from %s to %s %s", iv.start, iv.end, iv.note)

    worst_wh, worst_time = worst_drawdown(
        timeline.breakpoints(now, horizon),
        now + horizon,
        profile,
        panels,
        step,
    )
    logger.info("Maximum decrease is %.1f Wh at %s", -worst_wh, worst_time)

    required = profile.min_soc - worst_wh / battery.capacity_wh * 100.0
    feasible = required <= 100.0
    if not feasible:
        logger.warning(
            "Required SoC %.1f%% exceeds 100%%; cannot guarantee min_soc %.1f%% "
            "through the forecast outages",
            required,
            profile.min_soc,
        )

    high = min(max(required, profile.min_soc), 100.0)
    low = max(profile.min_soc, high - profile.low_margin)
    alarm = max(0.0, low - profile.alarm_margin)
    is_outage, next_change = timeline.status_at(now)

    return ProjectionResult(
        target_soc_low=low,
        target_soc_high=high,
        alarm_soc=alarm,
        feasible=feasible,
        worst_energy_wh=worst_wh,
        worst_time=worst_time,
        predicted_pv=predicted_pv,
        is_outage=is_outage,
        next_change=next_change,
    )
