"""
Unit tests for the clear-sky solar estimator.

Tests verify:
- The sun is below the horizon at night and the estimate is exactly 0.
- The sun is high and to the north at late morning in Cape Town in March.
- A horizontal panel sees the vertical component of the sun direction.
- Output is non-negative and scales linearly with rated power.
- A panel facing away from the sun produces nothing.
- estimate_total sums the panel groups.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import math
from datetime import UTC, datetime, timedelta

import pytest
from socit.src.models import PanelSpec
from socit.src.sun import earth_rotation_angle, estimate, estimate_total, sun_direction

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_LAT = -34.05
_LON = 18.46

_MORNING = datetime(2026, 3, 1, 10, 0, 0, tzinfo=UTC)
"""12:00 SAST, shortly before solar noon in Cape Town."""

_NIGHT = datetime(2026, 3, 1, 0, 0, 0, tzinfo=UTC)
"""02:00 SAST."""


def _panel(azimuth: float = 0.0, tilt: float = 20.0, power: float = 1000.0) -> PanelSpec:
    return PanelSpec(latitude=_LAT, longitude=_LON, azimuth=azimuth, tilt=tilt, power=power)


def _direction(ts: datetime) -> tuple[float, float, float]:
    return sun_direction(math.radians(_LAT), math.radians(_LON), ts)


# ---------------------------------------------------------------------------
# Sun position
# ---------------------------------------------------------------------------


class TestSunDirection:
    """Sun direction in east-north-up coordinates."""

    def test_unit_vector(self) -> None:
        east, north, up = _direction(_MORNING)
        assert math.sqrt(east**2 + north**2 + up**2) == pytest.approx(1.0)

    def test_below_horizon_at_night(self) -> None:
        assert _direction(_NIGHT)[2] < 0.0

    def test_high_and_north_before_noon(self) -> None:
        """Southern hemisphere in March: sun to the north, still in the east."""
        east, north, up = _direction(_MORNING)
        assert up > 0.7
        assert north > 0.0
        assert east > 0.0

    def test_rotation_angle_advances_one_turn_per_sidereal_day(self) -> None:
        sidereal_day = timedelta(seconds=86164.0905)
        a = earth_rotation_angle(_MORNING)
        b = earth_rotation_angle(_MORNING + sidereal_day)
        assert math.cos(a - b) == pytest.approx(1.0, abs=1e-6)


# ---------------------------------------------------------------------------
# Panel estimate
# ---------------------------------------------------------------------------


class TestEstimate:
    """Clear-sky power estimate for panel groups."""

    def test_zero_at_night(self) -> None:
        assert estimate(_panel(), _NIGHT) == 0.0

    def test_zero_for_every_hour_of_the_night(self) -> None:
        for hours in range(0, 3):
            assert estimate(_panel(), _NIGHT + timedelta(hours=hours)) == 0.0

    def test_flat_panel_sees_vertical_component(self) -> None:
        up = _direction(_MORNING)[2]
        assert estimate(_panel(tilt=0.0, power=1000.0), _MORNING) == pytest.approx(1000.0 * up)

    def test_non_negative_through_the_day(self) -> None:
        for minutes in range(0, 24 * 60, 30):
            ts = _NIGHT + timedelta(minutes=minutes)
            assert estimate(_panel(azimuth=90.0, tilt=45.0), ts) >= 0.0

    def test_scales_with_rated_power(self) -> None:
        small = estimate(_panel(power=1000.0), _MORNING)
        large = estimate(_panel(power=3000.0), _MORNING)
        assert small > 0.0
        assert large == pytest.approx(3.0 * small)

    def test_never_exceeds_rated_power(self) -> None:
        assert estimate(_panel(power=1000.0), _MORNING) <= 1000.0

    def test_vertical_panel_facing_away_produces_nothing(self) -> None:
        """A south-facing wall in the southern hemisphere is in shade at noon."""
        assert estimate(_panel(azimuth=180.0, tilt=90.0), _MORNING) == 0.0


class TestEstimateTotal:
    """Summation over panel groups."""

    def test_empty_site_is_zero(self) -> None:
        assert estimate_total([], _MORNING) == 0.0

    def test_sums_groups(self) -> None:
        panels = [_panel(azimuth=0.0), _panel(azimuth=90.0, tilt=30.0, power=500.0)]
        expected = sum(estimate(p, _MORNING) for p in panels)
        assert estimate_total(panels, _MORNING) == pytest.approx(expected)
