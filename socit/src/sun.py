"""
Clear-sky solar power estimation.

Predicts the direction of the sun for a site and time, then projects it onto
the panel plane. The sun model is deliberately simple. It ignores
precession, nutation, refraction, light travel time, polar motion, dUT1 and
the Moon (the Earth-Moon barycentre stands in for the geocentre), yet it
agrees with precise ephemerides to better than a degree, which is far more
than a clear-sky estimate needs.

The orbital elements and the equations for applying them come from the JPL
"Approximate Positions of the Planets" tables (table 2a, valid 1800-2050).

All functions here are pure: no I/O, no clock, no randomness.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import datetime

from socit.src.models import PanelSpec

Vector = tuple[float, float, float]
Matrix = tuple[Vector, Vector, Vector]

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

J2000_EPOCH: float = 946727935.816
"""UNIX time of the J2000.0 epoch (2000-01-01T12:00 TT) expressed in UTC."""

ERA_EPOCH: float = 946728000.0
"""UNIX time of 2000-01-01T12:00 UTC, the reference for the rotation angle."""

OBLIQUITY: float = math.radians(23.43928)
"""Obliquity of the ecliptic at J2000."""

_KEPLER_TOLERANCE: float = 1e-8


# ---------------------------------------------------------------------------
# Small vector helpers
# ---------------------------------------------------------------------------


def _dot(a: Vector, b: Vector) -> float:
    return a[0] * b[0] + a[1] * b[1] + a[2] * b[2]


def _cross(a: Vector, b: Vector) -> Vector:
    return (
        a[1] * b[2] - a[2] * b[1],
        a[2] * b[0] - a[0] * b[2],
        a[0] * b[1] - a[1] * b[0],
    )


def _normalized(v: Vector) -> Vector:
    scale = 1.0 / math.sqrt(_dot(v, v))
    return (v[0] * scale, v[1] * scale, v[2] * scale)


def _apply(m: Matrix, v: Vector) -> Vector:
    return (_dot(m[0], v), _dot(m[1], v), _dot(m[2], v))


def _rx(r: float) -> Matrix:
    """Rotation about the X axis."""
    s, c = math.sin(r), math.cos(r)
    return ((1.0, 0.0, 0.0), (0.0, c, s), (0.0, -s, c))


def _rz(r: float) -> Matrix:
    """Rotation about the Z axis."""
    s, c = math.sin(r), math.cos(r)
    return ((c, s, 0.0), (-s, c, 0.0), (0.0, 0.0, 1.0))


# ---------------------------------------------------------------------------
# Sun position
# ---------------------------------------------------------------------------


def _days_since(ts: datetime, epoch: float) -> float:
    return (ts.timestamp() - epoch) / 86400.0


def _kepler(mean_anomaly: float, e: float) -> float:
    """Solve Kepler's equation ``M = E - e sin E`` for the eccentric anomaly."""
    ecc_anomaly = mean_anomaly - e * math.sin(mean_anomaly)
    while True:
        d_m = mean_anomaly - (ecc_anomaly - e * math.sin(ecc_anomaly))
        d_e = d_m / (1.0 - e * math.cos(ecc_anomaly))
        ecc_anomaly += d_e
        if abs(d_e) < _KEPLER_TOLERANCE:
            return ecc_anomaly


def _wrap_angle(x: float) -> float:
    """Normalize an angle to [-pi, pi)."""
    return (x + math.pi) % (2.0 * math.pi) - math.pi


def earth_rotation_angle(ts: datetime) -> float:
    """Earth rotation angle in radians, treating UTC as UT1."""
    t = _days_since(ts, ERA_EPOCH)
    return ((0.779057273264 + 1.00273781191135448 * t) % 1.0) * 2.0 * math.pi


def sun_direction(lat: float, lon: float, ts: datetime) -> Vector:
    """Unit vector from the site towards the sun in east-north-up coordinates.

    Args:
        lat: Site latitude in radians.
        lon: Site longitude in radians (east positive).
        ts: Timezone-aware timestamp.

    Returns:
        ``(east, north, up)``. The sun is above the horizon when ``up > 0``.
    """
    centuries = _days_since(ts, J2000_EPOCH) / 36525.0
    e = 0.01673163 - 0.00003661 * centuries
    incl = math.radians(-0.00054346 - 0.01337178 * centuries)
    mean_longitude = math.radians(100.46691572 + 35999.37306329 * centuries)
    perihelion = math.radians(102.93005885 + 0.31795260 * centuries)
    node = math.radians(-5.11260389 - 0.24123856 * centuries)

    arg_perihelion = perihelion - node
    ecc_anomaly = _kepler(_wrap_angle(mean_longitude - perihelion), e)
    r_orbital = (
        math.cos(ecc_anomaly) - e,
        math.sqrt(1.0 - e * e) * math.sin(ecc_anomaly),
        0.0,
    )
    r_eq = _apply(
        _rx(-OBLIQUITY),
        _apply(_rz(-node), _apply(_rx(-incl), _apply(_rz(-arg_perihelion), r_orbital))),
    )
    # Sign flip: position of the Sun relative to the Earth, not vice versa.
    r_cirs = (-r_eq[0], -r_eq[1], -r_eq[2])
    r_tirs = _normalized(_apply(_rz(earth_rotation_angle(ts)), r_cirs))

    slat, clat = math.sin(lat), math.cos(lat)
    slon, clon = math.sin(lon), math.cos(lon)
    up = (clat * clon, clat * slon, slat)
    east = _normalized(_cross((0.0, 0.0, 1.0), up))
    north = _cross(up, east)
    return _apply((east, north, up), r_tirs)


def solar_fraction(
    lat: float,
    lon: float,
    elevation: float,
    azimuth: float,
    ts: datetime,
) -> float:
    """Fraction of peak irradiance falling on a plane with the given normal.

    Args:
        lat: Site latitude in radians.
        lon: Site longitude in radians.
        elevation: Elevation of the panel normal above the horizon, radians.
        azimuth: Azimuth of the panel normal, clockwise from north, radians.
        ts: Timezone-aware timestamp.

    Returns:
        Cosine of the angle of incidence, or 0 when the sun is below the
        horizon or behind the panel.
    """
    sun = sun_direction(lat, lon, ts)
    if sun[2] <= 0.0:
        return 0.0
    c_el = math.cos(elevation)
    normal = (c_el * math.sin(azimuth), c_el * math.cos(azimuth), math.sin(elevation))
    return max(_dot(sun, normal), 0.0)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def estimate(panel: PanelSpec, ts: datetime) -> float:
    """Estimated clear-sky output of one panel group in W."""
    return panel.power * solar_fraction(
        math.radians(panel.latitude),
        math.radians(panel.longitude),
        math.radians(90.0 - panel.tilt),
        math.radians(panel.azimuth),
        ts,
    )


def estimate_total(panels: Iterable[PanelSpec], ts: datetime) -> float:
    """Sum of :func:`estimate` over all panel groups of a site."""
    return sum(estimate(panel, ts) for panel in panels)
