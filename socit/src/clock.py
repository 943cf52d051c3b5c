"""
Host/inverter clock skew compensation.

The inverter keeps its own wall clock, which drifts and may be set to an
arbitrary date. Rather than trusting it, the offset between host time and
inverter time is measured afresh on every tick and used to translate
between the two time bases. Because nothing accumulates, a sudden jump in
the inverter clock is absorbed within one tick.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)

ClockOffset = timedelta
"""Host time minus inverter time."""


class ClockSkewCompensator:
    """Tracks the most recent host/inverter clock offset.

    Args:
        warn_threshold: Offsets larger than this (in either direction) are
            logged as warnings.
    """

    def __init__(self, warn_threshold: timedelta = timedelta(minutes=5)) -> None:
        self._offset: ClockOffset = timedelta(0)
        self._warn_threshold = warn_threshold

    @property
    def offset(self) -> ClockOffset:
        """Most recent host minus inverter offset."""
        return self._offset

    def update(self, host_now: datetime, inverter_now: datetime | None) -> ClockOffset:
        """Recompute the offset from a simultaneous pair of clock readings.

        When the inverter clock could not be decoded (``None``), the previous
        offset is kept.
        """
        if inverter_now is None:
            logger.warning("Inverter clock unreadable, keeping offset %s", self._offset)
            return self._offset
        self._offset = host_now - inverter_now
        if abs(self._offset) > self._warn_threshold:
            logger.warning(
                "Inverter clock is off by %.0f s (inverter=%s, host=%s)",
                -self._offset.total_seconds(),
                inverter_now.isoformat(),
                host_now.isoformat(),
            )
        return self._offset

    def reset(self) -> None:
        """Forget the offset, e.g. after the inverter clock has been set."""
        self._offset = timedelta(0)

    def to_host_time(self, inverter_time: datetime) -> datetime:
        """Translate an inverter clock reading to host time."""
        return inverter_time + self._offset

    def to_inverter_time(self, host_time: datetime) -> datetime:
        """Translate a host time to the inverter clock."""
        return host_time - self._offset
