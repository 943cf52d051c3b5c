"""
Normalized outage forecast.

The forecast provider may return intervals unsorted, overlapping, touching
or even empty. ``OutageTimeline`` canonicalizes them once, on construction,
into a sorted sequence of disjoint intervals and answers the questions the
projection engine asks of it: is the forecast still fresh, is the grid down
at time *t* and until when, and where are the segment boundaries over the
projection horizon.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import bisect
from collections.abc import Iterable
from datetime import datetime, timedelta

from socit.src.models import OutageInterval

DEFAULT_HORIZON: timedelta = timedelta(hours=24)
"""Length of the projection window."""

DEFAULT_STALE_AFTER: timedelta = timedelta(hours=4)
"""Age at which a forecast is no longer trusted."""


def normalize_intervals(intervals: Iterable[OutageInterval]) -> list[OutageInterval]:
    """Sort intervals, drop empty ones and merge those that overlap or touch."""
    ordered = sorted(
        (iv for iv in intervals if iv.end > iv.start),
        key=lambda iv: (iv.start, iv.end),
    )
    merged: list[OutageInterval] = []
    for iv in ordered:
        if merged and iv.start <= merged[-1].end:
            last = merged[-1]
            if iv.end > last.end:
                merged[-1] = OutageInterval(last.start, iv.end, last.note)
        else:
            merged.append(iv)
    return merged


class OutageTimeline:
    """Canonical, queryable outage forecast.

    Args:
        intervals: Provider-supplied outage intervals in any order.
        fetched_at: When the forecast was last obtained successfully, or
            ``None`` if it never was.
    """

    def __init__(
        self,
        intervals: Iterable[OutageInterval] = (),
        fetched_at: datetime | None = None,
    ) -> None:
        self._intervals = normalize_intervals(intervals)
        self._starts = [iv.start for iv in self._intervals]
        self.fetched_at = fetched_at

    @classmethod
    def from_events(
        cls,
        events: Iterable[tuple[datetime, datetime, str]],
        fetched_at: datetime | None,
    ) -> OutageTimeline:
        """Build a timeline from raw ``(start, end, note)`` provider events."""
        return cls((OutageInterval(start, end, note) for start, end, note in events), fetched_at)

    @classmethod
    def unknown(cls) -> OutageTimeline:
        """A timeline that has never been fetched (always stale)."""
        return cls((), None)

    @property
    def intervals(self) -> tuple[OutageInterval, ...]:
        return tuple(self._intervals)

    def __len__(self) -> int:
        return len(self._intervals)

    def __repr__(self) -> str:
        return f"OutageTimeline({len(self._intervals)} intervals, fetched_at={self.fetched_at})"

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_stale(
        self,
        now: datetime,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
    ) -> bool:
        """Whether the forecast is too old to act on.

        A forecast whose age is exactly ``stale_after`` counts as stale.
        """
        if self.fetched_at is None:
            return True
        return now - self.fetched_at >= stale_after

    def clipped(
        self,
        now: datetime,
        horizon: timedelta = DEFAULT_HORIZON,
    ) -> list[OutageInterval]:
        """Intervals restricted to ``[now, now + horizon]``.

        Intervals entirely in the past or beyond the horizon are dropped;
        the rest are truncated at both ends.
        """
        goal = now + horizon
        out: list[OutageInterval] = []
        for iv in self._intervals:
            if iv.end <= now:
                continue
            if iv.start >= goal:
                break
            out.append(OutageInterval(max(iv.start, now), min(iv.end, goal), iv.note))
        return out

    def status_at(self, t: datetime) -> tuple[bool, datetime | None]:
        """Return ``(is_outage, next_change)`` for time *t*.

        ``next_change`` is the end of the current outage, the start of the
        next one, or ``None`` when no further outage is known.
        """
        idx = bisect.bisect_right(self._starts, t)
        if idx > 0 and t < self._intervals[idx - 1].end:
            return True, self._intervals[idx - 1].end
        if idx < len(self._intervals):
            return False, self._intervals[idx].start
        return False, None

    def breakpoints(
        self,
        now: datetime,
        horizon: timedelta = DEFAULT_HORIZON,
    ) -> list[tuple[datetime, bool]]:
        """Segment starts over ``[now, now + horizon)``.

        Each entry ``(t, is_outage)`` opens a segment that lasts until the
        next entry (or the horizon). Consecutive entries alternate between
        outage and grid-available, and zero-length segments are omitted.
        """
        goal = now + horizon
        points: list[tuple[datetime, bool]] = []
        cursor = now
        for iv in self.clipped(now, horizon):
            if iv.start > cursor:
                points.append((cursor, False))
            points.append((iv.start, True))
            cursor = iv.end
        if cursor < goal:
            points.append((cursor, False))
        return points
