"""
EskomSePush client for load-shedding forecasts.

Fetches the upcoming outage events for one area from the EskomSePush
business API and turns them into an :class:`OutageTimeline` stamped with the
fetch time. The free tier allows only a few dozen calls per day, so the
daemon calls this on its own slow schedule, independent of the control
tick.

Operations:
- fetch(area): GET /area?id=<area>, validate, return the timeline.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

import httpx
from pydantic import BaseModel, ValidationError, field_validator

from socit.src.config import ESP_BASE_URL
from socit.src.outages import OutageTimeline

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_S = 10.0


class ForecastError(Exception):
    """The forecast could not be obtained (network, HTTP or payload error)."""


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class EspEvent(BaseModel):
    """One scheduled outage as returned by the API."""

    start: datetime
    end: datetime
    note: str = ""

    @field_validator("start", "end")
    @classmethod
    def assume_utc_when_naive(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


class EspAreaInfo(BaseModel):
    name: str = ""
    region: str = ""


class AreaResponse(BaseModel):
    """Subset of the ``/area`` response that the daemon uses."""

    events: list[EspEvent]
    info: EspAreaInfo | None = None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class EspClient:
    """HTTPS client for the EskomSePush ``/area`` endpoint.

    Args:
        key: API token sent in the ``Token`` header.
        base_url: API root.
        timeout_s: Timeout for the whole request.
        test: Optional ``test`` query parameter (``current`` or ``future``).

    Usage::

        client = EspClient(key="...")
        timeline = await client.fetch("capetown-11-bergvliet")
    """

    def __init__(
        self,
        *,
        key: str,
        base_url: str = ESP_BASE_URL,
        timeout_s: float = _DEFAULT_TIMEOUT_S,
        test: str | None = None,
    ) -> None:
        self._key = key
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._test = test

    async def fetch(self, area: str, *, now: datetime | None = None) -> OutageTimeline:
        """Fetch the outage forecast for *area*.

        Args:
            area: EskomSePush area ID.
            now: Timestamp to record as the fetch time (defaults to the
                current UTC time).

        Raises:
            ForecastError: On network errors, timeouts, non-200 responses or
                an unparseable payload.
        """
        params = {"id": area}
        if self._test:
            params["test"] = self._test

        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, verify=True) as client:
                response = await client.get(
                    f"{self._base_url}/area",
                    params=params,
                    headers={"Token": self._key},
                )
        except httpx.HTTPError as exc:
            raise ForecastError(f"Forecast request failed: {exc}") from exc

        if response.status_code != 200:
            raise ForecastError(f"Forecast request failed (HTTP {response.status_code})")

        try:
            payload = AreaResponse.model_validate_json(response.content)
        except ValidationError as exc:
            raise ForecastError("Forecast response could not be parsed") from exc

        fetched_at = now if now is not None else datetime.now(tz=UTC)
        timeline = OutageTimeline.from_events(
            ((ev.start, ev.end, ev.note) for ev in payload.events),
            fetched_at,
        )
        logger.info(
            "Fetched %d load-shedding events for area %s (%d after merging)",
            len(payload.events),
            area,
            len(timeline),
        )
        return timeline
