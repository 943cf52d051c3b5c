"""
Unit tests for the EskomSePush forecast client.

Tests verify:
- fetch() GETs {base_url}/area with the area ID and the Token header.
- The optional test parameter is forwarded.
- Events are parsed into a normalized OutageTimeline stamped with now.
- Naive event times are taken as UTC.
- Non-200 responses, network errors and bad payloads raise ForecastError.
- TLS verification is always enabled.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from socit.src.forecast import EspClient, ForecastError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_NOW = datetime(2026, 3, 1, 10, 0, 0, tzinfo=UTC)
_SAST = timezone(timedelta(hours=2))


def _area_payload(events: list[dict[str, str]] | None = None) -> bytes:
    if events is None:
        events = [
            {
                "start": "2026-03-01T14:00:00+02:00",
                "end": "2026-03-01T16:30:00+02:00",
                "note": "Stage 2",
            },
            {
                "start": "2026-03-01T22:00:00+02:00",
                "end": "2026-03-02T00:30:00+02:00",
                "note": "Stage 2",
            },
        ]
    return json.dumps(
        {
            "events": events,
            "info": {"name": "Bergvliet (11)", "region": "City of Cape Town"},
            "schedule": {"days": [], "source": "https://loadshedding.eskom.co.za/"},
        }
    ).encode()


def _mock_client(status_code: int = 200, content: bytes | None = None) -> AsyncMock:
    response = MagicMock()
    response.status_code = status_code
    response.content = _area_payload() if content is None else content

    client = AsyncMock()
    client.get = AsyncMock(return_value=response)
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    return client


def _esp(**overrides: object) -> EspClient:
    kwargs: dict[str, object] = {"key": "esp-secret-key", "base_url": "https://esp.example.com/2.0/"}
    kwargs.update(overrides)
    return EspClient(**kwargs)


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


class TestRequest:
    """Shape of the outgoing request."""

    @pytest.mark.asyncio
    async def test_get_area_with_token(self) -> None:
        client = _mock_client()
        with patch("socit.src.forecast.httpx.AsyncClient", return_value=client):
            await _esp().fetch("capetown-11-bergvliet", now=_NOW)

        client.get.assert_awaited_once()
        call = client.get.call_args
        assert call.args[0] == "https://esp.example.com/2.0/area"
        assert call.kwargs["params"] == {"id": "capetown-11-bergvliet"}
        assert call.kwargs["headers"] == {"Token": "esp-secret-key"}

    @pytest.mark.asyncio
    async def test_test_parameter_forwarded(self) -> None:
        client = _mock_client()
        with patch("socit.src.forecast.httpx.AsyncClient", return_value=client):
            await _esp(test="current").fetch("area-1", now=_NOW)
        assert client.get.call_args.kwargs["params"] == {"id": "area-1", "test": "current"}

    @pytest.mark.asyncio
    async def test_tls_verification_enabled(self) -> None:
        client = _mock_client()
        with patch("socit.src.forecast.httpx.AsyncClient", return_value=client) as cls:
            await _esp(timeout_s=7.0).fetch("area-1", now=_NOW)
        assert cls.call_args.kwargs["verify"] is True
        assert cls.call_args.kwargs["timeout"] == 7.0


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


class TestParsing:
    """Events become a normalized timeline."""

    @pytest.mark.asyncio
    async def test_events_parsed(self) -> None:
        with patch("socit.src.forecast.httpx.AsyncClient", return_value=_mock_client()):
            timeline = await _esp().fetch("area-1", now=_NOW)

        assert timeline.fetched_at == _NOW
        assert len(timeline) == 2
        first = timeline.intervals[0]
        assert first.start == datetime(2026, 3, 1, 14, 0, tzinfo=_SAST)
        assert first.end == datetime(2026, 3, 1, 16, 30, tzinfo=_SAST)
        assert first.note == "Stage 2"

    @pytest.mark.asyncio
    async def test_overlapping_events_merged(self) -> None:
        content = _area_payload(
            [
                {"start": "2026-03-01T14:00:00+02:00", "end": "2026-03-01T16:30:00+02:00"},
                {"start": "2026-03-01T16:00:00+02:00", "end": "2026-03-01T18:30:00+02:00"},
            ]
        )
        with patch("socit.src.forecast.httpx.AsyncClient", return_value=_mock_client(content=content)):
            timeline = await _esp().fetch("area-1", now=_NOW)
        assert len(timeline) == 1
        assert timeline.intervals[0].end == datetime(2026, 3, 1, 18, 30, tzinfo=_SAST)

    @pytest.mark.asyncio
    async def test_naive_times_are_utc(self) -> None:
        content = _area_payload([{"start": "2026-03-01T12:00:00", "end": "2026-03-01T14:00:00"}])
        with patch("socit.src.forecast.httpx.AsyncClient", return_value=_mock_client(content=content)):
            timeline = await _esp().fetch("area-1", now=_NOW)
        assert timeline.intervals[0].start == datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_no_events(self) -> None:
        content = _area_payload([])
        with patch("socit.src.forecast.httpx.AsyncClient", return_value=_mock_client(content=content)):
            timeline = await _esp().fetch("area-1", now=_NOW)
        assert len(timeline) == 0
        assert not timeline.is_stale(_NOW)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestErrors:
    """Every failure surfaces as ForecastError."""

    @pytest.mark.asyncio
    async def test_non_200(self) -> None:
        with (
            patch("socit.src.forecast.httpx.AsyncClient", return_value=_mock_client(403, b"{}")),
            pytest.raises(ForecastError, match="403"),
        ):
            await _esp().fetch("area-1")

    @pytest.mark.asyncio
    async def test_network_error(self) -> None:
        client = _mock_client()
        client.get = AsyncMock(side_effect=httpx.ConnectError("connection refused"))
        with (
            patch("socit.src.forecast.httpx.AsyncClient", return_value=client),
            pytest.raises(ForecastError, match="connection refused"),
        ):
            await _esp().fetch("area-1")

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        client = _mock_client()
        client.get = AsyncMock(side_effect=httpx.ReadTimeout("timed out"))
        with (
            patch("socit.src.forecast.httpx.AsyncClient", return_value=client),
            pytest.raises(ForecastError),
        ):
            await _esp().fetch("area-1")

    @pytest.mark.asyncio
    async def test_bad_payload(self) -> None:
        with (
            patch("socit.src.forecast.httpx.AsyncClient", return_value=_mock_client(content=b"not json")),
            pytest.raises(ForecastError, match="parsed"),
        ):
            await _esp().fetch("area-1")

    @pytest.mark.asyncio
    async def test_missing_events(self) -> None:
        with (
            patch("socit.src.forecast.httpx.AsyncClient", return_value=_mock_client(content=b'{"info": {}}')),
            pytest.raises(ForecastError),
        ):
            await _esp().fetch("area-1")
