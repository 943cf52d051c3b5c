"""
Health file writer for the socit daemon.

Writes a small JSON document after every state change so that a watchdog,
a container HEALTHCHECK or a curious human can see at a glance whether the
daemon is alive and what it last decided:

- last_tick_ts / last_write_ts / last_forecast_ts: ISO timestamps.
- thresholds: the latest target_soc_low, target_soc_high and alarm_soc.
- stale / feasible: flags from the latest projection.
- telemetry_pending: records waiting in the telemetry buffer.

The file is written to a temporary sibling and renamed into place, so a
reader never sees a half-written document.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from socit.src.models import ProjectionResult


class HealthWriter:
    """Writes daemon health status to a JSON file.

    Args:
        path: Filesystem path for the health JSON file.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._state: dict[str, Any] = {
            "last_tick_ts": None,
            "last_write_ts": None,
            "last_forecast_ts": None,
            "thresholds": None,
            "stale": None,
            "feasible": None,
            "telemetry_pending": 0,
        }

    @property
    def state(self) -> dict[str, Any]:
        """Return a copy of the current health state."""
        return dict(self._state)

    def record_tick(self, result: ProjectionResult | None = None) -> None:
        """Record a completed tick and, when available, its thresholds."""
        self._state["last_tick_ts"] = _now()
        if result is not None:
            self._state["thresholds"] = {
                "target_soc_low": result.target_soc_low,
                "target_soc_high": result.target_soc_high,
                "alarm_soc": result.alarm_soc,
            }
            self._state["stale"] = result.stale
            self._state["feasible"] = result.feasible
        self._write()

    def record_write(self) -> None:
        """Record a successful settings write to the inverter."""
        self._state["last_write_ts"] = _now()
        self._write()

    def record_forecast(self) -> None:
        """Record a successful forecast fetch."""
        self._state["last_forecast_ts"] = _now()
        self._write()

    def set_telemetry_pending(self, count: int) -> None:
        """Record the number of telemetry records waiting for upload."""
        self._state["telemetry_pending"] = count
        self._write()

    def _write(self) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(self._state))
        tmp.replace(self.path)


def _now() -> str:
    return datetime.now(tz=UTC).isoformat()
