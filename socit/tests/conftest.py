"""
Shared test fixtures for socit tests.

Provides TOML configuration fixtures for SocitSettings tests and a few
common value objects. All SOCIT_ env vars are cleaned before each test to
ensure isolation.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import os
from datetime import UTC, datetime
from pathlib import Path

import pytest
from socit.src.models import BatteryState, PowerProfile

MINIMAL_TOML = """\
[inverter]
device = "192.168.1.50"

[profile]
min_soc = 25
fallback_soc = 50

[esp]
key = "esp-secret-key"
area = "capetown-11-bergvliet"
"""

FULL_TOML = """\
dry_run = true
control_interval_s = 30
health_path = "/tmp/socit-health.json"

[inverter]
device = "192.168.1.50:8899"
modbus_id = 2
timeout_s = 5
set_clock = true
timezone = "Africa/Johannesburg"

[profile]
min_soc = 20
fallback_soc = 60
min_discharge_power = 150
max_discharge_power = 800
charge_power = 3000
low_margin = 4
alarm_margin = 6

[esp]
key = "esp-secret-key"
area = "capetown-11-bergvliet"
interval_s = 3600
stale_after_s = 7200
test = "future"

[[panels]]
latitude = -34.05
longitude = 18.46
azimuth = 0
tilt = 20
power = 3000

[[panels]]
latitude = -34.05
longitude = 18.46
azimuth = 270
tilt = 30
power = 1500

[coil]
power_threshold = 60
trickle_target = 10
max_trickle = 100

[influxdb2]
host = "http://influx.local:8086/"
org = "home"
token = "influx-secret-token"
bucket = "socit"
"""


@pytest.fixture(autouse=True)
def _clean_socit_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all SOCIT_ env vars and run each test from tmp_path."""
    for var in list(os.environ):
        if var.startswith("SOCIT_"):
            monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def minimal_config(tmp_path: Path) -> Path:
    """A configuration file with only the required fields."""
    path = tmp_path / "minimal.toml"
    path.write_text(MINIMAL_TOML)
    return path


@pytest.fixture()
def full_config(tmp_path: Path) -> Path:
    """A configuration file that sets every section."""
    path = tmp_path / "full.toml"
    path.write_text(FULL_TOML)
    return path


@pytest.fixture()
def now() -> datetime:
    """Fixed tick time: 2026-03-01 10:00 UTC."""
    return datetime(2026, 3, 1, 10, 0, 0, tzinfo=UTC)


@pytest.fixture()
def battery(now: datetime) -> BatteryState:
    """A 10 kWh battery at 60% SoC."""
    return BatteryState(capacity_wh=10000.0, soc=60.0, ts=now)


@pytest.fixture()
def profile() -> PowerProfile:
    """Profile with no optimistic load, 1 kW pessimistic load, 20% floor."""
    return PowerProfile(
        min_discharge_power=0.0,
        max_discharge_power=1000.0,
        min_soc=20.0,
        fallback_soc=50.0,
    )


@pytest.fixture()
def minimal_toml() -> str:
    """Text of the minimal configuration document."""
    return MINIMAL_TOML
