"""
Daemon configuration loaded from a TOML document.

Uses Pydantic BaseSettings with a TOML source so the whole configuration is
validated once at startup. Any field can be overridden from the environment
with the ``SOCIT_`` prefix, using ``__`` between section and field (for
example ``SOCIT_ESP__KEY``), which keeps the API key out of the file.

Example document::

    [inverter]
    device = "192.168.1.50:502"

    [profile]
    min_soc = 25
    fallback_soc = 50
    min_discharge_power = 150
    max_discharge_power = 800

    [esp]
    key = "XXXXXXXX-XXXXXXXX-XXXXXXXX-XXXXXXXX"
    area = "capetown-11-bergvliet"

    [[panels]]
    latitude = -34.05
    longitude = 18.46
    azimuth = 0
    tilt = 20
    power = 3000

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from datetime import timedelta, tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from socit.src.models import PanelSpec, PowerProfile

ESP_BASE_URL = "https://developer.sepush.co.za/business/2.0"


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


class InverterSettings(BaseModel):
    """Connection to the inverter.

    Attributes:
        device: ``host[:port]`` for Modbus TCP, or a serial device path for
            Modbus RTU.
        modbus_id: Modbus slave / unit ID (1-247).
        timeout_s: Bound on each read or write against the inverter.
        set_clock: Also write the host time to the inverter clock every tick.
        timezone: IANA zone the inverter clock runs in. Defaults to the
            host's local zone.
    """

    model_config = {"extra": "forbid"}

    device: str
    modbus_id: int = 1
    timeout_s: float = 10.0
    set_clock: bool = False
    timezone: str | None = None

    @field_validator("device")
    @classmethod
    def device_must_not_be_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("inverter.device must not be empty")
        return v.strip()

    @field_validator("modbus_id")
    @classmethod
    def modbus_id_must_be_valid(cls, v: int) -> int:
        """Validate Modbus slave ID is in valid range (1-247)."""
        if v < 1 or v > 247:
            raise ValueError("inverter.modbus_id must be between 1 and 247")
        return v

    @field_validator("timeout_s")
    @classmethod
    def timeout_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("inverter.timeout_s must be > 0")
        return v

    @field_validator("timezone")
    @classmethod
    def timezone_must_exist(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone '{v}'") from exc
        return v

    @property
    def zone(self) -> tzinfo | None:
        return ZoneInfo(self.timezone) if self.timezone else None


class ProfileSettings(BaseModel):
    """Consumption model and SoC policy (see :class:`PowerProfile`)."""

    model_config = {"extra": "forbid"}

    min_soc: float
    fallback_soc: float
    min_discharge_power: float = 0.0
    max_discharge_power: float = 1000.0
    charge_power: float | None = None
    low_margin: float = 5.0
    alarm_margin: float = 5.0

    @field_validator("min_soc", "fallback_soc", "low_margin", "alarm_margin")
    @classmethod
    def percentage_must_be_valid(cls, v: float) -> float:
        if v < 0 or v > 100:
            raise ValueError("percentages must be between 0 and 100")
        return v

    @field_validator("min_discharge_power", "max_discharge_power", "charge_power")
    @classmethod
    def power_must_be_non_negative(cls, v: float | None) -> float | None:
        if v is not None and v < 0:
            raise ValueError("power values must be >= 0")
        return v

    @model_validator(mode="after")
    def _max_at_least_min(self) -> ProfileSettings:
        """The pessimistic load cannot be lighter than the optimistic one."""
        if self.max_discharge_power < self.min_discharge_power:
            raise ValueError("max_discharge_power must be >= min_discharge_power")
        return self

    def to_profile(self) -> PowerProfile:
        return PowerProfile(
            min_discharge_power=self.min_discharge_power,
            max_discharge_power=self.max_discharge_power,
            min_soc=self.min_soc,
            fallback_soc=self.fallback_soc,
            charge_power=self.charge_power,
            low_margin=self.low_margin,
            alarm_margin=self.alarm_margin,
        )


class PanelSettings(BaseModel):
    """One group of identically oriented panels."""

    model_config = {"extra": "forbid"}

    latitude: float
    longitude: float
    azimuth: float
    tilt: float
    power: float

    @field_validator("latitude")
    @classmethod
    def latitude_must_be_valid(cls, v: float) -> float:
        if v < -90 or v > 90:
            raise ValueError("latitude must be between -90 and 90")
        return v

    @field_validator("tilt")
    @classmethod
    def tilt_must_be_valid(cls, v: float) -> float:
        if v < 0 or v > 90:
            raise ValueError("tilt must be between 0 and 90")
        return v

    @field_validator("power")
    @classmethod
    def power_must_be_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("panel power must be >= 0")
        return v

    def to_panel(self) -> PanelSpec:
        return PanelSpec(
            latitude=self.latitude,
            longitude=self.longitude,
            azimuth=self.azimuth,
            tilt=self.tilt,
            power=self.power,
        )


class EspSettings(BaseModel):
    """EskomSePush forecast provider.

    Attributes:
        key: API token.
        area: Area ID, e.g. ``capetown-11-bergvliet``.
        interval_s: Seconds between forecast fetches (mind the daily quota).
        stale_after_s: Forecast age at which the fallback SoC takes over.
        timeout_s: HTTP timeout per request.
        test: Optional ``test`` query parameter (``current`` or ``future``)
            that makes the API return synthetic events.
        base_url: API root.
    """

    model_config = {"extra": "forbid"}

    key: str
    area: str
    interval_s: float = 1800.0
    stale_after_s: float = 4 * 3600.0
    timeout_s: float = 10.0
    test: str | None = None
    base_url: str = ESP_BASE_URL

    @field_validator("key", "area")
    @classmethod
    def must_not_be_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("esp.key and esp.area must not be empty")
        return v.strip()

    @field_validator("interval_s", "stale_after_s", "timeout_s")
    @classmethod
    def interval_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("esp intervals and timeouts must be > 0")
        return v

    @property
    def stale_after(self) -> timedelta:
        return timedelta(seconds=self.stale_after_s)


class CoilSettings(BaseModel):
    """Trickle correction for the non-essential load sensor.

    Attributes:
        power_threshold: Readings below this (W) are treated as sensor bias.
        trickle_target: Import the next reading should settle on (W).
        max_trickle: Optional upper bound for the setting (W).
    """

    model_config = {"extra": "forbid"}

    power_threshold: float
    trickle_target: float = 10.0
    max_trickle: float | None = None

    @field_validator("power_threshold", "trickle_target", "max_trickle")
    @classmethod
    def must_be_non_negative(cls, v: float | None) -> float | None:
        if v is not None and v < 0:
            raise ValueError("coil settings must be >= 0")
        return v


class Influxdb2Settings(BaseModel):
    """Telemetry export to InfluxDB v2.

    Attributes:
        host: Server URL, e.g. ``http://influx.local:8086``.
        org: Organisation name.
        token: API token with write access to *bucket*.
        bucket: Destination bucket.
        upload_interval_s: Seconds between buffer flushes.
        batch_size: Maximum records per write request.
        buffer_path: SQLite file buffering records between flushes.
        max_buffered: Oldest records are discarded beyond this count.
    """

    model_config = {"extra": "forbid"}

    host: str
    org: str
    token: str
    bucket: str
    upload_interval_s: float = 30.0
    batch_size: int = 100
    buffer_path: str = "/data/telemetry.db"
    max_buffered: int = 10000

    @field_validator("host")
    @classmethod
    def host_must_be_http(cls, v: str) -> str:
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError("influxdb2.host must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("batch_size", "max_buffered")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("influxdb2.batch_size and max_buffered must be >= 1")
        return v

    @field_validator("upload_interval_s")
    @classmethod
    def interval_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("influxdb2.upload_interval_s must be > 0")
        return v


# ---------------------------------------------------------------------------
# Top level
# ---------------------------------------------------------------------------


class SocitSettings(BaseSettings):
    """Complete daemon configuration.

    Attributes:
        inverter: Inverter connection.
        profile: Consumption model and SoC policy.
        esp: Forecast provider.
        panels: Panel groups (may be empty).
        coil: Trickle correction; disabled when absent.
        influxdb2: Telemetry export; disabled when absent.
        dry_run: Observation-only mode: compute and log, never write.
        control_interval_s: Seconds between control ticks.
        projection_step_s: Solar integration sub-step in seconds.
        health_path: Optional JSON health file path.
    """

    inverter: InverterSettings
    profile: ProfileSettings
    esp: EspSettings
    panels: list[PanelSettings] = []
    coil: CoilSettings | None = None
    influxdb2: Influxdb2Settings | None = None
    dry_run: bool = False
    control_interval_s: float = 60.0
    projection_step_s: float = 60.0
    health_path: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="SOCIT_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    @field_validator("control_interval_s", "projection_step_s")
    @classmethod
    def interval_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("intervals must be > 0")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Environment overrides the TOML document."""
        return (init_settings, env_settings, TomlConfigSettingsSource(settings_cls))

    @property
    def panel_specs(self) -> list[PanelSpec]:
        return [panel.to_panel() for panel in self.panels]


def load_settings(path: str | Path) -> SocitSettings:
    """Load and validate the configuration document at *path*.

    Raises:
        FileNotFoundError: If *path* does not exist.
        tomllib.TOMLDecodeError: If the document is not valid TOML.
        pydantic.ValidationError: If the document is invalid.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    class _FileSettings(SocitSettings):
        model_config = SettingsConfigDict(toml_file=path)

    return _FileSettings()
