"""
socit daemon entry point and loop runners.

Runs up to three concurrent asyncio loops:
1. **Control loop**: one :meth:`ControlLoop.tick` per ``control_interval_s``.
   Ticks never overlap; a tick that overruns defers the next one.
2. **Forecast loop**: refreshes the outage forecast every ``esp.interval_s``.
3. **Upload loop** (only with ``[influxdb2]``): flushes the telemetry buffer.

Each loop is resilient: an exception in one iteration is logged and does not
crash the loop or affect the others. SIGTERM/SIGINT set a shared
asyncio.Event; in-flight reads and fetches are abandoned, no further writes
are issued, and a final telemetry flush is attempted before exiting.

Exit status is 1 for a missing or invalid configuration or when the inverter
cannot be reached at startup, and 0 after a signal-triggered shutdown.

CHANGELOG:
- 2026-10-19: Initial creation
- 2026-10-19: Exit 1 on an unreadable or malformed TOML config

TODO:
- None
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import hashlib
import json
import logging
import signal
import sys
import tomllib
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from pydantic import ValidationError

from socit.src.config import SocitSettings, load_settings
from socit.src.control import ControlLoop
from socit.src.forecast import EspClient
from socit.src.health import HealthWriter
from socit.src.inverter import SunsynkInverter
from socit.src.telemetry import Influxdb2Uploader, TelemetryBuffer

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(verbose: bool = False) -> None:
    """Send JSON log lines to stderr at INFO (DEBUG when *verbose*)."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    # pymodbus and httpx are chatty at DEBUG.
    logging.getLogger("pymodbus").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


def log_config_summary(settings: SocitSettings) -> None:
    """Log the effective configuration at startup, with secrets masked."""
    profile = settings.profile
    logger.info(
        "socit starting with config: inverter=%s modbus_id=%s, "
        "min_soc=%s fallback_soc=%s min_discharge=%sW max_discharge=%sW "
        "charge_power=%s low_margin=%s alarm_margin=%s, panels=%d, "
        "esp_area=%s esp_interval_s=%s stale_after_s=%s esp_key_masked=%s, "
        "coil=%s, influxdb2=%s influx_token_masked=%s, "
        "dry_run=%s control_interval_s=%s",
        settings.inverter.device,
        settings.inverter.modbus_id,
        profile.min_soc,
        profile.fallback_soc,
        profile.min_discharge_power,
        profile.max_discharge_power,
        profile.charge_power,
        profile.low_margin,
        profile.alarm_margin,
        len(settings.panels),
        settings.esp.area,
        settings.esp.interval_s,
        settings.esp.stale_after_s,
        _masked_token(settings.esp.key),
        settings.coil is not None,
        settings.influxdb2.host if settings.influxdb2 else None,
        _masked_token(settings.influxdb2.token if settings.influxdb2 else None),
        settings.dry_run,
        settings.control_interval_s,
    )


# ---------------------------------------------------------------------------
# Loop runners
# ---------------------------------------------------------------------------


async def _sleep_or_shutdown(shutdown_event: asyncio.Event, delay: float) -> None:
    """Sleep for *delay* seconds, returning early on shutdown."""
    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(shutdown_event.wait(), timeout=max(delay, 0.0))


async def _control_loop(
    *,
    control: ControlLoop,
    interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Tick on a fixed period until shutdown; ticks never overlap."""
    logger.info("Control loop started (interval=%ss)", interval_s)
    loop = asyncio.get_running_loop()
    while not shutdown_event.is_set():
        started = loop.time()
        try:
            await control.tick()
        except Exception:
            logger.error("Control tick error", exc_info=True)
        await _sleep_or_shutdown(shutdown_event, interval_s - (loop.time() - started))
    logger.info("Control loop stopped")


async def _forecast_loop(
    *,
    control: ControlLoop,
    interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Refresh the forecast every *interval_s* until shutdown.

    The first refresh happens one interval after start; the caller fetches
    once before starting the loops.
    """
    logger.info("Forecast loop started (interval=%ss)", interval_s)
    while not shutdown_event.is_set():
        await _sleep_or_shutdown(shutdown_event, interval_s)
        if shutdown_event.is_set():
            break
        try:
            await control.refresh_forecast()
        except Exception:
            logger.error("Forecast refresh error", exc_info=True)
    logger.info("Forecast loop stopped")


async def _upload_once(*, uploader: Influxdb2Uploader, buffer: TelemetryBuffer) -> bool:
    try:
        return await uploader.upload_batch(buffer)
    except Exception:
        logger.error("Telemetry upload cycle error", exc_info=True)
        return False


async def _upload_loop(
    *,
    uploader: Influxdb2Uploader,
    buffer: TelemetryBuffer,
    interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Flush the telemetry buffer until shutdown, backing off on failure."""
    logger.info("Upload loop started (interval=%ss)", interval_s)
    while not shutdown_event.is_set():
        ok = await _upload_once(uploader=uploader, buffer=buffer)
        delay = interval_s if ok else max(interval_s, uploader.current_backoff)
        await _sleep_or_shutdown(shutdown_event, delay)
    logger.info("Upload loop stopped")


async def run_loops(
    *,
    control: ControlLoop,
    control_interval_s: float,
    forecast_interval_s: float,
    shutdown_event: asyncio.Event,
    uploader: Influxdb2Uploader | None = None,
    buffer: TelemetryBuffer | None = None,
    upload_interval_s: float = 30.0,
) -> None:
    """Run all loops concurrently until shutdown, then flush telemetry once."""
    loops = [
        _control_loop(
            control=control,
            interval_s=control_interval_s,
            shutdown_event=shutdown_event,
        ),
        _forecast_loop(
            control=control,
            interval_s=forecast_interval_s,
            shutdown_event=shutdown_event,
        ),
    ]
    if uploader is not None and buffer is not None:
        loops.append(
            _upload_loop(
                uploader=uploader,
                buffer=buffer,
                interval_s=upload_interval_s,
                shutdown_event=shutdown_event,
            )
        )

    await asyncio.gather(*loops)

    if uploader is not None and buffer is not None:
        logger.info("Attempting final telemetry flush before exit")
        await _upload_once(uploader=uploader, buffer=buffer)
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="socit",
        description="Dynamically control inverter SoC settings ahead of load-shedding.",
    )
    parser.add_argument("config", help="Path to the TOML configuration file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event."""
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


async def _open_telemetry(
    settings: SocitSettings,
    stack: contextlib.AsyncExitStack,
) -> tuple[TelemetryBuffer | None, Influxdb2Uploader | None]:
    """Open the telemetry buffer when InfluxDB is configured.

    Failure to open the buffer disables telemetry rather than the daemon.
    """
    influx = settings.influxdb2
    if influx is None:
        return None, None
    try:
        buffer = await stack.enter_async_context(
            TelemetryBuffer(influx.buffer_path, max_rows=influx.max_buffered)
        )
    except Exception:
        logger.error("Failed to open telemetry buffer, telemetry disabled", exc_info=True)
        return None, None
    uploader = Influxdb2Uploader(
        host=influx.host,
        org=influx.org,
        token=influx.token,
        bucket=influx.bucket,
        batch_size=influx.batch_size,
    )
    return buffer, uploader


async def async_main(argv: Sequence[str] | None = None) -> int:
    """Load config, check the inverter, build components and run the loops.

    Returns:
        Process exit status.
    """
    args = parse_args(argv)
    configure_logging(args.verbose)

    try:
        settings = load_settings(args.config)
    except (OSError, tomllib.TOMLDecodeError, ValidationError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1
    log_config_summary(settings)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: _handle_signal(shutdown_event))

    inverter = SunsynkInverter(
        device=settings.inverter.device,
        modbus_id=settings.inverter.modbus_id,
        timeout_s=settings.inverter.timeout_s,
        zone=settings.inverter.zone,
    )
    try:
        initial = await asyncio.wait_for(inverter.read_state(), settings.inverter.timeout_s)
    except Exception:
        logger.error("Initial inverter read failed, exiting", exc_info=True)
        inverter.close()
        return 1
    logger.info(
        "Connected to %r: capacity=%.0f Wh, SoC=%.0f%%, max charge=%.0f W",
        inverter,
        initial.battery.capacity_wh,
        initial.battery.soc,
        initial.rated_max_charge_power,
    )

    forecast = EspClient(
        key=settings.esp.key,
        base_url=settings.esp.base_url,
        timeout_s=settings.esp.timeout_s,
        test=settings.esp.test,
    )
    health = HealthWriter(settings.health_path) if settings.health_path else None

    try:
        async with contextlib.AsyncExitStack() as stack:
            buffer, uploader = await _open_telemetry(settings, stack)
            control = ControlLoop(
                inverter=inverter,
                forecast=forecast,
                area=settings.esp.area,
                profile=settings.profile.to_profile(),
                panels=settings.panel_specs,
                coil_config=settings.coil,
                shutdown_event=shutdown_event,
                telemetry=buffer,
                health=health,
                dry_run=settings.dry_run,
                set_clock=settings.inverter.set_clock,
                io_timeout_s=settings.inverter.timeout_s,
                forecast_timeout_s=settings.esp.timeout_s + 5.0,
                stale_after=settings.esp.stale_after,
                step=timedelta(seconds=settings.projection_step_s),
                initial_trickle=initial.trickle,
            )
            await control.refresh_forecast()
            await run_loops(
                control=control,
                control_interval_s=settings.control_interval_s,
                forecast_interval_s=settings.esp.interval_s,
                shutdown_event=shutdown_event,
                uploader=uploader,
                buffer=buffer,
                upload_interval_s=(
                    settings.influxdb2.upload_interval_s if settings.influxdb2 else 30.0
                ),
            )
    finally:
        inverter.close()
    return 0


def main() -> None:
    """Synchronous entrypoint for the socit daemon."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
