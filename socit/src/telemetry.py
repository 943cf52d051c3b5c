"""
Telemetry sink: a local SQLite buffer flushed to InfluxDB v2.

Every control tick produces one :class:`TelemetryRecord`. Records go into a
small aiosqlite-backed FIFO first, so a brief InfluxDB outage does not lose
them, and the upload loop drains the buffer in batches by POSTing line
protocol to the InfluxDB v2 write endpoint. Telemetry is best-effort: the
buffer is bounded (the oldest rows are pruned) and failures only ever get
logged.

Operations:
- TelemetryBuffer.enqueue(record) / peek(n) / ack(rowids) / count()
- to_line_protocol(record): render ``socit`` and ``socit-coil`` points.
- Influxdb2Uploader.upload_batch(buffer): peek, POST, ack on 2xx.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite
import httpx

from socit.src.models import TelemetryRecord

logger = logging.getLogger(__name__)

_INITIAL_BACKOFF_S = 1.0
_DEFAULT_MAX_BACKOFF_S = 600.0

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS telemetry (
    rowid INTEGER PRIMARY KEY AUTOINCREMENT,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_INSERT_SQL = "INSERT INTO telemetry (payload) VALUES (?);"

_PRUNE_SQL = """\
DELETE FROM telemetry
WHERE rowid NOT IN (SELECT rowid FROM telemetry ORDER BY rowid DESC LIMIT ?);
"""

_PEEK_SQL = "SELECT rowid, payload FROM telemetry ORDER BY rowid ASC LIMIT ?;"

_COUNT_SQL = "SELECT COUNT(*) FROM telemetry;"


# ---------------------------------------------------------------------------
# Local buffer
# ---------------------------------------------------------------------------


class TelemetryBuffer:
    """Bounded FIFO of telemetry records in a SQLite file (WAL mode).

    Args:
        path: SQLite database path.
        max_rows: Oldest rows beyond this count are discarded on enqueue.

    Usage::

        async with TelemetryBuffer("/data/telemetry.db") as buffer:
            await buffer.enqueue(record)
    """

    def __init__(self, path: str | Path, max_rows: int = 10000) -> None:
        self._path = Path(path)
        self._max_rows = max_rows
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the database and create the table if needed."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(_CREATE_TABLE_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the database connection. Safe to call more than once."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> TelemetryBuffer:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("TelemetryBuffer not opened. Call open() or use async with.")
        return self._db

    async def enqueue(self, record: TelemetryRecord) -> None:
        """Append a record, pruning the oldest rows beyond ``max_rows``."""
        db = self._conn()
        await db.execute(_INSERT_SQL, (record.model_dump_json(),))
        await db.execute(_PRUNE_SQL, (self._max_rows,))
        await db.commit()

    async def peek(self, n: int) -> list[tuple[int, TelemetryRecord]]:
        """Return up to *n* oldest records with their rowids, oldest first."""
        if n < 1:
            return []
        cursor = await self._conn().execute(_PEEK_SQL, (n,))
        rows = await cursor.fetchall()
        return [(row[0], TelemetryRecord.model_validate_json(row[1])) for row in rows]

    async def ack(self, rowids: list[int]) -> None:
        """Delete the given rows. Unknown rowids are ignored."""
        if not rowids:
            return
        placeholders = ",".join("?" for _ in rowids)
        sql = f"DELETE FROM telemetry WHERE rowid IN ({placeholders});"  # noqa: S608
        db = self._conn()
        await db.execute(sql, rowids)
        await db.commit()

    async def count(self) -> int:
        """Return the number of records waiting for upload."""
        cursor = await self._conn().execute(_COUNT_SQL)
        row = await cursor.fetchone()
        return row[0]


# ---------------------------------------------------------------------------
# Line protocol
# ---------------------------------------------------------------------------


def _field_value(value: float | bool) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return repr(float(value))


def _line(measurement: str, fields: dict[str, float | bool | None], ts: int) -> str:
    body = ",".join(f"{k}={_field_value(v)}" for k, v in fields.items() if v is not None)
    return f"{measurement} {body} {ts}"


def to_line_protocol(record: TelemetryRecord) -> list[str]:
    """Render a record as InfluxDB line protocol with second precision.

    Always produces a ``socit`` point; adds a ``socit-coil`` point when the
    trickle corrector is enabled (``coil_target`` set).
    """
    ts = int(record.ts.timestamp())
    lines = [
        _line(
            "socit",
            {
                "target_soc_low": record.target_soc_low,
                "target_soc_high": record.target_soc_high,
                "alarm_soc": record.alarm_soc,
                "current_soc": record.current_soc,
                "predicted_pv": record.predicted_pv,
                "is_loadshedding": record.is_loadshedding,
                "next_change_seconds": record.next_change_seconds,
                "clock_offset_seconds": record.clock_offset_s,
            },
            ts,
        )
    ]
    if record.coil_target is not None:
        lines.append(
            _line(
                "socit-coil",
                {
                    "active": record.coil_active,
                    "target": record.coil_target,
                    "setting": record.trickle,
                },
                ts,
            )
        )
    return lines


# ---------------------------------------------------------------------------
# Uploader
# ---------------------------------------------------------------------------


class Influxdb2Uploader:
    """Batch uploader for the InfluxDB v2 ``/api/v2/write`` endpoint.

    On failure (non-2xx, timeout, connection error) nothing is acknowledged
    and the backoff doubles, capped at ``max_backoff_s``; on success it
    resets to 1 second.

    Args:
        host: InfluxDB base URL.
        org: Organisation.
        token: API token.
        bucket: Destination bucket.
        batch_size: Maximum records per request.
        max_backoff_s: Backoff cap in seconds.
        timeout_s: HTTP timeout per request.
    """

    def __init__(
        self,
        *,
        host: str,
        org: str,
        token: str,
        bucket: str,
        batch_size: int = 100,
        max_backoff_s: float = _DEFAULT_MAX_BACKOFF_S,
        timeout_s: float = 10.0,
    ) -> None:
        self._host = host.rstrip("/")
        self._org = org
        self._token = token
        self._bucket = bucket
        self._batch_size = batch_size
        self._max_backoff_s = max_backoff_s
        self._timeout_s = timeout_s
        self._current_backoff = _INITIAL_BACKOFF_S

    @property
    def current_backoff(self) -> float:
        """Current backoff delay in seconds."""
        return self._current_backoff

    async def upload_batch(self, buffer: TelemetryBuffer) -> bool:
        """Write one batch from *buffer* to InfluxDB and ack it on success.

        Returns:
            ``True`` if a batch was written and acknowledged, ``False`` if
            the buffer was empty or the write failed.
        """
        rows = await buffer.peek(self._batch_size)
        if not rows:
            logger.debug("Telemetry buffer empty, skipping upload.")
            return False

        rowids = [rowid for rowid, _ in rows]
        body = "\n".join(line for _, record in rows for line in to_line_protocol(record))

        try:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                response = await client.post(
                    f"{self._host}/api/v2/write",
                    params={"org": self._org, "bucket": self._bucket, "precision": "s"},
                    content=body.encode("utf-8"),
                    headers={
                        "Authorization": f"Token {self._token}",
                        "Content-Type": "text/plain; charset=utf-8",
                    },
                )
        except httpx.HTTPError as exc:
            logger.warning("Telemetry upload failed (network error): %s", exc)
            self._increase_backoff()
            return False

        if 200 <= response.status_code < 300:
            await buffer.ack(rowids)
            logger.debug("Uploaded %d telemetry records.", len(rowids))
            self._current_backoff = _INITIAL_BACKOFF_S
            return True

        logger.warning(
            "Telemetry upload failed (HTTP %d), will retry after %.1fs backoff.",
            response.status_code,
            self._current_backoff,
        )
        self._increase_backoff()
        return False

    def _increase_backoff(self) -> None:
        self._current_backoff = min(self._current_backoff * 2, self._max_backoff_s)
