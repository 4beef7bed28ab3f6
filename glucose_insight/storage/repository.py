"""
Repository pattern for data access.

Handles database operations for readings, events, analysis history and
AI usage logs. History and usage tables are append-only ledgers.
"""

import asyncio
import sqlite3
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import AnalysisHistoryRecord, Event, Reading, UsageLogRecord

_EVENT_COLUMNS = (
    "id, event_timestamp, period_start, period_end, title, content, "
    "reading_count, glucose_at_event, glucose_min, glucose_max, glucose_avg, "
    "glucose_spike, peak_time, ai_analysis, ai_classification, ai_model, "
    "is_processed, processed_at"
)

_HISTORY_COLUMNS = (
    "event_id, analysis, classification, model, analyzed_at, period_start, "
    "period_end, reading_count, reason, glucose_at_event, glucose_min, "
    "glucose_max, glucose_avg, glucose_spike, peak_time"
)

_USAGE_COLUMNS = (
    "model, input_tokens, output_tokens, total_tokens, success, http_status, "
    "finish_reason, duration_ms, called_at, event_id, reason"
)


def _to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Serialize a timestamp as fixed-width UTC ISO text so it sorts correctly."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    ``event_analysis_history`` and ``ai_usage_log`` are append-only: no
    UPDATE or DELETE is ever issued against them. ``ai_usage_log.event_id``
    is a plain nullable link, so a call is logged even when its event row
    does not exist yet.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS glucose_reading (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL UNIQUE,
                value REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS glucose_event (
                id INTEGER PRIMARY KEY,
                event_timestamp TEXT NOT NULL,
                period_start TEXT NOT NULL,
                period_end TEXT NOT NULL,
                title TEXT NOT NULL DEFAULT '',
                content TEXT,
                reading_count INTEGER NOT NULL DEFAULT 0,
                glucose_at_event REAL,
                glucose_min REAL,
                glucose_max REAL,
                glucose_avg REAL,
                glucose_spike REAL,
                peak_time TEXT,
                ai_analysis TEXT,
                ai_classification TEXT,
                ai_model TEXT,
                is_processed INTEGER NOT NULL DEFAULT 0,
                processed_at TEXT
            );

            CREATE TABLE IF NOT EXISTS event_analysis_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id INTEGER NOT NULL REFERENCES glucose_event(id),
                analysis TEXT,
                classification TEXT,
                model TEXT NOT NULL,
                analyzed_at TEXT NOT NULL,
                period_start TEXT NOT NULL,
                period_end TEXT NOT NULL,
                reading_count INTEGER NOT NULL,
                reason TEXT,
                glucose_at_event REAL,
                glucose_min REAL,
                glucose_max REAL,
                glucose_avg REAL,
                glucose_spike REAL,
                peak_time TEXT
            );

            CREATE TABLE IF NOT EXISTS ai_usage_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                model TEXT NOT NULL,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                success INTEGER NOT NULL,
                http_status INTEGER,
                finish_reason TEXT,
                duration_ms INTEGER,
                called_at TEXT NOT NULL,
                event_id INTEGER,
                reason TEXT
            );

            CREATE INDEX IF NOT EXISTS ix_event_timestamp ON glucose_event(event_timestamp);
            CREATE INDEX IF NOT EXISTS ix_history_event ON event_analysis_history(event_id);
            CREATE INDEX IF NOT EXISTS ix_usage_called_at ON ai_usage_log(called_at);
        """)
        conn.commit()
    finally:
        conn.close()


# -- Readings --------------------------------------------------------------

def insert_readings(readings: Iterable[Reading], db_path: str = DEFAULT_DB_PATH) -> int:
    """Insert readings atomically, skipping timestamps already stored.

    Args:
        readings: Readings to store
        db_path: Path to SQLite database file

    Returns:
        Number of rows actually inserted
    """
    rows = [(_to_db_time(r.timestamp), r.value) for r in readings]
    if not rows:
        return 0

    conn = get_connection(db_path)
    try:
        before = conn.total_changes
        conn.executemany(
            "INSERT OR IGNORE INTO glucose_reading (timestamp, value) VALUES (?, ?)",
            rows,
        )
        conn.commit()
        return conn.total_changes - before
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_readings(
    start: datetime,
    end: datetime,
    db_path: str = DEFAULT_DB_PATH,
) -> List[Reading]:
    """Fetch readings with start <= timestamp <= end, oldest first."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            "SELECT value, timestamp FROM glucose_reading "
            "WHERE timestamp >= ? AND timestamp <= ? ORDER BY timestamp",
            (_to_db_time(start), _to_db_time(end)),
        )
        return [Reading(value=row[0], timestamp=_from_db_time(row[1])) for row in cursor.fetchall()]
    finally:
        conn.close()


# -- Events ----------------------------------------------------------------

def _event_params(event: Event) -> tuple:
    return (
        event.id,
        _to_db_time(event.event_timestamp),
        _to_db_time(event.period_start),
        _to_db_time(event.period_end),
        event.title,
        event.content,
        event.reading_count,
        event.glucose_at_event,
        event.glucose_min,
        event.glucose_max,
        event.glucose_avg,
        event.glucose_spike,
        _to_db_time(event.peak_time),
        event.ai_analysis,
        event.ai_classification,
        event.ai_model,
        int(event.is_processed),
        _to_db_time(event.processed_at),
    )


def _row_to_event(row: Any) -> Event:
    return Event(
        id=row[0],
        event_timestamp=_from_db_time(row[1]),
        period_start=_from_db_time(row[2]),
        period_end=_from_db_time(row[3]),
        title=row[4],
        content=row[5],
        reading_count=row[6],
        glucose_at_event=row[7],
        glucose_min=row[8],
        glucose_max=row[9],
        glucose_avg=row[10],
        glucose_spike=row[11],
        peak_time=_from_db_time(row[12]),
        ai_analysis=row[13],
        ai_classification=row[14],
        ai_model=row[15],
        is_processed=bool(row[16]),
        processed_at=_from_db_time(row[17]),
    )


def _upsert_event_row(conn: sqlite3.Connection, event: Event) -> None:
    updates = ", ".join(
        f"{column} = excluded.{column}"
        for column in (c.strip() for c in _EVENT_COLUMNS.split(","))
        if column != "id"
    )
    conn.execute(
        f"INSERT INTO glucose_event ({_EVENT_COLUMNS}) "
        f"VALUES ({', '.join('?' * 18)}) "
        f"ON CONFLICT(id) DO UPDATE SET {updates}",
        _event_params(event),
    )


def upsert_event(event: Event, db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert an event, or replace the stored row with the same id."""
    conn = get_connection(db_path)
    try:
        _upsert_event_row(conn, event)
        conn.commit()
    finally:
        conn.close()


def fetch_event(event_id: int, db_path: str = DEFAULT_DB_PATH) -> Optional[Event]:
    """Fetch one event by id, or None."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            f"SELECT {_EVENT_COLUMNS} FROM glucose_event WHERE id = ?",
            (event_id,),
        )
        row = cursor.fetchone()
        return _row_to_event(row) if row else None
    finally:
        conn.close()


def fetch_events_in_window(
    start: datetime,
    end: datetime,
    db_path: str = DEFAULT_DB_PATH,
) -> List[Event]:
    """Fetch events whose instant falls within [start, end], oldest first."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            f"SELECT {_EVENT_COLUMNS} FROM glucose_event "
            "WHERE event_timestamp >= ? AND event_timestamp <= ? ORDER BY event_timestamp",
            (_to_db_time(start), _to_db_time(end)),
        )
        return [_row_to_event(row) for row in cursor.fetchall()]
    finally:
        conn.close()


# -- Analysis history (append-only) ------------------------------------------

def _insert_history_row(conn: sqlite3.Connection, record: AnalysisHistoryRecord) -> None:
    conn.execute(
        f"INSERT INTO event_analysis_history ({_HISTORY_COLUMNS}) "
        f"VALUES ({', '.join('?' * 15)})",
        (
            record.event_id,
            record.analysis,
            record.classification,
            record.model,
            _to_db_time(record.analyzed_at),
            _to_db_time(record.period_start),
            _to_db_time(record.period_end),
            record.reading_count,
            record.reason,
            record.glucose_at_event,
            record.glucose_min,
            record.glucose_max,
            record.glucose_avg,
            record.glucose_spike,
            _to_db_time(record.peak_time),
        ),
    )


def insert_history(record: AnalysisHistoryRecord, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append one analysis snapshot to the history ledger."""
    conn = get_connection(db_path)
    try:
        _insert_history_row(conn, record)
        conn.commit()
    finally:
        conn.close()


def commit_analysis(
    event: Event,
    record: AnalysisHistoryRecord,
    db_path: str = DEFAULT_DB_PATH,
) -> None:
    """Save an analyzed event and append its history row in one transaction.

    Either both writes land or neither does.

    Args:
        event: Updated event value
        record: History snapshot for the same run
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        _upsert_event_row(conn, event)
        _insert_history_row(conn, record)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_history(event_id: int, db_path: str = DEFAULT_DB_PATH) -> List[AnalysisHistoryRecord]:
    """Fetch the analysis history of an event, newest first."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            f"SELECT {_HISTORY_COLUMNS} FROM event_analysis_history "
            "WHERE event_id = ? ORDER BY analyzed_at DESC, id DESC",
            (event_id,),
        )
        return [
            AnalysisHistoryRecord(
                event_id=row[0],
                analysis=row[1],
                classification=row[2],
                model=row[3],
                analyzed_at=_from_db_time(row[4]),
                period_start=_from_db_time(row[5]),
                period_end=_from_db_time(row[6]),
                reading_count=row[7],
                reason=row[8],
                glucose_at_event=row[9],
                glucose_min=row[10],
                glucose_max=row[11],
                glucose_avg=row[12],
                glucose_spike=row[13],
                peak_time=_from_db_time(row[14]),
            )
            for row in cursor.fetchall()
        ]
    finally:
        conn.close()


# -- AI usage log (append-only) ----------------------------------------------

def insert_usage_log(record: UsageLogRecord, db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert a single usage row into the append-only ledger.

    Args:
        record: The usage record to store
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute(
            f"INSERT INTO ai_usage_log ({_USAGE_COLUMNS}) "
            f"VALUES ({', '.join('?' * 11)})",
            (
                record.model,
                record.input_tokens,
                record.output_tokens,
                record.total_tokens,
                int(record.success),
                record.http_status,
                record.finish_reason,
                record.duration_ms,
                _to_db_time(record.called_at),
                record.event_id,
                record.reason,
            ),
        )
        conn.commit()
    finally:
        conn.close()


def fetch_usage_logs(
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: Optional[int] = None,
    db_path: str = DEFAULT_DB_PATH,
) -> List[UsageLogRecord]:
    """Fetch usage rows, newest first, optionally bounded in time.

    Args:
        since: Only rows called at or after this instant
        until: Only rows called at or before this instant
        limit: Maximum number of rows to return
        db_path: Path to SQLite database file

    Returns:
        List of usage records ordered by call time (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = f"SELECT {_USAGE_COLUMNS} FROM ai_usage_log"
        params: List[Any] = []
        conditions = []

        if since is not None:
            conditions.append("called_at >= ?")
            params.append(_to_db_time(since))
        if until is not None:
            conditions.append("called_at <= ?")
            params.append(_to_db_time(until))

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY called_at DESC, id DESC"
        if limit is not None and limit > 0:
            query += " LIMIT ?"
            params.append(limit)

        cursor = conn.execute(query, params)
        return [
            UsageLogRecord(
                model=row[0],
                input_tokens=row[1],
                output_tokens=row[2],
                total_tokens=row[3],
                success=bool(row[4]),
                http_status=row[5],
                finish_reason=row[6],
                duration_ms=row[7],
                called_at=_from_db_time(row[8]),
                event_id=row[9],
                reason=row[10],
            )
            for row in cursor.fetchall()
        ]
    finally:
        conn.close()


# -- Async adapters used by the analyzer ---------------------------------------

class SqliteReadingStore:
    """ReadingStore backed by SQLite; blocking calls run in a worker thread."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    async def readings_in_window(self, start: datetime, end: datetime) -> List[Reading]:
        return await asyncio.to_thread(fetch_readings, start, end, self.db_path)


class SqliteEventStore:
    """EventStore backed by SQLite."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    async def load_event(self, event_id: int) -> Optional[Event]:
        return await asyncio.to_thread(fetch_event, event_id, self.db_path)

    async def commit_analysis(self, event: Event, record: AnalysisHistoryRecord) -> None:
        await asyncio.to_thread(commit_analysis, event, record, self.db_path)

    async def events_in_window(self, start: datetime, end: datetime) -> List[Event]:
        return await asyncio.to_thread(fetch_events_in_window, start, end, self.db_path)


class SqliteUsageStore:
    """UsageStore backed by SQLite."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    async def append_usage_log(self, record: UsageLogRecord) -> None:
        await asyncio.to_thread(insert_usage_log, record, self.db_path)


def is_missing_schema(error: sqlite3.OperationalError) -> bool:
    """True when an OperationalError means the schema was never created."""
    return "no such table" in str(error).lower()
