"""
Unit tests for storage layer.

Tests schema creation, inserts, window queries and the async stores.
"""

import os
import sqlite3
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from glucose_insight.config.loader import AnalysisSettings, StaticSettingsProvider
from glucose_insight.core.analyzer import AnalysisStatus, EventAnalyzer
from glucose_insight.core.interfaces import AiAnalysisResult
from glucose_insight.sdk.notifier import RecordingNotifier
from glucose_insight.storage.db import get_connection
from glucose_insight.storage.models import AnalysisHistoryRecord, Event, Reading, UsageLogRecord
from glucose_insight.storage.repository import (
    SqliteEventStore,
    SqliteReadingStore,
    SqliteUsageStore,
    commit_analysis,
    fetch_event,
    fetch_events_in_window,
    fetch_history,
    fetch_readings,
    fetch_usage_logs,
    initialize_schema,
    insert_history,
    insert_readings,
    insert_usage_log,
    upsert_event,
)

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _event(event_id: int = 1, offset_minutes: int = 0, **kwargs) -> Event:
    at = T0 + timedelta(minutes=offset_minutes)
    return Event(
        id=event_id,
        event_timestamp=at,
        period_start=at - timedelta(hours=1),
        period_end=at + timedelta(hours=3),
        title=kwargs.pop("title", f"Meal {event_id}"),
        **kwargs,
    )


def _usage(called_at: datetime, model: str = "gpt-4o-mini", success: bool = True) -> UsageLogRecord:
    return UsageLogRecord(
        model=model,
        input_tokens=100,
        output_tokens=50,
        total_tokens=150,
        success=success,
        http_status=200 if success else 500,
        finish_reason="stop" if success else None,
        duration_ms=800,
        called_at=called_at,
    )


def _history(event_id: int, classification: str = "green") -> AnalysisHistoryRecord:
    return AnalysisHistoryRecord(
        event_id=event_id,
        analysis="ok",
        classification=classification,
        model="gpt-4o-mini",
        analyzed_at=T0,
        period_start=T0 - timedelta(hours=1),
        period_end=T0 + timedelta(hours=3),
        reading_count=0,
        reason="test",
    )


class StorageTestCase:
    """Temporary database per test."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestStorageSchema(StorageTestCase):
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify all tables are created."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
            tables = {row[0] for row in cursor.fetchall()}
        finally:
            conn.close()

        assert {"glucose_reading", "glucose_event", "event_analysis_history", "ai_usage_log"} <= tables

    def test_schema_creation_is_idempotent(self):
        """Running initialize_schema twice is harmless."""
        initialize_schema(self.db_path)


class TestReadings(StorageTestCase):
    """Test reading inserts and window queries."""

    def test_window_query_inclusive_and_sorted(self):
        """Both window ends are inclusive; results come back oldest first."""
        insert_readings([
            Reading(130, T0 + timedelta(minutes=10)),
            Reading(100, T0),
            Reading(90, T0 - timedelta(minutes=5)),
            Reading(150, T0 + timedelta(minutes=20)),
        ], self.db_path)

        readings = fetch_readings(T0, T0 + timedelta(minutes=10), self.db_path)

        assert [r.value for r in readings] == [100, 130]
        assert readings[0].timestamp == T0

    def test_duplicate_timestamps_skipped(self):
        """A second reading at the same instant is ignored."""
        assert insert_readings([Reading(100, T0)], self.db_path) == 1
        assert insert_readings([Reading(120, T0), Reading(110, T0 + timedelta(minutes=5))], self.db_path) == 1
        assert [r.value for r in fetch_readings(T0, T0 + timedelta(hours=1), self.db_path)] == [100, 110]

    def test_other_time_zones_normalized(self):
        """Instants are compared in UTC regardless of the offset they carry."""
        warsaw = timezone(timedelta(hours=2))
        insert_readings([Reading(100, datetime(2024, 5, 1, 14, 0, tzinfo=warsaw))], self.db_path)
        readings = fetch_readings(T0, T0, self.db_path)
        assert len(readings) == 1
        assert readings[0].timestamp == T0

    def test_empty_insert(self):
        """Inserting nothing is a no-op."""
        assert insert_readings([], self.db_path) == 0


class TestEvents(StorageTestCase):
    """Test event storage."""

    def test_upsert_and_fetch(self):
        """An event round-trips through the table."""
        event = _event(content="Pasta", reading_count=3, glucose_spike=42.5, peak_time=T0 + timedelta(minutes=45))
        upsert_event(event, self.db_path)
        assert fetch_event(1, self.db_path) == event

    def test_upsert_replaces(self):
        """Saving again with the same id updates the row."""
        upsert_event(_event(), self.db_path)
        updated = _event(ai_analysis="Fine", ai_classification="green", is_processed=True, processed_at=T0)
        upsert_event(updated, self.db_path)

        stored = fetch_event(1, self.db_path)
        assert stored.is_processed
        assert stored.ai_classification == "green"

    def test_missing_event(self):
        """Unknown ids return None."""
        assert fetch_event(404, self.db_path) is None

    def test_events_in_window(self):
        """Only events whose instant falls inside the window come back."""
        for event_id, offset in [(1, 0), (2, 30), (3, 300)]:
            upsert_event(_event(event_id, offset), self.db_path)

        found = fetch_events_in_window(T0, T0 + timedelta(hours=1), self.db_path)
        assert [e.id for e in found] == [1, 2]


class TestHistory(StorageTestCase):
    """Test the append-only history ledger."""

    def test_append_keeps_every_run(self):
        """Each analysis adds a row; nothing is overwritten."""
        upsert_event(_event(), self.db_path)
        for minutes, classification in [(0, "red"), (10, "green")]:
            insert_history(AnalysisHistoryRecord(
                event_id=1,
                analysis=f"Run at {minutes}",
                classification=classification,
                model="gpt-4o-mini",
                analyzed_at=T0 + timedelta(minutes=minutes),
                period_start=T0 - timedelta(hours=1),
                period_end=T0 + timedelta(hours=3),
                reading_count=5,
                reason="test",
            ), self.db_path)

        history = fetch_history(1, self.db_path)
        assert [h.classification for h in history] == ["green", "red"]


class TestCommitAnalysis(StorageTestCase):
    """Test the atomic event save plus history append."""

    def test_commit_writes_event_and_history(self):
        """Both the event and its history row are stored."""
        upsert_event(_event(), self.db_path)
        commit_analysis(_event(ai_classification="red", is_processed=True), _history(1, "red"), self.db_path)

        assert fetch_event(1, self.db_path).ai_classification == "red"
        assert [h.classification for h in fetch_history(1, self.db_path)] == ["red"]

    def test_commit_creates_missing_event(self):
        """An event that was never stored is created by the commit."""
        commit_analysis(_event(7, is_processed=True), _history(7), self.db_path)

        assert fetch_event(7, self.db_path).is_processed
        assert len(fetch_history(7, self.db_path)) == 1

    def test_failed_history_insert_rolls_back_event(self):
        """A history row that cannot be stored undoes the event save too."""
        upsert_event(_event(), self.db_path)

        with pytest.raises(sqlite3.IntegrityError):
            commit_analysis(_event(is_processed=True), _history(99), self.db_path)

        assert fetch_event(1, self.db_path) == _event()
        assert fetch_event(99, self.db_path) is None
        assert fetch_history(1, self.db_path) == []
        assert fetch_history(99, self.db_path) == []


class TestUsageLogs(StorageTestCase):
    """Test the usage ledger."""

    def test_usage_for_unknown_event_is_kept(self):
        """Usage rows may point at an event id that has no row."""
        record = replace(_usage(T0), event_id=7)
        insert_usage_log(record, self.db_path)
        assert fetch_usage_logs(db_path=self.db_path) == [record]

    def test_newest_first_with_bounds(self):
        """since/until bound the rows, newest first."""
        for hours in range(5):
            insert_usage_log(_usage(T0 + timedelta(hours=hours)), self.db_path)

        logs = fetch_usage_logs(
            since=T0 + timedelta(hours=1),
            until=T0 + timedelta(hours=3),
            db_path=self.db_path,
        )
        assert [log.called_at for log in logs] == [T0 + timedelta(hours=h) for h in (3, 2, 1)]

    def test_limit(self):
        """limit caps the number of rows."""
        for hours in range(3):
            insert_usage_log(_usage(T0 + timedelta(hours=hours)), self.db_path)
        assert len(fetch_usage_logs(limit=2, db_path=self.db_path)) == 2

    def test_failure_row_round_trip(self):
        """Failed calls are stored with their status."""
        insert_usage_log(_usage(T0, success=False), self.db_path)
        (log,) = fetch_usage_logs(db_path=self.db_path)
        assert log.success is False
        assert log.http_status == 500
        assert log.finish_reason is None


class TestAsyncStores(StorageTestCase):
    """Test the async store adapters."""

    @pytest.mark.asyncio
    async def test_event_store(self):
        """Commit, load and window queries go through the thread pool."""
        events = SqliteEventStore(self.db_path)
        upsert_event(_event(2, 15), self.db_path)
        await events.commit_analysis(_event(is_processed=True, processed_at=T0), _history(1))

        loaded = await events.load_event(1)
        assert loaded.title == "Meal 1"
        assert loaded.is_processed
        assert [e.id for e in await events.events_in_window(T0, T0 + timedelta(minutes=30))] == [1, 2]
        assert len(fetch_history(1, self.db_path)) == 1

    @pytest.mark.asyncio
    async def test_reading_and_usage_stores(self):
        """Readings and usage go through the async adapters."""
        insert_readings([Reading(100, T0)], self.db_path)
        readings = await SqliteReadingStore(self.db_path).readings_in_window(T0, T0)
        assert [r.value for r in readings] == [100]

        await SqliteUsageStore(self.db_path).append_usage_log(_usage(T0))
        assert len(fetch_usage_logs(db_path=self.db_path)) == 1


class TestAnalyzerOnSqlite(StorageTestCase):
    """Run the analyzer against the SQLite stores."""

    def make(self, ai_result: AiAnalysisResult) -> EventAnalyzer:
        self.ai_client = AsyncMock()
        self.ai_client.analyze.return_value = ai_result
        return EventAnalyzer(
            readings=SqliteReadingStore(self.db_path),
            events=SqliteEventStore(self.db_path),
            usage=SqliteUsageStore(self.db_path),
            ai_client=self.ai_client,
            notifier=RecordingNotifier(),
            settings=StaticSettingsProvider(AnalysisSettings(api_key="sk-test", time_zone="UTC")),
        )

    @pytest.mark.asyncio
    async def test_unsaved_event_keeps_usage_and_is_stored(self):
        """Analyzing an event with no row logs usage and stores the event."""
        analyzer = self.make(AiAnalysisResult(
            content="[CLASSIFICATION: green]\nFlat curve.",
            model="gpt-4o-mini",
            input_tokens=900,
            output_tokens=100,
            total_tokens=1000,
            finish_reason="stop",
            http_status=200,
            success=True,
            duration_ms=500,
        ))

        outcome = await analyzer.analyze_event(_event(7), "new event")

        assert outcome.status is AnalysisStatus.OK
        (log,) = fetch_usage_logs(db_path=self.db_path)
        assert log.event_id == 7
        assert fetch_event(7, self.db_path).ai_classification == "green"
        assert len(fetch_history(7, self.db_path)) == 1

    @pytest.mark.asyncio
    async def test_failed_call_for_unsaved_event_keeps_usage(self):
        """A failed call for an event with no row is still logged."""
        analyzer = self.make(AiAnalysisResult.failure("gpt-4o-mini", 429, 80, "Rate limit"))

        outcome = await analyzer.analyze_event(_event(7), "new event")

        assert outcome.status is AnalysisStatus.FAILED
        (log,) = fetch_usage_logs(db_path=self.db_path)
        assert (log.event_id, log.http_status) == (7, 429)
        assert fetch_event(7, self.db_path) is None
