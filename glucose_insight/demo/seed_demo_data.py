# glucose_insight/demo/seed_demo_data.py

from datetime import datetime, timedelta, timezone
from typing import Optional

from glucose_insight.storage.db import DEFAULT_DB_PATH
from glucose_insight.storage.models import Event, Reading, UsageLogRecord
from glucose_insight.storage.repository import (
    initialize_schema,
    insert_readings,
    insert_usage_log,
    upsert_event,
)

# Post-lunch curve sampled every 5 minutes, starting an hour before the meal
_LUNCH_CURVE = [
    98, 97, 99, 101, 100, 98, 99, 100, 102, 101, 100, 99,
    104, 112, 125, 141, 156, 168, 174, 171, 163, 152, 141, 132,
    124, 118, 113, 109, 106, 104, 103, 102, 101, 100, 100, 99,
]


def seed_demo_data(db_path: str = DEFAULT_DB_PATH, now: Optional[datetime] = None) -> Event:
    """Insert one day of demo readings, a lunch event and two usage rows.

    Returns:
        The unprocessed demo event, ready for ``glucose-insight analyze``
    """
    now = now or datetime.now(timezone.utc)
    meal = now.replace(minute=0, second=0, microsecond=0) - timedelta(hours=4)
    start = meal - timedelta(hours=1)

    initialize_schema(db_path)
    insert_readings(
        (Reading(float(value), start + timedelta(minutes=5 * i)) for i, value in enumerate(_LUNCH_CURVE)),
        db_path,
    )

    event = Event(
        id=1,
        event_timestamp=meal,
        period_start=start,
        period_end=meal + timedelta(hours=3),
        title="Lunch",
        content="Chicken burrito with rice and a soda",
    )
    upsert_event(event, db_path)

    for called_at, success in [(now - timedelta(days=1), True), (now - timedelta(hours=2), False)]:
        insert_usage_log(UsageLogRecord(
            model="gpt-4o-mini",
            input_tokens=1450 if success else 0,
            output_tokens=380 if success else 0,
            total_tokens=1830 if success else 0,
            success=success,
            http_status=200 if success else 429,
            finish_reason="stop" if success else None,
            duration_ms=2300 if success else 150,
            called_at=called_at,
            reason="demo",
        ), db_path)

    return event


if __name__ == "__main__":
    seed_demo_data()
    print("Demo glucose data inserted")
