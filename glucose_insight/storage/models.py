"""
Data models for storage layer.

Defines glucose readings, events and the append-only analysis ledgers.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class Reading:
    """A single timestamped glucose measurement (mg/dL)."""
    value: float
    timestamp: datetime


@dataclass(frozen=True)
class Event:
    """A meal or activity with its glucose observation window.

    Events are immutable values. The analyzer produces an updated copy via
    ``dataclasses.replace`` and persists it explicitly; the period
    boundaries never change after creation.
    """
    id: int
    event_timestamp: datetime
    period_start: datetime
    period_end: datetime
    title: str = ""
    content: Optional[str] = None
    reading_count: int = 0
    glucose_at_event: Optional[float] = None
    glucose_min: Optional[float] = None
    glucose_max: Optional[float] = None
    glucose_avg: Optional[float] = None
    glucose_spike: Optional[float] = None
    peak_time: Optional[datetime] = None
    ai_analysis: Optional[str] = None
    ai_classification: Optional[str] = None
    ai_model: Optional[str] = None
    is_processed: bool = False
    processed_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate the observation window contains the event instant."""
        if not (self.period_start <= self.event_timestamp <= self.period_end):
            raise ValueError(
                f"Event {self.id}: period_start <= event_timestamp <= period_end must hold"
            )


@dataclass(frozen=True)
class AnalysisHistoryRecord:
    """Immutable snapshot of one AI analysis run for an event.

    Append-only: several rows may exist per event and none is ever
    modified or deleted.
    """
    event_id: int
    analysis: Optional[str]
    classification: Optional[str]
    model: str
    analyzed_at: datetime
    period_start: datetime
    period_end: datetime
    reading_count: int
    reason: Optional[str] = None
    glucose_at_event: Optional[float] = None
    glucose_min: Optional[float] = None
    glucose_max: Optional[float] = None
    glucose_avg: Optional[float] = None
    glucose_spike: Optional[float] = None
    peak_time: Optional[datetime] = None


@dataclass(frozen=True)
class UsageLogRecord:
    """Immutable record of one AI call attempt for cost accounting.

    Written whether or not the call produced usable output. Cost is not
    stored; it is recomputed from the pricing table when read.
    """
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    success: bool
    http_status: Optional[int]
    finish_reason: Optional[str]
    duration_ms: Optional[int]
    called_at: datetime
    event_id: Optional[int] = None
    reason: Optional[str] = None
