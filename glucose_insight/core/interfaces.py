"""
Collaborator interfaces consumed by the event analyzer.

Storage, the AI provider, notifications and settings are all external to
the analysis core; it only depends on these protocols.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional, Protocol

from glucose_insight.config.loader import AnalysisSettings
from glucose_insight.storage.models import (
    AnalysisHistoryRecord,
    Event,
    Reading,
    UsageLogRecord,
)


class Topic(str, Enum):
    """Notification topics pushed to observers."""
    EVENTS_UPDATED = "events-updated"
    USAGE_UPDATED = "usage-updated"


@dataclass(frozen=True)
class AiAnalysisResult:
    """Structured outcome of one AI completion call.

    Clients return a failure result (``success=False``) for HTTP errors
    instead of raising, so the call still gets a usage row.
    """
    content: Optional[str]
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    finish_reason: Optional[str]
    http_status: int
    success: bool
    duration_ms: int
    error_message: Optional[str] = None

    @classmethod
    def failure(
        cls,
        model: str,
        http_status: int,
        duration_ms: int,
        error_message: Optional[str],
    ) -> "AiAnalysisResult":
        """Create a failed result with zero token usage."""
        return cls(None, model, 0, 0, 0, None, http_status, False, duration_ms, error_message)


class ReadingStore(Protocol):
    async def readings_in_window(self, start: datetime, end: datetime) -> List[Reading]:
        """Return readings with start <= timestamp <= end, in any order."""
        ...


class EventStore(Protocol):
    async def load_event(self, event_id: int) -> Optional[Event]:
        ...

    async def commit_analysis(self, event: Event, record: AnalysisHistoryRecord) -> None:
        """Save the event and append its history row atomically."""
        ...


class UsageStore(Protocol):
    async def append_usage_log(self, record: UsageLogRecord) -> None:
        ...


class AiClient(Protocol):
    async def analyze(
        self,
        api_key: str,
        system_prompt: str,
        user_prompt: str,
        model: str,
        max_tokens: int,
    ) -> AiAnalysisResult:
        ...


class Notifier(Protocol):
    async def notify(self, topic: Topic, count: int) -> None:
        """Fire-and-forget notification; delivery is at-least-once."""
        ...


class SettingsProvider(Protocol):
    async def current_analysis_settings(self) -> AnalysisSettings:
        """Return a fresh settings snapshot; never cached across calls."""
        ...
