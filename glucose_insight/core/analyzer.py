"""
Event analysis orchestration.

Runs one event through the full analysis lifecycle:

1. Settings check - no API key means no call, no usage row
2. Stats - readings in the event window reduced to EventStats
3. AI call - prompts built from the event and its readings
4. Usage log - one row per call, whatever the outcome
5. Commit - event save and history append in one store call, then notifications

Failures raised by the AI client or storage propagate to the caller; this
module never retries.
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Sequence

from glucose_insight.config.loader import AnalysisSettings
from glucose_insight.storage.models import (
    AnalysisHistoryRecord,
    Event,
    UsageLogRecord,
)

from .classification import ParsedAnalysis, parse
from .errors import EventNotFoundError, UpstreamFailure
from .interfaces import (
    AiAnalysisResult,
    AiClient,
    EventStore,
    Notifier,
    ReadingStore,
    SettingsProvider,
    Topic,
    UsageStore,
)
from .pricing import DEFAULT_PRICING_TABLE, PricingTable
from .prompts import build_event_prompts, resolve_time_zone
from .stats import EventStats, compute_event_stats

logger = logging.getLogger(__name__)


class AnalysisStatus(Enum):
    """How an analysis run ended."""
    OK = "ok"
    NOT_CONFIGURED = "not_configured"
    EMPTY = "empty"
    FAILED = "failed"


@dataclass(frozen=True)
class AnalysisOutcome:
    """Result of one analysis run.

    ``event`` is the updated event value on OK; ``usage`` is the usage row
    written for the call (absent when no call was made).
    """
    status: AnalysisStatus
    analysis: Optional[str] = None
    classification: Optional[str] = None
    event: Optional[Event] = None
    usage: Optional[UsageLogRecord] = None
    error: Optional[str] = None

    @property
    def text(self) -> Optional[str]:
        """Cleaned analysis text, or None when nothing was produced."""
        return self.analysis if self.status is AnalysisStatus.OK else None

    def raise_for_status(self) -> "AnalysisOutcome":
        """Raise UpstreamFailure if the provider reported a failure."""
        if self.status is AnalysisStatus.FAILED:
            status = self.usage.http_status if self.usage else None
            raise UpstreamFailure(self.error or "AI provider call failed", http_status=status)
        return self


class EventLockRegistry:
    """Hands out one asyncio.Lock per event id.

    Locks are held weakly and disappear once no coroutine is using them.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock_for(self, event_id: int) -> asyncio.Lock:
        lock = self._locks.get(event_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[event_id] = lock
        return lock


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _fallback(new, old):
    return new if new is not None else old


class EventAnalyzer:
    """Runs AI analysis for glucose events.

    Concurrent calls for the same event id are serialized; calls for
    different events run independently.
    """

    def __init__(
        self,
        readings: ReadingStore,
        events: EventStore,
        usage: UsageStore,
        ai_client: AiClient,
        notifier: Notifier,
        settings: SettingsProvider,
        pricing: PricingTable = DEFAULT_PRICING_TABLE,
        locks: Optional[EventLockRegistry] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._readings = readings
        self._events = events
        self._usage = usage
        self._ai_client = ai_client
        self._notifier = notifier
        self._settings = settings
        self._pricing = pricing
        self._locks = locks or EventLockRegistry()
        self._clock = clock

    async def analyze_event(
        self,
        event: Event,
        reason: str,
        model_override: Optional[str] = None,
    ) -> AnalysisOutcome:
        """Analyze one event and persist the result.

        Args:
            event: Current event value
            reason: Human-readable reason recorded with history and usage
            model_override: One-off model to use instead of the configured one

        Returns:
            AnalysisOutcome; see AnalysisStatus for the possible endings

        Raises:
            Any exception from the AI client or the stores, unchanged
        """
        async with self._locks.lock_for(event.id):
            return await self._analyze_locked(event, reason, model_override)

    async def reprocess_event(
        self,
        event_id: int,
        reason: str,
        model_override: Optional[str] = None,
    ) -> AnalysisOutcome:
        """Load an event by id and analyze it again.

        The event is loaded after the per-event lock is taken, so a run
        queued behind another one sees that run's result.

        Raises:
            EventNotFoundError: If no event has this id
        """
        async with self._locks.lock_for(event_id):
            event = await self._events.load_event(event_id)
            if event is None:
                raise EventNotFoundError(event_id)
            logger.info("Reprocess requested for event %s '%s'.", event_id, event.title)
            return await self._analyze_locked(event, reason, model_override)

    async def _analyze_locked(
        self,
        event: Event,
        reason: str,
        model_override: Optional[str],
    ) -> AnalysisOutcome:
        settings = await self._settings.current_analysis_settings()
        if not settings.is_configured:
            logger.warning("AI API key not configured. Skipping analysis of event %s.", event.id)
            return AnalysisOutcome(AnalysisStatus.NOT_CONFIGURED)

        readings = await self._readings.readings_in_window(event.period_start, event.period_end)
        stats = compute_event_stats(readings, event.event_timestamp)
        overlapping = await self._overlapping_events(event)

        system_prompt, user_prompt = build_event_prompts(
            event,
            readings,
            overlapping,
            resolve_time_zone(settings.time_zone),
            glucose_at_event=stats.glucose_at_event,
        )
        model = self._choose_model(settings, model_override)

        logger.debug("Analyzing event %s with model '%s' (%d readings).", event.id, model, len(readings))
        result = await self._ai_client.analyze(
            settings.api_key,
            system_prompt,
            user_prompt,
            model,
            settings.max_tokens,
        )

        # Token spend is recorded before anything else can fail
        usage = self._usage_record(event.id, result, model, reason)
        await self._usage.append_usage_log(usage)
        cost = self._pricing.compute_cost(usage.model, usage.input_tokens, usage.output_tokens)

        if not result.success:
            logger.warning(
                "AI call failed for event %s '%s' (status=%s): %s. Reason: %s",
                event.id, event.title, result.http_status, result.error_message, reason,
            )
            await self._notifier.notify(Topic.USAGE_UPDATED, 1)
            return AnalysisOutcome(AnalysisStatus.FAILED, usage=usage, error=result.error_message)

        if not result.content or not result.content.strip():
            logger.warning(
                "AI analysis produced no content for event %s '%s' (status=%s, finish=%s). "
                "Tokens: %d, cost: $%.4f. Reason: %s",
                event.id, event.title, result.http_status, result.finish_reason,
                result.total_tokens, cost, reason,
            )
            await self._notifier.notify(Topic.USAGE_UPDATED, 1)
            return AnalysisOutcome(AnalysisStatus.EMPTY, usage=usage)

        parsed = parse(result.content)
        now = self._clock()
        updated = self._updated_event(event, stats, parsed, usage.model, now)
        history = self._history_record(event, stats, parsed, usage.model, now, reason)

        await self._commit_atomically(updated, history)

        logger.info(
            "AI analysis complete for event %s '%s'. Classification: %s. "
            "Tokens: %d (%d in / %d out), cost: $%.4f. Reason: %s",
            event.id, event.title, parsed.classification,
            result.total_tokens, result.input_tokens, result.output_tokens, cost, reason,
        )
        return AnalysisOutcome(
            AnalysisStatus.OK,
            analysis=parsed.analysis,
            classification=parsed.classification,
            event=updated,
            usage=usage,
        )

    async def _commit_atomically(self, event: Event, history: AnalysisHistoryRecord) -> None:
        """Run the commit sequence so cancellation cannot interrupt it halfway.

        If the caller is cancelled mid-commit, the sequence still runs to the
        end before the cancellation is passed on. A commit that fails after
        cancellation raises its own error, chained to the cancellation.
        """
        commit = asyncio.ensure_future(self._commit(event, history))
        try:
            await asyncio.shield(commit)
        except asyncio.CancelledError as cancelled:
            await asyncio.wait({commit})
            error = None if commit.cancelled() else commit.exception()
            if error is not None:
                logger.error("Commit for event %s failed after cancellation: %s", event.id, error)
                raise error from cancelled
            raise

    async def _commit(self, event: Event, history: AnalysisHistoryRecord) -> None:
        await self._events.commit_analysis(event, history)
        # Order matters to observers: events first, then usage
        await self._notifier.notify(Topic.EVENTS_UPDATED, 1)
        await self._notifier.notify(Topic.USAGE_UPDATED, 1)

    async def _overlapping_events(self, event: Event) -> Sequence[Event]:
        # Optional capability; stores without it simply give no context
        events_in_window = getattr(self._events, "events_in_window", None)
        if events_in_window is None:
            return []
        others: List[Event] = await events_in_window(event.period_start, event.period_end)
        return [other for other in others if other.id != event.id]

    @staticmethod
    def _choose_model(settings: AnalysisSettings, model_override: Optional[str]) -> str:
        if model_override and model_override.strip():
            return model_override.strip()
        return settings.model

    def _usage_record(
        self,
        event_id: int,
        result: AiAnalysisResult,
        requested_model: str,
        reason: str,
    ) -> UsageLogRecord:
        return UsageLogRecord(
            model=result.model or requested_model,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            total_tokens=result.total_tokens,
            success=result.success,
            http_status=result.http_status,
            finish_reason=result.finish_reason,
            duration_ms=result.duration_ms,
            called_at=self._clock(),
            event_id=event_id,
            reason=reason,
        )

    @staticmethod
    def _updated_event(
        event: Event,
        stats: EventStats,
        parsed: ParsedAnalysis,
        model: str,
        now: datetime,
    ) -> Event:
        return replace(
            event,
            reading_count=stats.reading_count,
            glucose_at_event=_fallback(stats.glucose_at_event, event.glucose_at_event),
            glucose_min=_fallback(stats.min, event.glucose_min),
            glucose_max=_fallback(stats.max, event.glucose_max),
            glucose_avg=_fallback(stats.avg, event.glucose_avg),
            glucose_spike=_fallback(stats.spike, event.glucose_spike),
            peak_time=_fallback(stats.peak_time, event.peak_time),
            ai_analysis=parsed.analysis,
            ai_classification=parsed.classification,
            ai_model=model,
            is_processed=True,
            processed_at=now,
        )

    @staticmethod
    def _history_record(
        event: Event,
        stats: EventStats,
        parsed: ParsedAnalysis,
        model: str,
        now: datetime,
        reason: str,
    ) -> AnalysisHistoryRecord:
        return AnalysisHistoryRecord(
            event_id=event.id,
            analysis=parsed.analysis,
            classification=parsed.classification,
            model=model,
            analyzed_at=now,
            period_start=event.period_start,
            period_end=event.period_end,
            reading_count=stats.reading_count,
            reason=reason,
            glucose_at_event=stats.glucose_at_event,
            glucose_min=stats.min,
            glucose_max=stats.max,
            glucose_avg=stats.avg,
            glucose_spike=stats.spike,
            peak_time=stats.peak_time,
        )


async def analyze_events(
    analyzer: EventAnalyzer,
    events: Sequence[Event],
    reason: str,
) -> List[AnalysisOutcome]:
    """Analyze several events concurrently, one task per event.

    The first exception propagates after all tasks have finished.
    """
    tasks = [analyzer.analyze_event(event, reason) for event in events]
    results = await asyncio.gather(*tasks, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return list(results)
