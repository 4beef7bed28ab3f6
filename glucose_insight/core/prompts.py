"""
Prompt construction for event analysis.

Renders the event, its glucose readings and any overlapping events into
the system and user prompts sent to the model. Times are shown in the
user's local time zone.
"""

import logging
from datetime import datetime, timezone, tzinfo
from typing import List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from glucose_insight.storage.models import Event, Reading

logger = logging.getLogger(__name__)

BEFORE_READINGS_SHOWN = 10
AFTER_READINGS_SHOWN = 15
OVERLAP_CONTENT_LIMIT = 200

SYSTEM_PROMPT = """You are a diabetes management assistant analyzing glucose responses to food and activities.
Given a note describing what the user ate or did, plus glucose readings before and after, provide a clear and helpful analysis.

IMPORTANT: Your response MUST start with a classification line in this exact format:
[CLASSIFICATION: green]
or [CLASSIFICATION: yellow] or [CLASSIFICATION: red]

Classification guide:
- **green**: Glucose response was well-controlled. Spike <=30 mg/dL, stayed in range (70-180), good recovery.
- **yellow**: Glucose response was concerning. Spike 30-60 mg/dL, briefly above range, or slow recovery.
- **red**: Glucose response was problematic. Spike >60 mg/dL, extended time above range, poor recovery, or hypoglycemia.

After the classification line, your analysis should include:
1. **Baseline Assessment**: What was the glucose level before the event?
2. **Glucose Response**: How did glucose levels change after the event? What was the peak and how long did it take?
3. **Spike Analysis**: Was this a significant spike? (Normal post-meal rise is 30-50 mg/dL; >60 mg/dL is notable)
4. **Recovery**: How long did it take for glucose to return toward baseline?
5. **Overall Assessment**: Was this a mild, moderate, or significant glucose impact?
6. **Practical Tip**: One actionable suggestion based on the data.

OVERLAPPING EVENTS:
If the data includes other events that occurred within the same glucose observation window, factor them into your analysis.
Mention them, explain how they likely influenced the glucose response, and say so clearly when they make it hard to isolate the main event's impact.

Keep the analysis concise (2-3 short paragraphs), practical, and written in a friendly tone.
Use mg/dL units. Format with markdown. Do not include a title heading.
If the note content is unclear, analyze based on the glucose patterns alone.
All timestamps below are in the user's local time."""


def resolve_time_zone(name: str) -> tzinfo:
    """Resolve an IANA zone name, falling back to UTC when unknown."""
    if not name or not name.strip():
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Could not resolve time zone '%s'. Falling back to UTC.", name)
        return timezone.utc


def _local(ts: datetime, tz: tzinfo) -> datetime:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(tz)


def _fmt(value: float) -> str:
    return f"{value:g}"


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _describe_before(lines: List[str], before: Sequence[Reading], tz: tzinfo) -> None:
    lines.append("=== GLUCOSE DATA BEFORE EVENT ===")
    if not before:
        lines.append("No glucose readings before the event.")
        return

    values = [r.value for r in before]
    last = before[-1]
    lines.append(f"Readings: {len(before)}")
    lines.append(f"Range: {_fmt(min(values))} - {_fmt(max(values))} mg/dL")
    lines.append(f"Average: {_fmt(round(sum(values) / len(values), 1))} mg/dL")
    lines.append(
        f"Last reading before event: {_fmt(last.value)} mg/dL at {_local(last.timestamp, tz):%H:%M}"
    )
    lines.append("Recent readings before:")
    for r in before[-BEFORE_READINGS_SHOWN:]:
        lines.append(f"  {_local(r.timestamp, tz):%Y-%m-%d %H:%M} -> {_fmt(r.value)} mg/dL")


def _describe_after(
    lines: List[str],
    event: Event,
    after: Sequence[Reading],
    glucose_at_event: Optional[float],
    tz: tzinfo,
) -> None:
    lines.append("=== GLUCOSE DATA AFTER EVENT ===")
    if not after:
        lines.append("No glucose readings after the event.")
        return

    values = [r.value for r in after]
    peak = min(after, key=lambda r: (-r.value, r.timestamp))
    lines.append(f"Readings: {len(after)}")
    lines.append(f"Range: {_fmt(min(values))} - {_fmt(max(values))} mg/dL")
    lines.append(f"Average: {_fmt(round(sum(values) / len(values), 1))} mg/dL")
    lines.append(f"Peak: {_fmt(peak.value)} mg/dL at {_local(peak.timestamp, tz):%H:%M}")
    if glucose_at_event is not None:
        lines.append(f"Spike from baseline: {round(peak.value - glucose_at_event, 1):+g} mg/dL")
    minutes = (peak.timestamp - event.event_timestamp).total_seconds() / 60
    lines.append(f"Time to peak: {minutes:.0f} minutes")
    lines.append("Readings after event:")
    for r in after[:AFTER_READINGS_SHOWN]:
        lines.append(f"  {_local(r.timestamp, tz):%Y-%m-%d %H:%M} -> {_fmt(r.value)} mg/dL")


def _describe_overlapping(
    lines: List[str],
    event: Event,
    overlapping: Sequence[Event],
    tz: tzinfo,
) -> None:
    lines.append("=== OTHER EVENTS IN THIS GLUCOSE WINDOW ===")
    lines.append(
        f"There are {len(overlapping)} other event(s) within this event's glucose observation period."
    )
    lines.append("These may have influenced the glucose response you see above.")
    lines.append("")
    for other in overlapping:
        offset = (other.event_timestamp - event.event_timestamp).total_seconds() / 60
        direction = "after" if offset >= 0 else "before"
        lines.append(
            f'  - "{other.title}" at {_local(other.event_timestamp, tz):%H:%M} '
            f"({abs(offset):.0f} min {direction} this event)"
        )
        if other.content and other.content.strip():
            lines.append(f"    Content: {_truncate(other.content, OVERLAP_CONTENT_LIMIT)}")
        if other.glucose_at_event is not None:
            lines.append(f"    Glucose at that event: {_fmt(other.glucose_at_event)} mg/dL")
        if other.ai_classification:
            lines.append(f"    Classification: {other.ai_classification}")
        lines.append("")


def build_event_prompts(
    event: Event,
    readings: Sequence[Reading],
    overlapping: Sequence[Event] = (),
    tz: tzinfo = timezone.utc,
    glucose_at_event: Optional[float] = None,
) -> Tuple[str, str]:
    """Build the (system, user) prompt pair for one event.

    Args:
        event: Event being analyzed
        readings: Readings in the event window, in any order
        overlapping: Other events whose instant falls inside the window
        tz: Time zone used to render timestamps
        glucose_at_event: Glucose at the event instant, when known

    Returns:
        Tuple of system prompt and user prompt
    """
    ordered = sorted(readings, key=lambda r: r.timestamp)
    before = [r for r in ordered if r.timestamp < event.event_timestamp]
    after = [r for r in ordered if r.timestamp >= event.event_timestamp]
    if glucose_at_event is None:
        glucose_at_event = event.glucose_at_event

    data: List[str] = []
    _describe_before(data, before, tz)
    data.append("")
    _describe_after(data, event, after, glucose_at_event, tz)
    others = sorted(
        (e for e in overlapping if e.id != event.id),
        key=lambda e: e.event_timestamp,
    )
    if others:
        data.append("")
        _describe_overlapping(data, event, others, tz)

    at_event = f"{_fmt(glucose_at_event)} mg/dL" if glucose_at_event is not None else "N/A"
    user_prompt = "\n".join([
        f"**Note Title:** {event.title}",
        f"**Note Content:** {event.content or '(no text content)'}",
        f"**Event Time:** {_local(event.event_timestamp, tz):%Y-%m-%d %H:%M} (local time)",
        f"**Glucose at Event:** {at_event}",
        "",
        "\n".join(data),
        "",
        "Please analyze this glucose response.",
    ])
    return SYSTEM_PROMPT, user_prompt
