"""
Exceptions raised by the analysis core.
"""

from typing import Optional


class GlucoseInsightError(Exception):
    """Base class for errors raised by glucose_insight."""


class EventNotFoundError(GlucoseInsightError):
    """Raised when an event id has no stored event."""

    def __init__(self, event_id: int):
        super().__init__(f"Event not found: {event_id}")
        self.event_id = event_id


class UpstreamFailure(GlucoseInsightError):
    """Raised when the AI provider call could not be completed."""

    def __init__(self, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.http_status = http_status
