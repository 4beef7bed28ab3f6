"""
Adapters for Glucose Insight.

Provides the OpenAI analysis client and notifiers.
"""

from .notifier import LoggingNotifier, RecordingNotifier
from .openai_client import OpenAIAnalysisClient

__all__ = ["LoggingNotifier", "OpenAIAnalysisClient", "RecordingNotifier"]
