"""
Notifiers for event and usage updates.
"""

import logging
from typing import List, Tuple

from ..core.interfaces import Topic

logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Notifier that only logs; used when nobody is listening."""

    async def notify(self, topic: Topic, count: int) -> None:
        logger.info("Notification %s (count=%d).", topic.value, count)


class RecordingNotifier:
    """Notifier that keeps every notification in order."""

    def __init__(self):
        self.notifications: List[Tuple[Topic, int]] = []

    async def notify(self, topic: Topic, count: int) -> None:
        self.notifications.append((topic, count))

    def topics(self) -> List[Topic]:
        return [topic for topic, _ in self.notifications]
