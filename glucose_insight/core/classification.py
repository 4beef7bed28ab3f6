"""
Classification tag parsing for AI analysis text.

The model is asked to start its answer with ``[CLASSIFICATION: <level>]``.
Only a tag at the very start of the text is recognised.
"""

import re
from enum import Enum
from typing import NamedTuple, Optional


class Classification(str, Enum):
    """Severity of an event's glucose response."""
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


class ParsedAnalysis(NamedTuple):
    """Analysis text with the leading tag removed."""
    analysis: str
    classification: Optional[str]


_TAG_PATTERN = re.compile(
    r"^\s*\[\s*CLASSIFICATION\s*:\s*(\w+)\s*\][ \t]*\n?",
    re.IGNORECASE,
)

_VALID = frozenset(c.value for c in Classification)


def parse(raw_text: Optional[str]) -> ParsedAnalysis:
    """Extract a leading classification tag from AI output.

    Args:
        raw_text: Raw model output, possibly None

    Returns:
        ParsedAnalysis with the cleaned text and lowercase classification.
        When no valid tag starts the text, the original text is returned
        unchanged with classification None.
    """
    if not raw_text:
        return ParsedAnalysis("", None)

    match = _TAG_PATTERN.match(raw_text)
    if match is None:
        return ParsedAnalysis(raw_text, None)

    value = match.group(1).lower()
    if value not in _VALID:
        return ParsedAnalysis(raw_text, None)

    return ParsedAnalysis(raw_text[match.end():].lstrip(), value)


def is_valid(classification: Optional[str]) -> bool:
    """Check a stored classification is one of green, yellow or red."""
    return classification in _VALID
