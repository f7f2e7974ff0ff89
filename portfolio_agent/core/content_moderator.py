"""Rule-based content moderation for questions that reach retrieval.

Checks run in order and the first hit decides:
1. known correspondent allow-list (always allowed)
2. sexual / profane content -> strike
3. harassment / hate -> strike
4. off-topic heuristic (no career keyword, off-topic pattern, long enough) -> warn

A "strike" feeds the abuse guard's strike counter; a "warn" only deflects.
"""

import re
from dataclasses import dataclass
from typing import Literal, Sequence

from portfolio_agent.core.logging import get_logger

logger = get_logger(__name__)

Severity = Literal["strike", "warn"]

_SEXUAL_PATTERNS = [
    r"\b(sex|sexual|nude|naked|porn|pornography|erotic|orgasm|masturbat\w*|penis|vagina|breast|ass|butt|dick|cock|pussy)\b",
    r"\b(fuck|fucking|shit|damn|bitch|asshole)\b",
]
_SEXUAL_RE = [re.compile(p, re.IGNORECASE) for p in _SEXUAL_PATTERNS]

_HARASSMENT_PATTERNS = [
    r"\b(kill|murder|violence|threat|harm|hurt|attack)\b",
    r"\b(hate|racist|nazi|slur)\b",
]
_HARASSMENT_RE = [re.compile(p, re.IGNORECASE) for p in _HARASSMENT_PATTERNS]

CAREER_KEYWORDS = (
    "skill", "project", "experience", "power bi", "python", "sql", "azure", "synapse",
    "data", "analytics", "engineering", "modeling", "dashboard", "portfolio", "github", "repo",
    "a/b", "testing", "geospatial", "react", "vite", "tailwind", "devops", "ci/cd",
)

_OFF_TOPIC_PATTERNS = [
    r"\b(weather|sports|politics|religion|cooking|recipe|movie|music|game|gaming)\b",
    r"^(hi|hello|hey|what|who|when|where|why|how)\s+[^?]*\?$",
]
_OFF_TOPIC_RE = [re.compile(p, re.IGNORECASE) for p in _OFF_TOPIC_PATTERNS]

OFF_TOPIC_MIN_CHARS = 20


@dataclass(frozen=True)
class ModerationResult:
    allowed: bool
    reason: str | None = None
    severity: Severity | None = None


ALLOWED = ModerationResult(allowed=True)


def moderate_question(
    question: str,
    subject_name: str = "",
    correspondent_phrases: Sequence[str] = (),
) -> ModerationResult:
    """
    Decide whether a question may proceed to retrieval.

    Args:
        question: Trimmed question text
        subject_name: Subject's first name; counts as a career keyword
        correspondent_phrases: Allow-listed correspondent identifiers

    Returns:
        ModerationResult
    """
    lower = question.lower()

    if any(phrase.lower() in lower for phrase in correspondent_phrases):
        return ALLOWED

    if any(p.search(lower) for p in _SEXUAL_RE):
        logger.info("Moderation block: explicit_content")
        return ModerationResult(allowed=False, reason="explicit_content", severity="strike")

    if any(p.search(lower) for p in _HARASSMENT_RE):
        logger.info("Moderation block: harassment")
        return ModerationResult(allowed=False, reason="harassment", severity="strike")

    keywords = CAREER_KEYWORDS + ((subject_name.lower(),) if subject_name else ())
    has_career_keyword = any(k in lower for k in keywords)
    if not has_career_keyword and len(question) > OFF_TOPIC_MIN_CHARS:
        if any(p.search(lower) for p in _OFF_TOPIC_RE):
            logger.info("Moderation deflect: off_topic")
            return ModerationResult(allowed=False, reason="off_topic", severity="warn")

    return ALLOWED
