"""Rule-based intent classification for incoming questions.

Rules are data: an ordered list of IntentRule objects holding compiled
patterns and an optional guard predicate. classify_intent walks the list
and the first matching rule wins. Precedence (most specific and
safety-relevant first):

    self-identification > page-context > personality > acknowledgement
    > fast-path professional > work-style > personal > professional

Known limitation: overlapping patterns are resolved purely by this order,
not by any specificity score. Work-style and personal patterns both
mention enjoyment; work-style is evaluated first.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Sequence

from portfolio_agent.core.config import get_settings
from portfolio_agent.core.logging import get_logger
from portfolio_agent.core.schemas_ask import ChatTurn, PageContext

logger = get_logger(__name__)


class Intent(str, Enum):
    SELF_IDENTIFICATION = "self_identification"
    PAGE_CONTEXT = "page_context"
    PERSONALITY = "personality"
    ACKNOWLEDGEMENT = "acknowledgement"
    FAST_PATH_PROFESSIONAL = "fast_path_professional"
    WORK_STYLE = "work_style"
    PERSONAL = "personal"
    PROFESSIONAL = "professional"


# Intents answered without retrieval or moderation
DETERMINISTIC_INTENTS = frozenset(
    {
        Intent.SELF_IDENTIFICATION,
        Intent.PAGE_CONTEXT,
        Intent.PERSONALITY,
        Intent.ACKNOWLEDGEMENT,
        Intent.WORK_STYLE,
        Intent.PERSONAL,
    }
)

FAST_PATH_MAX_CHARS = 100

CAREER_TERMS = ("skill", "work", "data", "project", "job", "career")


@dataclass
class ClassifierInput:
    question: str
    lower: str
    history: Sequence[ChatTurn] = ()
    page_context: PageContext | None = None


@dataclass
class IntentRule:
    """One precedence slot: any pattern matching (and the guard passing) selects the intent."""

    intent: Intent
    patterns: list[re.Pattern] = field(default_factory=list)
    guard: Callable[[ClassifierInput], bool] | None = None

    def matches(self, item: ClassifierInput) -> bool:
        if not any(p.search(item.lower) for p in self.patterns):
            return False
        return self.guard(item) if self.guard else True


def _compile(patterns: Sequence[str]) -> list[re.Pattern]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


def _has_page_context(item: ClassifierInput) -> bool:
    ctx = item.page_context
    return ctx is not None and bool(ctx.path or ctx.title or ctx.page_slug)


def _short_enough(item: ClassifierInput) -> bool:
    return len(item.question) < FAST_PATH_MAX_CHARS


def _no_career_terms(item: ClassifierInput) -> bool:
    return not any(term in item.lower for term in CAREER_TERMS)


def build_intent_rules(
    subject_name: str,
    correspondent_phrases: Sequence[str] = (),
) -> list[IntentRule]:
    """
    Build the ordered rule list for one subject.

    Args:
        subject_name: First name of the person the assistant answers about
        correspondent_phrases: Phrases identifying the special-cased correspondent

    Returns:
        Rules in evaluation order
    """
    name = re.escape(subject_name.lower())
    rules: list[IntentRule] = []

    if correspondent_phrases:
        rules.append(
            IntentRule(
                Intent.SELF_IDENTIFICATION,
                [re.compile(re.escape(p.lower())) for p in correspondent_phrases],
            )
        )

    rules.append(
        IntentRule(
            Intent.PAGE_CONTEXT,
            _compile(
                [
                    r"\b(this|current) (page|dashboard|project|writeup|screen)\b",
                    r"\bwhat am i (looking at|seeing)\b",
                    r"\b(explain|summari[sz]e|walk me through) (this|it)\b",
                    r"\bwhat(?:'s| is) (this|here)\b",
                    r"\bon this (page|site)\b",
                ]
            ),
            guard=_has_page_context,
        )
    )

    rules.append(
        IntentRule(
            Intent.PERSONALITY,
            _compile(
                [
                    r"\b(favou?rite|favou?rites)\b",
                    r"\b(hobby|hobbies|interests|fun facts?|free time|for fun)\b",
                    rf"\bwhat does {name} (like to do|do for fun|do outside of work)\b",
                    rf"\b{name}'?s? personality\b",
                    r"\boutside of work\b",
                ]
            ),
        )
    )

    rules.append(
        IntentRule(
            Intent.ACKNOWLEDGEMENT,
            _compile(
                [
                    r"^(ok|okay|cool|thanks|thank you|got it|sounds good|nice|alright|sure|yep|yeah|yes|no|nope)$",
                    r"^(ok|okay|cool|thanks|thank you|got it|sounds good|nice|alright|sure|yep|yeah)\s*[.!?]*$",
                ]
            ),
        )
    )

    rules.append(
        IntentRule(
            Intent.FAST_PATH_PROFESSIONAL,
            _compile(
                [
                    rf"\b(does {name}|is {name}|can {name}|has {name})\s+(test|validate|use.*best.*practice|follow.*practice|good at|expert|senior|use|know|have)\b",
                    rf"\b(is {name}|does {name}|can {name})\s+(senior|expert|good|skilled|experienced)\b",
                    rf"\b(does {name}|is {name})\s+(test|validate|quality|governance|best practice)\b",
                ]
            ),
            guard=_short_enough,
        )
    )

    rules.append(
        IntentRule(
            Intent.WORK_STYLE,
            _compile(
                [
                    r"\b(likes?|enjoys?|loves?) (his |the |what he does at )?(work|job|working)\b",
                    r"\bpassion(ate)? (about|for) (his |the )?(work|job|data)\b",
                    r"\b(motivated|work ethic)\b",
                    r"\bwhat (motivates|drives)\b",
                    r"\benjoys? (working with )?data\b",
                    rf"\b(does {name}|is {name})\s+(like|enjoy|love|passionate|motivated)\s+(work|working|job|data|engineering)\b",
                    rf"\b(why (does|did|is) {name}\b|{name}'?s? (motivation|drive)\b)",
                ]
            ),
        )
    )

    rules.append(
        IntentRule(
            Intent.PERSONAL,
            _compile(
                [
                    r"\b(family|wife|husband|kids|children|personal.*life|opinion.*politics|believe.*religion|think about.*family|feel about.*relationship)\b",
                    rf"\b(what.*{name}.*like.*personally|who.*{name}.*personally|{name}.*personal.*life)\b",
                    r"\b(cousins|siblings|parents|dating|relationship.*status)\b",
                ]
            ),
            guard=_no_career_terms,
        )
    )

    return rules


_DEFAULT_RULES: list[IntentRule] | None = None


def default_rules() -> list[IntentRule]:
    """Rules built from settings, cached for the process."""
    global _DEFAULT_RULES
    if _DEFAULT_RULES is None:
        settings = get_settings()
        _DEFAULT_RULES = build_intent_rules(settings.SUBJECT_NAME, settings.CORRESPONDENT_PHRASES)
    return _DEFAULT_RULES


def classify_intent(
    question: str,
    history: Sequence[ChatTurn] = (),
    page_context: PageContext | None = None,
    rules: Sequence[IntentRule] | None = None,
) -> Intent:
    """
    Map a question to exactly one intent.

    Args:
        question: Raw question text
        history: Prior turns (currently informational only)
        page_context: Page the visitor is looking at, if any
        rules: Ordered rules; defaults to the settings-derived rules

    Returns:
        The first matching intent, or Intent.PROFESSIONAL
    """
    item = ClassifierInput(
        question=question,
        lower=question.lower().strip(),
        history=history,
        page_context=page_context,
    )
    for rule in rules if rules is not None else default_rules():
        if rule.matches(item):
            logger.debug(f"Intent matched: {rule.intent.value}")
            return rule.intent
    return Intent.PROFESSIONAL
