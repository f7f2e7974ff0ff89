"""Deterministic responses that never call the generator.

Covers the canned intents (acknowledgement, correspondent, work-style,
personal refusal, narrow professional answers), the lightly templated ones
(page context, personality), and the guard messages (strikes, lockout,
off-topic deflection, rate limiting).
"""

import re
import zlib
from dataclasses import dataclass, field
from typing import Sequence

from portfolio_agent.core.abuse_guard import LockoutStatus
from portfolio_agent.core.config import Settings
from portfolio_agent.core.schemas_ask import AskMeta, AskResponse, EvidenceLink, PageContext
from portfolio_agent.core.schemas_portfolio import Page, PersonalityAttribute, ProjectProfile

MAX_PAGE_SKILLS = 5
MAX_PAGE_LINKS = 4


def _site_link(settings: Settings, title: str, path: str) -> EvidenceLink:
    return EvidenceLink(title=title, url=settings.SITE_BASE_URL.rstrip("/") + path)


def _fast(answer: str, intent: str, **kwargs) -> AskResponse:
    return AskResponse(answer=answer, meta=AskMeta(fast_path=True, intent=intent), **kwargs)


def acknowledgement_response(settings: Settings) -> AskResponse:
    return _fast(
        f"Glad to help. Feel free to ask about projects, tools, or how {settings.SUBJECT_NAME} approaches the work.",
        "acknowledgement",
    )


def self_identification_response(question: str, settings: Settings) -> AskResponse:
    """Canned reply for the allow-listed correspondent; stable for a given question."""
    replies = settings.CORRESPONDENT_REPLIES or ["Hi! Talk soon."]
    reply = replies[zlib.crc32(question.encode("utf-8")) % len(replies)]
    return _fast(reply, "self_identification")


def work_style_response(settings: Settings) -> AskResponse:
    name = settings.SUBJECT_NAME
    return _fast(
        f"Yes. {name} clearly enjoys building data products and solving problems. "
        f"The portfolio shows sustained investment in analytics engineering, automation, "
        f"and shipping real systems end to end, and every project here was built with that care. "
        f"{settings.CONTACT_LINE}",
        "work_style",
        evidence_links=[
            _site_link(settings, "Portfolio Site", "/"),
            _site_link(settings, "Data Projects", "/data-projects"),
            _site_link(settings, "About", "/about"),
        ],
    )


def personal_refusal_response(settings: Settings) -> AskResponse:
    return _fast(
        f"{settings.SUBJECT_NAME} keeps personal details private. This assistant focuses on professional work: "
        f"projects, skills, and how problems get solved. {settings.CONTACT_LINE}",
        "personal",
    )


@dataclass
class FastPathAnswer:
    """A canned answer for a narrow, high-confidence professional question."""

    key: str
    pattern: re.Pattern
    answer: str
    skills: list[str] = field(default_factory=list)
    links: list[tuple[str, str]] = field(default_factory=list)
    requires: re.Pattern | None = None

    def matches(self, lower: str) -> bool:
        if not self.pattern.search(lower):
            return False
        return self.requires.search(lower) is not None if self.requires else True


def build_fast_path_answers(subject_name: str) -> list[FastPathAnswer]:
    """Ordered canned answers; the first match wins."""
    return [
        FastPathAnswer(
            key="quality",
            pattern=re.compile(r"\b(test|tests|testing|validate|validation|quality|governance|best practices?|rigor|rigorous)\b"),
            answer=(
                f"Yes. {subject_name} treats testing, validation, and governance as core parts of senior data "
                f"engineering work. The portfolio shows layered modeling with validation logic, CI/CD pipelines "
                f"for report deployment, and automated access governance."
            ),
            skills=["Azure DevOps", "Data Modeling"],
            links=[("Power BI CI/CD writeup", "/writeups/power-bi-ci-cd"), ("Data Projects", "/data-projects")],
        ),
        FastPathAnswer(
            key="seniority",
            pattern=re.compile(r"\b(senior|expert|experienced|level)\b"),
            answer=(
                f"Yes. {subject_name} works at a senior level: production BI platforms, end-to-end pipelines "
                f"on a medallion architecture, automated governance workflows, and this portfolio itself. "
                f"The depth and scope of the projects show it."
            ),
            skills=["Power BI", "Azure Synapse"],
            links=[("Portfolio Site", "/"), ("Data Projects", "/data-projects")],
        ),
        FastPathAnswer(
            key="power_bi",
            pattern=re.compile(r"\b(power bi|pbi|dax|m query|semantic models?)\b"),
            requires=re.compile(r"\b(good|expert|skilled|experienced|use|uses|know|knows)\b"),
            answer=(
                f"Absolutely. Power BI is one of {subject_name}'s strongest areas, particularly production "
                f"governance, DAX and M development, semantic modeling, and CI/CD automation."
            ),
            skills=["Power BI"],
            links=[("Dashboards", "/dashboards")],
        ),
    ]


def fast_path_answer(
    question: str,
    settings: Settings,
    answers: Sequence[FastPathAnswer] | None = None,
) -> AskResponse | None:
    """
    Canned answer for a fast-path professional question.

    Returns None when no category fits, in which case the question goes
    through full retrieval.
    """
    lower = question.lower()
    for item in answers if answers is not None else build_fast_path_answers(settings.SUBJECT_NAME):
        if item.matches(lower):
            return _fast(
                item.answer,
                "fast_path_professional",
                skills_confirmed=list(item.skills),
                evidence_links=[_site_link(settings, title, path) for title, path in item.links],
            )
    return None


def page_context_response(
    page_context: PageContext,
    settings: Settings,
    page: Page | None = None,
    profiles: Sequence[ProjectProfile] = (),
) -> AskResponse:
    """
    Describe the page the visitor is on.

    Uses the store's page row and linked published projects when available,
    otherwise only what the client sent.
    """
    title = (page.title if page else None) or page_context.title or page_context.path or "this page"
    links: list[EvidenceLink] = []
    if page is not None:
        links.append(EvidenceLink(title=page.title, url=page.url))

    published = [p for p in profiles if p.is_published]
    if not published:
        answer = (
            f"You're looking at {title}. Ask about the projects or skills shown here "
            f"and I'll pull the supporting evidence."
        )
        return _fast(answer, "page_context", evidence_links=links)

    skills: list[str] = []
    for profile in published:
        for name in profile.skill_names():
            if name not in skills:
                skills.append(name)
    skills = skills[:MAX_PAGE_SKILLS]

    names = ", ".join(p.name for p in published)
    summary = next((p.summary for p in published if p.summary), None)
    parts = [f"You're looking at {title}, which covers {names}."]
    if summary:
        parts.append(summary.rstrip(".") + ".")
    if skills:
        parts.append(f"Skills demonstrated here include {', '.join(skills)}.")

    seen = {l.url for l in links}
    for profile in published:
        for link_title, url in profile.evidence_urls():
            if url not in seen and len(links) < MAX_PAGE_LINKS:
                links.append(EvidenceLink(title=link_title, url=url))
                seen.add(url)

    return _fast(
        " ".join(parts),
        "page_context",
        skills_confirmed=skills if links else [],
        evidence_links=links,
    )


def personality_response(
    attributes: Sequence[PersonalityAttribute],
    settings: Settings,
) -> AskResponse:
    """Template public personality rows; private rows are dropped here as well."""
    public = [a for a in attributes if a.public]
    about = _site_link(settings, "About", "/about")
    if not public:
        return _fast(
            f"{settings.SUBJECT_NAME} hasn't shared details on that here. "
            f"Ask about projects, skills, or work style instead. {settings.CONTACT_LINE}",
            "personality",
            evidence_links=[about],
        )

    grouped: dict[str, list[str]] = {}
    for attr in public:
        grouped.setdefault(attr.category.replace("_", " "), []).append(attr.value)
    described = "; ".join(f"{category}: {', '.join(values)}" for category, values in grouped.items())
    return _fast(
        f"A few things {settings.SUBJECT_NAME} shares publicly. {described}.",
        "personality",
        evidence_links=[about],
    )


# =============================================================================
# Guard messages
# =============================================================================


def strike_response(status: LockoutStatus, settings: Settings) -> AskResponse:
    """Escalating message for the Nth strike; the last one announces the lockout."""
    name = settings.SUBJECT_NAME
    messages = [
        f"I can only help with {name}'s skills, projects, and data work. Please keep questions professional and career-related.",
        f"I can't help with that. If you're evaluating {name} for a role, ask about skills or projects. {settings.CONTACT_LINE}",
        f"Chat is being locked due to repeated policy violations. {settings.CONTACT_LINE}",
    ]
    index = min(max(status.strikes, 1) - 1, len(messages) - 1)
    if status.locked:
        index = len(messages) - 1
    return AskResponse(
        answer=messages[index],
        trace=[],
        meta=AskMeta(blocked=True, strikes=status.strikes, locked_until=status.locked_until_iso()),
    )


def lockout_response(status: LockoutStatus, minutes_left: int, settings: Settings) -> AskResponse:
    plural = "" if minutes_left == 1 else "s"
    return AskResponse(
        answer=(
            f"Chat is temporarily locked due to policy violations. "
            f"Please try again in {minutes_left} minute{plural}. {settings.CONTACT_LINE}"
        ),
        trace=[],
        meta=AskMeta(blocked=True, strikes=status.strikes, locked_until=status.locked_until_iso()),
    )


def off_topic_response(settings: Settings) -> AskResponse:
    return AskResponse(
        answer=(
            f"I can only help with {settings.SUBJECT_NAME}'s skills, projects, and data work. "
            f"If you'd like, ask about Power BI, Synapse, A/B testing, or the portfolio projects."
        ),
        trace=[],
        meta=AskMeta(blocked=True),
    )


def rate_limited_response(retry_after: int, settings: Settings) -> AskResponse:
    return AskResponse(
        answer=(
            f"Too many questions in a short time. Please wait {retry_after} seconds and try again. "
            f"{settings.CONTACT_LINE}"
        ),
        trace=[],
        meta=AskMeta(blocked=True),
    )
