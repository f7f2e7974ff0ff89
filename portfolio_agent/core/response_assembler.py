"""Turn retrieval results and generator output into AskResponse payloads.

Deterministic results (dashboards index, curated fallback, nothing found)
are templated here. Generated answers are parsed, then held to the evidence
contract: confirmed skills must exist in the bundle and carry at least one
bundle link, links must come from the bundle, and anything dropped moves to
missing_info.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Iterable

from pydantic import ValidationError

from portfolio_agent.core.config import Settings
from portfolio_agent.core.content_sanitizer import sanitize_generated_answer
from portfolio_agent.core.errors import GeneratorFormatError
from portfolio_agent.core.llm import parse_llm_json
from portfolio_agent.core.logging import get_logger
from portfolio_agent.core.retrieval import ResultKind, RetrievalResult
from portfolio_agent.core.schemas_ask import AskMeta, AskResponse, EvidenceLink, GeneratedAnswer
from portfolio_agent.core.schemas_portfolio import (
    GlobalStats,
    MatchedSkill,
    PersonalityAttribute,
    ProjectCounts,
    ProjectProfile,
)

logger = get_logger(__name__)

UNCERTAINTY_PREFIX = "I'm not certain about this from the available evidence."
UNCERTAINTY_MARKERS = ("cannot confirm", "can't confirm", "not certain", "not sure", "unable to confirm")
MAX_FALLBACK_LINKS = 3
MAX_DASHBOARD_LINKS = 3


def has_uncertainty_marker(text: str) -> bool:
    lower = text.lower()
    return any(marker in lower for marker in UNCERTAINTY_MARKERS)


def apply_trace_policy(response: AskResponse) -> AskResponse:
    """Empty the trace on any uncertain answer; narrating a failed search helps nobody."""
    if response.trace is not None and has_uncertainty_marker(response.answer):
        response.trace = []
    return response


def _dedupe(items: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


@dataclass
class EvidenceBundle:
    """Everything the generator may cite, plus the lookups used to check it."""

    stats: GlobalStats | None = None
    profiles: list[ProjectProfile] = field(default_factory=list)
    counts: dict[str, ProjectCounts] = field(default_factory=dict)
    matched_skills: list[MatchedSkill] = field(default_factory=list)
    personality: list[PersonalityAttribute] = field(default_factory=list)
    skill_links: dict[str, list[EvidenceLink]] = field(default_factory=dict)
    skill_names: dict[str, str] = field(default_factory=dict)
    links_by_url: dict[str, EvidenceLink] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.profiles and not self.matched_skills

    def to_payload(self) -> dict[str, Any]:
        return {
            "globalStats": self.stats.model_dump() if self.stats else {},
            "matched_projects": [
                {
                    "slug": p.slug,
                    "name": p.name,
                    "summary": p.summary,
                    "status": p.status.value,
                    "repo_url": p.repo_url,
                    "demo_url": p.demo_url,
                    "pages": [pg.model_dump(mode="json") for pg in p.pages],
                    "skills": [s.model_dump(mode="json") for s in p.skills],
                }
                for p in self.profiles
            ],
            "matchedProjectCounts": [
                {
                    "slug": c.slug,
                    "skills_count": c.skills_count,
                    "dashboard_pages": c.dashboard_pages,
                    "project_pages": c.project_pages,
                }
                for p in self.profiles
                if (c := self.counts.get(p.project_id)) is not None
            ],
            "matched_skills": [
                {"skill_name": s.skill_name, "confidence": s.confidence.value, "match_type": s.match_type}
                for s in self.matched_skills
            ],
            "personality": [
                {"category": a.category, "subcategory": a.subcategory, "value": a.value}
                for a in self.personality
                if a.public
            ],
        }


def build_bundle(result: RetrievalResult) -> EvidenceBundle:
    """Build the generator's evidence set from published profiles only."""
    bundle = EvidenceBundle(
        stats=result.stats,
        profiles=[p for p in result.profiles if p.is_published],
        counts=result.counts,
        matched_skills=result.matched_skills,
        personality=[a for a in result.personality if a.public],
    )
    for profile in bundle.profiles:
        links = [EvidenceLink(title=t, url=u) for t, u in profile.evidence_urls()]
        for link in links:
            bundle.links_by_url.setdefault(link.url, link)
        for skill in profile.skills:
            key = skill.skill.lower()
            bundle.skill_names.setdefault(key, skill.skill)
            existing = bundle.skill_links.setdefault(key, [])
            existing.extend(l for l in links if l not in existing)
    for matched in bundle.matched_skills:
        bundle.skill_names.setdefault(matched.skill_name.lower(), matched.skill_name)
    return bundle


def _meta(result: RetrievalResult, intent: str = "professional") -> AskMeta:
    return AskMeta(
        intent=intent,
        sources_used=result.sources_used or None,
        matched_skill_name=result.skill.name if result.skill else None,
        matched_project_slugs=[p.slug for p in result.profiles if p.is_published] or None,
    )


def cannot_confirm_response(
    settings: Settings,
    skill_name: str | None = None,
    result: RetrievalResult | None = None,
) -> AskResponse:
    """Deterministic "I don't know": empty evidence, non-empty missing_info, no trace."""
    if skill_name:
        missing = [f"Portfolio evidence for {skill_name}"]
        answer = f"I can't confirm {skill_name} from current portfolio evidence. {settings.CONTACT_LINE}"
    else:
        missing = ["Matching skills or projects in the portfolio evidence"]
        answer = f"I can't confirm this from current portfolio evidence. {settings.CONTACT_LINE}"
    return AskResponse(
        answer=answer,
        missing_info=missing,
        trace=[],
        meta=_meta(result) if result is not None else None,
    )


def dashboards_response(result: RetrievalResult, settings: Settings) -> AskResponse:
    """Point at the dashboards index when a skill has dense dashboard evidence."""
    skill = result.skill.name if result.skill else "this skill"
    parts = [
        f"Yes. {settings.SUBJECT_NAME} has built {len(result.dashboards)} dashboards with {skill} "
        f"across the portfolio."
    ]
    if result.skill is not None and result.skill.summary:
        parts.append(result.skill.summary.rstrip(".") + ".")
    parts.append("The dashboards page has all of them in one place.")

    base = settings.SITE_BASE_URL.rstrip("/")
    links = [EvidenceLink(title="Dashboards", url=f"{base}/dashboards")]
    for page in result.dashboards[:MAX_DASHBOARD_LINKS]:
        if page.url not in {l.url for l in links}:
            links.append(EvidenceLink(title=page.title, url=page.url))

    return AskResponse(
        answer=" ".join(parts),
        skills_confirmed=[skill] if result.skill else [],
        evidence_links=links,
        trace=result.trace,
        meta=_meta(result),
    )


def fallback_response(result: RetrievalResult, settings: Settings) -> AskResponse:
    """Answer from the curated skill summary, always with an explicit caveat."""
    entry = result.fallback_skill
    if entry is None:
        return cannot_confirm_response(settings, result=result)

    name = settings.SUBJECT_NAME
    if result.store_available:
        caveat = (
            f"The portfolio database does not link {entry.skill} to specific projects yet, "
            f"so I can't list projects for it."
        )
        missing = [f"Project mappings for {entry.skill} in the portfolio database"]
    else:
        caveat = "The portfolio database is unavailable right now, so this comes from the curated skill summary only."
        missing = ["Project evidence from the portfolio database (temporarily unavailable)"]

    parts = [f"Yes. {name} has {entry.skill} experience according to the curated skill summary."]
    if entry.summary:
        parts.append(entry.summary.rstrip(".") + ".")
    parts.append(caveat)
    parts.append(settings.CONTACT_LINE)

    response = AskResponse(
        answer=" ".join(parts),
        skills_confirmed=[entry.skill],
        evidence_links=[EvidenceLink(**p) for p in entry.proof[:MAX_FALLBACK_LINKS]],
        missing_info=missing,
        trace=result.trace,
        meta=AskMeta(
            intent="professional",
            sources_used=result.sources_used or ["fallback_evidence"],
            matched_skill_name=entry.skill,
        ),
    )
    return apply_trace_policy(response)


def deterministic_response(result: RetrievalResult, settings: Settings) -> AskResponse | None:
    """Templated response for results that never need the generator, else None."""
    if result.kind == ResultKind.DASHBOARDS:
        return dashboards_response(result, settings)
    if result.kind == ResultKind.FALLBACK:
        return fallback_response(result, settings)
    if result.kind == ResultKind.NONE:
        return cannot_confirm_response(settings, result.skill.name if result.skill else None, result)
    if build_bundle(result).is_empty:
        return cannot_confirm_response(settings, result.skill.name if result.skill else None, result)
    return None


def formatting_trouble_response(settings: Settings) -> AskResponse:
    return AskResponse(
        answer=f"I had trouble formatting the response. Please try again. {settings.CONTACT_LINE}",
        trace=[],
    )


def safe_error_response(message: str, settings: Settings) -> AskResponse:
    return AskResponse(answer=f"{message} {settings.CONTACT_LINE}", trace=[])


def parse_generated(raw: str) -> GeneratedAnswer:
    """Parse generator text, raising GeneratorFormatError on any shape problem."""
    try:
        generated = parse_llm_json(raw, GeneratedAnswer)
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error(f"Generator output not parseable: {type(e).__name__}; head={raw[:200]!r}")
        raise GeneratorFormatError(str(e)) from e
    if not isinstance(generated.answer, str) or not generated.answer.strip():
        raise GeneratorFormatError("empty answer")
    return generated


def enforce_evidence_contract(
    generated: GeneratedAnswer,
    bundle: EvidenceBundle,
    detected_skill: str | None = None,
) -> tuple[list[str], list[EvidenceLink], list[str]]:
    """
    Reconcile the generator's claims with the bundle.

    Args:
        generated: Parsed generator output
        bundle: Evidence the generator was given
        detected_skill: Skill the question named; always confirmed when the
            bundle proves it, whatever the generator returned

    Returns:
        (skills_confirmed, evidence_links, missing_info)
    """
    missing = [m.strip() for m in generated.missing_info if isinstance(m, str) and m.strip()]

    links: list[EvidenceLink] = []
    for raw in generated.evidence_links:
        if not isinstance(raw, dict):
            continue
        url, title = raw.get("url"), raw.get("title")
        if not isinstance(url, str) or url not in bundle.links_by_url:
            continue
        if any(l.url == url for l in links):
            continue
        links.append(EvidenceLink(title=title if isinstance(title, str) and title else bundle.links_by_url[url].title, url=url))

    confirmed: list[str] = []
    for raw in generated.skills_confirmed:
        if not isinstance(raw, str) or not raw.strip():
            continue
        key = raw.strip().lower()
        skill_links = bundle.skill_links.get(key)
        if not skill_links:
            logger.info(f"Dropping unsupported skill claim: {raw.strip()}")
            missing.append(f"Portfolio evidence for {raw.strip()}")
            continue
        canonical = bundle.skill_names[key]
        if canonical in confirmed:
            continue
        confirmed.append(canonical)
        if not any(l.url in {s.url for s in skill_links} for l in links):
            links.append(skill_links[0])

    if detected_skill:
        key = detected_skill.lower()
        skill_links = bundle.skill_links.get(key)
        if skill_links and bundle.skill_names[key] not in confirmed:
            confirmed.insert(0, bundle.skill_names[key])
            if not any(l.url in {s.url for s in skill_links} for l in links):
                links.insert(0, skill_links[0])

    return confirmed, links, _dedupe(missing)


def finalize_generated(
    raw: str,
    bundle: EvidenceBundle,
    result: RetrievalResult,
    settings: Settings,
) -> AskResponse:
    """
    Post-process generator text into the public response.

    Raises:
        GeneratorFormatError: Output is not the expected JSON shape
    """
    generated = parse_generated(raw)
    detected = result.skill.name if result.skill else None
    confirmed, links, missing = enforce_evidence_contract(generated, bundle, detected)

    answer = sanitize_generated_answer(generated.answer, strip_phone_numbers=settings.STRIP_PHONE_NUMBERS)
    if not answer:
        raise GeneratorFormatError("answer empty after sanitization")
    if missing and not has_uncertainty_marker(answer):
        answer = f"{UNCERTAINTY_PREFIX} {answer}"

    response = AskResponse(
        answer=answer,
        skills_confirmed=confirmed,
        evidence_links=links,
        missing_info=missing,
        trace=list(result.trace),
        meta=_meta(result),
    )
    return apply_trace_policy(response)
