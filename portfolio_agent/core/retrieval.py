"""Evidence retrieval as an ordered pipeline of stages.

Each stage is an async function ``(ctx, repo) -> StageOutcome``. A stage
either resolves the request (dashboards index, curated fallback) or lets the
driver continue; candidate stages record their selection on the context and
later stages skip once something was selected. After the last stage the
driver fetches profiles for the selection and builds the evidence result.

Stage order:
    global_stats -> detect_skill -> dashboard_density -> skill_projects
    -> fuzzy_projects -> matched_skills -> skill_derived_projects
    -> no_evidence_fallback

Any StoreUnavailableError raised along the way degrades the request to the
curated fallback evidence file instead of failing it.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Protocol, Sequence

from portfolio_agent.core.config import Settings, get_settings
from portfolio_agent.core.errors import StoreUnavailableError
from portfolio_agent.core.fallback_evidence import FallbackEvidence, FallbackSkill, load_fallback_evidence
from portfolio_agent.core.logging import get_logger, log_with_context, preview
from portfolio_agent.core.ranking import (
    RankedCandidate,
    ScoringPolicy,
    is_assistant_question,
    only_meta,
    rank_candidates,
    score_candidate,
)
from portfolio_agent.core.schemas_portfolio import (
    DashboardPage,
    GlobalStats,
    MatchedSkill,
    Page,
    PersonalityAttribute,
    ProjectCounts,
    ProjectProfile,
    Skill,
    SkillProjectCandidate,
)

logger = get_logger(__name__)

# Distinct dashboard pages that make the dashboards index the better answer
DASHBOARD_DENSITY_MIN = 3
FUZZY_PROJECT_LIMIT = 5

# Personality categories allowed into a work-question evidence bundle
WORK_PERSONALITY_CATEGORIES = ("work_style", "values", "strengths")

# Short or informal tokens mapped to canonical skill names. Only consulted
# when no skill name or alias appears in the question.
SKILL_EXPANSIONS: dict[str, str] = {
    "pbi": "Power BI",
    "powerbi": "Power BI",
    "synapse": "Azure Synapse",
    "fabric": "Microsoft Fabric",
    "ab test": "A/B Testing",
    "a/b": "A/B Testing",
    "split test": "A/B Testing",
    "gis": "Geospatial Analytics",
    "mapping": "Geospatial Analytics",
    "llm": "LLM Applications",
    "genai": "LLM Applications",
    "prompting": "Prompt Engineering",
}


class PortfolioReader(Protocol):
    """Read interface of the analytical store used by retrieval."""

    async def global_stats(self) -> GlobalStats: ...

    async def list_skills(self) -> list[Skill]: ...

    async def projects_for_skill(self, skill_id: str) -> list[SkillProjectCandidate]: ...

    async def project_counts(self, project_ids: Sequence[str]) -> dict[str, ProjectCounts]: ...

    async def fuzzy_projects(self, text: str, limit: int = 5) -> list[SkillProjectCandidate]: ...

    async def fuzzy_skills(self, text: str, limit: int = 10) -> list[MatchedSkill]: ...

    async def alias_skills(self, text: str, limit: int = 20) -> list[MatchedSkill]: ...

    async def projects_from_skills(self, skill_ids: Sequence[str], limit: int = 3) -> list[SkillProjectCandidate]: ...

    async def project_profiles(self, project_ids: Sequence[str]) -> list[ProjectProfile]: ...

    async def dashboard_pages_for_skill(self, skill_id: str) -> list[DashboardPage]: ...

    async def public_personality(self, categories: Sequence[str] | None = None) -> list[PersonalityAttribute]: ...

    async def page_with_projects(self, slug: str) -> tuple[Page | None, list[ProjectProfile]]: ...


class ResultKind(str, Enum):
    EVIDENCE = "evidence"
    DASHBOARDS = "dashboards"
    FALLBACK = "fallback"
    NONE = "none"


@dataclass
class SkillMatch:
    skill: Skill
    matched_text: str
    via: str  # "name", "alias" or "expansion"


@dataclass
class TraceLog:
    """Human-readable search narration. Identical lines are kept once."""

    lines: list[str] = field(default_factory=list)

    def add(self, line: str) -> None:
        if line and line not in self.lines:
            self.lines.append(line)

    def capped(self, limit: int) -> list[str]:
        return self.lines[:limit]


@dataclass
class RetrievalResult:
    kind: ResultKind
    stats: GlobalStats | None = None
    skill: Skill | None = None
    ranked: list[RankedCandidate] = field(default_factory=list)
    profiles: list[ProjectProfile] = field(default_factory=list)
    counts: dict[str, ProjectCounts] = field(default_factory=dict)
    matched_skills: list[MatchedSkill] = field(default_factory=list)
    dashboards: list[DashboardPage] = field(default_factory=list)
    fallback_skill: FallbackSkill | None = None
    personality: list[PersonalityAttribute] = field(default_factory=list)
    trace: list[str] = field(default_factory=list)
    sources_used: list[str] = field(default_factory=list)
    store_available: bool = True

    @property
    def project_slugs(self) -> list[str]:
        return [p.slug for p in self.profiles]


@dataclass
class RetrievalContext:
    question: str
    policy: ScoringPolicy
    fallback: FallbackEvidence
    about_assistant: bool = False
    trace_max: int = 4
    stats: GlobalStats | None = None
    skills: list[Skill] = field(default_factory=list)
    skill_match: SkillMatch | None = None
    selected: list[RankedCandidate] = field(default_factory=list)
    counts: dict[str, ProjectCounts] = field(default_factory=dict)
    matched_skills: list[MatchedSkill] = field(default_factory=list)
    trace: TraceLog = field(default_factory=TraceLog)
    sources_used: list[str] = field(default_factory=list)

    @property
    def lowered(self) -> str:
        return self.question.lower()

    @property
    def skill(self) -> Skill | None:
        return self.skill_match.skill if self.skill_match else None

    def use_source(self, name: str) -> None:
        if name not in self.sources_used:
            self.sources_used.append(name)

    def result(self, kind: ResultKind, **kwargs) -> RetrievalResult:
        return RetrievalResult(
            kind=kind,
            stats=self.stats,
            skill=self.skill,
            ranked=list(self.selected),
            counts=dict(self.counts),
            matched_skills=list(self.matched_skills),
            trace=self.trace.capped(self.trace_max),
            sources_used=list(self.sources_used),
            **kwargs,
        )


@dataclass
class StageOutcome:
    resolved: bool
    result: RetrievalResult | None = None


CONTINUE = StageOutcome(resolved=False)


def resolved(result: RetrievalResult) -> StageOutcome:
    return StageOutcome(resolved=True, result=result)


Stage = Callable[[RetrievalContext, PortfolioReader], Awaitable[StageOutcome]]


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


# =============================================================================
# Skill detection (pure)
# =============================================================================


def _contains(haystack: str, needle: str) -> bool:
    """Substring containment; very short terms must match on word boundaries."""
    needle = needle.lower().strip()
    if not needle:
        return False
    if len(needle) <= 2:
        return re.search(rf"(?<![a-z0-9]){re.escape(needle)}(?![a-z0-9])", haystack) is not None
    return needle in haystack


def detect_skill(question: str, skills: Sequence[Skill]) -> SkillMatch | None:
    """
    Resolve a question to one canonical skill.

    Name containment beats alias containment; within each, the longest
    matched text wins. Hand-authored expansions are tried only when neither
    a name nor an alias matched.

    Args:
        question: Raw question text
        skills: Every skill in the store

    Returns:
        SkillMatch or None
    """
    lower = question.lower()
    best: tuple[int, int, SkillMatch] | None = None

    for skill in skills:
        candidates = [(1, "name", skill.name)] + [(0, "alias", a) for a in skill.aliases]
        for rank, via, text in candidates:
            if not _contains(lower, text):
                continue
            key = (rank, len(text))
            if best is None or key > best[:2]:
                best = (rank, len(text), SkillMatch(skill=skill, matched_text=text, via=via))

    if best is not None:
        return best[2]

    by_name = {s.name.lower(): s for s in skills}
    for token, canonical in sorted(SKILL_EXPANSIONS.items(), key=lambda kv: -len(kv[0])):
        if re.search(rf"(?<![a-z0-9]){re.escape(token)}(?![a-z0-9])", lower):
            skill = by_name.get(canonical.lower())
            if skill is not None:
                return SkillMatch(skill=skill, matched_text=token, via="expansion")
    return None


def merge_matched_skills(trigram: Sequence[MatchedSkill], alias: Sequence[MatchedSkill]) -> list[MatchedSkill]:
    """Deduplicate by skill id, keeping the trigram match when both exist."""
    merged: dict[str, MatchedSkill] = {}
    for s in trigram:
        merged.setdefault(s.skill_id, s)
    for s in alias:
        merged.setdefault(s.skill_id, s)
    return list(merged.values())


def _legitimate_meta(ctx: RetrievalContext) -> bool:
    skill_name = ctx.skill.name if ctx.skill else None
    return ctx.about_assistant or ctx.policy.is_self_evident_skill(skill_name)


def _keep_selection(ctx: RetrievalContext, ranked: list[RankedCandidate], stage: str) -> bool:
    """Apply the candidate cap and reject a selection made only of the meta project."""
    top = ranked[: ctx.policy.max_candidates]
    if not top:
        return False
    if only_meta(top) and not _legitimate_meta(ctx):
        log_with_context(logger, logging.INFO, "Discarding meta-only selection", stage=stage)
        return False
    ctx.selected = top
    return True


# =============================================================================
# Stages
# =============================================================================


async def global_stats_stage(ctx: RetrievalContext, repo: PortfolioReader) -> StageOutcome:
    ctx.stats = await repo.global_stats()
    ctx.use_source("global_stats")
    stats = ctx.stats
    if stats.total_dashboard_pages > 0:
        ctx.trace.add(f"Searching {_plural(stats.total_dashboard_pages, 'dashboard')} across the portfolio…")
    if stats.total_skills > 0 and stats.published_projects > 0:
        ctx.trace.add(
            f"Scanning {_plural(stats.total_skills, 'skill')} across "
            f"{_plural(stats.published_projects, 'published project')}…"
        )
    return CONTINUE


async def detect_skill_stage(ctx: RetrievalContext, repo: PortfolioReader) -> StageOutcome:
    ctx.skills = await repo.list_skills()
    ctx.skill_match = detect_skill(ctx.question, ctx.skills)
    if ctx.skill_match:
        log_with_context(
            logger,
            logging.DEBUG,
            "Skill detected",
            skill=ctx.skill_match.skill.name,
            via=ctx.skill_match.via,
        )
    return CONTINUE


async def dashboard_density_stage(ctx: RetrievalContext, repo: PortfolioReader) -> StageOutcome:
    if ctx.skill is None:
        return CONTINUE
    pages = await repo.dashboard_pages_for_skill(ctx.skill.id)
    distinct: dict[str, DashboardPage] = {}
    for page in pages:
        distinct.setdefault(page.url, page)
    if len(distinct) < DASHBOARD_DENSITY_MIN:
        return CONTINUE

    ctx.use_source("dashboards")
    ctx.trace.add(f"Found {_plural(len(distinct), 'dashboard')} linked to {ctx.skill.name}.")
    return resolved(ctx.result(ResultKind.DASHBOARDS, dashboards=list(distinct.values())))


async def skill_projects_stage(ctx: RetrievalContext, repo: PortfolioReader) -> StageOutcome:
    if ctx.skill is None:
        return CONTINUE
    candidates = await repo.projects_for_skill(ctx.skill.id)
    if not candidates:
        return CONTINUE

    counts = await repo.project_counts([c.project_id for c in candidates])
    ctx.counts.update(counts)
    ranked = rank_candidates(candidates, counts, ctx.skill.name, ctx.about_assistant, ctx.policy)
    if not _keep_selection(ctx, ranked, "skill_projects"):
        return CONTINUE

    ctx.use_source("skill_projects")
    slugs = ", ".join(r.candidate.slug for r in ctx.selected)
    ctx.trace.add(f"Found {_plural(len(ctx.selected), 'project')} linked to {ctx.skill.name}: {slugs}.")
    return CONTINUE


async def fuzzy_projects_stage(ctx: RetrievalContext, repo: PortfolioReader) -> StageOutcome:
    if ctx.selected:
        return CONTINUE
    candidates = await repo.fuzzy_projects(ctx.question.strip(), limit=FUZZY_PROJECT_LIMIT)
    if not candidates:
        return CONTINUE

    counts = await repo.project_counts([c.project_id for c in candidates])
    ctx.counts.update(counts)
    skill_name = ctx.skill.name if ctx.skill else None
    # Similarity order from the store is kept; scoring only tags categories
    ranked = [score_candidate(c, counts.get(c.project_id), skill_name, ctx.about_assistant, ctx.policy) for c in candidates]
    if not _keep_selection(ctx, ranked, "fuzzy_projects"):
        return CONTINUE

    ctx.use_source("fuzzy_projects")
    described = ", ".join(f"{r.candidate.slug} ({r.candidate.score:.2f})" for r in ctx.selected)
    ctx.trace.add(f"Matched {_plural(len(ctx.selected), 'project')} by fuzzy search: {described}.")
    return CONTINUE


async def matched_skills_stage(ctx: RetrievalContext, repo: PortfolioReader) -> StageOutcome:
    text = ctx.question.strip()
    trigram = await repo.fuzzy_skills(text)
    alias = await repo.alias_skills(text)
    ctx.matched_skills = merge_matched_skills(trigram, alias)
    if ctx.matched_skills:
        ctx.use_source("matched_skills")
    return CONTINUE


async def skill_derived_projects_stage(ctx: RetrievalContext, repo: PortfolioReader) -> StageOutcome:
    if ctx.selected or not ctx.matched_skills:
        return CONTINUE
    candidates = await repo.projects_from_skills(
        [s.skill_id for s in ctx.matched_skills], limit=ctx.policy.max_candidates
    )
    if not candidates:
        return CONTINUE

    counts = await repo.project_counts([c.project_id for c in candidates])
    ctx.counts.update(counts)
    skill_name = ctx.skill.name if ctx.skill else None
    # Order already reflects matched-skill count then summed proof weight
    ranked = [score_candidate(c, counts.get(c.project_id), skill_name, ctx.about_assistant, ctx.policy) for c in candidates]
    if not _keep_selection(ctx, ranked, "skill_derived_projects"):
        return CONTINUE

    ctx.use_source("skill_derived_projects")
    ctx.trace.add(
        f"Derived {_plural(len(ctx.selected), 'project')} from "
        f"{_plural(len(ctx.matched_skills), 'matched skill')}."
    )
    return CONTINUE


async def no_evidence_fallback_stage(ctx: RetrievalContext, repo: PortfolioReader) -> StageOutcome:
    if ctx.selected or ctx.skill is None:
        return CONTINUE
    entry = ctx.fallback.find(ctx.skill.name) or ctx.fallback.find(ctx.skill_match.matched_text)
    if entry is None or not entry.proof:
        return CONTINUE

    ctx.use_source("fallback_evidence")
    ctx.trace.add("Falling back to curated skill evidence (no project mapping in the portfolio database).")
    return resolved(ctx.result(ResultKind.FALLBACK, fallback_skill=entry))


STAGES: tuple[Stage, ...] = (
    global_stats_stage,
    detect_skill_stage,
    dashboard_density_stage,
    skill_projects_stage,
    fuzzy_projects_stage,
    matched_skills_stage,
    skill_derived_projects_stage,
    no_evidence_fallback_stage,
)


# =============================================================================
# Driver
# =============================================================================


async def _finalize(ctx: RetrievalContext, repo: PortfolioReader) -> RetrievalResult:
    """Fetch profiles for the selection; drafts never leave this function."""
    if not ctx.selected:
        if ctx.matched_skills:
            names = ", ".join(s.skill_name for s in ctx.matched_skills[:3])
            more = "..." if len(ctx.matched_skills) > 3 else ""
            ctx.trace.add(f"Matched {_plural(len(ctx.matched_skills), 'skill')}: {names}{more}.")
            personality = await repo.public_personality(WORK_PERSONALITY_CATEGORIES)
            return ctx.result(ResultKind.EVIDENCE, personality=personality)
        return ctx.result(ResultKind.NONE)

    ids = [r.candidate.project_id for r in ctx.selected]
    profiles = [p for p in await repo.project_profiles(ids) if p.is_published]
    missing = [pid for pid in ids if pid not in ctx.counts]
    if missing:
        ctx.counts.update(await repo.project_counts(missing))
    ctx.use_source("project_profiles")

    described = []
    for profile in profiles:
        counts = ctx.counts.get(profile.project_id)
        skills_n = counts.skills_count if counts else len(profile.skills)
        dashboards_n = counts.dashboard_pages if counts else 0
        detail = _plural(skills_n, "skill")
        if dashboards_n > 0:
            detail += f", {_plural(dashboards_n, 'dashboard')}"
        described.append(f"{profile.slug} ({detail})")
    if described:
        ctx.trace.add(f"Top matches: {', '.join(described)}.")

    personality = await repo.public_personality(WORK_PERSONALITY_CATEGORIES)
    kind = ResultKind.EVIDENCE if profiles or ctx.matched_skills else ResultKind.NONE
    return ctx.result(kind, profiles=profiles, personality=personality)


def _store_failure_result(ctx: RetrievalContext) -> RetrievalResult:
    """Degraded result built only from the curated fallback file."""
    entry = None
    if ctx.skill_match is not None:
        entry = ctx.fallback.find(ctx.skill_match.skill.name) or ctx.fallback.find(ctx.skill_match.matched_text)
    if entry is None:
        entry = ctx.fallback.match_question(ctx.question)

    if entry is None or not entry.proof:
        return RetrievalResult(kind=ResultKind.NONE, store_available=False)
    return RetrievalResult(
        kind=ResultKind.FALLBACK,
        fallback_skill=entry,
        sources_used=["fallback_evidence"],
        store_available=False,
    )


async def run_retrieval(
    question: str,
    repo: PortfolioReader,
    settings: Settings | None = None,
    policy: ScoringPolicy | None = None,
    fallback: FallbackEvidence | None = None,
    stages: Sequence[Stage] = STAGES,
) -> RetrievalResult:
    """
    Run the retrieval stages for one question.

    Args:
        question: Trimmed question that passed moderation
        repo: Store reader
        settings: Settings (defaults to cached settings)
        policy: Ranking constants (defaults from settings)
        fallback: Curated fallback evidence (defaults to the configured file)
        stages: Stage sequence, overridable in tests

    Returns:
        RetrievalResult
    """
    settings = settings or get_settings()
    ctx = RetrievalContext(
        question=question,
        policy=policy or ScoringPolicy.from_settings(settings),
        fallback=fallback if fallback is not None else load_fallback_evidence(settings.FALLBACK_EVIDENCE_PATH),
        about_assistant=is_assistant_question(question, settings.ASSISTANT_NAME),
        trace_max=settings.TRACE_MAX_LINES,
    )

    start = time.monotonic()
    try:
        for stage in stages:
            outcome = await stage(ctx, repo)
            if outcome.resolved:
                result = outcome.result
                break
        else:
            result = await _finalize(ctx, repo)
    except StoreUnavailableError as e:
        log_with_context(
            logger,
            logging.WARNING,
            "Store unavailable, degrading to fallback evidence",
            error=str(e)[:120],
            question=preview(question),
        )
        result = _store_failure_result(ctx)

    log_with_context(
        logger,
        logging.INFO,
        "Retrieval complete",
        kind=result.kind.value,
        projects=len(result.profiles),
        matched_skills=len(result.matched_skills),
        duration_ms=int((time.monotonic() - start) * 1000),
    )
    return result
