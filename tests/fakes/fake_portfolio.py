"""Fake in-memory portfolio store and generator for retrieval and API tests."""

import asyncio
from typing import Any, Dict, List, Sequence

from portfolio_agent.core.errors import StoreUnavailableError
from portfolio_agent.core.schemas_ask import ChatTurn
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
from tests.fixtures_portfolio import (
    COUNTS,
    GLOBAL_STATS,
    PAGE_PROJECTS,
    PAGES,
    PERSONALITY,
    POWER_BI_DASHBOARDS,
    POWER_BI_ID,
    PROFILES,
    PROJECT_SKILLS,
    SKILLS,
    generated_json,
)


class FakePortfolioRepository:
    """In-memory PortfolioReader. Every call is recorded in ``calls``."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.reset()

    def reset(self):
        """Reset all stores to the sample portfolio."""
        self.calls: List[str] = []
        self.stats: GlobalStats = GLOBAL_STATS.model_copy()
        self.skills: List[Skill] = list(SKILLS)
        self.profiles: Dict[str, ProjectProfile] = dict(PROFILES)
        self.counts: Dict[str, ProjectCounts] = dict(COUNTS)
        self.project_skills: Dict[str, Dict[str, int]] = {k: dict(v) for k, v in PROJECT_SKILLS.items()}
        self.dashboards: Dict[str, List[DashboardPage]] = {POWER_BI_ID: list(POWER_BI_DASHBOARDS)}
        self.fuzzy_results: List[SkillProjectCandidate] = []
        self.personality: List[PersonalityAttribute] = list(PERSONALITY)
        self.pages: Dict[str, Page] = dict(PAGES)
        self.page_projects: Dict[str, List[str]] = {k: list(v) for k, v in PAGE_PROJECTS.items()}

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if self.fail:
            raise StoreUnavailableError(f"fake store down during {name}")

    def _candidate(self, project_id: str, **kwargs: Any) -> SkillProjectCandidate:
        profile = self.profiles[project_id]
        return SkillProjectCandidate(
            project_id=project_id,
            slug=profile.slug,
            name=profile.name,
            self_referential=profile.self_referential,
            **kwargs,
        )

    def _published(self, project_id: str) -> bool:
        profile = self.profiles.get(project_id)
        return profile is not None and profile.is_published

    async def global_stats(self) -> GlobalStats:
        self._record("global_stats")
        return self.stats

    async def list_skills(self) -> List[Skill]:
        self._record("list_skills")
        return list(self.skills)

    async def projects_for_skill(self, skill_id: str) -> List[SkillProjectCandidate]:
        self._record("projects_for_skill")
        rows = [
            self._candidate(pid, proof_weight=weights[skill_id])
            for pid, weights in self.project_skills.items()
            if skill_id in weights and self._published(pid)
        ]
        rows.sort(key=lambda c: (-c.proof_weight, c.slug))
        return rows

    async def project_counts(self, project_ids: Sequence[str]) -> Dict[str, ProjectCounts]:
        self._record("project_counts")
        return {pid: self.counts[pid] for pid in project_ids if pid in self.counts}

    async def fuzzy_projects(self, text: str, limit: int = 5) -> List[SkillProjectCandidate]:
        self._record("fuzzy_projects")
        return list(self.fuzzy_results[:limit])

    async def fuzzy_skills(self, text: str, limit: int = 10) -> List[MatchedSkill]:
        self._record("fuzzy_skills")
        lower = text.lower()
        return [
            MatchedSkill(skill_id=s.id, skill_name=s.name, confidence=s.confidence, score=0.8)
            for s in self.skills
            if s.name.lower() in lower
        ][:limit]

    async def alias_skills(self, text: str, limit: int = 20) -> List[MatchedSkill]:
        self._record("alias_skills")
        words = set(text.lower().replace("?", " ").split())
        return [
            MatchedSkill(skill_id=s.id, skill_name=s.name, confidence=s.confidence, score=1.0, match_type="alias")
            for s in self.skills
            if any(a.lower() in words for a in s.aliases)
        ][:limit]

    async def projects_from_skills(self, skill_ids: Sequence[str], limit: int = 3) -> List[SkillProjectCandidate]:
        self._record("projects_from_skills")
        rows = []
        for pid, weights in self.project_skills.items():
            hits = [w for sid, w in weights.items() if sid in skill_ids]
            if hits and self._published(pid):
                rows.append(self._candidate(pid, proof_weight=sum(hits), score=len(hits), match_type="derived"))
        rows.sort(key=lambda c: (-c.score, -c.proof_weight, c.slug))
        return rows[:limit]

    async def project_profiles(self, project_ids: Sequence[str]) -> List[ProjectProfile]:
        self._record("project_profiles")
        return [self.profiles[pid] for pid in project_ids if pid in self.profiles]

    async def dashboard_pages_for_skill(self, skill_id: str) -> List[DashboardPage]:
        self._record("dashboard_pages_for_skill")
        return list(self.dashboards.get(skill_id, []))

    async def public_personality(self, categories: Sequence[str] | None = None) -> List[PersonalityAttribute]:
        self._record("public_personality")
        return [
            a for a in self.personality
            if a.public and (categories is None or a.category in categories)
        ]

    async def page_with_projects(self, slug: str) -> tuple[Page | None, List[ProjectProfile]]:
        self._record("page_with_projects")
        page = self.pages.get(slug)
        if page is None:
            return None, []
        return page, [self.profiles[pid] for pid in self.page_projects.get(slug, []) if self._published(pid)]

    async def integrity_report(self) -> Dict[str, List[str]]:
        self._record("integrity_report")
        return {
            "published_without_skills": [],
            "published_without_pages": [],
            "invalid_project_slugs": [],
            "invalid_page_slugs": [],
        }


class FakeGenerator:
    """AnswerGenerator returning canned text, optionally after a delay or with an error."""

    def __init__(self, raw: str | None = None, delay: float = 0.0, error: Exception | None = None):
        self.raw = raw if raw is not None else generated_json()
        self.delay = delay
        self.error = error
        self.calls: List[Dict[str, Any]] = []
        self.cancelled = False

    async def generate(self, system_prompt: str, history: Sequence[ChatTurn], user_message: str) -> str:
        self.calls.append({"system_prompt": system_prompt, "history": list(history), "user_message": user_message})
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self.error is not None:
            raise self.error
        return self.raw


class FakeClock:
    """Settable clock for the abuse guard."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
