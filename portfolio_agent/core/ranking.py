"""Candidate project ranking.

score = category weight + proof_weight * PROOF_MULTIPLIER + skills_count
        + meta adjustment

Category weights depend on whether the matched skill is a platform/BI
skill (dashboards are the best evidence) or not (project pages are). The
self-referential project gets a strong penalty unless the question is about
the assistant itself or the skill is one the assistant's own code proves,
in which case it gets a strong bonus instead.

All constants live on ScoringPolicy. Tests assert relative orderings, not
exact numbers, so the constants can be tuned.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Sequence

from portfolio_agent.core.config import Settings, get_settings
from portfolio_agent.core.schemas_portfolio import ProjectCounts, SkillProjectCandidate


class ProjectCategory(str, Enum):
    DASHBOARD = "dashboard"
    PROJECT = "project"
    META = "meta"


PLATFORM_WEIGHTS = {
    ProjectCategory.DASHBOARD: 100,
    ProjectCategory.PROJECT: 50,
    ProjectCategory.META: 0,
}

DEFAULT_WEIGHTS = {
    ProjectCategory.PROJECT: 100,
    ProjectCategory.DASHBOARD: 50,
    ProjectCategory.META: 0,
}


@dataclass(frozen=True)
class ScoringPolicy:
    """Named ranking constants."""

    platform_weights: dict = field(default_factory=lambda: dict(PLATFORM_WEIGHTS))
    default_weights: dict = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    proof_multiplier: int = 10
    meta_penalty: int = -150
    meta_bonus: int = 200
    max_candidates: int = 3
    platform_skills: frozenset[str] = frozenset()
    self_evident_skills: frozenset[str] = frozenset()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ScoringPolicy":
        settings = settings or get_settings()
        return cls(
            platform_skills=frozenset(s.lower() for s in settings.PLATFORM_SKILLS),
            self_evident_skills=frozenset(s.lower() for s in settings.SELF_EVIDENT_SKILLS),
        )

    def is_platform_skill(self, skill_name: str | None) -> bool:
        return bool(skill_name) and skill_name.lower() in self.platform_skills

    def is_self_evident_skill(self, skill_name: str | None) -> bool:
        return bool(skill_name) and skill_name.lower() in self.self_evident_skills


@dataclass
class RankedCandidate:
    candidate: SkillProjectCandidate
    category: ProjectCategory
    score: float


def categorize(candidate: SkillProjectCandidate, counts: ProjectCounts | None) -> ProjectCategory:
    """Derive the evidence category from the project's counts row."""
    if candidate.self_referential:
        return ProjectCategory.META
    if counts is not None and counts.dashboard_pages > 0 and counts.dashboard_pages >= counts.project_pages:
        return ProjectCategory.DASHBOARD
    return ProjectCategory.PROJECT


def is_assistant_question(question: str, assistant_name: str) -> bool:
    """True when the question asks about the assistant or this site itself."""
    lower = question.lower()
    patterns = [
        re.escape(assistant_name.lower()),
        r"\bthis (assistant|chatbot|chat bot|bot|agent|tool|site|website)\b",
        r"\b(how (do|does) (you|this) work|who (built|made) you|what powers you|are you an? (ai|bot))\b",
    ]
    return any(re.search(p, lower) for p in patterns)


def score_candidate(
    candidate: SkillProjectCandidate,
    counts: ProjectCounts | None,
    skill_name: str | None,
    about_assistant: bool,
    policy: ScoringPolicy,
) -> RankedCandidate:
    category = categorize(candidate, counts)
    weights = policy.platform_weights if policy.is_platform_skill(skill_name) else policy.default_weights
    skills_count = counts.skills_count if counts is not None else 0

    score = weights[category] + candidate.proof_weight * policy.proof_multiplier + skills_count
    if category == ProjectCategory.META:
        if about_assistant or policy.is_self_evident_skill(skill_name):
            score += policy.meta_bonus
        else:
            score += policy.meta_penalty

    return RankedCandidate(candidate=candidate, category=category, score=score)


def rank_candidates(
    candidates: Sequence[SkillProjectCandidate],
    counts_by_project: dict[str, ProjectCounts],
    skill_name: str | None,
    about_assistant: bool,
    policy: ScoringPolicy,
) -> list[RankedCandidate]:
    """
    Score and order candidates, highest first.

    Python's sort is stable, so ties keep their retrieval order.

    Args:
        candidates: Candidates in retrieval order
        counts_by_project: Counts rows keyed by project_id
        skill_name: Matched skill, if any
        about_assistant: Whether the question is about the assistant itself
        policy: Scoring constants

    Returns:
        All candidates, ranked
    """
    ranked = [
        score_candidate(c, counts_by_project.get(c.project_id), skill_name, about_assistant, policy)
        for c in candidates
    ]
    ranked.sort(key=lambda r: r.score, reverse=True)
    return ranked


def only_meta(ranked: Iterable[RankedCandidate]) -> bool:
    ranked = list(ranked)
    return bool(ranked) and all(r.category == ProjectCategory.META for r in ranked)
