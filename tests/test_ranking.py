"""Tests for candidate project ranking."""

import pytest

from portfolio_agent.core.ranking import (
    ProjectCategory,
    ScoringPolicy,
    categorize,
    is_assistant_question,
    only_meta,
    rank_candidates,
    score_candidate,
)
from portfolio_agent.core.schemas_portfolio import ProjectCounts, SkillProjectCandidate


@pytest.fixture
def policy(settings):
    return ScoringPolicy.from_settings(settings)


def _candidate(pid: str, slug: str, proof_weight: int, self_referential: bool = False) -> SkillProjectCandidate:
    return SkillProjectCandidate(
        project_id=pid, slug=slug, name=slug.title(), proof_weight=proof_weight, self_referential=self_referential
    )


def _counts(pid: str, slug: str, skills: int, dashboards: int = 0, projects: int = 0) -> ProjectCounts:
    return ProjectCounts(
        project_id=pid, slug=slug, skills_count=skills, dashboard_pages=dashboards, project_pages=projects
    )


DASH = _candidate("d", "sales-dashboard", 4)
META = _candidate("m", "portfolio-assistant", 5, self_referential=True)
PROJ = _candidate("p", "lakehouse-pipeline", 3)
COUNTS = {
    "d": _counts("d", "sales-dashboard", 6, dashboards=2),
    "m": _counts("m", "portfolio-assistant", 10, projects=1),
    "p": _counts("p", "lakehouse-pipeline", 4, projects=1),
}


class TestCategorize:
    def test_self_referential_is_meta(self):
        assert categorize(META, COUNTS["m"]) == ProjectCategory.META

    def test_dashboard_heavy_is_dashboard(self):
        assert categorize(DASH, COUNTS["d"]) == ProjectCategory.DASHBOARD

    def test_project_pages_outnumbering_dashboards(self):
        counts = _counts("p", "lakehouse-pipeline", 4, dashboards=1, projects=2)
        assert categorize(PROJ, counts) == ProjectCategory.PROJECT

    def test_missing_counts_default_to_project(self):
        assert categorize(PROJ, None) == ProjectCategory.PROJECT


class TestScoring:
    def test_dashboard_beats_meta_for_platform_skill(self, policy):
        ranked = rank_candidates([META, DASH], COUNTS, "Power BI", False, policy)
        assert [r.candidate.slug for r in ranked] == ["sales-dashboard", "portfolio-assistant"]
        assert ranked[0].score > ranked[1].score

    def test_project_beats_dashboard_for_non_platform_skill(self, policy):
        dash = _candidate("d", "sales-dashboard", 3)
        ranked = rank_candidates([dash, PROJ], COUNTS, "Python", False, policy)
        assert ranked[0].candidate.slug == "lakehouse-pipeline"

    def test_dashboard_beats_project_for_platform_skill(self, policy):
        dash = _candidate("d", "sales-dashboard", 3)
        ranked = rank_candidates([PROJ, dash], COUNTS, "power bi", False, policy)
        assert ranked[0].candidate.slug == "sales-dashboard"

    def test_meta_bonus_when_question_is_about_assistant(self, policy):
        ranked = rank_candidates([DASH, META], COUNTS, "Power BI", True, policy)
        assert ranked[0].candidate.slug == "portfolio-assistant"

    def test_meta_bonus_for_self_evident_skill(self, policy):
        ranked = rank_candidates([PROJ, META], COUNTS, "Prompt Engineering", False, policy)
        assert ranked[0].category == ProjectCategory.META

    def test_higher_proof_weight_wins_within_category(self, policy):
        strong = _candidate("a", "alpha", 5)
        weak = _candidate("b", "beta", 2)
        ranked = rank_candidates([weak, strong], {}, "Python", False, policy)
        assert [r.candidate.slug for r in ranked] == ["alpha", "beta"]

    def test_ties_keep_retrieval_order(self, policy):
        first = _candidate("a", "alpha", 3)
        second = _candidate("b", "beta", 3)
        ranked = rank_candidates([first, second], {}, None, False, policy)
        assert [r.candidate.slug for r in ranked] == ["alpha", "beta"]

    def test_score_formula_components(self, policy):
        ranked = score_candidate(PROJ, COUNTS["p"], "Python", False, policy)
        expected = policy.default_weights[ProjectCategory.PROJECT] + 3 * policy.proof_multiplier + 4
        assert ranked.score == expected


class TestOnlyMeta:
    def test_only_meta(self, policy):
        meta_only = rank_candidates([META], COUNTS, "FastAPI", False, policy)
        mixed = rank_candidates([META, DASH], COUNTS, "FastAPI", False, policy)
        assert only_meta(meta_only)
        assert not only_meta(mixed)
        assert not only_meta([])


class TestAssistantQuestion:
    @pytest.mark.parametrize(
        "question,expected",
        [
            ("How was RyAgent built?", True),
            ("How does this site work?", True),
            ("Are you an AI?", True),
            ("What Power BI work has Ryan done?", False),
        ],
    )
    def test_detection(self, question, expected):
        assert is_assistant_question(question, "RyAgent") is expected


def test_policy_from_settings_lowercases(settings):
    policy = ScoringPolicy.from_settings(settings)
    assert policy.is_platform_skill("POWER BI")
    assert policy.is_self_evident_skill("prompt engineering")
    assert not policy.is_platform_skill(None)
