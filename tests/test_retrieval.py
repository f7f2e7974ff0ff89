"""Tests for the staged evidence retrieval pipeline."""

import pytest

from portfolio_agent.core.errors import StoreUnavailableError
from portfolio_agent.core.retrieval import (
    ResultKind,
    RetrievalResult,
    TraceLog,
    detect_skill,
    merge_matched_skills,
    resolved,
    run_retrieval,
)
from portfolio_agent.core.schemas_portfolio import MatchedSkill, ProjectCounts, ProjectProfile, SkillProjectCandidate
from tests.fakes.fake_portfolio import FakePortfolioRepository
from tests.fixtures_portfolio import (
    DRAFT_PROJECT_ID,
    EXTRA_DASHBOARD,
    FALLBACK,
    PIPELINE_PROJECT_ID,
    POWER_BI_ID,
    PYTHON_ID,
    SKILLS,
)


async def _run(question, repo, settings):
    return await run_retrieval(question, repo, settings, fallback=FALLBACK)


class TestDetectSkill:
    def test_alias_match(self):
        match = detect_skill("Has Ryan used pbi at work?", SKILLS)
        assert match.skill.name == "Power BI"
        assert match.via == "alias"

    def test_name_beats_alias(self):
        match = detect_skill("Power BI or pandas?", SKILLS)
        assert match.skill.name == "Power BI"
        assert match.via == "name"

    def test_name_with_punctuation(self):
        assert detect_skill("Does Ryan do A/B testing?", SKILLS).skill.name == "A/B Testing"

    def test_expansion_only_when_nothing_else_matches(self):
        match = detect_skill("Has Ryan run a split test?", SKILLS)
        assert match.skill.name == "A/B Testing"
        assert match.via == "expansion"

    def test_expansion_to_unknown_skill_is_ignored(self):
        assert detect_skill("Any synapse work?", SKILLS) is None

    def test_no_match(self):
        assert detect_skill("What about Rust?", SKILLS) is None


class TestTraceLog:
    def test_dedupes_and_caps(self):
        trace = TraceLog()
        for line in ["a", "b", "a", "", "c", "d", "e"]:
            trace.add(line)
        assert trace.lines == ["a", "b", "c", "d", "e"]
        assert trace.capped(4) == ["a", "b", "c", "d"]


def test_merge_matched_skills_prefers_trigram():
    trigram = [MatchedSkill(skill_id="s1", skill_name="Power BI", confidence="expert", score=0.7)]
    alias = [
        MatchedSkill(skill_id="s1", skill_name="Power BI", confidence="expert", score=1.0, match_type="alias"),
        MatchedSkill(skill_id="s2", skill_name="Python", confidence="expert", score=1.0, match_type="alias"),
    ]
    merged = merge_matched_skills(trigram, alias)
    assert [(s.skill_id, s.match_type) for s in merged] == [("s1", "trigram"), ("s2", "alias")]


class TestRunRetrieval:
    @pytest.mark.asyncio
    async def test_skill_projects_rank_dashboard_first(self, repo, settings):
        result = await _run("What Power BI work has Ryan done?", repo, settings)

        assert result.kind == ResultKind.EVIDENCE
        assert result.skill.name == "Power BI"
        assert result.project_slugs[0] == "sales-dashboard"
        assert result.stats.total_dashboard_pages == 5
        assert "skill_projects" in result.sources_used
        assert "project_profiles" in result.sources_used
        assert result.trace[0] == "Searching 5 dashboards across the portfolio…"
        assert result.trace[1] == "Scanning 6 skills across 3 published projects…"
        assert len(result.trace) <= settings.TRACE_MAX_LINES
        assert "fuzzy_projects" not in repo.calls

    @pytest.mark.asyncio
    async def test_personality_limited_to_public_work_categories(self, repo, settings):
        result = await _run("What Power BI work has Ryan done?", repo, settings)
        assert [a.value for a in result.personality] == ["receipts first"]

    @pytest.mark.asyncio
    async def test_dense_dashboards_resolve_to_index(self, repo, settings):
        repo.dashboards[POWER_BI_ID].append(EXTRA_DASHBOARD)
        result = await _run("What Power BI work has Ryan done?", repo, settings)

        assert result.kind == ResultKind.DASHBOARDS
        assert len(result.dashboards) == 3
        assert "projects_for_skill" not in repo.calls
        assert result.trace[-1] == "Found 3 dashboards linked to Power BI."

    @pytest.mark.asyncio
    async def test_duplicate_dashboard_urls_count_once(self, repo, settings):
        repo.dashboards[POWER_BI_ID].append(repo.dashboards[POWER_BI_ID][0])
        result = await _run("What Power BI work has Ryan done?", repo, settings)
        assert result.kind == ResultKind.EVIDENCE

    @pytest.mark.asyncio
    async def test_meta_only_selection_is_discarded(self, repo, settings):
        result = await _run("Has Ryan used FastAPI in production?", repo, settings)

        assert result.profiles == []
        assert "portfolio-assistant" not in result.project_slugs
        assert [s.skill_name for s in result.matched_skills] == ["FastAPI"]
        assert result.kind == ResultKind.EVIDENCE

    @pytest.mark.asyncio
    async def test_meta_project_allowed_for_assistant_questions(self, repo, settings):
        result = await _run("How was RyAgent built with FastAPI?", repo, settings)
        assert result.project_slugs == ["portfolio-assistant"]

    @pytest.mark.asyncio
    async def test_meta_project_allowed_for_self_evident_skill(self, repo, settings):
        result = await _run("Show me Prompt Engineering evidence", repo, settings)
        assert result.project_slugs == ["portfolio-assistant"]

    @pytest.mark.asyncio
    async def test_fuzzy_projects_when_no_skill(self, repo, settings):
        repo.fuzzy_results = [
            SkillProjectCandidate(
                project_id=PIPELINE_PROJECT_ID, slug="lakehouse-pipeline", name="Lakehouse Pipeline",
                score=0.62, match_type="fuzzy",
            )
        ]
        result = await _run("Tell me about the lakehouse pipeline", repo, settings)

        assert result.skill is None
        assert result.project_slugs == ["lakehouse-pipeline"]
        assert "Matched 1 project by fuzzy search: lakehouse-pipeline (0.62)." in result.trace

    @pytest.mark.asyncio
    async def test_fuzzy_projects_keep_similarity_order(self, repo, settings):
        rows = [("flood-map", 0.92, 3, 0), ("b-proj", 0.35, 0, 1), ("c-proj", 0.33, 0, 1), ("d-proj", 0.31, 0, 1)]
        repo.fuzzy_results = []
        for i, (slug, score, dashboards, project_pages) in enumerate(rows):
            pid = f"33333333-0000-0000-0000-00000000000{i}"
            repo.fuzzy_results.append(SkillProjectCandidate(project_id=pid, slug=slug, name=slug, score=score, match_type="fuzzy"))
            repo.profiles[pid] = ProjectProfile(project_id=pid, slug=slug, name=slug, status="published")
            repo.counts[pid] = ProjectCounts(
                project_id=pid, slug=slug, skills_count=12, dashboard_pages=dashboards, project_pages=project_pages
            )

        result = await _run("Tell me about the flood map", repo, settings)

        assert result.project_slugs == ["flood-map", "b-proj", "c-proj"]
        assert "Matched 3 projects by fuzzy search: flood-map (0.92), b-proj (0.35), c-proj (0.33)." in result.trace

    @pytest.mark.asyncio
    async def test_drafts_never_reach_profiles(self, repo, settings):
        repo.fuzzy_results = [
            SkillProjectCandidate(project_id=DRAFT_PROJECT_ID, slug="unreleased-forecast", name="Forecast", score=0.9),
            SkillProjectCandidate(project_id=PIPELINE_PROJECT_ID, slug="lakehouse-pipeline", name="Lakehouse", score=0.5),
        ]
        result = await _run("Tell me about the forecast work", repo, settings)
        assert result.project_slugs == ["lakehouse-pipeline"]

    @pytest.mark.asyncio
    async def test_projects_derived_from_matched_skills(self, repo, settings):
        async def fuzzy_skills(text, limit=10):
            repo.calls.append("fuzzy_skills")
            return [MatchedSkill(skill_id=PYTHON_ID, skill_name="Python", confidence="expert", score=0.4)]

        repo.fuzzy_skills = fuzzy_skills
        result = await _run("Tell me about data pipelines", repo, settings)

        assert result.skill is None
        assert result.project_slugs == ["lakehouse-pipeline"]
        assert "skill_derived_projects" in result.sources_used
        assert "Derived 1 project from 1 matched skill." in result.trace

    @pytest.mark.asyncio
    async def test_curated_fallback_when_skill_has_no_projects(self, repo, settings):
        result = await _run("Has Ryan done geospatial analytics work?", repo, settings)

        assert result.kind == ResultKind.FALLBACK
        assert result.fallback_skill.skill == "Geospatial Analytics"
        assert result.store_available
        assert result.trace[-1] == (
            "Falling back to curated skill evidence (no project mapping in the portfolio database)."
        )

    @pytest.mark.asyncio
    async def test_nothing_found(self, repo, settings):
        result = await _run("What about Rust?", repo, settings)
        assert result.kind == ResultKind.NONE
        assert result.profiles == []

    @pytest.mark.asyncio
    async def test_store_down_degrades_to_fallback(self, settings):
        repo = FakePortfolioRepository(fail=True)
        result = await _run("What Power BI work has Ryan done?", repo, settings)

        assert result.kind == ResultKind.FALLBACK
        assert result.fallback_skill.skill == "Power BI"
        assert not result.store_available
        assert result.trace == []
        assert result.sources_used == ["fallback_evidence"]

    @pytest.mark.asyncio
    async def test_store_failure_midway_uses_detected_skill(self, repo, settings):
        async def broken(skill_id):
            raise StoreUnavailableError("connection reset")

        repo.projects_for_skill = broken
        result = await _run("Any pbi work?", repo, settings)

        assert result.kind == ResultKind.FALLBACK
        assert result.fallback_skill.skill == "Power BI"
        assert result.trace == []

    @pytest.mark.asyncio
    async def test_store_down_without_fallback_match(self, settings):
        result = await _run("What about Rust?", FakePortfolioRepository(fail=True), settings)
        assert result.kind == ResultKind.NONE
        assert not result.store_available

    @pytest.mark.asyncio
    async def test_custom_stages_stop_at_first_resolution(self, repo, settings):
        calls = []

        async def first(ctx, reader):
            calls.append("first")
            return resolved(RetrievalResult(kind=ResultKind.NONE))

        async def second(ctx, reader):
            calls.append("second")
            raise AssertionError("should not run")

        result = await run_retrieval("anything", repo, settings, fallback=FALLBACK, stages=(first, second))
        assert result.kind == ResultKind.NONE
        assert calls == ["first"]
