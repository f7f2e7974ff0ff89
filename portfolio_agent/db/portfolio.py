"""Read-only queries over the analytics marts.

Every method issues parameterized SQL through the shared pool and converts
driver failures into StoreUnavailableError so callers can degrade to the
fallback evidence source. Rows are re-validated with the pydantic schemas;
a row that fails validation is logged and skipped.
"""

from typing import Any, Sequence, TypeVar

import psycopg
from psycopg_pool import PoolTimeout
from pydantic import BaseModel, ValidationError

from portfolio_agent.core.errors import StoreUnavailableError
from portfolio_agent.core.logging import get_logger
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
from portfolio_agent.db.pool import pg_connection

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_GLOBAL_STATS_SQL = """
select
  (select count(*) from analytics.dim_projects where status = 'published') as published_projects,
  (select count(*) from analytics.dim_projects) as total_projects,
  (select count(*) from analytics.stg_skills) as total_skills,
  (select count(*) from analytics.dim_pages where page_type = 'dashboard') as total_dashboard_pages
"""

_LIST_SKILLS_SQL = """
select skill_id::text as id, name, confidence, summary, aliases
from analytics.stg_skills
order by name
"""

_PROJECTS_FOR_SKILL_SQL = """
select p.project_id::text as project_id, p.slug, p.name, p.self_referential,
       max(ps.proof_weight) as proof_weight
from analytics.fct_project_skills ps
join analytics.dim_projects p on p.project_id = ps.project_id
where ps.skill_id = %(skill_id)s::uuid
  and p.status = 'published'
group by p.project_id, p.slug, p.name, p.self_referential
order by max(ps.proof_weight) desc, p.slug
"""

_COUNTS_SQL = """
select project_id::text as project_id, slug, skills_count, primary_skills_count,
       dashboard_pages, project_pages, writeup_pages
from analytics.fct_project_counts
where project_id = any(%(ids)s::uuid[])
"""

_FUZZY_PROJECTS_SQL = """
select p.project_id::text as project_id, p.slug, p.name, p.self_referential,
       greatest(
         similarity(p.name, %(q)s),
         similarity(p.slug, %(q)s),
         similarity(coalesce(p.summary, ''), %(q)s)
       ) as score
from analytics.dim_projects p
where p.status = 'published'
  and (p.name %% %(q)s or p.slug %% %(q)s or coalesce(p.summary, '') %% %(q)s)
order by score desc, p.slug
limit %(limit)s
"""

_FUZZY_SKILLS_SQL = """
select s.skill_id::text as skill_id, s.name as skill_name, s.confidence,
       similarity(s.name, %(q)s) as score
from analytics.stg_skills s
where s.name %% %(q)s
order by score desc, s.name
limit %(limit)s
"""

_ALIAS_SKILLS_SQL = """
select distinct s.skill_id::text as skill_id, s.name as skill_name, s.confidence
from analytics.stg_skills s
cross join lateral jsonb_array_elements_text(coalesce(s.aliases, '[]'::jsonb)) as a(alias)
where length(a.alias) > 0
  and (position(lower(a.alias) in lower(%(q)s)) > 0
       or lower(a.alias) like '%%' || lower(%(q)s) || '%%')
order by s.name
limit %(limit)s
"""

_PROJECTS_FROM_SKILLS_SQL = """
select p.project_id::text as project_id, p.slug, p.name, p.self_referential,
       count(*) as matched_skill_count,
       sum(ps.proof_weight) as total_proof_weight
from analytics.fct_project_skills ps
join analytics.dim_projects p on p.project_id = ps.project_id
where ps.skill_id = any(%(ids)s::uuid[])
  and p.status = 'published'
group by p.project_id, p.slug, p.name, p.self_referential
order by matched_skill_count desc, total_proof_weight desc, p.slug
limit %(limit)s
"""

_PROFILES_SQL = """
select project_id::text as project_id, slug, name, summary, status,
       repo_url, demo_url, self_referential, pages, skills
from analytics.mart_project_profile
where project_id = any(%(ids)s::uuid[])
"""

_DASHBOARD_PAGES_SQL = """
select distinct pg.title, pg.url, pg.slug
from analytics.fct_project_skills ps
join analytics.dim_projects p on p.project_id = ps.project_id and p.status = 'published'
join analytics.fct_project_pages pp on pp.project_id = ps.project_id
join analytics.dim_pages pg on pg.page_id = pp.page_id
where ps.skill_id = %(skill_id)s::uuid
  and pg.page_type = 'dashboard'
order by pg.title
"""

_PERSONALITY_SQL = """
select personality_id::text as id, category, subcategory, value, public
from analytics.dim_personality
where public = true
  and (%(categories)s::text[] is null or category = any(%(categories)s::text[]))
order by category, subcategory, value
"""

_PAGE_BY_SLUG_SQL = """
select page_id::text as id, slug, title, url, page_type
from analytics.dim_pages
where slug = %(slug)s
"""

_PROJECTS_FOR_PAGE_SQL = """
select pp.project_id::text as project_id
from analytics.fct_project_pages pp
where pp.page_id = %(page_id)s::uuid
order by pp.relationship, pp.project_id
"""

_INTEGRITY_CHECKS = {
    "published_without_skills": """
        select p.slug from analytics.dim_projects p
        where p.status = 'published'
          and not exists (select 1 from analytics.fct_project_skills ps where ps.project_id = p.project_id)
        order by p.slug
    """,
    "published_without_pages": """
        select p.slug from analytics.dim_projects p
        where p.status = 'published'
          and not exists (select 1 from analytics.fct_project_pages pp where pp.project_id = p.project_id)
        order by p.slug
    """,
    "invalid_project_slugs": """
        select slug from analytics.dim_projects
        where slug !~ '^[a-z0-9]+(-[a-z0-9]+)*$'
        order by slug
    """,
    "invalid_page_slugs": """
        select slug from analytics.dim_pages
        where slug !~ '^[a-z0-9]+(-[a-z0-9]+)*$'
        order by slug
    """,
}


def _validated(model: type[ModelT], rows: Sequence[dict[str, Any]]) -> list[ModelT]:
    """Validate rows, dropping (and logging) any that violate the schema."""
    items = []
    for row in rows:
        try:
            items.append(model.model_validate(row))
        except ValidationError as e:
            logger.warning(f"Skipping invalid {model.__name__} row: {e.error_count()} error(s)")
    return items


class PortfolioRepository:
    """Queries the analytical store through the shared connection pool."""

    async def _fetch(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        try:
            async with pg_connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(sql, params or {})
                    return await cur.fetchall()
        except (psycopg.Error, PoolTimeout, RuntimeError) as e:
            # RuntimeError: pool never initialized (no DATABASE_URL)
            logger.error(f"Analytical store query failed: {type(e).__name__}: {e}")
            raise StoreUnavailableError(str(e)) from e

    async def global_stats(self) -> GlobalStats:
        rows = await self._fetch(_GLOBAL_STATS_SQL)
        return GlobalStats.model_validate(rows[0]) if rows else GlobalStats()

    async def list_skills(self) -> list[Skill]:
        return _validated(Skill, await self._fetch(_LIST_SKILLS_SQL))

    async def projects_for_skill(self, skill_id: str) -> list[SkillProjectCandidate]:
        """Published projects linked to a skill, one row per project with its max proof weight."""
        rows = await self._fetch(_PROJECTS_FOR_SKILL_SQL, {"skill_id": skill_id})
        return _validated(SkillProjectCandidate, [{**r, "match_type": "skill"} for r in rows])

    async def project_counts(self, project_ids: Sequence[str]) -> dict[str, ProjectCounts]:
        if not project_ids:
            return {}
        rows = await self._fetch(_COUNTS_SQL, {"ids": list(project_ids)})
        return {c.project_id: c for c in _validated(ProjectCounts, rows)}

    async def fuzzy_projects(self, text: str, limit: int = 5) -> list[SkillProjectCandidate]:
        rows = await self._fetch(_FUZZY_PROJECTS_SQL, {"q": text, "limit": limit})
        return _validated(
            SkillProjectCandidate,
            [{**r, "score": float(r["score"]), "match_type": "fuzzy"} for r in rows],
        )

    async def fuzzy_skills(self, text: str, limit: int = 10) -> list[MatchedSkill]:
        rows = await self._fetch(_FUZZY_SKILLS_SQL, {"q": text, "limit": limit})
        return _validated(
            MatchedSkill,
            [{**r, "score": float(r["score"]), "match_type": "trigram"} for r in rows],
        )

    async def alias_skills(self, text: str, limit: int = 20) -> list[MatchedSkill]:
        rows = await self._fetch(_ALIAS_SKILLS_SQL, {"q": text, "limit": limit})
        return _validated(MatchedSkill, [{**r, "match_type": "alias"} for r in rows])

    async def projects_from_skills(self, skill_ids: Sequence[str], limit: int = 3) -> list[SkillProjectCandidate]:
        """Projects ranked by number of matched skills, then summed proof weight."""
        if not skill_ids:
            return []
        rows = await self._fetch(_PROJECTS_FROM_SKILLS_SQL, {"ids": list(skill_ids), "limit": limit})
        return _validated(
            SkillProjectCandidate,
            [
                {
                    "project_id": r["project_id"],
                    "slug": r["slug"],
                    "name": r["name"],
                    "self_referential": r["self_referential"],
                    "proof_weight": int(r["total_proof_weight"] or 0),
                    "score": float(r["matched_skill_count"]),
                    "match_type": "derived",
                }
                for r in rows
            ],
        )

    async def project_profiles(self, project_ids: Sequence[str]) -> list[ProjectProfile]:
        """Profiles for the given ids, returned in the order the ids were given."""
        if not project_ids:
            return []
        rows = await self._fetch(_PROFILES_SQL, {"ids": list(project_ids)})
        by_id = {p.project_id: p for p in _validated(ProjectProfile, rows)}
        return [by_id[pid] for pid in project_ids if pid in by_id]

    async def dashboard_pages_for_skill(self, skill_id: str) -> list[DashboardPage]:
        return _validated(DashboardPage, await self._fetch(_DASHBOARD_PAGES_SQL, {"skill_id": skill_id}))

    async def public_personality(self, categories: Sequence[str] | None = None) -> list[PersonalityAttribute]:
        rows = await self._fetch(
            _PERSONALITY_SQL,
            {"categories": list(categories) if categories is not None else None},
        )
        # The query already filters; re-check so a private row can never leak
        return [p for p in _validated(PersonalityAttribute, rows) if p.public]

    async def page_with_projects(self, slug: str) -> tuple[Page | None, list[ProjectProfile]]:
        pages = _validated(Page, await self._fetch(_PAGE_BY_SLUG_SQL, {"slug": slug}))
        if not pages:
            return None, []
        page = pages[0]
        rows = await self._fetch(_PROJECTS_FOR_PAGE_SQL, {"page_id": page.id})
        profiles = await self.project_profiles([r["project_id"] for r in rows])
        return page, [p for p in profiles if p.is_published]

    async def integrity_report(self) -> dict[str, list[str]]:
        """Run the upstream integrity checks; each key maps to offending slugs."""
        report = {}
        for name, sql in _INTEGRITY_CHECKS.items():
            rows = await self._fetch(sql)
            report[name] = [r["slug"] for r in rows]
        return report
