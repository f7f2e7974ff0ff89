"""Pydantic schemas for the portfolio analytics marts.

Rows arrive from an upstream transformation that already enforces these
constraints; the models re-check the cheap ones (enums, slug shape,
proof-weight range) so a bad row is rejected instead of surfaced.
"""

import re
from enum import Enum
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, Field, field_validator

SLUG_RE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")


class ProjectStatus(str, Enum):
    PUBLISHED = "published"
    DRAFT = "draft"


class SkillConfidence(str, Enum):
    EXPERT = "expert"
    STRONG = "strong"


class PageType(str, Enum):
    HOME = "home"
    ABOUT = "about"
    PROJECT = "project"
    DASHBOARD = "dashboard"
    WRITEUP = "writeup"
    ASSISTANT = "assistant"


class SkillStrength(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class PageRelationship(str, Enum):
    PRIMARY = "primary"
    SUPPORTING = "supporting"


def _check_slug(value: str) -> str:
    if not SLUG_RE.match(value):
        raise ValueError(f"slug is not URL-safe: {value!r}")
    return value


Slug = Annotated[str, AfterValidator(_check_slug)]


class Project(BaseModel):
    """A portfolio project (dim_projects)."""

    id: str
    slug: Slug
    name: str
    summary: str | None = None
    status: ProjectStatus
    repo_url: str | None = None
    demo_url: str | None = None
    self_referential: bool = False

    @property
    def is_published(self) -> bool:
        return self.status == ProjectStatus.PUBLISHED


class Skill(BaseModel):
    """A claimed skill (stg_skills). Weaker claims never reach the store."""

    id: str
    name: str
    confidence: SkillConfidence
    summary: str | None = None
    aliases: list[str] = Field(default_factory=list)

    @field_validator("aliases", mode="before")
    @classmethod
    def _aliases_list(cls, value: Any) -> list[str]:
        if value is None:
            return []
        return [str(a) for a in value if str(a).strip()]


class Page(BaseModel):
    """A site page (dim_pages)."""

    id: str
    slug: Slug
    title: str
    url: str
    page_type: PageType


class ProjectSkill(BaseModel):
    """Fact row linking a project to a skill."""

    project_id: str
    skill_id: str
    strength: SkillStrength
    proof_weight: int = Field(default=3, ge=1, le=5)


class ProjectPage(BaseModel):
    """Fact row linking a project to a page."""

    project_id: str
    page_id: str
    relationship: PageRelationship = PageRelationship.PRIMARY


class PersonalityAttribute(BaseModel):
    """Personality row; only public rows are ever surfaced."""

    id: str
    category: str
    subcategory: str
    value: str
    public: bool = True


class ProjectCounts(BaseModel):
    """Per-project aggregates from fct_project_counts."""

    project_id: str
    slug: Slug
    skills_count: int = 0
    primary_skills_count: int = 0
    dashboard_pages: int = 0
    project_pages: int = 0
    writeup_pages: int = 0


class ProfilePage(BaseModel):
    page_type: PageType
    title: str
    url: str
    slug: Slug
    relationship: PageRelationship = PageRelationship.PRIMARY


class ProfileSkill(BaseModel):
    skill: str
    confidence: SkillConfidence
    strength: SkillStrength
    proof_weight: int = Field(default=3, ge=1, le=5)


_PAGE_TYPE_ORDER = {t: i for i, t in enumerate(sorted(t.value for t in PageType))}
_RELATIONSHIP_ORDER = {"primary": 0, "supporting": 1}


class ProjectProfile(BaseModel):
    """One pre-joined evidence unit (mart_project_profile)."""

    project_id: str
    slug: Slug
    name: str
    summary: str | None = None
    status: ProjectStatus
    repo_url: str | None = None
    demo_url: str | None = None
    self_referential: bool = False
    pages: list[ProfilePage] = Field(default_factory=list)
    skills: list[ProfileSkill] = Field(default_factory=list)

    @field_validator("pages")
    @classmethod
    def _order_pages(cls, pages: list[ProfilePage]) -> list[ProfilePage]:
        return sorted(
            pages,
            key=lambda p: (
                _PAGE_TYPE_ORDER[p.page_type.value],
                _RELATIONSHIP_ORDER[p.relationship.value],
                p.title,
            ),
        )

    @field_validator("skills")
    @classmethod
    def _order_skills(cls, skills: list[ProfileSkill]) -> list[ProfileSkill]:
        return sorted(
            skills,
            key=lambda s: (0 if s.strength == SkillStrength.PRIMARY else 1, -s.proof_weight, s.skill),
        )

    @property
    def is_published(self) -> bool:
        return self.status == ProjectStatus.PUBLISHED

    def skill_names(self) -> list[str]:
        return [s.skill for s in self.skills]

    def evidence_urls(self) -> list[tuple[str, str]]:
        """(title, url) pairs this profile can be cited with, pages first."""
        links = [(p.title, p.url) for p in self.pages]
        if self.repo_url:
            links.append((f"{self.name} repository", self.repo_url))
        if self.demo_url:
            links.append((f"{self.name} demo", self.demo_url))
        return links


class GlobalStats(BaseModel):
    """Portfolio-wide counts shown in the trace and the evidence bundle."""

    published_projects: int = 0
    total_projects: int = 0
    total_skills: int = 0
    total_dashboard_pages: int = 0


class SkillProjectCandidate(BaseModel):
    """A project surfaced by skill-first lookup or fuzzy search."""

    project_id: str
    slug: Slug
    name: str
    proof_weight: int = 0
    score: float = 0.0
    match_type: str = "skill"
    self_referential: bool = False


class MatchedSkill(BaseModel):
    """A skill surfaced by trigram or alias search."""

    skill_id: str
    skill_name: str
    confidence: SkillConfidence
    score: float = 0.0
    match_type: str = "trigram"


class DashboardPage(BaseModel):
    title: str
    url: str
    slug: Slug
