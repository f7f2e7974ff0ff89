"""Pydantic schemas for the /ask request and response contract."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChatTurn(BaseModel):
    """A single prior chat turn."""

    role: Literal["user", "assistant"]
    content: str


class PageContext(BaseModel):
    """Page the visitor was on when asking."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    path: str | None = None
    title: str | None = None
    page_slug: str | None = Field(default=None, alias="pageSlug")
    page_type: str | None = Field(default=None, alias="pageType")


class AskRequest(BaseModel):
    """Request body. Length and emptiness are checked by the endpoint so they map to 400."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    question: Any = None
    history: list[ChatTurn] = Field(default_factory=list)
    page_context: PageContext | None = Field(default=None, alias="pageContext")

    @field_validator("history", mode="before")
    @classmethod
    def _history_list(cls, value: Any) -> Any:
        # Non-list history is ignored rather than rejected
        return value if isinstance(value, list) else []

    def clean_question(self) -> str:
        return self.question.strip() if isinstance(self.question, str) else ""


class EvidenceLink(BaseModel):
    title: str
    url: str


class AskMeta(BaseModel):
    """Optional response metadata. Unset fields are omitted from the payload."""

    blocked: bool | None = None
    locked_until: str | None = None
    strikes: int | None = None
    fast_path: bool | None = None
    intent: str | None = None
    sources_used: list[str] | None = None
    matched_skill_name: str | None = None
    matched_project_slugs: list[str] | None = None


class AskResponse(BaseModel):
    """Response body for every /ask outcome, including errors."""

    answer: str
    skills_confirmed: list[str] = Field(default_factory=list)
    evidence_links: list[EvidenceLink] = Field(default_factory=list)
    missing_info: list[str] = Field(default_factory=list)
    trace: list[str] | None = None
    meta: AskMeta | None = None

    def to_payload(self) -> dict[str, Any]:
        payload = self.model_dump(exclude_none=True)
        if self.meta is not None and not payload.get("meta"):
            payload.pop("meta", None)
        return payload


class GeneratedAnswer(BaseModel):
    """Shape the generator is instructed to return. Unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore")

    answer: str
    skills_confirmed: list[Any] = Field(default_factory=list)
    evidence_links: list[Any] = Field(default_factory=list)
    missing_info: list[Any] = Field(default_factory=list)

    @field_validator("skills_confirmed", "evidence_links", "missing_info", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> list[Any]:
        return value if isinstance(value, list) else []
