"""Configuration management for the Portfolio Evidence Agent."""

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    # Environment variables should be set directly
    pass

_DEFAULT_FALLBACK_EVIDENCE = Path(__file__).resolve().parent.parent / "data" / "skills_matrix.json"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Environment
    PORTFOLIO_ENV: str = Field(default="dev", description="Environment: dev, staging, prod")

    # Analytical store (optional: without it every question degrades to fallback evidence)
    DATABASE_URL: str | None = Field(default=None, description="Postgres DSN for the analytics marts")
    DB_POOL_MIN_SIZE: int = Field(default=1, description="Minimum pooled connections")
    DB_POOL_MAX_SIZE: int = Field(default=3, description="Maximum pooled connections")
    DB_CONNECT_TIMEOUT: float = Field(default=10.0, description="Seconds to wait for a connection")
    DB_MAX_IDLE: float = Field(default=10.0, description="Seconds before an idle connection is evicted")

    # Generator configuration
    OPENAI_API_KEY: str | None = Field(default=None, description="OpenAI API key")
    OPENAI_MODEL: str = Field(default="gpt-4o-mini", description="Model for answer generation")
    GENERATOR_TIMEOUT_SECONDS: float = Field(default=15.0, description="Hard deadline for one generation")
    GENERATOR_MAX_TOKENS: int = Field(default=800, description="Max tokens per generated answer")
    GENERATOR_TEMPERATURE: float = Field(default=0.3, description="Sampling temperature")

    # Abuse guard
    RATE_WINDOW_SECONDS: int = Field(default=600, description="Length of one rate window")
    RATE_MAX: int = Field(default=20, description="Requests allowed per rate window")
    STRIKE_LIMIT: int = Field(default=3, description="Strikes before a client is locked out")
    LOCKOUT_SECONDS: int = Field(default=900, description="Lockout duration after the strike limit")

    # Request limits
    MAX_QUESTION_CHARS: int = Field(default=800, description="Max question length after trimming")
    TRACE_MAX_LINES: int = Field(default=4, description="Max search-trace lines per answer")

    # Persona and site
    SUBJECT_NAME: str = Field(default="Ryan", description="Person the assistant answers about")
    ASSISTANT_NAME: str = Field(default="RyAgent", description="Name the assistant uses for itself")
    SITE_BASE_URL: str = Field(default="https://portfolio.example.com", description="Portfolio site root")
    CONTACT_LINE: str = Field(
        default="For direct answers, use the contact form at https://portfolio.example.com/about.",
        description="Human fallback appended to refusals and failures",
    )
    CORRESPONDENT_PHRASES: list[str] = Field(
        default_factory=lambda: ["this is madison"],
        description="Phrases identifying the known correspondent who is always allowed",
    )
    CORRESPONDENT_REPLIES: list[str] = Field(
        default_factory=lambda: [
            "Hey! I'm answering portfolio questions right now, talk soon.",
            "Hi there, busy with recruiter questions, but I'll catch up with you later.",
        ],
        description="Canned replies for the known correspondent",
    )

    # Ranking policy inputs
    PLATFORM_SKILLS: list[str] = Field(
        default_factory=lambda: ["Power BI", "Tableau", "Looker", "Azure Synapse", "Microsoft Fabric"],
        description="Platform/BI skills whose best evidence is a dashboard",
    )
    SELF_EVIDENT_SKILLS: list[str] = Field(
        default_factory=lambda: ["dbt", "Prompt Engineering", "LLM Applications"],
        description="Skills the assistant's own implementation legitimately proves",
    )

    # Evidence and output policy
    FALLBACK_EVIDENCE_PATH: Path = Field(
        default=_DEFAULT_FALLBACK_EVIDENCE,
        description="Lower-trust skill summary file used when the store has no mapping",
    )
    STRIP_PHONE_NUMBERS: bool = Field(default=True, description="Redact phone numbers from generated text")


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance

    Raises:
        ValidationError: If an environment variable has an invalid value
    """
    return Settings()
