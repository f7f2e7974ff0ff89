"""Pytest configuration and fixtures."""

import os

import pytest

from portfolio_agent.core.abuse_guard import AbuseGuard, InMemoryAbuseStore
from portfolio_agent.core.ask_service import AskService
from portfolio_agent.core.config import Settings
from tests.fakes.fake_portfolio import FakeClock, FakeGenerator, FakePortfolioRepository
from tests.fixtures_portfolio import FALLBACK


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["OPENAI_API_KEY"] = "test-openai-key"
    os.environ["PORTFOLIO_ENV"] = "test"
    os.environ.pop("DATABASE_URL", None)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        PORTFOLIO_ENV="test",
        DATABASE_URL=None,
        OPENAI_API_KEY="test-openai-key",
        SUBJECT_NAME="Ryan",
        ASSISTANT_NAME="RyAgent",
        SITE_BASE_URL="https://portfolio.example.com",
        CONTACT_LINE="Contact: https://portfolio.example.com/about.",
        GENERATOR_TIMEOUT_SECONDS=2.0,
    )


@pytest.fixture
def repo() -> FakePortfolioRepository:
    return FakePortfolioRepository()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def guard(clock, settings) -> AbuseGuard:
    return AbuseGuard(InMemoryAbuseStore(), clock, settings)


@pytest.fixture
def service(repo, generator, guard, settings) -> AskService:
    return AskService(repo=repo, generator=generator, guard=guard, settings=settings, fallback=FALLBACK)
