"""Tests for AskService ordering and failure mapping."""

import asyncio

import pytest

from portfolio_agent.core.ask_service import MAX_HISTORY_TURNS, AskService
from tests.fakes.fake_portfolio import FakeGenerator, FakePortfolioRepository
from tests.fixtures_portfolio import FALLBACK

POWER_BI_QUESTION = "What Power BI work has Ryan done?"


@pytest.mark.asyncio
async def test_client_disconnect_cancels_generation(repo, guard, settings):
    generator = FakeGenerator(delay=5.0)
    service = AskService(repo, generator, guard, settings, fallback=FALLBACK)
    cancel_event = asyncio.Event()
    cancel_event.set()

    outcome = await service.handle({"question": POWER_BI_QUESTION}, "c", cancel_event)

    assert outcome.status_code == 500
    assert outcome.response.answer.startswith("Request cancelled.")
    assert generator.cancelled


@pytest.mark.asyncio
async def test_lockout_checked_before_rate_window(service, guard):
    for _ in range(3):
        guard.add_strike("c")

    outcomes = [await service.handle({"question": "ok"}, "c") for _ in range(25)]

    assert all(o.status_code == 200 and o.response.meta.blocked for o in outcomes)
    assert guard.store.get_rate("c") is None


@pytest.mark.asyncio
async def test_rate_checked_before_validation(service):
    for _ in range(20):
        await service.handle(None, "c")
    outcome = await service.handle({"question": "ok"}, "c")
    assert outcome.status_code == 429
    assert outcome.headers == {"Retry-After": "600"}


@pytest.mark.asyncio
async def test_moderation_runs_before_fast_path_answers(service, guard):
    outcome = await service.handle({"question": "Is Ryan senior, damn it?"}, "c")
    assert outcome.response.meta.blocked
    assert outcome.response.meta.strikes == 1
    assert guard.check_lockout("c").strikes == 1


@pytest.mark.asyncio
async def test_deterministic_intents_skip_moderation(service, guard):
    outcome = await service.handle({"question": "this is madison, damn you are busy"}, "c")
    assert outcome.status_code == 200
    assert outcome.response.meta.fast_path
    assert guard.check_lockout("c").strikes == 0


@pytest.mark.asyncio
async def test_personality_survives_store_outage(generator, guard, settings):
    service = AskService(FakePortfolioRepository(fail=True), generator, guard, settings, fallback=FALLBACK)
    outcome = await service.handle({"question": "What are Ryan's hobbies?"}, "c")
    assert outcome.status_code == 200
    assert "hasn't shared details" in outcome.response.answer


@pytest.mark.asyncio
async def test_page_context_survives_store_outage(generator, guard, settings):
    service = AskService(FakePortfolioRepository(fail=True), generator, guard, settings, fallback=FALLBACK)
    outcome = await service.handle(
        {"question": "Explain this page", "pageContext": {"title": "Sales Dashboard", "pageSlug": "sales"}}, "c"
    )
    assert outcome.status_code == 200
    assert outcome.response.answer.startswith("You're looking at Sales Dashboard.")


@pytest.mark.asyncio
async def test_history_passed_to_generator_is_capped(service, generator):
    history = [{"role": "assistant" if i % 2 else "user", "content": str(i)} for i in range(12)]
    await service.handle({"question": POWER_BI_QUESTION, "history": history}, "c")
    assert [t.content for t in generator.calls[0]["history"]] == [str(i) for i in range(12 - MAX_HISTORY_TURNS, 12)]
