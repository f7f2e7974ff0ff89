"""API router for the public endpoints."""

from fastapi import APIRouter

from portfolio_agent.api import ask

router = APIRouter()

# Question answering
router.include_router(ask.router, tags=["ask"])
