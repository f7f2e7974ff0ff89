"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from portfolio_agent.api import router as api_router
from portfolio_agent.core.abuse_guard import AbuseGuard
from portfolio_agent.core.ask_service import AskService
from portfolio_agent.core.config import get_settings
from portfolio_agent.core.errors import StoreUnavailableError
from portfolio_agent.core.llm import OpenAIAnswerGenerator
from portfolio_agent.core.logging import get_logger
from portfolio_agent.core.schemas_ask import AskResponse
from portfolio_agent.db.pool import close_pg_pool, init_pg_pool
from portfolio_agent.db.portfolio import PortfolioRepository

logger = get_logger(__name__)


def build_ask_service() -> AskService:
    """Wire the production collaborators."""
    settings = get_settings()
    return AskService(
        repo=PortfolioRepository(),
        generator=OpenAIAnswerGenerator(settings),
        guard=AbuseGuard(settings=settings),
        settings=settings,
    )


def create_app(ask_service: AskService | None = None, use_store_pool: bool = True) -> FastAPI:
    """
    Build the application.

    Args:
        ask_service: Pre-built service (tests inject fakes here)
        use_store_pool: Open the PostgreSQL pool during lifespan

    Returns:
        FastAPI app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if use_store_pool:
            await init_pg_pool()
        yield
        if use_store_pool:
            await close_pg_pool()

    app = FastAPI(
        title="Portfolio Evidence Agent",
        description="Evidence-grounded answers about one person's skills and projects",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.ask_service = ask_service or build_ask_service()

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        settings = get_settings()
        body = AskResponse(answer=f"Request body is malformed. {settings.CONTACT_LINE}", trace=[])
        return JSONResponse(content=body.to_payload(), status_code=400)

    @app.get("/health")
    async def health_check() -> JSONResponse:
        """Health check endpoint. Store problems are reported, not raised."""
        store: dict = {"reachable": False}
        repo = getattr(app.state.ask_service, "repo", None)
        if repo is not None and hasattr(repo, "integrity_report"):
            try:
                store = {"reachable": True, "integrity": await repo.integrity_report()}
            except StoreUnavailableError:
                logger.warning("Health check: analytical store unreachable")
        return JSONResponse(content={"status": "ok", "store": store}, status_code=200)

    app.include_router(api_router, prefix="/api")
    return app


app = create_app()


if __name__ == "__main__":
    import os

    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
