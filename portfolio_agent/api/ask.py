"""API endpoint for evidence-grounded questions."""

import asyncio
import json

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from portfolio_agent.core.abuse_guard import client_identifier
from portfolio_agent.core.ask_service import AskService
from portfolio_agent.core.logging import get_logger
from portfolio_agent.core.schemas_ask import AskResponse

logger = get_logger(__name__)

router = APIRouter()

DISCONNECT_POLL_SECONDS = 0.25
ALLOWED_METHODS = "POST, OPTIONS"


def _json(response: AskResponse, status_code: int = 200, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(content=response.to_payload(), status_code=status_code, headers=headers)


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    """Set cancel_event once the client goes away."""
    while not cancel_event.is_set():
        if await request.is_disconnected():
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


@router.options("/ask")
async def ask_options() -> Response:
    """CORS preflight."""
    return Response(
        status_code=204,
        headers={
            "Allow": ALLOWED_METHODS,
            "Access-Control-Allow-Methods": ALLOWED_METHODS,
            "Access-Control-Allow-Headers": "Content-Type",
        },
    )


@router.post("/ask")
async def ask(request: Request) -> JSONResponse:
    """
    Answer a question about the portfolio.

    Body: {question, history?, pageContext?}

    Returns:
        AskResponse payload. 400 for bad input, 429 with Retry-After when
        rate limited, 500 for generator or internal failures, 200 otherwise
        (policy blocks are reported through meta.blocked).
    """
    service: AskService = request.app.state.ask_service
    client = client_identifier(request.headers, request.client.host if request.client else None)

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        body = None

    cancel_event = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    try:
        outcome = await service.handle(body, client, cancel_event)
    finally:
        watcher.cancel()

    return _json(outcome.response, outcome.status_code, outcome.headers or None)


@router.api_route("/ask", methods=["GET", "PUT", "PATCH", "DELETE"])
async def ask_method_not_allowed() -> JSONResponse:
    return _json(
        AskResponse(answer="Method not allowed. Use POST with a JSON body.", trace=[]),
        status_code=405,
        headers={"Allow": ALLOWED_METHODS},
    )
