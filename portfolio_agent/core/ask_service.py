"""Request orchestration for /ask.

Order: abuse guard (lockout, then rate window) -> request validation ->
intent classification -> deterministic intents -> moderation -> fast-path
professional answers -> retrieval -> templated or generated response.

Every collaborator is injected so tests can count store and generator calls.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Sequence

from pydantic import ValidationError

from portfolio_agent.chains.answer_prompt import build_system_prompt, build_user_message
from portfolio_agent.core.abuse_guard import AbuseGuard
from portfolio_agent.core.config import Settings, get_settings
from portfolio_agent.core.content_moderator import moderate_question
from portfolio_agent.core.errors import (
    GeneratorCancelledError,
    GeneratorFormatError,
    GeneratorTimeoutError,
    GeneratorUnavailableError,
    StoreUnavailableError,
)
from portfolio_agent.core.fallback_evidence import FallbackEvidence
from portfolio_agent.core.fast_paths import (
    acknowledgement_response,
    fast_path_answer,
    lockout_response,
    off_topic_response,
    page_context_response,
    personal_refusal_response,
    personality_response,
    rate_limited_response,
    self_identification_response,
    strike_response,
    work_style_response,
)
from portfolio_agent.core.intent_classifier import Intent, IntentRule, build_intent_rules, classify_intent
from portfolio_agent.core.llm import AnswerGenerator, generate_with_deadline
from portfolio_agent.core.logging import get_logger, log_with_context, preview
from portfolio_agent.core.ranking import ScoringPolicy
from portfolio_agent.core.response_assembler import (
    build_bundle,
    deterministic_response,
    finalize_generated,
    formatting_trouble_response,
    safe_error_response,
)
from portfolio_agent.core.retrieval import PortfolioReader, run_retrieval
from portfolio_agent.core.schemas_ask import AskRequest, AskResponse, PageContext

logger = get_logger(__name__)

MAX_HISTORY_TURNS = 10


@dataclass
class AskOutcome:
    status_code: int
    response: AskResponse
    headers: dict[str, str] = field(default_factory=dict)


def _ok(response: AskResponse) -> AskOutcome:
    return AskOutcome(status_code=200, response=response)


class AskService:
    """Answers one question per call; holds no per-request state."""

    def __init__(
        self,
        repo: PortfolioReader,
        generator: AnswerGenerator,
        guard: AbuseGuard,
        settings: Settings | None = None,
        rules: Sequence[IntentRule] | None = None,
        policy: ScoringPolicy | None = None,
        fallback: FallbackEvidence | None = None,
    ):
        self.settings = settings or get_settings()
        self.repo = repo
        self.generator = generator
        self.guard = guard
        self.rules = list(rules) if rules is not None else build_intent_rules(
            self.settings.SUBJECT_NAME, self.settings.CORRESPONDENT_PHRASES
        )
        self.policy = policy or ScoringPolicy.from_settings(self.settings)
        self.fallback = fallback

    def bad_request(self, message: str) -> AskOutcome:
        return AskOutcome(status_code=400, response=AskResponse(answer=message, trace=[]))

    async def handle(
        self,
        body: Any,
        client: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AskOutcome:
        """
        Answer one /ask request.

        Args:
            body: Decoded JSON body
            client: Client identifier for the abuse guard
            cancel_event: Set by the transport when the client disconnects

        Returns:
            AskOutcome with status code, payload model and extra headers
        """
        start = time.monotonic()
        try:
            outcome = await self._handle(body, client, cancel_event)
        except Exception:
            logger.exception(f"Unhandled error answering question for client: {client}")
            outcome = AskOutcome(
                status_code=500,
                response=safe_error_response("Something went wrong on our side. Please try again.", self.settings),
            )
        log_with_context(
            logger,
            logging.INFO,
            "Ask handled",
            client=client,
            status=outcome.status_code,
            intent=outcome.response.meta.intent if outcome.response.meta else None,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        return outcome

    async def _handle(self, body: Any, client: str, cancel_event: asyncio.Event | None) -> AskOutcome:
        settings = self.settings

        lockout = self.guard.check_lockout(client)
        if lockout.locked:
            return _ok(lockout_response(lockout, self.guard.minutes_left(lockout), settings))

        rate = self.guard.check_rate(client)
        if not rate.allowed:
            return AskOutcome(
                status_code=429,
                response=rate_limited_response(rate.retry_after_seconds, settings),
                headers={"Retry-After": str(rate.retry_after_seconds)},
            )

        if not isinstance(body, dict):
            return self.bad_request("Request body must be a JSON object.")
        try:
            request = AskRequest.model_validate(body)
        except ValidationError:
            return self.bad_request("Request body is malformed.")

        question = request.clean_question()
        if not question:
            return self.bad_request("Missing required field: question")
        if len(question) > settings.MAX_QUESTION_CHARS:
            return self.bad_request(f"Question is too long (max {settings.MAX_QUESTION_CHARS} chars).")

        history = request.history[-MAX_HISTORY_TURNS:]
        intent = classify_intent(question, history, request.page_context, self.rules)
        log_with_context(logger, logging.DEBUG, "Intent classified", client=client, intent=intent.value, question=preview(question))

        deterministic = await self._deterministic(intent, question, request.page_context)
        if deterministic is not None:
            return _ok(deterministic)

        moderation = moderate_question(question, settings.SUBJECT_NAME, settings.CORRESPONDENT_PHRASES)
        if not moderation.allowed:
            if moderation.severity == "strike":
                status = self.guard.add_strike(client)
                return _ok(strike_response(status, settings))
            return _ok(off_topic_response(settings))

        if intent == Intent.FAST_PATH_PROFESSIONAL:
            canned = fast_path_answer(question, settings)
            if canned is not None:
                return _ok(canned)

        result = await run_retrieval(question, self.repo, settings, self.policy, self.fallback)
        templated = deterministic_response(result, settings)
        if templated is not None:
            return _ok(templated)

        bundle = build_bundle(result)
        try:
            raw = await generate_with_deadline(
                self.generator,
                build_system_prompt(settings),
                history,
                build_user_message(question, bundle.to_payload()),
                timeout=settings.GENERATOR_TIMEOUT_SECONDS,
                cancel_event=cancel_event,
            )
        except GeneratorTimeoutError:
            return AskOutcome(
                status_code=500,
                response=safe_error_response(
                    "The request took too long to process. Please try again with a shorter question.", settings
                ),
            )
        except GeneratorCancelledError:
            return AskOutcome(status_code=500, response=safe_error_response("Request cancelled.", settings))
        except GeneratorUnavailableError:
            return AskOutcome(
                status_code=500,
                response=safe_error_response("The assistant is temporarily unavailable. Please try again.", settings),
            )

        try:
            return _ok(finalize_generated(raw, bundle, result, settings))
        except GeneratorFormatError:
            return _ok(formatting_trouble_response(settings))

    async def _deterministic(
        self,
        intent: Intent,
        question: str,
        page_context: PageContext | None,
    ) -> AskResponse | None:
        settings = self.settings
        if intent == Intent.ACKNOWLEDGEMENT:
            return acknowledgement_response(settings)
        if intent == Intent.SELF_IDENTIFICATION:
            return self_identification_response(question, settings)
        if intent == Intent.WORK_STYLE:
            return work_style_response(settings)
        if intent == Intent.PERSONAL:
            return personal_refusal_response(settings)
        if intent == Intent.PAGE_CONTEXT and page_context is not None:
            page, profiles = None, []
            if page_context.page_slug:
                try:
                    page, profiles = await self.repo.page_with_projects(page_context.page_slug)
                except StoreUnavailableError:
                    logger.warning("Store unavailable for page context; answering from the request only")
            return page_context_response(page_context, settings, page, profiles)
        if intent == Intent.PERSONALITY:
            try:
                attributes = await self.repo.public_personality()
            except StoreUnavailableError:
                logger.warning("Store unavailable for personality; using canned deflection")
                attributes = []
            return personality_response(attributes, settings)
        return None
