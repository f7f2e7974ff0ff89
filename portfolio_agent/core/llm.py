"""Generator client utilities: OpenAI chat completions behind a deadline."""

import asyncio
import json
import re
from typing import Protocol, Sequence, TypeVar

from openai import APIError, AsyncOpenAI
from pydantic import BaseModel

from portfolio_agent.core.config import Settings, get_settings
from portfolio_agent.core.errors import (
    GeneratorCancelledError,
    GeneratorTimeoutError,
    GeneratorUnavailableError,
)
from portfolio_agent.core.logging import get_logger
from portfolio_agent.core.schemas_ask import ChatTurn

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)


class AnswerGenerator(Protocol):
    """Black-box text generator returning JSON-shaped text."""

    async def generate(self, system_prompt: str, history: Sequence[ChatTurn], user_message: str) -> str: ...


class OpenAIAnswerGenerator:
    """AnswerGenerator backed by OpenAI chat completions in JSON mode."""

    def __init__(self, settings: Settings | None = None, client: AsyncOpenAI | None = None):
        self.settings = settings or get_settings()
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.settings.OPENAI_API_KEY:
                raise GeneratorUnavailableError("OPENAI_API_KEY is not configured")
            self._client = AsyncOpenAI(api_key=self.settings.OPENAI_API_KEY)
        return self._client

    async def generate(self, system_prompt: str, history: Sequence[ChatTurn], user_message: str) -> str:
        """
        Run one chat completion.

        Args:
            system_prompt: Instruction carrying the evidence contract
            history: Prior turns, replayed verbatim
            user_message: Question plus the serialized evidence bundle

        Returns:
            Raw message content (may be empty)

        Raises:
            GeneratorUnavailableError: Missing key or API failure
        """
        client = self._get_client()
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend({"role": turn.role, "content": turn.content} for turn in history)
        messages.append({"role": "user", "content": user_message})

        try:
            response = await client.chat.completions.create(
                model=self.settings.OPENAI_MODEL,
                messages=messages,
                temperature=self.settings.GENERATOR_TEMPERATURE,
                max_tokens=self.settings.GENERATOR_MAX_TOKENS,
                response_format={"type": "json_object"},
            )
        except APIError as e:
            logger.error(f"Generator API error: {type(e).__name__}: {e}")
            raise GeneratorUnavailableError(str(e)) from e

        return response.choices[0].message.content or ""


async def generate_with_deadline(
    generator: AnswerGenerator,
    system_prompt: str,
    history: Sequence[ChatTurn],
    user_message: str,
    timeout: float,
    cancel_event: asyncio.Event | None = None,
) -> str:
    """
    Race the generator against a deadline and an optional cancel signal.

    Whichever settles first wins; the losers are cancelled so an abandoned
    call stops consuming the upstream quota.

    Args:
        generator: AnswerGenerator
        system_prompt: System instruction
        history: Prior turns
        user_message: User turn
        timeout: Seconds before GeneratorTimeoutError
        cancel_event: Set when the client disconnects

    Returns:
        Raw generator text

    Raises:
        GeneratorTimeoutError: Deadline elapsed first
        GeneratorCancelledError: cancel_event was set first
    """
    call = asyncio.create_task(generator.generate(system_prompt, history, user_message))
    waiters: set[asyncio.Task] = {call}
    cancel_wait = None
    if cancel_event is not None:
        cancel_wait = asyncio.create_task(cancel_event.wait())
        waiters.add(cancel_wait)

    try:
        done, pending = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        for task in waiters:
            task.cancel()
        raise

    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)

    if call in done:
        if cancel_wait is not None and not cancel_wait.done():
            cancel_wait.cancel()
        return call.result()
    if cancel_wait is not None and cancel_wait in done:
        logger.info("Generator call cancelled: client disconnected")
        raise GeneratorCancelledError("client disconnected")
    logger.warning(f"Generator call exceeded {timeout}s deadline")
    raise GeneratorTimeoutError(f"no answer within {timeout}s")


def _strip_llm_fences(raw_output: str) -> str:
    """Strip markdown code fences from LLM output.

    Handles: ```json ... ```, ``` ... ```, leading/trailing whitespace.
    """
    cleaned = raw_output.strip()

    fence_match = re.search(r"```(?:json)?\s*\n?(.*?)```", cleaned, re.DOTALL)
    if fence_match:
        return fence_match.group(1).strip()

    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_llm_json(raw_output: str, model: type[T]) -> T:
    """
    Parse generator output as JSON and validate against a Pydantic model.

    Args:
        raw_output: Raw string from the generator
        model: Pydantic model class to validate against

    Returns:
        Validated Pydantic model instance

    Raises:
        json.JSONDecodeError: If JSON parsing fails after cleanup
        pydantic.ValidationError: If parsed JSON doesn't match schema
    """
    cleaned = _strip_llm_fences(raw_output)
    parsed = json.loads(cleaned)
    return model.model_validate(parsed)
