"""
OpenAI-compatible AI analysis backend.

Design notes:
- One backend instance serves every request of a session: both analysis
  kinds and user questions.
- Works with OpenAI and any OpenAI-compatible provider (Groq) through
  the same AsyncOpenAI client; the provider is chosen by base_url.
- Streamed responses are buffered delta by delta into the final text;
  non-streamed responses are read from the single message body. Both go
  through the same boundary parser.
- The backend does NOT retry, time out or rate limit. The scheduler owns
  all of that and cancels this coroutine on timeout.
"""
from __future__ import annotations

from typing import Any, AsyncIterator

from openai import AsyncOpenAI

from adapters.llm.base import AnalysisBackend
from adapters.llm.parsing import AnalysisResult, parse_insights, parse_todos
from adapters.llm.prompts import CHAT_SYSTEM_PROMPT, SUGGESTION_SYSTEM_PROMPT, TODO_SYSTEM_PROMPT
from context.conversation import ConversationContext
from context.serialization import serialize_for_llm
from orchestrator.enums.service import AnalysisKind
from spec import (
    AI_CHAT_MAX_TOKENS,
    AI_CHAT_TEMPERATURE,
    AI_SUGGESTION_MAX_TOKENS,
    AI_SUGGESTION_TEMPERATURE,
    AI_TODO_MAX_TOKENS,
    AI_TODO_TEMPERATURE,
)
from transcript.models import AnalysisRequest


GROQ_BASE_URL = "https://api.groq.com/openai/v1"


def build_llm_client(*, provider: str, api_key: str) -> AsyncOpenAI:
    """Build an AsyncOpenAI client for the given provider (openai | groq)."""
    if provider.lower() == "groq":
        return AsyncOpenAI(api_key=api_key, base_url=GROQ_BASE_URL)

    return AsyncOpenAI(api_key=api_key)


class OpenAIAnalysisBackend(AnalysisBackend):
    """
    Chat-completions analysis backend.

    Args:
        client:
            Vendor client (openai.AsyncOpenAI or compatible).
        model:
            Model identifier string.
        stream:
            Request a streamed completion and buffer deltas.
    """

    def __init__(
        self,
        *,
        client: Any,
        model: str,
        stream: bool = True,
    ) -> None:
        self._client = client
        self._model = model
        self._stream = stream

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def analyze(
        self,
        request: AnalysisRequest,
        context: ConversationContext | None = None,
    ) -> AnalysisResult:
        if request.kind is AnalysisKind.TODO:
            system_prompt = TODO_SYSTEM_PROMPT
            temperature = AI_TODO_TEMPERATURE
            max_tokens = AI_TODO_MAX_TOKENS
        else:
            system_prompt = SUGGESTION_SYSTEM_PROMPT
            temperature = AI_SUGGESTION_TEMPERATURE
            max_tokens = AI_SUGGESTION_MAX_TOKENS

        messages = serialize_for_llm(
            system_prompt=system_prompt,
            context=context,
            segment_text=request.text,
        )

        raw = await self._complete(
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )

        if request.kind is AnalysisKind.TODO:
            return parse_todos(raw)
        return parse_insights(raw)

    async def answer(
        self,
        query: str,
        context: ConversationContext | None = None,
    ) -> AsyncIterator[str]:
        messages = serialize_for_llm(
            system_prompt=CHAT_SYSTEM_PROMPT,
            context=context,
            segment_text=query,
            segment_prefix="",
        )

        response = await self._client.chat.completions.create(
            model=self._model,
            messages=messages,
            temperature=AI_CHAT_TEMPERATURE,
            max_tokens=AI_CHAT_MAX_TOKENS,
            stream=self._stream,
        )

        if not self._stream:
            text = self._extract_message(response)
            if text:
                yield text
            return

        async for chunk in response:
            delta = self._extract_delta(chunk)
            if delta:
                yield delta

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _complete(
        self,
        *,
        messages: list[dict[str, str]],
        temperature: float,
        max_tokens: int,
    ) -> str:
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            stream=self._stream,
        )

        if not self._stream:
            return self._extract_message(response)

        parts: list[str] = []
        async for chunk in response:
            delta = self._extract_delta(chunk)
            if delta:
                parts.append(delta)
        return "".join(parts)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _extract_delta(chunk: Any) -> str:
        """
        Extract token delta from a streamed chunk (OpenAI format).
        """
        try:
            delta = chunk.choices[0].delta
            return delta.content or ""
        except (AttributeError, IndexError):
            return ""

    @staticmethod
    def _extract_message(response: Any) -> str:
        """
        Extract the full message body from a non-streamed response.
        """
        try:
            return response.choices[0].message.content or ""
        except (AttributeError, IndexError):
            return ""
