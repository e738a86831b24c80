"""
AI analysis backend contract.

Purpose:
- Define the interface the AI Dispatch Scheduler calls for one request
  (background analysis) or one user question (chat answer).
- Keep debounce, rate limiting, timeouts and slot state OUT of backends.

Rules:
- This file contains NO logic.
- No retries.
- No knowledge of audio, relay state or UI delivery.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator

from adapters.llm.parsing import AnalysisResult
from context.conversation import ConversationContext
from transcript.models import AnalysisRequest


class AnalysisBackend(ABC):
    """
    Abstract base class for AI analysis backends.

    The backend is a *dumb pipe*:
    request -> vendor -> parsed result.

    Scheduler responsibilities (NOT here):
    - When to call
    - Timeouts and cancellation
    - Rate limiting
    - What to do with results
    """

    @abstractmethod
    async def analyze(
        self,
        request: AnalysisRequest,
        context: ConversationContext | None = None,
    ) -> AnalysisResult:
        """
        Run one analysis.

        Contract:
        - Returns TodoList for AnalysisKind.TODO, InsightList for
          AnalysisKind.SUGGESTION, or ParseError for malformed output.
        - Raises on transport failures (the scheduler logs and drops).
        - Must be cancellable at any await point.
        - Must NOT retry internally.
        """
        raise NotImplementedError

    @abstractmethod
    def answer(
        self,
        query: str,
        context: ConversationContext | None = None,
    ) -> AsyncIterator[str]:
        """
        Answer one user question, yielding the reply in text deltas.

        Contract:
        - Implemented as an async generator.
        - Deltas concatenate to the full answer.
        - Raises on transport failures.
        - Must be cancellable at any await point.
        - Must NOT retry internally.
        """
        raise NotImplementedError
