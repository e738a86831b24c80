"""
Keyword-based analysis backend.

Used when no LLM API key is configured. Pattern matching only: no network,
no model. Results follow the same TodoList / InsightList contract as the
LLM backend so the scheduler treats both the same way. Questions are
answered by quoting the call lines that share words with the question.
"""

from __future__ import annotations

import re
from typing import AsyncIterator

from adapters.llm.base import AnalysisBackend
from adapters.llm.parsing import AnalysisResult, InsightList, Priority, TodoItem, TodoList
from context.conversation import ConversationContext
from orchestrator.enums.service import AnalysisKind
from spec import (
    AI_KEYWORD_CHAT_MAX_LINES,
    AI_KEYWORD_TODO_MIN_CHARS,
    AI_MAX_INSIGHTS,
    AI_MAX_TODOS,
)
from transcript.models import AnalysisRequest


_ACTION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?:need to|have to|should|must|will|going to)\s+([^.!?]+)", re.IGNORECASE),
    re.compile(r"(?:i'll|i will|let me)\s+([^.!?]+)", re.IGNORECASE),
    re.compile(r"(?:action item|todo|task):\s*([^.!?]+)", re.IGNORECASE),
)

_QUERY_TERM = re.compile(r"[a-z0-9']{4,}")

NO_MODEL_ANSWER = "No AI model is configured and nothing said so far matches the question."

_HIGH_PRIORITY_WORDS: tuple[str, ...] = ("urgent", "asap")
_LOW_PRIORITY_WORDS: tuple[str, ...] = ("later", "eventually")

# (keywords, insight)
_INSIGHT_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (
        ("follow up", "next steps", "action items", "schedule", "meeting"),
        "Follow-up required: the discussion points to next steps or follow-up actions.",
    ),
    (
        ("problem", "issue", "concern", "risk", "challenge", "difficulty", "blocker"),
        "Potential risk: the discussion mentions challenges that may need attention.",
    ),
    (
        ("opportunity", "improve", "optimize", "enhance", "grow", "expand"),
        "Opportunity: improvements or growth were discussed.",
    ),
)


def _priority_for(text: str) -> Priority:
    lower = text.lower()
    if any(word in lower for word in _HIGH_PRIORITY_WORDS):
        return "high"
    if any(word in lower for word in _LOW_PRIORITY_WORDS):
        return "low"
    return "medium"


def extract_keyword_todos(text: str) -> TodoList:
    """Action-phrase todos, at most AI_MAX_TODOS."""
    priority = _priority_for(text)
    items: list[TodoItem] = []
    seen: set[str] = set()

    for pattern in _ACTION_PATTERNS:
        for match in pattern.finditer(text):
            todo = match.group(1).strip()
            if len(todo) < AI_KEYWORD_TODO_MIN_CHARS or todo.lower() in seen:
                continue
            seen.add(todo.lower())
            items.append(TodoItem(text=todo, priority=priority))

    return TodoList(items=tuple(items[:AI_MAX_TODOS]))


def extract_keyword_insights(text: str) -> InsightList:
    """Rule-based insights, at most AI_MAX_INSIGHTS."""
    lower = text.lower()
    insights = [
        insight
        for keywords, insight in _INSIGHT_RULES
        if any(keyword in lower for keyword in keywords)
    ]
    return InsightList(insights=tuple(insights[:AI_MAX_INSIGHTS]))


def answer_from_context(query: str, context: ConversationContext | None) -> str:
    """
    Quote the most recent call lines sharing a word (4+ letters) with the
    question, oldest first, at most AI_KEYWORD_CHAT_MAX_LINES.
    """
    terms = set(_QUERY_TERM.findall(query.lower()))
    lines = [m["content"] for m in context.serialize()] if context is not None else []

    hits: list[str] = []
    for line in reversed(lines):
        if len(hits) == AI_KEYWORD_CHAT_MAX_LINES:
            break
        if terms & set(_QUERY_TERM.findall(line.split(": ", 1)[-1].lower())):
            hits.append(line)

    if not hits:
        return NO_MODEL_ANSWER
    quoted = "\n".join(f"- {line}" for line in reversed(hits))
    return f"No AI model is configured. Closest lines from the call:\n{quoted}"


class KeywordAnalysisBackend(AnalysisBackend):
    """Offline fallback backend."""

    async def analyze(
        self,
        request: AnalysisRequest,
        context: ConversationContext | None = None,
    ) -> AnalysisResult:
        if request.kind is AnalysisKind.TODO:
            return extract_keyword_todos(request.text)
        return extract_keyword_insights(request.text)

    async def answer(
        self,
        query: str,
        context: ConversationContext | None = None,
    ) -> AsyncIterator[str]:
        yield answer_from_context(query, context)
