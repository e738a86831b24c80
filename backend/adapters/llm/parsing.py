"""
Boundary parsing of AI analysis responses.

The AI backend returns loosely shaped text. Nothing past this module ever
sees raw backend output: every response becomes exactly one of

    TodoList     - zero or more validated TodoItems
    InsightList  - zero or more insight strings
    ParseError   - the response did not match the documented contract

Parsing never raises.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Literal, Union

from spec import AI_MAX_INSIGHTS, AI_MAX_TODOS, AI_TODO_MIN_CHARS


Priority = Literal["low", "medium", "high"]

_PRIORITIES: tuple[str, ...] = ("low", "medium", "high")
_CODE_FENCE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


@dataclass(frozen=True)
class TodoItem:
    """One suggested action item."""
    text: str
    priority: Priority = "medium"


@dataclass(frozen=True)
class TodoList:
    """Validated todo extraction result."""
    items: tuple[TodoItem, ...]


@dataclass(frozen=True)
class InsightList:
    """Validated contextual suggestions."""
    insights: tuple[str, ...]


@dataclass(frozen=True)
class ParseError:
    """Response did not match the contract; raw is kept for logging."""
    reason: str
    raw: str


AnalysisResult = Union[TodoList, InsightList, ParseError]


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def strip_code_fences(raw: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    return _CODE_FENCE.sub("", raw.strip()).strip()


def normalize_priority(value: Any) -> Priority:
    """Map anything to low/medium/high (default medium)."""
    if isinstance(value, str) and value.strip().lower() in _PRIORITIES:
        return value.strip().lower()  # type: ignore[return-value]
    return "medium"


def _load_json(raw: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(raw)
    except (TypeError, ValueError):
        return False, None


def _unwrap(data: Any, key: str) -> Any:
    """Accept {"<key>": [...]} as well as a bare list."""
    if isinstance(data, dict) and isinstance(data.get(key), list):
        return data[key]
    return data


# ------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------

def parse_todos(raw: str) -> TodoList | ParseError:
    """
    Parse a todo extraction response.

    Contract:
    - JSON array of objects with a string "text" (or "task")
    - Items whose text is shorter than AI_TODO_MIN_CHARS are dropped
    - At most AI_MAX_TODOS items are kept
    """
    body = strip_code_fences(raw or "")
    if not body:
        return TodoList(items=())

    ok, data = _load_json(body)
    if not ok:
        return ParseError(reason="todos_not_json", raw=raw)

    data = _unwrap(data, "todos")
    if not isinstance(data, list):
        return ParseError(reason="todos_not_array", raw=raw)

    items: list[TodoItem] = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        text = entry.get("text", entry.get("task"))
        if not isinstance(text, str):
            continue
        text = text.strip()
        if len(text) < AI_TODO_MIN_CHARS:
            continue
        items.append(TodoItem(text=text, priority=normalize_priority(entry.get("priority"))))
        if len(items) >= AI_MAX_TODOS:
            break

    return TodoList(items=tuple(items))


def parse_insights(raw: str) -> InsightList | ParseError:
    """
    Parse a contextual-suggestion response.

    Contract:
    - JSON array of objects with "content" (or "text"), or of strings
    - Non-JSON text is taken as a single insight
    - At most AI_MAX_INSIGHTS insights are kept
    """
    body = strip_code_fences(raw or "")
    if not body:
        return InsightList(insights=())

    ok, data = _load_json(body)
    if not ok:
        return InsightList(insights=(body,))

    data = _unwrap(data, "insights")
    if not isinstance(data, list):
        return ParseError(reason="insights_not_array", raw=raw)

    insights: list[str] = []
    for entry in data:
        if isinstance(entry, str):
            text = entry
        elif isinstance(entry, dict):
            text = entry.get("content", entry.get("text"))
        else:
            continue
        if not isinstance(text, str) or not text.strip():
            continue
        insights.append(text.strip())
        if len(insights) >= AI_MAX_INSIGHTS:
            break

    return InsightList(insights=tuple(insights))
