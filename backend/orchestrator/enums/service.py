"""
Analysis kind enumeration.

Rules:
- This enum identifies the AI analyses the scheduler dispatches.
- It must NOT encode behavior (timeouts live in spec.py).
- Each kind has its own debounce slot and at most one request in flight.
"""

from __future__ import annotations

from enum import Enum


class AnalysisKind(str, Enum):
    """
    AI analyses run over meaningful transcript segments.
    """

    TODO = "todo"
    SUGGESTION = "suggestion"
