"""
Per-kind dispatch slot state enumeration.

Rules:
- This enum defines ONLY the slot states.
- Transitions are defined exclusively in orchestrator/dispatch.py.
"""

from __future__ import annotations

from enum import Enum


class SlotState(str, Enum):
    """
    State of one analysis kind inside the AI Dispatch Scheduler.

    IDLE:
        No pending text, no timer, no request.

    PENDING_DISPATCH:
        Text is waiting for the debounce timer to fire.

    IN_FLIGHT:
        A request for this kind is running. New text may still arrive
        and arm a timer; that timer re-arms itself until the slot frees.
    """

    IDLE = "IDLE"
    PENDING_DISPATCH = "PENDING_DISPATCH"
    IN_FLIGHT = "IN_FLIGHT"
