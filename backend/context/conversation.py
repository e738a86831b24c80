"""
Trailing conversation context for AI analysis requests.

Responsibilities:
- Store accepted transcript segments in order
- Enforce truncation rules:
  - Max 8 turns OR max 6,000 characters (whichever is hit first)
  - Drop oldest turns until constraints are satisfied
  - Allow a single oversized turn (with warning)
- Provide a serializable representation for LLM consumption

Non-responsibilities:
- No dedup (records arrive already accepted)
- No prompt formatting
- No dispatch decisions
"""

from __future__ import annotations

from dataclasses import dataclass

from observability.logger import log_event
from spec import MAX_CONTEXT_CHARS, MAX_CONTEXT_TURNS
from transcript.models import Speaker


_SPEAKER_LABELS: dict[Speaker | None, str] = {
    Speaker.USER: "Me",
    Speaker.SYSTEM: "Other party",
    None: "Speaker",
}


@dataclass(frozen=True)
class Turn:
    """Single accepted transcript segment."""
    speaker: Speaker | None
    text: str
    turn_id: int


class ConversationContext:
    """
    Mutable trailing context owned by the call session.

    Invariants:
    - Turns are stored in chronological order
    - turn_id is the TranscriptRecord id (monotonic, not contiguous)
    """

    def __init__(self, session_id: str | None = None) -> None:
        self._session_id = session_id
        self._turns: list[Turn] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def add_turn(self, speaker: Speaker | None, text: str, turn_id: int) -> None:
        """Add a transcript segment and enforce truncation rules."""
        self._turns.append(Turn(speaker=speaker, text=text, turn_id=turn_id))
        self._truncate()

    def clear(self) -> None:
        """Drop all turns."""
        self._turns.clear()

    def __len__(self) -> int:
        return len(self._turns)

    def serialize(self, *, omit_trailing: str | None = None) -> list[dict[str, str]]:
        """
        Serialize turns into a role/content structure.

        omit_trailing:
            If the newest turn's text equals this, it is left out
            (the caller is about to send it as the focus message).

        Output format:
        [
          {"role": "user", "content": "Me: ..."},
          {"role": "user", "content": "Other party: ..."},
        ]
        """
        turns = self._turns
        if omit_trailing is not None and turns and turns[-1].text == omit_trailing:
            turns = turns[:-1]

        return [
            {"role": "user", "content": f"{_SPEAKER_LABELS[t.speaker]}: {t.text}"}
            for t in turns
        ]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _truncate(self) -> None:
        while self._violates_limits():
            # If only one turn remains, allow it even if oversized
            if len(self._turns) == 1:
                log_event({
                    "event_type": "context_single_turn_oversized",
                    "level": "WARNING",
                    "session_id": self._session_id,
                    "turn_id": self._turns[0].turn_id,
                    "char_count": len(self._turns[0].text),
                })
                break

            dropped = self._turns.pop(0)
            log_event({
                "event_type": "context_turn_dropped",
                "level": "DEBUG",
                "session_id": self._session_id,
                "turn_id": dropped.turn_id,
                "char_count": len(dropped.text),
            })

    def _violates_limits(self) -> bool:
        """Return True if turn or character limits are exceeded."""
        if len(self._turns) > MAX_CONTEXT_TURNS:
            return True

        total_chars = sum(len(t.text) for t in self._turns)
        return total_chars > MAX_CONTEXT_CHARS
