"""
Ingestion coordinator.

Responsibilities:
- Own the session's ordered TranscriptRecord log (bounded)
- Drop final transcripts whose signature was seen within the TTL
- Decide whether a record is meaningful enough for AI analysis
- Append accepted records to the trailing conversation context
- Forward meaningful records to the AI Dispatch Scheduler (never blocks)

Non-responsibilities:
- No text cleaning (see transcript/normalizer.py)
- No debounce, rate limiting or AI calls (see orchestrator/dispatch.py)
- No UI delivery (the call session emits records)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

from context.conversation import ConversationContext
from observability.logger import log_event
from orchestrator.enums.service import AnalysisKind
from spec import (
    FILLER_TOKENS,
    MEANINGFUL_MIN_CHARS,
    MEANINGFUL_MIN_WORDS,
    TRANSCRIPT_LOG_KEEP_RECORDS,
    TRANSCRIPT_LOG_MAX_RECORDS,
)
from transcript.hash_guard import TranscriptHashGuard
from transcript.models import NormalizedTranscript, TranscriptRecord

if TYPE_CHECKING:
    from orchestrator.dispatch import AIDispatchScheduler


_FILLERS = frozenset(FILLER_TOKENS)
_EDGE_PUNCT = ".,!?;:"


def _is_filler_only(text: str) -> bool:
    words = [w.strip(_EDGE_PUNCT).lower() for w in text.split()]
    return all(not w or w in _FILLERS for w in words)


def is_meaningful(text: str) -> bool:
    """
    True if a transcript is worth AI analysis.

    Requires MEANINGFUL_MIN_WORDS words, MEANINGFUL_MIN_CHARS characters,
    and must not consist of greeting/filler tokens only
    ("um uh okay well okay" is not analysed).
    """
    stripped = text.strip()
    if len(stripped) < MEANINGFUL_MIN_CHARS:
        return False
    if len(stripped.split()) < MEANINGFUL_MIN_WORDS:
        return False
    return not _is_filler_only(stripped)


class IngestionCoordinator:
    """
    Turns normalized final transcripts into records and AI submissions.

    Invariants:
    - record_id is unique and strictly increasing for the session
    - len(records) never exceeds TRANSCRIPT_LOG_MAX_RECORDS
    - Interim transcripts never become records
    """

    def __init__(
        self,
        *,
        session_id: str | None = None,
        hash_guard: TranscriptHashGuard | None = None,
        context: ConversationContext | None = None,
        scheduler: AIDispatchScheduler | None = None,
        kinds: Iterable[AnalysisKind] = (),
        max_records: int = TRANSCRIPT_LOG_MAX_RECORDS,
        keep_records: int = TRANSCRIPT_LOG_KEEP_RECORDS,
    ) -> None:
        if not 0 < keep_records <= max_records:
            raise ValueError("keep_records must be in (0, max_records]")

        self._session_id = session_id
        self._hash_guard = hash_guard or TranscriptHashGuard()
        self._context = context
        self._scheduler = scheduler
        self._kinds: tuple[AnalysisKind, ...] = tuple(kinds)
        self._max_records = max_records
        self._keep_records = keep_records

        self._records: list[TranscriptRecord] = []
        self._next_id = 1

        self._accepted = 0
        self._hash_duplicates = 0
        self._evicted = 0
        self._forwarded = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def records(self) -> tuple[TranscriptRecord, ...]:
        """Current record log, oldest first."""
        return tuple(self._records)

    def ingest(self, transcript: NormalizedTranscript) -> TranscriptRecord | None:
        """
        Accept one normalized transcript.

        Returns the new record, or None if the transcript is interim or a
        hash-guard duplicate.
        """
        if not transcript.is_final:
            return None

        if self._hash_guard.is_duplicate(transcript.text):
            self._hash_duplicates += 1
            log_event({
                "event_type": "HASH_GUARD_DUPLICATE",
                "level": "DEBUG",
                "session_id": self._session_id,
                "char_count": len(transcript.text),
            })
            return None

        record = TranscriptRecord(
            record_id=self._next_id,
            text=transcript.text,
            speaker=transcript.speaker,
            timestamp=transcript.timestamp,
        )
        self._next_id += 1
        self._append(record)
        self._accepted += 1

        if self._context is not None:
            self._context.add_turn(record.speaker, record.text, record.record_id)

        if self._kinds and self._scheduler is not None and is_meaningful(record.text):
            self._scheduler.submit(record.text, self._kinds)
            self._forwarded += 1

        return record

    def snapshot(self) -> dict[str, int]:
        """Lightweight counters for logging."""
        return {
            "records": len(self._records),
            "accepted": self._accepted,
            "hash_duplicates": self._hash_duplicates,
            "evicted": self._evicted,
            "forwarded": self._forwarded,
        }

    def reset(self) -> None:
        """Drop the log and duplicate state. Record ids keep increasing."""
        self._records.clear()
        self._hash_guard.clear()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _append(self, record: TranscriptRecord) -> None:
        self._records.append(record)
        if len(self._records) <= self._max_records:
            return

        dropped = len(self._records) - self._keep_records
        del self._records[:dropped]
        self._evicted += dropped
        log_event({
            "event_type": "TRANSCRIPT_LOG_EVICTED",
            "session_id": self._session_id,
            "evicted": dropped,
            "kept": len(self._records),
        })
