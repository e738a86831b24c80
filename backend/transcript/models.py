"""
Transcript data primitives.

Pure data containers only.
No behavior beyond trivial serialization helpers.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from orchestrator.enums.service import AnalysisKind


class Speaker(str, Enum):
    """Who produced an utterance, derived from the capture source."""
    USER = "user"
    SYSTEM = "system"


@dataclass(frozen=True)
class TranscriptEvent:
    """
    One recognition result as delivered by the speech-to-text backend.

    received_at:
        Wall-clock milliseconds when the relay parsed the message.
    """
    text: str
    is_final: bool
    confidence: float
    speaker: Speaker | None
    received_at: int


@dataclass(frozen=True)
class NormalizedTranscript:
    """
    Output of the Transcript Normalizer.

    text is never empty; suppression is expressed as None upstream.
    """
    text: str
    is_final: bool
    speaker: Speaker | None
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation for the UI collaborator."""
        return {
            "text": self.text,
            "is_final": self.is_final,
            "speaker": self.speaker.value if self.speaker else None,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class TranscriptRecord:
    """
    Accepted final transcript.

    record_id:
        Unique, monotonically increasing within a session.
    """
    record_id: int
    text: str
    speaker: Speaker | None
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation for the UI collaborator."""
        return {
            "record_id": self.record_id,
            "text": self.text,
            "speaker": self.speaker.value if self.speaker else None,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class AnalysisRequest:
    """Text submitted to one analysis kind after its debounce window."""
    text: str
    kind: AnalysisKind
    submitted_at: int
