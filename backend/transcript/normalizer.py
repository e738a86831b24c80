"""
Transcript normalization and deduplication.

Responsibilities:
- Turn raw recognition text into clean, deduplicated text:
    1. sentence-level dedup (repeated sentences within one input)
    2. phrase-level dedup (adjacent repeated 5..2 word phrases)
    3. word-level dedup with compound-word guard
    4. punctuation repair
    5. whitespace collapse
  Steps 1-5 repeat until the text stops changing.
- Suppress byte-identical repeats arriving within a short horizon
- Suppress final transcripts that repeat (or are small fragments of)
  one of the last few accepted finals

Non-responsibilities:
- No record ids, no persistence (see transcript/coordinator.py)
- No hash-based duplicate guard
- No AI dispatch decisions

Interim transcripts go through steps 1-5 only. They never touch the
final-transcript history.
"""

from __future__ import annotations

import re
import time
from collections import deque
from typing import Callable, Deque

from observability.logger import log_event
from spec import (
    ABBREVIATIONS,
    MORPHOLOGICAL_SUFFIXES,
    NORMALIZER_HISTORY_SIZE,
    NORMALIZER_MAX_PASSES,
    NORMALIZER_MIN_OUTPUT_CHARS,
    NORMALIZER_SHORT_HORIZON_MS,
    NORMALIZER_SUBSTRING_RATIO,
    PHRASE_DEDUP_MAX_WORDS,
    PHRASE_DEDUP_MIN_WORDS,
    WORD_DEDUP_LOOKBACK,
    WORD_DEDUP_MIN_STEM_CHARS,
)
from transcript.models import NormalizedTranscript, Speaker, TranscriptEvent


_SENTENCE_SPLIT = re.compile(r"([.!?]+)")
_WORD_PUNCT = re.compile(r"[.,!?;:]")
_TRAILING_PUNCT = re.compile(r"[.,!?;:]$")
_PERIOD_BEFORE_WORD = re.compile(r"\b(\w{2,})\.\s+(?=(\w))")
_REPEATED_TERMINAL = re.compile(r"([.!?])\1+")
_SPACE_BEFORE_PUNCT = re.compile(r"\s+([.,!?;:])")
_MISSING_SPACE_AFTER = re.compile(r"([.,!?;:])([A-Za-z])")
_WHITESPACE = re.compile(r"\s+")

_PHRASE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(rf"\b((?:\w+\W+){{{n - 1}}}\w+)\s+\1\b", re.IGNORECASE)
    for n in range(PHRASE_DEDUP_MAX_WORDS, PHRASE_DEDUP_MIN_WORDS - 1, -1)
)


# ------------------------------------------------------------------
# Pure text pipeline
# ------------------------------------------------------------------

def dedupe_sentences(text: str) -> str:
    """
    Drop sentences that repeat an earlier sentence in the same input.

    "How are you? How are you?" -> "How are you?"
    """
    parts = _SENTENCE_SPLIT.split(text)
    seen: set[str] = set()
    kept: list[str] = []

    for i in range(0, len(parts), 2):
        sentence = parts[i].strip()
        terminator = parts[i + 1] if i + 1 < len(parts) else ""
        if not sentence:
            continue

        key = sentence.lower()
        if key in seen:
            continue
        seen.add(key)
        kept.append(sentence + terminator)

    return " ".join(kept)


def dedupe_phrases(text: str) -> str:
    """
    Collapse immediately repeated phrases, longest phrases first.

    "I want to I want to go" -> "I want to go"
    """
    for pattern in _PHRASE_PATTERNS:
        while True:
            collapsed = pattern.sub(r"\1", text)
            if collapsed == text:
                break
            text = collapsed
    return text


def _bare(word: str) -> str:
    return _WORD_PUNCT.sub("", word.lower())


def _merge_inflection(prev: str, word: str) -> str | None:
    """
    Return the surviving form when one adjacent word is the other plus a
    common inflectional ending ("walk walked" -> "walked"); else None.

    Prefix pairs with any other remainder ("Mac MacBook") are compounds
    and are left alone.
    """
    a, b = _bare(prev), _bare(word)
    if len(a) == len(b):
        return None

    short, long_form, long_word = (a, b, word) if len(a) < len(b) else (b, a, prev)
    if len(short) < WORD_DEDUP_MIN_STEM_CHARS or not long_form.startswith(short):
        return None

    if long_form[len(short):] not in MORPHOLOGICAL_SUFFIXES:
        return None
    return long_word


def dedupe_words(text: str) -> str:
    """
    Drop words that repeat one of the previous two emitted words.

    Comparison ignores case and punctuation. When the repeat carries
    trailing punctuation its twin lacks, the twin takes the punctuated form.

    "Hey Hey bro bro" -> "Hey bro"
    """
    kept: list[str] = []

    for word in text.split():
        norm = _bare(word)
        duplicate = False

        for idx in range(max(0, len(kept) - WORD_DEDUP_LOOKBACK), len(kept)):
            prev = kept[idx]
            if norm and norm == _bare(prev):
                duplicate = True
                if _TRAILING_PUNCT.search(word) and not _TRAILING_PUNCT.search(prev):
                    kept[idx] = word
                break

        if duplicate:
            continue

        if kept:
            merged = _merge_inflection(kept[-1], word)
            if merged is not None:
                kept[-1] = merged
                continue

        kept.append(word)

    return " ".join(kept)


def _drop_stray_period(match: re.Match[str]) -> str:
    # The next word is only looked at, never consumed, so adjacent
    # matches ("go. so. to") are all seen in one substitution.
    word, next_char = match.group(1), match.group(2)
    if word in ABBREVIATIONS:
        return match.group(0)
    if next_char == next_char.lower():
        return f"{word} "
    return match.group(0)


def repair_punctuation(text: str) -> str:
    """
    Fix punctuation artifacts of streaming recognition.

    - "so. we" -> "so we" (except after Mr, Mrs, Dr, ...)
    - "!!" -> "!"
    - "word ." -> "word."
    - "end.Next" -> "end. Next"
    """
    text = _PERIOD_BEFORE_WORD.sub(_drop_stray_period, text)
    text = _REPEATED_TERMINAL.sub(r"\1", text)
    text = _SPACE_BEFORE_PUNCT.sub(r"\1", text)
    text = _MISSING_SPACE_AFTER.sub(r"\1 \2", text)
    return text


def _clean_once(text: str) -> str:
    text = dedupe_sentences(text)
    text = dedupe_phrases(text)
    text = dedupe_words(text)
    text = repair_punctuation(text)
    return _WHITESPACE.sub(" ", text).strip()


def normalize_text(text: str) -> str:
    """
    Run the full cleaning pipeline on one piece of text.

    Punctuation repair can expose new repeats ("we follow. to" becomes
    "we follow to"), so the pipeline is re-run until the text stops
    changing. The result is a fixed point: normalize_text(out) == out.

    Stateless. May return an empty string.
    """
    text = _WHITESPACE.sub(" ", text).strip()
    for _ in range(NORMALIZER_MAX_PASSES):
        cleaned = _clean_once(text)
        if cleaned == text:
            break
        text = cleaned
    return text


# ------------------------------------------------------------------
# Stateful normalizer
# ------------------------------------------------------------------

class TranscriptNormalizer:
    """
    Session-scoped transcript cleaner with suppression state.

    Invariants:
    - Returned text is never shorter than NORMALIZER_MIN_OUTPUT_CHARS
    - Only accepted final transcripts enter the history
    - History holds at most NORMALIZER_HISTORY_SIZE lowercased finals
    """

    def __init__(
        self,
        *,
        session_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_id = session_id
        self._clock = clock

        self._history: Deque[str] = deque(maxlen=NORMALIZER_HISTORY_SIZE)
        self._last_text: str = ""
        self._last_accepted_at: float | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def clean(self, text: str, is_final: bool) -> str | None:
        """
        Clean one transcript. Returns None when it should be suppressed.
        """
        if not text or len(text.strip()) < NORMALIZER_MIN_OUTPUT_CHARS:
            return None

        cleaned = normalize_text(text)
        if len(cleaned) < NORMALIZER_MIN_OUTPUT_CHARS:
            return None

        now = self._clock()

        if self._is_short_horizon_repeat(cleaned, now):
            self._log_suppressed("short_horizon", cleaned, is_final)
            return None

        if is_final and self._is_recent_duplicate(cleaned):
            self._log_suppressed("recent_history", cleaned, is_final)
            return None

        self._last_text = cleaned
        self._last_accepted_at = now

        if is_final:
            self._history.append(cleaned.lower())

        return cleaned

    def normalize(self, event: TranscriptEvent) -> NormalizedTranscript | None:
        """Clean a relay TranscriptEvent into a NormalizedTranscript."""
        cleaned = self.clean(event.text, event.is_final)
        if cleaned is None:
            return None

        speaker: Speaker | None = event.speaker
        return NormalizedTranscript(
            text=cleaned,
            is_final=event.is_final,
            speaker=speaker,
            timestamp=event.received_at,
        )

    def reset(self) -> None:
        """Forget all suppression state (session restart)."""
        self._history.clear()
        self._last_text = ""
        self._last_accepted_at = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _is_short_horizon_repeat(self, cleaned: str, now: float) -> bool:
        if self._last_accepted_at is None or cleaned != self._last_text:
            return False
        return (now - self._last_accepted_at) * 1000 < NORMALIZER_SHORT_HORIZON_MS

    def _is_recent_duplicate(self, cleaned: str) -> bool:
        """
        Exact repeat of a recent final, or a small fragment of one.

        Overlapping or extending text is kept.
        """
        key = cleaned.lower()
        for recent in self._history:
            if recent == key:
                return True
            if key in recent and len(key) < len(recent) * NORMALIZER_SUBSTRING_RATIO:
                return True
        return False

    def _log_suppressed(self, reason: str, text: str, is_final: bool) -> None:
        log_event({
            "event_type": "TRANSCRIPT_SUPPRESSED",
            "level": "DEBUG",
            "session_id": self._session_id,
            "reason": reason,
            "is_final": is_final,
            "char_count": len(text),
        })
