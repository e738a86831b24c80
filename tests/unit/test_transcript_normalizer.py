# pylint: disable=missing-module-docstring,missing-function-docstring

import random

import pytest

from transcript.models import Speaker, TranscriptEvent
from transcript.normalizer import (
    TranscriptNormalizer,
    dedupe_phrases,
    dedupe_sentences,
    dedupe_words,
    normalize_text,
    repair_punctuation,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000.0


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def normalizer(clock: FakeClock) -> TranscriptNormalizer:
    return TranscriptNormalizer(session_id="sess_test", clock=clock)


# ---------------------------------------------------------------------
# Empty / tiny input
# ---------------------------------------------------------------------

@pytest.mark.parametrize("text", ["", " ", "a", "  b  "])
def test_tiny_input_is_suppressed(normalizer: TranscriptNormalizer, text: str):
    assert normalizer.clean(text, False) is None
    assert normalizer.clean(text, True) is None


# ---------------------------------------------------------------------
# Text pipeline
# ---------------------------------------------------------------------

def test_sentence_dedup():
    assert dedupe_sentences("How are you? How are you?") == "How are you?"
    assert dedupe_sentences("Yes. No. yes.") == "Yes. No."


def test_phrase_dedup():
    assert dedupe_phrases("I want to I want to go") == "I want to go"
    assert dedupe_phrases("we should we should call them") == "we should call them"


def test_word_dedup_with_lookback():
    assert dedupe_words("Hey Hey bro bro") == "Hey bro"
    assert dedupe_words("the cat the dog") == "the cat dog"


def test_word_dedup_keeps_punctuated_form():
    assert dedupe_words("okay okay.") == "okay."


def test_word_dedup_collapses_inflection_only():
    assert dedupe_words("walk walked home") == "walked home"
    assert dedupe_words("Mac MacBook") == "Mac MacBook"


def test_word_dedup_merges_only_listed_suffixes():
    assert dedupe_words("fast fastest lap") == "fastest lap"
    assert dedupe_words("kind kindness") == "kindness"
    assert dedupe_words("dog dogs") == "dog dogs"


def test_punctuation_repair():
    assert repair_punctuation("so. we went") == "so we went"
    assert repair_punctuation("ask Dr. smith") == "ask Dr. smith"
    assert repair_punctuation("Wait!! what") == "Wait! what"
    assert repair_punctuation("done .") == "done."
    assert repair_punctuation("end.Next") == "end. Next"


def test_punctuation_repair_handles_adjacent_stray_periods():
    assert repair_punctuation("go. so. to") == "go so to"
    assert normalize_text("go. so. to") == "go so to"


def test_repeat_exposed_by_punctuation_repair_is_collapsed():
    assert normalize_text("we follow to we follow. to") == "we follow to"


@pytest.mark.parametrize("text", [
    "How are you? How are you?",
    "I want to I want to go",
    "Hey Hey bro bro",
    "so. we need to to follow up up with the client!!",
    "Mac MacBook pro pro.",
    "end.Next time time we talk talk",
    "go. so. to",
    "we follow to we follow. to",
    "walked walked. Mac? b hi? walked? Dr?",
])
def test_normalize_text_is_idempotent(text: str):
    once = normalize_text(text)
    assert normalize_text(once) == once


_VOCAB = (
    "we", "follow", "to", "go", "so", "walk", "walked", "Mac", "MacBook",
    "Dr", "hi", "b", "the", "client", "Next", "up",
)
_PUNCT = ("", "", "", ".", "?", "!", ",", " .", "!!")


def _generated_utterances(count: int, seed: int) -> list[str]:
    rng = random.Random(seed)
    utterances = []
    for _ in range(count):
        words = [
            rng.choice(_VOCAB) + rng.choice(_PUNCT)
            for _ in range(rng.randint(1, 8))
        ]
        utterances.append(" ".join(words))
    return utterances


def test_normalize_text_is_idempotent_on_generated_input():
    for text in _generated_utterances(500, seed=1234):
        once = normalize_text(text)
        assert normalize_text(once) == once, text


def test_clean_examples(normalizer: TranscriptNormalizer, clock: FakeClock):
    assert normalizer.clean("How are you? How are you?", False) == "How are you?"
    clock.advance_ms(100)
    assert normalizer.clean("I want to I want to go", False) == "I want to go"
    clock.advance_ms(100)
    assert normalizer.clean("Hey Hey bro bro", False) == "Hey bro"
    clock.advance_ms(100)
    assert normalizer.clean("Mac MacBook", False) == "Mac MacBook"


# ---------------------------------------------------------------------
# Suppression state
# ---------------------------------------------------------------------

def test_short_horizon_repeat_suppressed(normalizer: TranscriptNormalizer, clock: FakeClock):
    assert normalizer.clean("hello there", False) == "hello there"

    clock.advance_ms(10)
    assert normalizer.clean("hello there", False) is None

    clock.advance_ms(50)
    assert normalizer.clean("hello there", False) == "hello there"


def test_final_exact_repeat_suppressed(normalizer: TranscriptNormalizer, clock: FakeClock):
    text = "we need to follow up with the client"
    assert normalizer.clean(text, True) == text

    clock.advance_ms(1_000)
    assert normalizer.clean(text.upper(), True) is None


def test_final_small_fragment_of_recent_final_suppressed(normalizer: TranscriptNormalizer, clock: FakeClock):
    normalizer.clean("we need to follow up with the client", True)
    clock.advance_ms(1_000)

    assert normalizer.clean("follow up", True) is None
    # overlap that is not a small fragment is kept
    assert normalizer.clean("we need to follow up with the client today", True) is not None


def test_interim_not_checked_against_history(normalizer: TranscriptNormalizer, clock: FakeClock):
    text = "we need to follow up with the client"
    normalizer.clean(text, True)
    clock.advance_ms(1_000)

    assert normalizer.clean(text, False) == text


def test_history_is_bounded(normalizer: TranscriptNormalizer, clock: FakeClock):
    first = "the very first sentence we said"
    normalizer.clean(first, True)
    for i in range(5):
        clock.advance_ms(100)
        normalizer.clean(f"another unrelated sentence number {i}", True)

    clock.advance_ms(100)
    assert normalizer.clean(first, True) == first


def test_normalize_event_carries_metadata(normalizer: TranscriptNormalizer):
    event = TranscriptEvent(
        text="Thanks thanks for joining",
        is_final=True,
        confidence=0.8,
        speaker=Speaker.USER,
        received_at=1234,
    )

    out = normalizer.normalize(event)

    assert out is not None
    assert out.text == "Thanks for joining"
    assert out.speaker is Speaker.USER
    assert out.timestamp == 1234
    assert out.is_final is True


def test_reset_forgets_history(normalizer: TranscriptNormalizer, clock: FakeClock):
    normalizer.clean("we need to follow up", True)
    normalizer.reset()
    clock.advance_ms(1)

    assert normalizer.clean("we need to follow up", True) == "we need to follow up"
