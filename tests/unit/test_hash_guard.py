# pylint: disable=missing-module-docstring,missing-function-docstring

from transcript.hash_guard import TranscriptHashGuard, transcript_signature


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_signature_ignores_case_and_outer_whitespace():
    assert transcript_signature("  Hello There ") == transcript_signature("hello there")
    assert len(transcript_signature("x" * 1_000)) == 16


def test_signature_distinguishes_length():
    assert transcript_signature("abc") != transcript_signature("abcd")


def test_duplicate_within_ttl():
    clock = FakeClock()
    guard = TranscriptHashGuard(ttl_ms=5_000, clock=clock)

    assert guard.is_duplicate("we need to follow up") is False
    clock.now = 4.9
    assert guard.is_duplicate("we need to follow up") is True


def test_admitted_again_after_ttl_even_when_repeated():
    clock = FakeClock()
    guard = TranscriptHashGuard(ttl_ms=5_000, clock=clock)

    guard.is_duplicate("same text")
    clock.now = 3.0
    assert guard.is_duplicate("same text") is True
    # hits do not refresh: 5s after the first sighting it is new again
    clock.now = 5.0
    assert guard.is_duplicate("same text") is False


def test_purge_only_past_threshold():
    clock = FakeClock()
    guard = TranscriptHashGuard(ttl_ms=1_000, cleanup_threshold=3, clock=clock)

    for i in range(3):
        guard.is_duplicate(f"text {i}")
    clock.now = 10.0
    assert len(guard) == 3

    guard.is_duplicate("text 3")

    assert len(guard) == 1
