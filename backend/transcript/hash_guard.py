"""
O(1) duplicate guard for final transcripts.

A transcript's signature is a fixed-size BLAKE2b digest over its length
and three short samples (head, middle, tail) of the lowercased, trimmed
text. Signatures live in a time-bounded cache; expired entries are purged
only once the cache grows past a threshold, so the common path is a
single dict lookup.

A hit does not refresh the entry's timestamp: a transcript repeated
continuously is admitted again once per TTL window.
"""

from __future__ import annotations

import hashlib
import time
from typing import Callable

from spec import (
    HASH_GUARD_CLEANUP_THRESHOLD,
    HASH_GUARD_DIGEST_BYTES,
    HASH_GUARD_SAMPLE_CHARS,
    HASH_GUARD_TTL_MS,
)


def transcript_signature(text: str) -> bytes:
    """
    Fixed-size signature of a transcript.

    Texts shorter than the sample windows collapse to their full content,
    so short transcripts compare exactly.
    """
    norm = text.strip().lower()
    n = HASH_GUARD_SAMPLE_CHARS
    mid = len(norm) // 2
    half = n // 2

    material = "\x1f".join((
        str(len(norm)),
        norm[:n],
        norm[max(0, mid - half):mid + half],
        norm[-n:],
    ))
    return hashlib.blake2b(
        material.encode("utf-8"),
        digest_size=HASH_GUARD_DIGEST_BYTES,
    ).digest()


class TranscriptHashGuard:
    """
    Time-bounded signature cache.

    Invariants:
    - is_duplicate() is O(1) except when a purge runs
    - Entries older than ttl_ms never count as duplicates
    """

    def __init__(
        self,
        *,
        ttl_ms: int = HASH_GUARD_TTL_MS,
        cleanup_threshold: int = HASH_GUARD_CLEANUP_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be > 0")

        self._ttl_s = ttl_ms / 1000.0
        self._cleanup_threshold = cleanup_threshold
        self._clock = clock
        self._seen: dict[bytes, float] = {}

    def is_duplicate(self, text: str) -> bool:
        """
        Return True if an identical signature was recorded within the TTL.

        Records the signature when it is new (or expired).
        """
        sig = transcript_signature(text)
        now = self._clock()

        seen_at = self._seen.get(sig)
        if seen_at is not None and now - seen_at < self._ttl_s:
            return True

        self._seen[sig] = now
        if len(self._seen) > self._cleanup_threshold:
            self._purge(now)
        return False

    def clear(self) -> None:
        """Forget all signatures."""
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)

    def _purge(self, now: float) -> None:
        expired = [sig for sig, ts in self._seen.items() if now - ts >= self._ttl_s]
        for sig in expired:
            del self._seen[sig]
