"""
Audio frame primitives.

Pure data containers only.
No behavior, no queues, no timing logic.
"""

from __future__ import annotations
from dataclasses import dataclass


@dataclass(frozen=True)
class AudioFrame:
    """
    Canonical audio frame handed from capture to the relay.

    sequence_num:
        Monotonic sequence number assigned by the producer (local frame
        assembler or remote client). Used for gap detection and debugging.

    pcm_bytes:
        Raw PCM16 little-endian mono 16 kHz audio.
        Length MUST equal spec.AUDIO_BYTES_PER_FRAME_PCM.

    ts_ms:
        Wall-clock timestamp (milliseconds) when the frame was completed
        or received. Used for observability only.
    """
    sequence_num: int
    pcm_bytes: bytes
    ts_ms: int
