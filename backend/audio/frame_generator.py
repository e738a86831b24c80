"""
Fixed-size PCM frame assembly.

Purpose:
- Turn arbitrarily sized blocks of 16 kHz mono PCM16 into fixed-size
  frames (AUDIO_SAMPLES_PER_FRAME samples) tagged with monotonic
  sequence numbers, ready for the relay.

Invariants:
- PCM16 signed, little-endian
- Mono
- 16 kHz
- Every emitted frame is exactly spec.AUDIO_BYTES_PER_FRAME_PCM bytes
- Sequence numbers start at SEQ_NUM_START and wrap at SEQ_NUM_MAX

Design:
- split_pcm_into_frames / bytes_to_frame_count are pure.
- FrameAssembler keeps the partial tail between calls (no padding, no
  skipping, no throttling).
"""

from __future__ import annotations

import time

from audio.frames import AudioFrame
from spec import (
    AUDIO_BYTES_PER_FRAME_PCM,
    SEQ_NUM_MAX,
    SEQ_NUM_START,
)


def split_pcm_into_frames(
    pcm_bytes: bytes,
    *,
    bytes_per_frame: int = AUDIO_BYTES_PER_FRAME_PCM,
) -> list[bytes]:
    """
    Split raw PCM16 bytes into fixed-size frames.

    Drops any incomplete trailing frame.

    Raises:
        ValueError if bytes_per_frame is not a positive even number.
    """
    if bytes_per_frame <= 0 or bytes_per_frame % 2 != 0:
        raise ValueError("bytes_per_frame must be a positive even number")

    whole_frames = len(pcm_bytes) // bytes_per_frame
    end = whole_frames * bytes_per_frame
    return [
        pcm_bytes[offset : offset + bytes_per_frame]
        for offset in range(0, end, bytes_per_frame)
    ]


def bytes_to_frame_count(
    num_bytes: int,
    *,
    bytes_per_frame: int = AUDIO_BYTES_PER_FRAME_PCM,
) -> int:
    """
    Return the number of whole frames represented by num_bytes.
    """
    if num_bytes <= 0:
        return 0
    if bytes_per_frame <= 0:
        raise ValueError("bytes_per_frame must be > 0")
    return num_bytes // bytes_per_frame


class FrameAssembler:
    """
    Accumulates PCM16 bytes and yields complete AudioFrames.

    Not thread-safe: owned by a single producer (the capture callback).
    """

    def __init__(self, *, bytes_per_frame: int = AUDIO_BYTES_PER_FRAME_PCM) -> None:
        if bytes_per_frame <= 0 or bytes_per_frame % 2 != 0:
            raise ValueError("bytes_per_frame must be a positive even number")

        self._bytes_per_frame = bytes_per_frame
        self._buffer = bytearray()
        self._next_seq = SEQ_NUM_START

    @property
    def pending_bytes(self) -> int:
        """Bytes held back waiting for a full frame."""
        return len(self._buffer)

    def push(self, pcm_bytes: bytes) -> list[AudioFrame]:
        """Append PCM bytes; return every frame completed by them."""
        self._buffer.extend(pcm_bytes)
        if len(self._buffer) < self._bytes_per_frame:
            return []

        ts_ms = time.time_ns() // 1_000_000
        frames: list[AudioFrame] = []
        for chunk in split_pcm_into_frames(bytes(self._buffer), bytes_per_frame=self._bytes_per_frame):
            frames.append(AudioFrame(sequence_num=self._next_seq, pcm_bytes=chunk, ts_ms=ts_ms))
            self._next_seq = SEQ_NUM_START if self._next_seq == SEQ_NUM_MAX else self._next_seq + 1

        del self._buffer[: len(frames) * self._bytes_per_frame]
        return frames

    def reset(self) -> None:
        """Drop the partial tail and restart sequence numbering."""
        self._buffer.clear()
        self._next_seq = SEQ_NUM_START
