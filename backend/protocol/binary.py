# backend/protocol/binary.py
"""
Binary framing for remote audio capture.

Client → Server (audio):
    4 bytes     seq_num (u32, little-endian)
    8192 bytes  PCM16 audio (4096 samples, mono, 16 kHz)

Usage example:

    frame = decode_c2s_frame(payload, ts_ms=now_ms)

    result = check_sequence_gap(last_seq=prev_seq, current_seq=frame.sequence_num)
    if result.gap:
        log_event({
            "event_type": "SEQ_GAP_DETECTED",
            "expected": result.expected,
            "actual": result.actual,
            "gap_size": result.gap_size,
        })
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Optional

from audio.frames import AudioFrame
from spec import (
    AUDIO_BYTES_PER_FRAME_PCM,
    C2S_FRAME_BYTES_TOTAL,
    C2S_SEQ_NUM_BYTES,
    SEQ_NUM_START,
    SEQ_NUM_MAX,
)


# -------------------------
# Exceptions
# -------------------------

class BinaryProtocolError(Exception):
    """Base class for binary protocol errors."""


class InvalidFrameLength(BinaryProtocolError):
    """
    Raised when a binary audio frame does not match the expected byte length.

    The frame is unsafe to process and must be dropped.
    """


class InvalidSequenceNumber(BinaryProtocolError):
    """Raised when a sequence number is outside the valid range."""


# -------------------------
# Low-level helpers
# -------------------------

def _u32_le(value: int) -> bytes:
    return struct.pack("<I", value)


def _read_u32_le(buf: bytes, offset: int = 0) -> int:
    return struct.unpack_from("<I", buf, offset)[0]


def is_seq_next(prev: int, current: int) -> bool:
    """
    Return True if `current` is the expected next sequence number
    after `prev`, accounting for wraparound.
    """
    if prev == SEQ_NUM_MAX:
        return current == SEQ_NUM_START
    return current == prev + 1


# -------------------------
# Client → Server (audio)
# -------------------------

def encode_c2s_frame(*, sequence_num: int, pcm_bytes: bytes) -> bytes:
    """
    Encode a client→server audio frame.

    Used by test clients and tooling that stream audio into a session.
    """
    if sequence_num < SEQ_NUM_START or sequence_num > SEQ_NUM_MAX:
        raise InvalidSequenceNumber(f"Invalid seq_num: {sequence_num}")

    if len(pcm_bytes) != AUDIO_BYTES_PER_FRAME_PCM:
        raise InvalidFrameLength(
            f"PCM length {len(pcm_bytes)} != {AUDIO_BYTES_PER_FRAME_PCM}"
        )

    return _u32_le(sequence_num) + pcm_bytes


def decode_c2s_frame(payload: bytes, *, ts_ms: int) -> AudioFrame:
    """
    Decode a client→server audio frame.
    """
    if len(payload) != C2S_FRAME_BYTES_TOTAL:
        raise InvalidFrameLength(
            f"C2S frame length {len(payload)} != {C2S_FRAME_BYTES_TOTAL}"
        )

    seq = _read_u32_le(payload, 0)

    if seq < SEQ_NUM_START or seq > SEQ_NUM_MAX:
        raise InvalidSequenceNumber(f"Invalid seq_num: {seq}")

    return AudioFrame(
        sequence_num=seq,
        pcm_bytes=payload[C2S_SEQ_NUM_BYTES:],
        ts_ms=ts_ms,
    )


# -------------------------
# Sequence gap detection
# -------------------------

@dataclass(frozen=True)
class SeqCheckResult:
    """
    Result of a sequence continuity check.
    """
    gap: bool
    expected: int
    actual: int

    @property
    def gap_size(self) -> int:
        """
        Number of frames skipped (0 if no gap).

        Handles wraparound correctly.
        """
        if not self.gap:
            return 0

        # Linear (no wrap)
        if self.actual > self.expected:
            return self.actual - self.expected

        # Wraparound
        return (SEQ_NUM_MAX - self.expected + 1) + (self.actual - SEQ_NUM_START)


def check_sequence_gap(
    *,
    last_seq: Optional[int],
    current_seq: int,
) -> SeqCheckResult:
    """
    Check whether `current_seq` follows `last_seq`.

    Pure function; never raises.
    """
    if last_seq is None or is_seq_next(last_seq, current_seq):
        return SeqCheckResult(
            gap=False,
            expected=current_seq,
            actual=current_seq,
        )

    expected = SEQ_NUM_START if last_seq == SEQ_NUM_MAX else last_seq + 1

    return SeqCheckResult(
        gap=True,
        expected=expected,
        actual=current_seq,
    )
