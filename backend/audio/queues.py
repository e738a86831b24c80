# backend/audio/queues.py
"""
Bounded audio frame outbox with canonical depth measurement.

Requirements:
- Depth measured in seconds (not frame count)
- Explicit drop behavior: never block the producer, never grow unbounded
- Drop reasons distinguishable (not connected vs overflow)
- Deterministic, synchronous behavior
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Optional

from audio.frames import AudioFrame
from spec import AUDIO_FRAME_DURATION_S


class DropReason(str, Enum):
    """
    Reason an audio frame was dropped.
    """
    NOT_CONNECTED = "not_connected"
    OVERFLOW = "overflow"


@dataclass
class DropCounters:
    """
    Drop counters for observability.
    """
    not_connected: int = 0
    overflow: int = 0

    def total(self) -> int:
        """Frames dropped for any reason."""
        return self.not_connected + self.overflow


class AudioFrameQueue:
    """
    Bounded FIFO queue for AudioFrame objects.

    Drop rules:
    - drop the NEW frame if enqueue would exceed max_depth_s
    - frames offered while the consumer is not accepting are recorded
      with record_drop(DropReason.NOT_CONNECTED) and never stored
    """

    def __init__(self, *, max_depth_s: float) -> None:
        if max_depth_s <= 0:
            raise ValueError("max_depth_s must be > 0")

        self._max_depth_s: float = max_depth_s
        self._frames: Deque[AudioFrame] = deque()
        self.drops: DropCounters = DropCounters()

    # -------------------------
    # Core queue operations
    # -------------------------

    def enqueue(self, frame: AudioFrame) -> bool:
        """
        Enqueue an AudioFrame.

        Returns:
            True if enqueued
            False if dropped (overflow)
        """
        if self.depth_seconds() + AUDIO_FRAME_DURATION_S > self._max_depth_s:
            self.drops.overflow += 1
            return False

        self._frames.append(frame)
        return True

    def dequeue(self) -> Optional[AudioFrame]:
        """
        Dequeue the oldest AudioFrame.

        Returns None if queue is empty.
        """
        if not self._frames:
            return None
        return self._frames.popleft()

    def record_drop(self, reason: DropReason) -> int:
        """
        Count a frame that was rejected before reaching the queue.

        Returns the updated counter for that reason.
        """
        if reason is DropReason.OVERFLOW:
            self.drops.overflow += 1
            return self.drops.overflow
        self.drops.not_connected += 1
        return self.drops.not_connected

    def clear(self) -> int:
        """
        Drop all queued frames without counting them as drops.

        Used when the connection goes away. Returns the number discarded.
        """
        n = len(self._frames)
        self._frames.clear()
        return n

    # -------------------------
    # Introspection helpers
    # -------------------------

    def __len__(self) -> int:
        return len(self._frames)

    def is_empty(self) -> bool:
        """Check if the queue is empty."""
        return not self._frames

    def depth_seconds(self) -> float:
        """
        Canonical queue depth in seconds.

        depth_s = num_frames × AUDIO_FRAME_DURATION_S
        """
        return len(self._frames) * AUDIO_FRAME_DURATION_S

    def snapshot(self) -> dict[str, float | int]:
        """
        Lightweight snapshot for logging / metrics.
        """
        return {
            "frames": len(self._frames),
            "depth_s": self.depth_seconds(),
            "dropped_not_connected": self.drops.not_connected,
            "dropped_overflow": self.drops.overflow,
            "dropped_total": self.drops.total(),
        }
