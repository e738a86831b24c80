"""
PCM conversion utilities.

Pure numpy/scipy helpers used by the capture path:
- channel downmix
- streaming resampling to the pipeline rate
- per-source gain and mixing
- float32 <-> PCM16 little-endian conversion

No IO. StreamResampler is the only stateful piece.
"""

from __future__ import annotations

from math import gcd

import numpy as np
from scipy import signal

from spec import AUDIO_SAMPLE_RATE_HZ


def pcm16le_to_float32(pcm_bytes: bytes) -> np.ndarray:
    """
    Convert PCM16 little-endian mono bytes to float32 in [-1.0, 1.0).

    A truncated trailing byte is dropped.
    """
    if len(pcm_bytes) % 2 != 0:
        pcm_bytes = pcm_bytes[: len(pcm_bytes) - 1]

    audio_i16 = np.frombuffer(pcm_bytes, dtype="<i2")
    return audio_i16.astype(np.float32) / 32768.0


def float32_to_pcm16le(samples: np.ndarray) -> bytes:
    """
    Convert float samples in [-1.0, 1.0] to PCM16 little-endian bytes.

    Out-of-range samples are clipped, never wrapped.
    """
    scaled = np.clip(samples, -1.0, 1.0) * 32767.0
    return scaled.astype("<i2").tobytes()


def to_mono(block: np.ndarray) -> np.ndarray:
    """
    Downmix a (frames, channels) or (frames,) block to mono float32.
    """
    if block.ndim == 1:
        return block.astype(np.float32, copy=False)
    if block.shape[1] == 1:
        return block[:, 0].astype(np.float32, copy=False)
    return np.mean(block, axis=1, dtype=np.float32)


class StreamResampler:
    """
    Block-by-block polyphase resampler for one continuous stream.

    Audio arrives in callback-sized blocks. Resampling each block as a
    whole signal would give every block its own filter edges and its own
    output rounding. StreamResampler keeps the filter history and the
    output phase between calls, so feeding a signal in any block split
    produces the same samples as feeding it at once, and N input samples
    always yield ceil(N * dst / src) outputs.

    The filter is the one resample_poly designs (Kaiser-windowed FIR),
    applied causally: output lags the input by the filter half-length.

    Not thread-safe; use one instance per audio callback.
    """

    def __init__(self, src_rate_hz: int, dst_rate_hz: int = AUDIO_SAMPLE_RATE_HZ) -> None:
        if src_rate_hz <= 0 or dst_rate_hz <= 0:
            raise ValueError("sample rates must be > 0")

        g = gcd(src_rate_hz, dst_rate_hz)
        self._up = dst_rate_hz // g
        self._down = src_rate_hz // g
        self.passthrough = self._up == self._down
        self._delay = 0.0
        if self.passthrough:
            return

        max_rate = max(self._up, self._down)
        half_len = 10 * max_rate
        taps = signal.firwin(2 * half_len + 1, 1.0 / max_rate, window=("kaiser", 5.0)) * self._up

        # Polyphase bank: row p holds the taps hitting input samples when
        # the upsampled output position is p modulo `up`, newest sample last.
        self._width = -(-taps.size // self._up)
        padded = np.zeros(self._width * self._up)
        padded[: taps.size] = taps
        self._bank = padded.reshape(self._width, self._up).T[:, ::-1].copy()

        # Input samples kept for the next call; history[0] has stream index _base
        self._history = np.zeros(self._width - 1)
        self._base = -(self._width - 1)
        self._next_out = 0
        self._delay = half_len / self._down

    @property
    def delay_samples(self) -> float:
        """Output lag introduced by the causal filter, in output samples."""
        return self._delay

    def process(self, samples: np.ndarray) -> np.ndarray:
        if self.passthrough:
            return samples.astype(np.float32, copy=False)
        if samples.size == 0:
            return np.zeros(0, dtype=np.float32)

        buf = np.concatenate((self._history, samples.astype(np.float64, copy=False)))
        end = self._base + buf.size

        # Output n needs input index (n * down) // up, which must be < end
        stop = -(-end * self._up // self._down)
        out = np.zeros(0)
        if stop > self._next_out:
            t = np.arange(self._next_out, stop, dtype=np.int64) * self._down
            newest = t // self._up
            windows = np.lib.stride_tricks.sliding_window_view(buf, self._width)
            out = np.einsum(
                "ij,ij->i",
                windows[newest - (self._width - 1) - self._base],
                self._bank[t % self._up],
            )
            self._next_out = stop

        next_newest = (self._next_out * self._down) // self._up
        keep_from = min(next_newest - (self._width - 1), end)
        self._history = buf[keep_from - self._base:]
        self._base = keep_from
        return out.astype(np.float32)


def apply_gain(samples: np.ndarray, gain: float) -> np.ndarray:
    """Scale samples by a fixed gain."""
    if gain == 1.0:
        return samples
    return (samples * np.float32(gain)).astype(np.float32, copy=False)


def mix(primary: np.ndarray, secondary: np.ndarray | None) -> np.ndarray:
    """
    Sum two mono sources sample by sample and clip to [-1.0, 1.0].

    The output length always follows `primary`; a shorter `secondary`
    is treated as silence for the missing tail.
    """
    if secondary is None or secondary.size == 0:
        return np.clip(primary, -1.0, 1.0)

    n = min(primary.size, secondary.size)
    out = primary.astype(np.float32, copy=True)
    out[:n] += secondary[:n]
    return np.clip(out, -1.0, 1.0)
