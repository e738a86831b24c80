"""
Audio Source Adapter (local capture).

Responsibilities:
- Open the microphone (mandatory) and, when requested, a system/loopback
  input (optional) through sounddevice/PortAudio
- Downmix each source to mono, resample to 16 kHz, apply per-source gain.
  Streams open at 16 kHz by default so the host does the conversion; a
  different capture rate goes through one StreamResampler per source,
  which keeps filter state across callback blocks
- Mix both sources sample by sample (sum + clip), never switch
- Emit fixed-size AudioFrames through on_frame
- Release every OS handle deterministically on stop

Non-responsibilities:
- No network IO, no relay state
- No throttling or frame skipping

Threading:
- sounddevice invokes the stream callbacks on PortAudio's audio thread.
  Callbacks never block on IO; on_frame must be cheap and thread-safe
  (the call session posts frames onto the event loop).
- The microphone callback drives frame cadence. System samples wait in
  a small bounded buffer until the next microphone block pulls them.

Failure model:
- Microphone failure raises AudioError (permission vs unavailable).
- System audio failure degrades to MIC_ONLY and is reported through
  on_error as a recoverable AUDIO_DEVICE_UNAVAILABLE.
"""

from __future__ import annotations

import threading
from collections import deque
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Any, Callable, Deque, Mapping, Sequence

import numpy as np

from audio.frame_generator import FrameAssembler
from audio.frames import AudioFrame
from audio.pcm import StreamResampler, apply_gain, float32_to_pcm16le, mix, to_mono
from observability.logger import log_event
from orchestrator.enums.error_kind import ErrorKind
from orchestrator.enums.mode import CaptureMode
from orchestrator.errors import AudioError
from spec import (
    AUDIO_SAMPLE_RATE_HZ,
    CAPTURE_DEFAULT_SAMPLE_RATE_HZ,
    LOOPBACK_DEVICE_HINTS,
    MIC_GAIN,
    SYSTEM_AUDIO_BUFFER_MAX_S,
    SYSTEM_AUDIO_GAIN,
)


StreamFactory = Callable[..., Any]
DeviceQuery = Callable[[], Sequence[Mapping[str, Any]]]

_PERMISSION_HINTS: tuple[str, ...] = ("permission", "denied", "not authorized", "not permitted")


# ------------------------------------------------------------------
# sounddevice bindings (PortAudio is loaded on first use)
# ------------------------------------------------------------------

def _sounddevice_stream(**kwargs: Any) -> Any:
    import sounddevice as sd  # pylint: disable=import-outside-toplevel
    return sd.InputStream(**kwargs)


def _sounddevice_devices() -> Sequence[Mapping[str, Any]]:
    import sounddevice as sd  # pylint: disable=import-outside-toplevel
    return list(sd.query_devices())


def list_audio_devices(query: DeviceQuery = _sounddevice_devices) -> list[dict[str, Any]]:
    """Input-capable devices, for diagnostics."""
    return [
        {
            "id": i,
            "name": device["name"],
            "channels": device["max_input_channels"],
            "sample_rate": device["default_samplerate"],
        }
        for i, device in enumerate(query())
        if device["max_input_channels"] > 0
    ]


def find_loopback_device(query: DeviceQuery = _sounddevice_devices) -> int | None:
    """
    Locate a loopback-capable input device by name.

    PulseAudio/PipeWire "monitor" sources on Linux, "Stereo Mix" on Windows,
    BlackHole/Soundflower on macOS.
    """
    for i, device in enumerate(query()):
        name = str(device["name"]).lower()
        if device["max_input_channels"] > 0 and any(h in name for h in LOOPBACK_DEVICE_HINTS):
            return i
    return None


def classify_audio_failure(exc: BaseException) -> ErrorKind:
    """Map a backend exception to an AudioError kind."""
    message = str(exc).lower()
    if isinstance(exc, PermissionError) or any(h in message for h in _PERMISSION_HINTS):
        return ErrorKind.AUDIO_PERMISSION_DENIED
    return ErrorKind.AUDIO_DEVICE_UNAVAILABLE


# ------------------------------------------------------------------
# Config / handle
# ------------------------------------------------------------------

@dataclass(frozen=True)
class CaptureConfig:
    """
    Capture settings.

    mic_device / system_device:
        sounddevice device id or name substring; None = default mic /
        auto-detected loopback device.
    """
    enable_system_audio: bool = False
    mic_device: int | str | None = None
    system_device: int | str | None = None
    capture_rate_hz: int = CAPTURE_DEFAULT_SAMPLE_RATE_HZ
    blocksize: int = 0  # 0 = let PortAudio choose


class _SystemBuffer:
    """Bounded FIFO of 16 kHz system samples shared by two audio threads."""

    def __init__(self, max_samples: int) -> None:
        self._max_samples = max_samples
        self._chunks: Deque[np.ndarray] = deque()
        self._size = 0
        self._lock = threading.Lock()
        self.dropped_samples = 0

    def push(self, samples: np.ndarray) -> None:
        with self._lock:
            self._chunks.append(samples)
            self._size += samples.size
            while self._size > self._max_samples and self._chunks:
                old = self._chunks.popleft()
                self._size -= old.size
                self.dropped_samples += old.size

    def pull(self, n: int) -> np.ndarray | None:
        with self._lock:
            if not self._chunks:
                return None
            parts: list[np.ndarray] = []
            needed = n
            while needed > 0 and self._chunks:
                chunk = self._chunks.popleft()
                if chunk.size > needed:
                    self._chunks.appendleft(chunk[needed:])
                    chunk = chunk[:needed]
                parts.append(chunk)
                needed -= chunk.size
            taken = n - needed
            self._size -= taken
        return np.concatenate(parts) if parts else None


class CaptureHandle:
    """
    A running capture. Context manager; close() is idempotent.
    """

    def __init__(self, stack: ExitStack, mode: CaptureMode) -> None:
        self._stack = stack
        self.mode = mode
        self._closed = False

    @property
    def closed(self) -> bool:
        """True once all streams were released."""
        return self._closed

    def close(self) -> None:
        """Stop and close every stream (reverse open order)."""
        if self._closed:
            return
        self._closed = True
        self._stack.close()

    def __enter__(self) -> CaptureHandle:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


# ------------------------------------------------------------------
# Adapter
# ------------------------------------------------------------------

class AudioSourceAdapter:
    """
    Microphone + optional system audio capture producing AudioFrames.

    Args:
        on_frame:
            Called on the audio thread for every complete frame.
        on_error:
            Called for recoverable capture problems (system audio degraded,
            callback failures).
        stream_factory / device_query:
            sounddevice.InputStream / sounddevice.query_devices by default;
            injectable for tests.
    """

    def __init__(
        self,
        *,
        on_frame: Callable[[AudioFrame], None],
        on_error: Callable[[AudioError], None] | None = None,
        session_id: str | None = None,
        stream_factory: StreamFactory = _sounddevice_stream,
        device_query: DeviceQuery = _sounddevice_devices,
    ) -> None:
        self._on_frame = on_frame
        self._on_error = on_error
        self._session_id = session_id
        self._stream_factory = stream_factory
        self._device_query = device_query

        self._assembler = FrameAssembler()
        self._system_buffer = _SystemBuffer(int(SYSTEM_AUDIO_BUFFER_MAX_S * AUDIO_SAMPLE_RATE_HZ))
        self._mic_resampler = StreamResampler(CAPTURE_DEFAULT_SAMPLE_RATE_HZ)
        self._system_resampler = StreamResampler(CAPTURE_DEFAULT_SAMPLE_RATE_HZ)
        self._handle: CaptureHandle | None = None
        self.callback_errors = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self, config: CaptureConfig) -> CaptureHandle:
        """
        Open the sources and start emitting frames.

        Raises:
            AudioError if the microphone cannot be opened. Anything already
            opened is released before raising.
        """
        if self._handle is not None and not self._handle.closed:
            raise RuntimeError("capture already running")

        # Fresh filter state per run; blocks of one run form one continuous stream
        self._mic_resampler = StreamResampler(config.capture_rate_hz)
        self._system_resampler = StreamResampler(config.capture_rate_hz)
        self._assembler.reset()

        with ExitStack() as stack:
            try:
                self._open(stack, config.mic_device, config, self._mic_callback)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                kind = classify_audio_failure(exc)
                log_event({
                    "event_type": "AUDIO_MIC_OPEN_FAILED",
                    "level": "ERROR",
                    "session_id": self._session_id,
                    "kind": kind.value,
                    "message": str(exc),
                })
                raise AudioError(kind, str(exc)) from exc

            mode = CaptureMode.MIC_ONLY
            if config.enable_system_audio and self._open_system(stack, config):
                mode = CaptureMode.DUAL

            self._handle = CaptureHandle(stack.pop_all(), mode)

        log_event({
            "event_type": "AUDIO_CAPTURE_STARTED",
            "session_id": self._session_id,
            "mode": mode.value,
            "capture_rate_hz": config.capture_rate_hz,
        })
        return self._handle

    def stop(self, handle: CaptureHandle | None = None) -> None:
        """Release all streams. Safe to call more than once."""
        handle = handle or self._handle
        if handle is None or handle.closed:
            return
        handle.close()
        log_event({
            "event_type": "AUDIO_CAPTURE_STOPPED",
            "session_id": self._session_id,
            "callback_errors": self.callback_errors,
            "system_samples_dropped": self._system_buffer.dropped_samples,
        })

    # ------------------------------------------------------------------
    # Stream setup
    # ------------------------------------------------------------------

    def _open(
        self,
        stack: ExitStack,
        device: int | str | None,
        config: CaptureConfig,
        callback: Callable[..., None],
    ) -> None:
        stream = self._stream_factory(
            device=device,
            channels=1,
            samplerate=config.capture_rate_hz,
            blocksize=config.blocksize,
            callback=callback,
            dtype="float32",
        )
        stack.callback(stream.close)
        stream.start()
        stack.callback(stream.stop)

    def _open_system(self, stack: ExitStack, config: CaptureConfig) -> bool:
        device = config.system_device
        try:
            if device is None:
                device = find_loopback_device(self._device_query)
            if device is None:
                raise LookupError("no loopback-capable input device found")
            self._open(stack, device, config, self._system_callback)
            return True
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "AUDIO_SYSTEM_DEGRADED",
                "level": "WARNING",
                "session_id": self._session_id,
                "message": str(exc),
            })
            self._report(AudioError(ErrorKind.AUDIO_DEVICE_UNAVAILABLE, f"system audio: {exc}"))
            return False

    # ------------------------------------------------------------------
    # Audio-thread callbacks
    # ------------------------------------------------------------------

    @staticmethod
    def _prepare(indata: np.ndarray, resampler: StreamResampler, gain: float) -> np.ndarray:
        mono = to_mono(np.asarray(indata, dtype=np.float32))
        return apply_gain(resampler.process(mono), gain)

    def _mic_callback(self, indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:  # pylint: disable=unused-argument
        try:
            mic = self._prepare(indata, self._mic_resampler, MIC_GAIN)
            system = self._system_buffer.pull(mic.size)
            pcm = float32_to_pcm16le(mix(mic, system))
            for frame in self._assembler.push(pcm):
                self._on_frame(frame)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            self._callback_failed("mic", exc)

    def _system_callback(self, indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:  # pylint: disable=unused-argument
        try:
            self._system_buffer.push(self._prepare(indata, self._system_resampler, SYSTEM_AUDIO_GAIN))
        except Exception as exc:  # pylint: disable=broad-exception-caught
            self._callback_failed("system", exc)

    def _callback_failed(self, source: str, exc: Exception) -> None:
        self.callback_errors += 1
        log_event({
            "event_type": "AUDIO_CALLBACK_FAILED",
            "level": "ERROR",
            "session_id": self._session_id,
            "source": source,
            "exception": type(exc).__name__,
            "message": str(exc),
        })

    def _report(self, error: AudioError) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(error)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "AUDIO_ERROR_CALLBACK_FAILED",
                "level": "ERROR",
                "session_id": self._session_id,
                "exception": type(exc).__name__,
            })
