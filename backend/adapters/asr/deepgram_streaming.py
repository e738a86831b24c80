"""
Deepgram live streaming relay client.

Core model:
- One logical WebSocket connection per call session.
- Audio frames are binary PCM16 messages; results are JSON text messages.
- Connection lifecycle is an explicit state machine
  (see session/connection_status.py).

Backpressure:
- send_frame() never blocks and never queues while not CONNECTED: the
  frame is dropped and counted.
- While CONNECTED, frames pass through a small bounded outbox drained by
  a sender task; overflow drops the newest frame.

Reconnection:
- A drop while CONNECTED moves to RECONNECTING and runs up to N attempts
  with linear backoff (orchestrator/retry.py). Each attempt repeats the
  full handshake, including every session parameter.
- AUTH_REJECTED is fatal immediately. Exhaustion moves to FAILED with the
  kind of the last failed attempt.
- The initial handshake is guarded by a watchdog; any initial failure
  moves straight to FAILED.

Message handling:
- Results are parsed into TranscriptEvents and handed synchronously to
  on_transcript, in arrival order, on the event loop.
- Malformed messages are logged, counted and dropped. Never fatal.

Design constraints:
- No text cleaning, no dedup, no AI decisions.
- No knowledge of the UI WebSocket.
"""

from __future__ import annotations

import asyncio
import json
import urllib.parse
from typing import Any, Awaitable, Callable

from websockets.asyncio.client import connect as ws_connect

from audio.frames import AudioFrame
from audio.queues import AudioFrameQueue, DropReason
from observability.logger import log_event, now_ms
from observability.metrics import timed
from orchestrator.enums.error_kind import ErrorKind
from orchestrator.errors import RelayError
from orchestrator.retry import (
    RetryAttempt,
    get_retry_delay_ms,
    next_attempt,
    reset_attempt,
    should_retry,
)
from session.connection_status import ConnectionState
from spec import (
    AUDIO_BYTES_PER_FRAME_PCM,
    AUDIO_CHANNELS,
    AUDIO_SAMPLE_RATE_HZ,
    RELAY_AUTH_REJECT_STATUS,
    RELAY_CONNECT_TIMEOUT_MS,
    RELAY_DEFAULT_LANGUAGE,
    RELAY_DEFAULT_MODEL,
    RELAY_DROP_LOG_EVERY,
    RELAY_ENDPOINTING_MS,
    RELAY_MAX_RECONNECT_ATTEMPTS,
    RELAY_OUTBOX_MAX_S,
    RELAY_RECONNECT_BASE_DELAY_MS,
    RELAY_URL,
    RELAY_UTTERANCE_END_MS,
)
from transcript.models import Speaker, TranscriptEvent


ConnectFn = Callable[..., Awaitable[Any]]

_CLOSE_STREAM_MESSAGE = json.dumps({"type": "CloseStream"})
_CLOSE_STREAM_TIMEOUT_S = 1.0
_INFO_MESSAGE_TYPES = ("Metadata", "SpeechStarted", "UtteranceEnd")


def handshake_status(exc: BaseException) -> int | None:
    """HTTP status of a rejected WebSocket handshake, if any."""
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    if status is None:
        status = getattr(exc, "status_code", None)
    return status if isinstance(status, int) else None


def classify_handshake_failure(exc: BaseException) -> ErrorKind:
    """Map a handshake exception to an ErrorKind."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.CONNECTION_TIMEOUT
    if handshake_status(exc) in RELAY_AUTH_REJECT_STATUS:
        return ErrorKind.AUTH_REJECTED
    return ErrorKind.CONNECTION_FAILED


def parse_results_message(data: dict[str, Any], *, speaker: Speaker | None) -> TranscriptEvent | None:
    """
    Parse a Deepgram "Results" message.

    Returns None for empty transcripts.

    Raises:
        ValueError if the message does not have the documented shape.
    """
    channel = data.get("channel")
    if not isinstance(channel, dict):
        raise ValueError("results_missing_channel")

    alternatives = channel.get("alternatives")
    if not isinstance(alternatives, list) or not alternatives or not isinstance(alternatives[0], dict):
        raise ValueError("results_missing_alternatives")

    best = alternatives[0]
    transcript = best.get("transcript")
    if not isinstance(transcript, str):
        raise ValueError("results_transcript_not_string")

    is_final = data.get("is_final", False)
    if not isinstance(is_final, bool):
        raise ValueError("results_is_final_not_bool")

    confidence = best.get("confidence", 0.0)
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = 0.0

    if not transcript.strip():
        return None

    return TranscriptEvent(
        text=transcript,
        is_final=is_final,
        confidence=float(confidence),
        speaker=speaker,
        received_at=now_ms(),
    )


class DeepgramRelayClient:
    """
    Streaming speech-to-text relay with bounded reconnection.

    Public interface:
    - start(): connect; returns True once CONNECTED, False on FAILED
    - send_frame(frame): non-blocking, drop-if-not-connected
    - stop(): terminal, idempotent

    Callbacks (all invoked on the event loop):
    - on_transcript(TranscriptEvent)
    - on_status(ConnectionState)
    - on_error(RelayError)
    """

    def __init__(
        self,
        *,
        api_key: str,
        on_transcript: Callable[[TranscriptEvent], None],
        on_status: Callable[[ConnectionState], None] | None = None,
        on_error: Callable[[RelayError], None] | None = None,
        session_id: str | None = None,
        model: str = RELAY_DEFAULT_MODEL,
        language: str = RELAY_DEFAULT_LANGUAGE,
        speaker: Speaker | None = None,
        connect: ConnectFn = ws_connect,
        max_reconnects: int = RELAY_MAX_RECONNECT_ATTEMPTS,
        base_delay_ms: int = RELAY_RECONNECT_BASE_DELAY_MS,
        connect_timeout_ms: int = RELAY_CONNECT_TIMEOUT_MS,
        outbox_max_s: float = RELAY_OUTBOX_MAX_S,
    ) -> None:
        self._api_key = api_key
        self._on_transcript = on_transcript
        self._on_status = on_status
        self._on_error = on_error
        self._session_id = session_id
        self._model = model
        self._language = language
        self.speaker = speaker
        self._connect = connect
        self._max_reconnects = max_reconnects
        self._base_delay_ms = base_delay_ms
        self._connect_timeout_s = connect_timeout_ms / 1000.0

        self._state = ConnectionState.IDLE
        self._ws: Any = None
        self._conn_id = 0
        self._recv_task: asyncio.Task[None] | None = None
        self._send_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._stopping = False

        self._outbox = AudioFrameQueue(max_depth_s=outbox_max_s)
        self._frames_ready = asyncio.Event()

        self._frames_sent = 0
        self._transcripts = 0
        self._malformed = 0
        self._reconnects = 0

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._state

    @property
    def reconnect_count(self) -> int:
        """Successful reconnections so far."""
        return self._reconnects

    def snapshot(self) -> dict[str, Any]:
        """Counters for logging / diagnostics."""
        return {
            "state": self._state.value,
            "frames_sent": self._frames_sent,
            "transcripts": self._transcripts,
            "malformed_messages": self._malformed,
            "reconnects": self._reconnects,
            "outbox": self._outbox.snapshot(),
        }

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def start(self) -> bool:
        """
        Open the connection.

        IDLE -> CONNECTING -> CONNECTED | FAILED.
        Failures are reported through on_error; this method never raises
        for connection problems.
        """
        if self._state is not ConnectionState.IDLE:
            raise RuntimeError(f"relay already started (state={self._state.value})")

        self._set_state(ConnectionState.CONNECTING)
        try:
            ws = await self._handshake()
        except RelayError as err:
            self._fail(err)
            return False

        if self._stopping:
            await self._close_quietly(ws)
            return False

        self._install(ws)
        self._set_state(ConnectionState.CONNECTED)
        return True

    def send_frame(self, frame: AudioFrame) -> bool:
        """
        Offer one audio frame for transmission.

        Returns True if the frame was queued for sending.
        Must be called on the event loop thread.
        """
        if len(frame.pcm_bytes) != AUDIO_BYTES_PER_FRAME_PCM:
            raise ValueError(
                f"relay expected {AUDIO_BYTES_PER_FRAME_PCM} PCM bytes, "
                f"got {len(frame.pcm_bytes)}"
            )

        if self._state is not ConnectionState.CONNECTED:
            dropped = self._outbox.record_drop(DropReason.NOT_CONNECTED)
            self._log_drop(DropReason.NOT_CONNECTED, dropped)
            return False

        if not self._outbox.enqueue(frame):
            self._log_drop(DropReason.OVERFLOW, self._outbox.drops.overflow)
            return False

        self._frames_ready.set()
        return True

    async def stop(self) -> None:
        """
        Close the connection. Terminal and idempotent.

        Sends CloseStream (best effort) so the backend can flush pending
        results, then cancels all tasks and closes the socket.
        """
        if self._state is ConnectionState.CLOSED:
            return
        self._stopping = True

        reconnect = self._reconnect_task
        self._reconnect_task = None
        if reconnect is not None and not reconnect.done():
            reconnect.cancel()
            await asyncio.gather(reconnect, return_exceptions=True)

        ws = self._ws
        if ws is not None and self._state is ConnectionState.CONNECTED:
            try:
                await asyncio.wait_for(ws.send(_CLOSE_STREAM_MESSAGE), _CLOSE_STREAM_TIMEOUT_S)
            except Exception:  # pylint: disable=broad-exception-caught
                pass

        await self._drop_connection()
        self._set_state(ConnectionState.CLOSED)

        log_event({
            "event_type": "RELAY_STOPPED",
            "session_id": self._session_id,
            **self.snapshot(),
        })

    # -------------------------------------------------------------------------
    # Connection management
    # -------------------------------------------------------------------------

    def build_url(self) -> str:
        """Listen URL carrying every session parameter."""
        params: dict[str, str] = {
            "model": self._model,
            "language": self._language,
            "punctuate": "true",
            "interim_results": "true",
            "endpointing": str(RELAY_ENDPOINTING_MS),
            "utterance_end_ms": str(RELAY_UTTERANCE_END_MS),
            "vad_events": "true",
            "encoding": "linear16",
            "sample_rate": str(AUDIO_SAMPLE_RATE_HZ),
            "channels": str(AUDIO_CHANNELS),
        }
        return f"{RELAY_URL}?{urllib.parse.urlencode(params)}"

    async def _open(self) -> Any:
        return await self._connect(
            self.build_url(),
            additional_headers={"Authorization": f"Token {self._api_key}"},
            max_size=2**22,
            open_timeout=None,
        )

    async def _handshake(self) -> Any:
        """
        One full handshake under the watchdog.

        Raises:
            RelayError with CONNECTION_TIMEOUT, AUTH_REJECTED or
            CONNECTION_FAILED.
        """
        try:
            with timed("relay_handshake", session_id=self._session_id):
                return await asyncio.wait_for(self._open(), timeout=self._connect_timeout_s)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pylint: disable=broad-exception-caught
            kind = classify_handshake_failure(exc)
            log_event({
                "event_type": "RELAY_HANDSHAKE_FAILED",
                "level": "WARNING",
                "session_id": self._session_id,
                "kind": kind.value,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            raise RelayError(kind, f"{type(exc).__name__}: {exc}") from exc

    def _install(self, ws: Any) -> None:
        """Adopt a fresh connection and start its loops."""
        self._conn_id += 1
        self._ws = ws
        self._outbox.clear()
        self._frames_ready.clear()
        self._recv_task = asyncio.create_task(self._recv_loop(ws, self._conn_id))
        self._send_task = asyncio.create_task(self._send_loop(ws, self._conn_id))

    async def _drop_connection(self) -> None:
        ws = self._ws
        self._ws = None

        current = asyncio.current_task()
        tasks = [
            t for t in (self._recv_task, self._send_task)
            if t is not None and t is not current and not t.done()
        ]
        self._recv_task = None
        self._send_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._outbox.clear()
        if ws is not None:
            await self._close_quietly(ws)

    @staticmethod
    async def _close_quietly(ws: Any) -> None:
        try:
            await ws.close()
        except Exception:  # pylint: disable=broad-exception-caught
            pass

    def _connection_lost(self, conn_id: int, reason: str) -> None:
        """Called by a loop when its connection ends."""
        if self._stopping or conn_id != self._conn_id:
            return
        if self._state is not ConnectionState.CONNECTED:
            return

        ws = self._ws
        log_event({
            "event_type": "RELAY_CONNECTION_LOST",
            "level": "WARNING",
            "session_id": self._session_id,
            "reason": reason,
            "close_code": getattr(ws, "close_code", None),
            "close_reason": getattr(ws, "close_reason", None),
        })
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        await self._drop_connection()

        attempt: RetryAttempt = reset_attempt()
        last_error = RelayError(ErrorKind.CONNECTION_FAILED, "connection lost")

        while should_retry(failure=last_error.kind, attempt=attempt, limit=self._max_reconnects):
            attempt = next_attempt(attempt)
            delay_ms = get_retry_delay_ms(attempt=attempt, base_delay_ms=self._base_delay_ms)
            log_event({
                "event_type": "RELAY_RECONNECT_SCHEDULED",
                "session_id": self._session_id,
                "attempt": attempt.attempt,
                "delay_ms": delay_ms,
            })
            await asyncio.sleep(delay_ms / 1000.0)

            try:
                ws = await self._handshake()
            except RelayError as err:
                last_error = err
                continue

            if self._stopping:
                await self._close_quietly(ws)
                return

            self._reconnects += 1
            self._install(ws)
            self._reconnect_task = None
            self._set_state(ConnectionState.CONNECTED)
            log_event({
                "event_type": "RELAY_RECONNECTED",
                "session_id": self._session_id,
                "attempt": attempt.attempt,
            })
            return

        self._reconnect_task = None
        self._fail(last_error)

    def _fail(self, err: RelayError) -> None:
        self._set_state(ConnectionState.FAILED)
        log_event({
            "event_type": "RELAY_FAILED",
            "level": "ERROR",
            "session_id": self._session_id,
            "kind": err.kind.value,
            "detail": err.detail,
        })
        if self._on_error is not None:
            try:
                self._on_error(err)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                self._log_callback_failure("on_error", exc)

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        log_event({
            "event_type": "RELAY_STATE_CHANGED",
            "session_id": self._session_id,
            "from": old.value,
            "to": new.value,
        })
        if self._on_status is not None:
            try:
                self._on_status(new)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                self._log_callback_failure("on_status", exc)

    # -------------------------------------------------------------------------
    # Background loops
    # -------------------------------------------------------------------------

    async def _send_loop(self, ws: Any, conn_id: int) -> None:
        try:
            while True:
                await self._frames_ready.wait()
                self._frames_ready.clear()
                while (frame := self._outbox.dequeue()) is not None:
                    await ws.send(frame.pcm_bytes)
                    self._frames_sent += 1
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pylint: disable=broad-exception-caught
            self._connection_lost(conn_id, f"send_failed: {type(exc).__name__}: {exc}")

    async def _recv_loop(self, ws: Any, conn_id: int) -> None:
        reason = "server_closed"
        try:
            async for raw in ws:
                self._handle_message(raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pylint: disable=broad-exception-caught
            reason = f"recv_failed: {type(exc).__name__}: {exc}"
        self._connection_lost(conn_id, reason)

    def _handle_message(self, raw: Any) -> None:
        if not isinstance(raw, str):
            self._malformed_message("binary_message")
            return

        try:
            data = json.loads(raw)
        except ValueError:
            self._malformed_message("invalid_json")
            return

        if not isinstance(data, dict) or not isinstance(data.get("type"), str):
            self._malformed_message("missing_type")
            return

        msg_type = data["type"]

        if msg_type == "Results":
            try:
                event = parse_results_message(data, speaker=self.speaker)
            except ValueError as exc:
                self._malformed_message(str(exc))
                return
            if event is None:
                return
            self._transcripts += 1
            try:
                self._on_transcript(event)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                self._log_callback_failure("on_transcript", exc)
            return

        if msg_type in _INFO_MESSAGE_TYPES:
            log_event({
                "event_type": "RELAY_INFO_MESSAGE",
                "level": "DEBUG",
                "session_id": self._session_id,
                "type": msg_type,
            })
            return

        log_event({
            "event_type": "RELAY_UNHANDLED_MESSAGE",
            "level": "WARNING",
            "session_id": self._session_id,
            "type": msg_type,
            "description": data.get("description"),
        })

    # -------------------------------------------------------------------------
    # Logging helpers
    # -------------------------------------------------------------------------

    def _malformed_message(self, reason: str) -> None:
        self._malformed += 1
        log_event({
            "event_type": "RELAY_MALFORMED_MESSAGE",
            "level": "WARNING",
            "session_id": self._session_id,
            "kind": ErrorKind.MALFORMED_BACKEND_MESSAGE.value,
            "reason": reason,
            "count": self._malformed,
        })

    def _log_drop(self, reason: DropReason, count: int) -> None:
        if count == 1 or count % RELAY_DROP_LOG_EVERY == 0:
            log_event({
                "event_type": "RELAY_FRAME_DROPPED",
                "level": "DEBUG",
                "session_id": self._session_id,
                "reason": reason.value,
                "count": count,
                "state": self._state.value,
            })

    def _log_callback_failure(self, name: str, exc: Exception) -> None:
        log_event({
            "event_type": "RELAY_CALLBACK_FAILED",
            "level": "ERROR",
            "session_id": self._session_id,
            "callback": name,
            "exception": type(exc).__name__,
            "message": str(exc),
        })
