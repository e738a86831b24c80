"""
Session gateway.

Responsibilities:
- Owns the CallSession lifecycle for one UI WebSocket connection
- Routes inbound JSON control messages (START / STOP / CHAT)
- Routes inbound binary audio frames -> CallSession.feed_remote_frame
- Detects sequence gaps and logs them
- Translates pipeline callbacks into outbound JSON messages
  (pushed onto an outbound queue drained by the route)

NOT responsible for:
- Any pipeline logic (normalization, dedup, dispatch policy)
- Socket IO (the route owns the WebSocket)
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Callable, TYPE_CHECKING

from config import ConfigError, SessionConfig
from observability.logger import log_event, now_ms
from orchestrator.enums.error_kind import ErrorKind
from protocol.binary import (
    BinaryProtocolError,
    check_sequence_gap,
    decode_c2s_frame,
)
from session.call_session import CallSession, PipelineCallbacks, new_session_id
from session.connection_status import ConnectionState
from spec import (
    AUDIO_CHANNELS,
    AUDIO_FRAME_DURATION_S,
    AUDIO_SAMPLE_RATE_HZ,
    AUDIO_SAMPLE_WIDTH_BYTES,
    AUDIO_SAMPLES_PER_FRAME,
    AI_CHAT_MAX_QUERY_CHARS,
    SESSION_EVENT_Q_MAX_EVENTS,
)
from transcript.models import NormalizedTranscript, TranscriptRecord

if TYPE_CHECKING:
    from config import AppConfig


SessionFactory = Callable[..., CallSession]


# ------------------------------------------------------------------
# Gateway result
# ------------------------------------------------------------------

@dataclass(frozen=True)
class GatewayResult:
    """
    Return value for gateway boundary methods.

    outbound_json:
        JSON messages to send to the client immediately, in order.
    """
    outbound_json: tuple[dict[str, Any], ...] = ()


# ------------------------------------------------------------------
# SessionGateway
# ------------------------------------------------------------------

class SessionGateway:
    """
    One gateway == one UI connection. At most one CallSession at a time.

    Pipeline events arrive asynchronously and are queued on `outbound`;
    the route runs a pump that sends them to the client.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        session_factory: SessionFactory = CallSession,
    ) -> None:
        self._config = config
        self._session_factory = session_factory
        self.connection_id = new_session_id()
        self.session: CallSession | None = None
        self._last_ingest_seq: int | None = None
        self.outbound: asyncio.Queue[dict[str, Any]] = asyncio.Queue(
            maxsize=SESSION_EVENT_Q_MAX_EVENTS
        )
        self._outbound_dropped = 0

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def on_ws_connect(self) -> GatewayResult:
        """Called when a WebSocket connection is established."""
        log_event({
            "event_type": "WS_CONNECTED",
            "connection_id": self.connection_id,
        })

        init_msg: dict[str, Any] = {
            "type": "SESSION_INIT",
            "connection_id": self.connection_id,
            "audio_capture": self._config.audio_capture,
            "audio_format": {
                "sample_rate": AUDIO_SAMPLE_RATE_HZ,
                "sample_width": AUDIO_SAMPLE_WIDTH_BYTES,
                "channels": AUDIO_CHANNELS,
                "samples_per_frame": AUDIO_SAMPLES_PER_FRAME,
                "frame_duration_ms": round(AUDIO_FRAME_DURATION_S * 1000),
            },
        }
        return GatewayResult(outbound_json=(init_msg,))

    async def on_ws_disconnect(self, reason: str | None = None) -> GatewayResult:
        """Called when the WebSocket disconnects. Stops any running session."""
        log_event({
            "event_type": "WS_DISCONNECTED",
            "connection_id": self.connection_id,
            "session_id": self.session.session_id if self.session else None,
            "reason": reason,
        })
        await self._stop_session()
        return GatewayResult()

    # ------------------------------------------------------------------
    # Inbound JSON
    # ------------------------------------------------------------------

    async def on_json_message(self, payload: str) -> GatewayResult:
        """Route inbound JSON control messages."""
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            log_event({
                "event_type": "JSON_DECODE_ERROR",
                "level": "WARNING",
                "connection_id": self.connection_id,
                "error": str(e),
                "payload_preview": payload[:100],
            })
            return GatewayResult()

        if not isinstance(data, dict):
            log_event({
                "event_type": "JSON_NOT_OBJECT",
                "level": "WARNING",
                "connection_id": self.connection_id,
                "payload_preview": payload[:100],
            })
            return GatewayResult()

        msg_type = data.get("type")

        if msg_type == "START":
            return await self._start_session(data.get("config") or {})
        if msg_type == "STOP":
            return await self._stop_session()
        if msg_type == "CHAT":
            return self._ask(data.get("text"))

        log_event({
            "event_type": "UNKNOWN_MESSAGE_TYPE",
            "level": "WARNING",
            "connection_id": self.connection_id,
            "msg_type": msg_type,
        })
        return GatewayResult()

    # ------------------------------------------------------------------
    # Inbound binary
    # ------------------------------------------------------------------

    async def on_binary_message(self, payload: bytes) -> GatewayResult:
        """
        Handle inbound binary audio frames (remote capture).

        - Decode + validate
        - Detect sequence gaps
        - Forward to the relay (drop-if-not-connected happens there)
        """
        session = self.session
        if session is None or session.stopped:
            log_event({
                "event_type": "BINARY_WITHOUT_SESSION",
                "level": "DEBUG",
                "connection_id": self.connection_id,
                "payload_len": len(payload),
            })
            return GatewayResult()

        try:
            frame = decode_c2s_frame(payload, ts_ms=now_ms())
        except BinaryProtocolError as e:
            log_event({
                "event_type": "BINARY_DECODE_ERROR",
                "level": "WARNING",
                "session_id": session.session_id,
                "error": str(e),
                "payload_len": len(payload),
            })
            return GatewayResult()

        gap_result = check_sequence_gap(
            last_seq=self._last_ingest_seq,
            current_seq=frame.sequence_num,
        )
        if gap_result.gap:
            log_event({
                "event_type": "SEQ_GAP_DETECTED",
                "level": "WARNING",
                "session_id": session.session_id,
                "expected": gap_result.expected,
                "actual": gap_result.actual,
                "gap_size": gap_result.gap_size,
            })

        self._last_ingest_seq = frame.sequence_num
        session.feed_remote_frame(frame)
        return GatewayResult()

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    async def _start_session(self, raw_config: Any) -> GatewayResult:
        if self.session is not None and not self.session.stopped:
            return GatewayResult(outbound_json=(self._error_msg(
                None, "session already running; send STOP first"
            ),))

        if not isinstance(raw_config, dict):
            return GatewayResult(outbound_json=(self._error_msg(
                None, "config must be an object"
            ),))

        try:
            session_config = SessionConfig.from_dict(raw_config, defaults=self._config)
        except ConfigError as e:
            log_event({
                "event_type": "SESSION_CONFIG_REJECTED",
                "level": "WARNING",
                "connection_id": self.connection_id,
                "error": str(e),
            })
            return GatewayResult(outbound_json=(self._error_msg(None, str(e)),))

        self._last_ingest_seq = None
        self.session = self._session_factory(
            callbacks=self._callbacks(),
            app_config=self._config,
            local_capture=self._config.audio_capture == "local",
        )

        ok = await self.session.start(session_config)
        started_msg = {
            "type": "SESSION_STARTED",
            "session_id": self.session.session_id,
            "ok": ok,
        }
        return GatewayResult(outbound_json=(started_msg,))

    async def _stop_session(self) -> GatewayResult:
        session = self.session
        if session is None or session.stopped:
            return GatewayResult()

        await session.stop()
        return GatewayResult(outbound_json=({
            "type": "SESSION_STOPPED",
            "session_id": session.session_id,
        },))

    def _ask(self, text: Any) -> GatewayResult:
        session = self.session
        if session is None or session.stopped:
            return GatewayResult(outbound_json=(self._error_msg(
                None, "no running session; send START first"
            ),))

        if not isinstance(text, str) or not text.strip():
            return GatewayResult(outbound_json=(self._error_msg(
                None, "CHAT text must be a non-empty string"
            ),))

        if len(text) > AI_CHAT_MAX_QUERY_CHARS:
            return GatewayResult(outbound_json=(self._error_msg(
                None, f"CHAT text longer than {AI_CHAT_MAX_QUERY_CHARS} characters"
            ),))

        request_id = session.ask(text)
        if request_id is None:
            return GatewayResult(outbound_json=(self._error_msg(
                None, "question not accepted"
            ),))

        return GatewayResult(outbound_json=({
            "type": "CHAT_ACCEPTED",
            "session_id": session.session_id,
            "request_id": request_id,
        },))

    # ------------------------------------------------------------------
    # Outbound events
    # ------------------------------------------------------------------

    def _callbacks(self) -> PipelineCallbacks:
        return PipelineCallbacks(
            on_normalized_transcript=self._on_normalized_transcript,
            on_transcript_record=self._on_transcript_record,
            on_todo_suggestion=self._on_todo_suggestion,
            on_insight=self._on_insight,
            on_connection_status=self._on_connection_status,
            on_error=self._on_error,
            on_chat_delta=self._on_chat_delta,
            on_chat_answer=self._on_chat_answer,
        )

    def _on_normalized_transcript(self, transcript: NormalizedTranscript) -> None:
        self._push({"type": "NORMALIZED_TRANSCRIPT", **transcript.to_dict()})

    def _on_transcript_record(self, record: TranscriptRecord) -> None:
        self._push({"type": "TRANSCRIPT_RECORD", **record.to_dict()})

    def _on_todo_suggestion(self, text: str, priority: str) -> None:
        self._push({"type": "TODO_SUGGESTION", "text": text, "priority": priority})

    def _on_insight(self, text: str) -> None:
        self._push({"type": "INSIGHT", "text": text})

    def _on_chat_delta(self, request_id: str, delta: str) -> None:
        self._push({"type": "CHAT_DELTA", "request_id": request_id, "text": delta})

    def _on_chat_answer(self, request_id: str, text: str) -> None:
        self._push({"type": "CHAT_ANSWER", "request_id": request_id, "text": text})

    def _on_connection_status(self, state: ConnectionState) -> None:
        self._push({"type": "CONNECTION_STATUS", "status": state.value})

    def _on_error(self, kind: ErrorKind, detail: str) -> None:
        self._push(self._error_msg(kind, detail))

    def _error_msg(self, kind: ErrorKind | None, detail: str) -> dict[str, Any]:
        return {
            "type": "ERROR",
            "kind": kind.value if kind is not None else "invalid_request",
            "fatal": kind.fatal if kind is not None else False,
            "detail": detail,
            "session_id": self.session.session_id if self.session else None,
        }

    def _push(self, msg: dict[str, Any]) -> None:
        msg.setdefault("session_id", self.session.session_id if self.session else None)
        msg.setdefault("ts_ms", now_ms())
        try:
            self.outbound.put_nowait(msg)
        except asyncio.QueueFull:
            self._outbound_dropped += 1
            log_event({
                "event_type": "OUTBOUND_MESSAGE_DROPPED",
                "level": "WARNING",
                "connection_id": self.connection_id,
                "msg_type": msg.get("type"),
                "dropped_total": self._outbound_dropped,
            })
