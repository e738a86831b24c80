"""
Call session: wires one live transcription pipeline together.

Pipeline:

    capture ──▶ relay ──▶ normalizer ──▶ coordinator ──▶ scheduler
    (or remote frames)                     │                 │
                                           ▼                 ▼
                                     transcript log    TODO / insight

    ask(question) ──▶ scheduler ──▶ streamed chat answer

Responsibilities:
- Build every per-session component from a SessionConfig
- Start the relay first, then capture (so early frames are not all lost)
- Funnel audio-thread frames onto the event loop
- Deliver outbound events through one ordered queue + delivery task
- Tear everything down in order on stop(), even if a step fails

Non-responsibilities:
- No UI transport (see session/gateway.py)
- No text cleaning or AI policy (owned by the components)

Threading:
- Everything except the capture callbacks runs on the event loop.
- Capture callbacks only call loop.call_soon_threadsafe().
"""

from __future__ import annotations

import asyncio
import inspect
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from uuid import uuid4

from adapters.asr.deepgram_streaming import DeepgramRelayClient
from adapters.llm.base import AnalysisBackend
from adapters.llm.keyword import KeywordAnalysisBackend
from adapters.llm.streaming import OpenAIAnalysisBackend, build_llm_client
from audio.capture import AudioSourceAdapter, CaptureConfig, CaptureHandle
from audio.frames import AudioFrame
from config import AppConfig, SessionConfig
from context.conversation import ConversationContext
from observability.logger import log_event
from orchestrator.dispatch import AIDispatchScheduler
from orchestrator.enums.error_kind import ErrorKind
from orchestrator.enums.mode import CaptureMode
from orchestrator.enums.service import AnalysisKind
from orchestrator.errors import AudioError, RelayError
from orchestrator.rate_limit import SlidingWindowRateLimiter
from session.connection_status import ConnectionState
from spec import AI_CHAT_MAX_QUERY_CHARS, SESSION_EVENT_Q_MAX_EVENTS, SESSION_STOP_DRAIN_TIMEOUT_S
from transcript.coordinator import IngestionCoordinator
from transcript.hash_guard import TranscriptHashGuard
from transcript.models import NormalizedTranscript, Speaker, TranscriptEvent, TranscriptRecord
from transcript.normalizer import TranscriptNormalizer


MaybeAwaitable = Union[None, Awaitable[None]]

RelayFactory = Callable[..., DeepgramRelayClient]
CaptureFactory = Callable[..., AudioSourceAdapter]
BackendFactory = Callable[[SessionConfig], AnalysisBackend]


def new_session_id() -> str:
    return f"sess_{uuid4().hex[:12]}"


# ---------------------------------------------------------------------
# Outbound callbacks
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class PipelineCallbacks:
    """
    Outbound hooks for the UI collaborator.

    Every callback is optional, runs on the event loop from the session's
    delivery task, and may be a plain function or a coroutine function.
    Exceptions raised by a callback are logged and never propagate.
    """
    on_normalized_transcript: Optional[Callable[[NormalizedTranscript], MaybeAwaitable]] = None
    on_transcript_record: Optional[Callable[[TranscriptRecord], MaybeAwaitable]] = None
    on_todo_suggestion: Optional[Callable[[str, str], MaybeAwaitable]] = None
    on_insight: Optional[Callable[[str], MaybeAwaitable]] = None
    on_connection_status: Optional[Callable[[ConnectionState], MaybeAwaitable]] = None
    on_error: Optional[Callable[[ErrorKind, str], MaybeAwaitable]] = None
    # (request_id, text delta) while streaming, then (request_id, full answer)
    on_chat_delta: Optional[Callable[[str, str], MaybeAwaitable]] = None
    on_chat_answer: Optional[Callable[[str, str], MaybeAwaitable]] = None


def _parse_device(value: str | None) -> int | str | None:
    if value is None:
        return None
    return int(value) if value.isdigit() else value


# ---------------------------------------------------------------------
# CallSession
# ---------------------------------------------------------------------

class CallSession:
    """
    One live call == one CallSession. Not restartable.

    Args:
        callbacks:
            Outbound hooks (see PipelineCallbacks).
        app_config:
            Process configuration; supplies relay model/language, LLM
            provider/model and local capture devices.
        local_capture:
            When True, audio comes from sounddevice on this machine.
            When False, the host pushes frames with feed_remote_frame().
        relay_factory / capture_factory / backend_factory:
            Injectable constructors (tests swap in fakes).
    """

    def __init__(
        self,
        *,
        callbacks: PipelineCallbacks | None = None,
        app_config: AppConfig | None = None,
        session_id: str | None = None,
        local_capture: bool = False,
        relay_factory: RelayFactory = DeepgramRelayClient,
        capture_factory: CaptureFactory = AudioSourceAdapter,
        backend_factory: BackendFactory | None = None,
    ) -> None:
        self.session_id = session_id or new_session_id()
        self._callbacks = callbacks or PipelineCallbacks()
        self._app_config = app_config
        self._local_capture = local_capture
        self._relay_factory = relay_factory
        self._capture_factory = capture_factory
        self._backend_factory = backend_factory or self._default_backend

        self._loop: asyncio.AbstractEventLoop | None = None
        self._events: asyncio.Queue[tuple[str, tuple[Any, ...]]] | None = None
        self._delivery_task: asyncio.Task[None] | None = None

        self.normalizer: TranscriptNormalizer | None = None
        self.coordinator: IngestionCoordinator | None = None
        self.scheduler: AIDispatchScheduler | None = None
        self.relay: DeepgramRelayClient | None = None
        self.context: ConversationContext | None = None
        self._capture: AudioSourceAdapter | None = None
        self._capture_handle: CaptureHandle | None = None

        self._started = False
        self._stopped = False
        self._events_dropped = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def capture_mode(self) -> CaptureMode | None:
        """Active local capture mode, or None for remote/no capture."""
        handle = self._capture_handle
        if handle is None or handle.closed:
            return None
        return handle.mode

    @property
    def stopped(self) -> bool:
        return self._stopped

    def log_context(self) -> dict[str, Any]:
        """Standard logging context for this session."""
        return {
            "session_id": self.session_id,
            "relay_state": self.relay.state.value if self.relay is not None else None,
            "capture_mode": self.capture_mode.value if self.capture_mode is not None else None,
        }

    def snapshot(self) -> dict[str, Any]:
        """Component counters for the stop log."""
        return {
            "relay": self.relay.snapshot() if self.relay is not None else None,
            "coordinator": self.coordinator.snapshot() if self.coordinator is not None else None,
            "scheduler": self.scheduler.snapshot() if self.scheduler is not None else None,
            "events_dropped": self._events_dropped,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, config: SessionConfig) -> bool:
        """
        Build and start the pipeline.

        Returns True when the relay is CONNECTED and capture (if local) is
        running. Never raises for runtime failures; they are delivered
        through on_error and leave the session in a stoppable state.
        """
        if self._started:
            raise RuntimeError("CallSession.start() called twice")
        self._started = True

        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue(maxsize=SESSION_EVENT_Q_MAX_EVENTS)
        self._delivery_task = asyncio.create_task(self._deliver_events())

        log_event({
            "event_type": "SESSION_STARTING",
            "session_id": self.session_id,
            "local_capture": self._local_capture,
            "enable_system_audio": config.enable_system_audio,
            "auto_todos": config.auto_todos,
            "auto_suggestions": config.auto_suggestions,
            "debounce_ms": config.debounce_ms,
        })

        if not config.api_key_stt:
            self._emit_error(ErrorKind.AUTH_REJECTED, "no speech-to-text API key configured")
            return False

        self._build_pipeline(config)
        assert self.relay is not None

        if not await self.relay.start():
            return False

        if self._local_capture:
            try:
                self._start_capture(config)
            except AudioError as err:
                self._emit_error(err.kind, err.detail)
                await self.relay.stop()
                return False

        log_event({
            "event_type": "SESSION_STARTED",
            **self.log_context(),
        })
        return True

    async def stop(self) -> None:
        """
        Tear the pipeline down: scheduler, then relay, then capture.

        Idempotent. Pending outbound events are flushed before returning.
        """
        if self._stopped:
            return
        self._stopped = True

        async with AsyncExitStack() as stack:
            if self._capture is not None:
                stack.callback(self._capture.stop)
            if self.relay is not None:
                stack.push_async_callback(self.relay.stop)
            if self.scheduler is not None:
                stack.push_async_callback(self.scheduler.stop)

        await self._drain_events()

        log_event({
            "event_type": "SESSION_STOPPED",
            "session_id": self.session_id,
            "kind": ErrorKind.SESSION_STOPPED.value,
            **self.snapshot(),
        })

    # ------------------------------------------------------------------
    # Inbound (host -> pipeline)
    # ------------------------------------------------------------------

    def feed_remote_frame(self, frame: AudioFrame) -> bool:
        """
        Push one remote audio frame to the relay (event loop thread).

        Returns True if the relay queued it.
        """
        if self._stopped or self.relay is None:
            return False
        return self.relay.send_frame(frame)

    def submit_transcript_threadsafe(self, event: TranscriptEvent) -> None:
        """Hand a transcript event to the pipeline from any thread."""
        if self._loop is None or self._stopped:
            return
        self._loop.call_soon_threadsafe(self.handle_transcript, event)

    def ask(self, query: str) -> str | None:
        """
        Ask a question about the call (event loop thread).

        The answer streams back through on_chat_delta / on_chat_answer
        under the returned request id. Returns None when the session is
        not running or the question is blank or longer than
        AI_CHAT_MAX_QUERY_CHARS.
        """
        if self._stopped or self.scheduler is None:
            return None
        if len(query) > AI_CHAT_MAX_QUERY_CHARS:
            log_event({
                "event_type": "AI_CHAT_REJECTED",
                "level": "WARNING",
                "session_id": self.session_id,
                "reason": "too_long",
                "char_count": len(query),
            })
            return None
        return self.scheduler.ask(query)

    def handle_transcript(self, event: TranscriptEvent) -> None:
        """
        Normalizer -> coordinator, synchronously, in arrival order.

        Must run on the event loop thread.
        """
        if self._stopped or self.normalizer is None or self.coordinator is None:
            return

        normalized = self.normalizer.normalize(event)
        if normalized is None:
            return
        self._emit("on_normalized_transcript", normalized)

        record = self.coordinator.ingest(normalized)
        if record is not None:
            self._emit("on_transcript_record", record)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def _build_pipeline(self, config: SessionConfig) -> None:
        kinds: list[AnalysisKind] = []
        if config.auto_todos:
            kinds.append(AnalysisKind.TODO)
        if config.auto_suggestions:
            kinds.append(AnalysisKind.SUGGESTION)

        self.context = ConversationContext(session_id=self.session_id)
        self.normalizer = TranscriptNormalizer(session_id=self.session_id)

        self.scheduler = AIDispatchScheduler(
            backend=self._backend_factory(config),
            session_id=self.session_id,
            context=self.context,
            limiter=SlidingWindowRateLimiter(max_requests=config.max_suggestions_per_minute),
            debounce_ms=config.debounce_ms,
            on_todo=lambda text, priority: self._emit("on_todo_suggestion", text, priority),
            on_insight=lambda text: self._emit("on_insight", text),
            on_error=self._emit_error,
            on_chat_delta=lambda request_id, delta: self._emit("on_chat_delta", request_id, delta),
            on_chat_answer=lambda request_id, text: self._emit("on_chat_answer", request_id, text),
        )

        self.coordinator = IngestionCoordinator(
            session_id=self.session_id,
            hash_guard=TranscriptHashGuard(),
            context=self.context,
            scheduler=self.scheduler,
            kinds=kinds,
        )

        relay_kwargs: dict[str, Any] = {}
        if self._app_config is not None:
            relay_kwargs["model"] = self._app_config.deepgram_model
            relay_kwargs["language"] = self._app_config.deepgram_language

        assert config.api_key_stt is not None
        self.relay = self._relay_factory(
            api_key=config.api_key_stt,
            on_transcript=self.handle_transcript,
            on_status=self._on_relay_status,
            on_error=self._on_relay_error,
            session_id=self.session_id,
            **relay_kwargs,
        )

    def _default_backend(self, config: SessionConfig) -> AnalysisBackend:
        if config.api_key_llm:
            provider = self._app_config.llm_provider if self._app_config else "openai"
            model = self._app_config.llm_model if self._app_config else "gpt-4o-mini"
            stream = self._app_config.llm_stream if self._app_config else True
            return OpenAIAnalysisBackend(
                client=build_llm_client(provider=provider, api_key=config.api_key_llm),
                model=model,
                stream=stream,
            )

        log_event({
            "event_type": "AI_BACKEND_FALLBACK",
            "level": "WARNING",
            "session_id": self.session_id,
            "backend": "keyword",
            "reason": "no LLM API key configured",
        })
        return KeywordAnalysisBackend()

    def _start_capture(self, config: SessionConfig) -> None:
        """
        Raises:
            AudioError if the microphone cannot be opened.
        """
        app = self._app_config
        self._capture = self._capture_factory(
            on_frame=self._on_capture_frame,
            on_error=self._on_capture_error,
            session_id=self.session_id,
        )
        self._capture_handle = self._capture.start(CaptureConfig(
            enable_system_audio=config.enable_system_audio,
            mic_device=_parse_device(app.mic_device) if app else None,
            system_device=_parse_device(app.system_device) if app else None,
        ))

        # Mixed audio cannot be attributed; a lone microphone is the user.
        if self._capture_handle.mode is CaptureMode.MIC_ONLY and self.relay is not None:
            self.relay.speaker = Speaker.USER

    # ------------------------------------------------------------------
    # Component callbacks
    # ------------------------------------------------------------------

    def _on_capture_frame(self, frame: AudioFrame) -> None:
        # PortAudio thread
        loop = self._loop
        relay = self.relay
        if loop is None or relay is None or self._stopped:
            return
        try:
            loop.call_soon_threadsafe(relay.send_frame, frame)
        except RuntimeError:
            # loop already closed during shutdown
            pass

    def _on_capture_error(self, err: AudioError) -> None:
        # PortAudio thread or event loop
        loop = self._loop
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(self._emit_error, err.kind, err.detail)
        except RuntimeError:
            pass

    def _on_relay_status(self, state: ConnectionState) -> None:
        self._emit("on_connection_status", state)

    def _on_relay_error(self, err: RelayError) -> None:
        self._emit_error(err.kind, err.detail)
        if err.kind.fatal and self._capture is not None:
            # Relay is FAILED for good; stop holding the microphone.
            self._capture.stop()

    # ------------------------------------------------------------------
    # Outbound delivery
    # ------------------------------------------------------------------

    def _emit_error(self, kind: ErrorKind, detail: str) -> None:
        log_event({
            "event_type": "SESSION_ERROR",
            "level": "ERROR" if kind.fatal else "WARNING",
            "session_id": self.session_id,
            "kind": kind.value,
            "fatal": kind.fatal,
            "detail": detail,
        })
        self._emit("on_error", kind, detail)

    def _emit(self, name: str, *args: Any) -> None:
        if self._events is None:
            return
        try:
            self._events.put_nowait((name, args))
        except asyncio.QueueFull:
            self._events_dropped += 1
            log_event({
                "event_type": "SESSION_EVENT_DROPPED",
                "level": "WARNING",
                "session_id": self.session_id,
                "callback": name,
                "dropped_total": self._events_dropped,
            })

    async def _deliver_events(self) -> None:
        assert self._events is not None
        while True:
            name, args = await self._events.get()
            try:
                await self._invoke(name, args)
            finally:
                self._events.task_done()

    async def _invoke(self, name: str, args: tuple[Any, ...]) -> None:
        callback = getattr(self._callbacks, name)
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "SESSION_CALLBACK_FAILED",
                "level": "ERROR",
                "session_id": self.session_id,
                "callback": name,
                "exception": type(exc).__name__,
                "message": str(exc),
            })

    async def _drain_events(self) -> None:
        """Deliver everything already queued, then stop the delivery task."""
        task = self._delivery_task
        self._delivery_task = None
        if self._events is not None and task is not None and not task.done():
            try:
                await asyncio.wait_for(self._events.join(), SESSION_STOP_DRAIN_TIMEOUT_S)
            except asyncio.TimeoutError:
                log_event({
                    "event_type": "SESSION_EVENT_DRAIN_TIMEOUT",
                    "level": "WARNING",
                    "session_id": self.session_id,
                    "pending": self._events.qsize(),
                })
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
