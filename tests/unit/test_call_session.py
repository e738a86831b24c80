# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import math
import threading
from contextlib import ExitStack
from typing import Any, AsyncIterator

from adapters.llm.base import AnalysisBackend
from adapters.llm.parsing import AnalysisResult, InsightList, TodoItem, TodoList
from audio.capture import CaptureHandle
from audio.frames import AudioFrame
from config import AppConfig, SessionConfig
from context.conversation import ConversationContext
from orchestrator.enums.error_kind import ErrorKind
from orchestrator.enums.mode import CaptureMode
from orchestrator.enums.service import AnalysisKind
from orchestrator.errors import AudioError, RelayError
from session.call_session import CallSession, PipelineCallbacks
from session.connection_status import ConnectionState
from spec import AUDIO_BYTES_PER_FRAME_PCM, AUDIO_FRAME_DURATION_S
from transcript.models import AnalysisRequest, Speaker, TranscriptEvent


# ---------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------

class FakeRelay:
    def __init__(self, order: list[str], start_ok: bool = True, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.on_transcript = kwargs["on_transcript"]
        self.on_status = kwargs["on_status"]
        self.on_error = kwargs["on_error"]
        self.speaker: Speaker | None = None
        self.frames: list[AudioFrame] = []
        self.state = ConnectionState.IDLE
        self._order = order
        self._start_ok = start_ok

    async def start(self) -> bool:
        self.state = ConnectionState.CONNECTED if self._start_ok else ConnectionState.FAILED
        self.on_status(self.state)
        return self._start_ok

    def send_frame(self, frame: AudioFrame) -> bool:
        if self.state is not ConnectionState.CONNECTED:
            return False
        self.frames.append(frame)
        return True

    async def stop(self) -> None:
        self._order.append("relay")
        self.state = ConnectionState.CLOSED

    def snapshot(self) -> dict[str, Any]:
        return {"state": self.state.value, "frames_sent": len(self.frames)}

    def transcript(self, text: str, *, is_final: bool = True) -> None:
        self.on_transcript(TranscriptEvent(
            text=text, is_final=is_final, confidence=0.9, speaker=self.speaker, received_at=1,
        ))


class FakeCapture:
    def __init__(self, order: list[str], *, mode: CaptureMode = CaptureMode.MIC_ONLY,
                 fail: AudioError | None = None, **kwargs: Any) -> None:
        self.on_frame = kwargs["on_frame"]
        self.on_error = kwargs["on_error"]
        self.configs: list[Any] = []
        self.stopped = 0
        self._order = order
        self._mode = mode
        self._fail = fail

    def start(self, config: Any) -> CaptureHandle:
        self.configs.append(config)
        if self._fail is not None:
            raise self._fail
        return CaptureHandle(ExitStack(), self._mode)

    def stop(self, handle: CaptureHandle | None = None) -> None:  # pylint: disable=unused-argument
        self.stopped += 1
        self._order.append("capture")


class CountingBackend(AnalysisBackend):
    def __init__(self) -> None:
        self.requests: list[AnalysisRequest] = []
        self.questions: list[tuple[str, int]] = []

    async def analyze(self, request: AnalysisRequest, context: ConversationContext | None = None) -> AnalysisResult:
        self.requests.append(request)
        if request.kind is AnalysisKind.TODO:
            return TodoList(items=(TodoItem(text="Follow up with the client", priority="medium"),))
        return InsightList(insights=())

    async def answer(self, query: str, context: ConversationContext | None = None) -> AsyncIterator[str]:
        self.questions.append((query, len(context) if context is not None else 0))
        yield "They asked "
        yield "for the deck."


class Collector:
    def __init__(self) -> None:
        self.normalized: list[Any] = []
        self.records: list[Any] = []
        self.todos: list[tuple[str, str]] = []
        self.insights: list[str] = []
        self.statuses: list[ConnectionState] = []
        self.errors: list[tuple[ErrorKind, str]] = []
        self.chat_deltas: list[tuple[str, str]] = []
        self.chat_answers: list[tuple[str, str]] = []

    def callbacks(self) -> PipelineCallbacks:
        return PipelineCallbacks(
            on_normalized_transcript=self.normalized.append,
            on_transcript_record=self.records.append,
            on_todo_suggestion=lambda text, priority: self.todos.append((text, priority)),
            on_insight=self.insights.append,
            on_connection_status=self.statuses.append,
            on_error=lambda kind, detail: self.errors.append((kind, detail)),
            on_chat_delta=lambda request_id, delta: self.chat_deltas.append((request_id, delta)),
            on_chat_answer=lambda request_id, text: self.chat_answers.append((request_id, text)),
        )


def make_app_config(**overrides: Any) -> AppConfig:
    values: dict[str, Any] = dict(
        env="test", log_level="INFO",
        deepgram_api_key=None, deepgram_model="nova-2", deepgram_language="en-GB",
        llm_provider="openai", llm_model="gpt-4o-mini", llm_stream=True,
        openai_api_key=None, groq_api_key=None,
        audio_capture="remote", mic_device=None, system_device=None,
    )
    values.update(overrides)
    return AppConfig(**values)


def make_session(collector: Collector, order: list[str], *, backend: AnalysisBackend | None = None,
                 capture_kwargs: dict[str, Any] | None = None, local_capture: bool = False,
                 start_ok: bool = True) -> CallSession:
    return CallSession(
        callbacks=collector.callbacks(),
        app_config=make_app_config(),
        session_id="sess_test",
        local_capture=local_capture,
        relay_factory=lambda **kw: FakeRelay(order, start_ok=start_ok, **kw),
        capture_factory=lambda **kw: FakeCapture(order, **(capture_kwargs or {}), **kw),
        backend_factory=(lambda config: backend) if backend is not None else None,
    )


def silence_frame(seq: int) -> AudioFrame:
    return AudioFrame(sequence_num=seq, pcm_bytes=bytes(AUDIO_BYTES_PER_FRAME_PCM), ts_ms=0)


# ---------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------

def test_silence_then_final_dispatches_exactly_one_todo():
    async def scenario() -> None:
        collector, order, backend = Collector(), [], CountingBackend()
        session = make_session(collector, order, backend=backend)

        ok = await session.start(SessionConfig(
            api_key_stt="dg_test", auto_todos=True, auto_suggestions=False, debounce_ms=20,
        ))
        assert ok is True

        relay = session.relay
        silence_frames = math.ceil(3.0 / AUDIO_FRAME_DURATION_S)
        for seq in range(1, silence_frames + 1):
            assert session.feed_remote_frame(silence_frame(seq)) is True

        relay.transcript("we need to follow", is_final=False)
        relay.transcript("we need to follow up with the client")

        await asyncio.sleep(0.2)
        await session.stop()

        assert len(relay.frames) == silence_frames
        assert [r.kind for r in backend.requests] == [AnalysisKind.TODO]
        assert backend.requests[0].text == "we need to follow up with the client"
        assert collector.todos == [("Follow up with the client", "medium")]
        assert [r.text for r in collector.records] == ["we need to follow up with the client"]
        assert [n.is_final for n in collector.normalized] == [False, True]
        assert collector.statuses == [ConnectionState.CONNECTED]
        assert relay.kwargs["model"] == "nova-2"
        assert relay.kwargs["language"] == "en-GB"

    asyncio.run(scenario())


def test_keyword_backend_used_without_llm_key():
    async def scenario() -> None:
        collector, order = Collector(), []
        session = make_session(collector, order)

        await session.start(SessionConfig(
            api_key_stt="dg_test", auto_suggestions=False, debounce_ms=10,
        ))
        session.relay.transcript("we need to follow up with the client")
        await asyncio.sleep(0.1)
        await session.stop()

        assert collector.todos == [("follow up with the client", "medium")]

    asyncio.run(scenario())


def test_duplicate_finals_become_one_record():
    async def scenario() -> None:
        collector, order = Collector(), []
        session = make_session(collector, order, backend=CountingBackend())

        await session.start(SessionConfig(api_key_stt="dg_test", auto_todos=False, auto_suggestions=False))
        session.relay.transcript("the quarterly numbers look good")
        session.relay.transcript("the quarterly numbers look good")
        await session.stop()

        assert len(collector.records) == 1
        assert len(session.context) == 1

    asyncio.run(scenario())


def test_transcript_from_another_thread():
    async def scenario() -> None:
        collector, order = Collector(), []
        session = make_session(collector, order, backend=CountingBackend())
        await session.start(SessionConfig(api_key_stt="dg_test", auto_todos=False, auto_suggestions=False))

        event = TranscriptEvent(text="hello from a worker thread", is_final=True,
                                confidence=0.8, speaker=None, received_at=5)
        worker = threading.Thread(target=session.submit_transcript_threadsafe, args=(event,))
        worker.start()
        worker.join()
        await asyncio.sleep(0.05)
        await session.stop()

        assert [r.text for r in collector.records] == ["hello from a worker thread"]

    asyncio.run(scenario())


# ---------------------------------------------------------------------
# User questions
# ---------------------------------------------------------------------

def test_question_is_answered_with_call_context():
    async def scenario() -> None:
        collector, order, backend = Collector(), [], CountingBackend()
        session = make_session(collector, order, backend=backend)
        await session.start(SessionConfig(api_key_stt="dg_test", auto_todos=False, auto_suggestions=False))

        session.relay.transcript("can you send the deck tonight")
        request_id = session.ask("what did they ask for?")
        await asyncio.sleep(0.05)
        await session.stop()

        assert request_id == "chat-1"
        assert backend.questions == [("what did they ask for?", 1)]
        assert collector.chat_deltas == [("chat-1", "They asked "), ("chat-1", "for the deck.")]
        assert collector.chat_answers == [("chat-1", "They asked for the deck.")]

    asyncio.run(scenario())


def test_keyword_backend_answers_from_transcript():
    async def scenario() -> None:
        collector, order = Collector(), []
        session = make_session(collector, order)
        await session.start(SessionConfig(api_key_stt="dg_test", auto_todos=False, auto_suggestions=False))

        session.relay.transcript("the contract renewal is due in March")
        session.ask("when is the contract due?")
        await asyncio.sleep(0.05)
        await session.stop()

        ((_, answer),) = collector.chat_answers
        assert "the contract renewal is due in March" in answer

    asyncio.run(scenario())


def test_ask_rejected_when_not_running_or_too_long():
    async def scenario() -> None:
        collector, order = Collector(), []
        session = make_session(collector, order, backend=CountingBackend())

        assert session.ask("anyone there?") is None

        await session.start(SessionConfig(api_key_stt="dg_test", auto_todos=False, auto_suggestions=False))
        assert session.ask("x" * 2001) is None
        await session.stop()

        assert session.ask("after stop") is None

    asyncio.run(scenario())


# ---------------------------------------------------------------------
# Start failures
# ---------------------------------------------------------------------

def test_missing_stt_key_is_auth_rejected():
    async def scenario() -> None:
        collector, order = Collector(), []
        session = make_session(collector, order, backend=CountingBackend())

        ok = await session.start(SessionConfig(api_key_stt=None))
        await session.stop()

        assert ok is False
        assert session.relay is None
        assert [kind for kind, _ in collector.errors] == [ErrorKind.AUTH_REJECTED]

    asyncio.run(scenario())


def test_relay_start_failure_returns_false():
    async def scenario() -> None:
        collector, order = Collector(), []
        session = make_session(collector, order, backend=CountingBackend(),
                               local_capture=True, start_ok=False)

        ok = await session.start(SessionConfig(api_key_stt="dg_test"))
        await session.stop()

        assert ok is False
        assert session.capture_mode is None
        assert "capture" not in order

    asyncio.run(scenario())


def test_capture_failure_stops_relay_and_reports():
    async def scenario() -> None:
        collector, order = Collector(), []
        failure = AudioError(ErrorKind.AUDIO_PERMISSION_DENIED, "microphone access denied")
        session = make_session(collector, order, backend=CountingBackend(), local_capture=True,
                               capture_kwargs={"fail": failure})

        ok = await session.start(SessionConfig(api_key_stt="dg_test"))
        assert ok is False
        assert order == ["relay"]

        await session.stop()
        assert (ErrorKind.AUDIO_PERMISSION_DENIED, "microphone access denied") in collector.errors

    asyncio.run(scenario())


def test_start_twice_raises():
    async def scenario() -> None:
        session = make_session(Collector(), [], backend=CountingBackend())
        await session.start(SessionConfig(api_key_stt="dg_test"))
        try:
            await session.start(SessionConfig(api_key_stt="dg_test"))
        except RuntimeError:
            pass
        else:
            raise AssertionError("second start() must raise")
        finally:
            await session.stop()

    asyncio.run(scenario())


# ---------------------------------------------------------------------
# Local capture
# ---------------------------------------------------------------------

def test_mic_only_capture_attributes_user_speaker():
    async def scenario() -> None:
        collector, order = Collector(), []
        session = make_session(collector, order, backend=CountingBackend(), local_capture=True)

        assert await session.start(SessionConfig(api_key_stt="dg_test", enable_system_audio=True))
        assert session.capture_mode is CaptureMode.MIC_ONLY
        assert session.relay.speaker is Speaker.USER
        await session.stop()

    asyncio.run(scenario())


def test_dual_capture_leaves_speaker_unknown():
    async def scenario() -> None:
        session = make_session(Collector(), [], backend=CountingBackend(), local_capture=True,
                               capture_kwargs={"mode": CaptureMode.DUAL})

        assert await session.start(SessionConfig(api_key_stt="dg_test", enable_system_audio=True))
        assert session.capture_mode is CaptureMode.DUAL
        assert session.relay.speaker is None
        await session.stop()

    asyncio.run(scenario())


def test_capture_frames_reach_relay_via_event_loop():
    async def scenario() -> None:
        session = make_session(Collector(), [], backend=CountingBackend(), local_capture=True)
        await session.start(SessionConfig(api_key_stt="dg_test"))

        capture = session._capture  # pylint: disable=protected-access
        worker = threading.Thread(target=capture.on_frame, args=(silence_frame(1),))
        worker.start()
        worker.join()
        await asyncio.sleep(0.01)

        assert [f.sequence_num for f in session.relay.frames] == [1]
        await session.stop()

    asyncio.run(scenario())


def test_fatal_relay_error_releases_capture():
    async def scenario() -> None:
        collector, order = Collector(), []
        session = make_session(collector, order, backend=CountingBackend(), local_capture=True)
        await session.start(SessionConfig(api_key_stt="dg_test"))

        session.relay.on_error(RelayError(ErrorKind.CONNECTION_FAILED, "reconnect attempts exhausted"))
        assert order == ["capture"]

        await session.stop()
        assert (ErrorKind.CONNECTION_FAILED, "reconnect attempts exhausted") in collector.errors

    asyncio.run(scenario())


# ---------------------------------------------------------------------
# Stop
# ---------------------------------------------------------------------

def test_stop_order_and_idempotence():
    async def scenario() -> None:
        order: list[str] = []
        session = make_session(Collector(), order, backend=CountingBackend(), local_capture=True)
        await session.start(SessionConfig(api_key_stt="dg_test"))

        scheduler_stop = session.scheduler.stop

        async def spy_stop() -> None:
            order.append("scheduler")
            await scheduler_stop()

        session.scheduler.stop = spy_stop  # type: ignore[method-assign]

        await session.stop()
        await session.stop()

        assert order == ["scheduler", "relay", "capture"]
        assert session.stopped is True
        assert session.feed_remote_frame(silence_frame(1)) is False

    asyncio.run(scenario())


def test_failing_callback_does_not_block_delivery():
    async def scenario() -> None:
        records: list[Any] = []
        seen: list[str] = []

        def explode(_transcript: Any) -> None:
            raise RuntimeError("ui went away")

        async def on_record(record: Any) -> None:
            await asyncio.sleep(0)
            records.append(record)

        session = CallSession(
            callbacks=PipelineCallbacks(
                on_normalized_transcript=explode,
                on_transcript_record=on_record,
                on_connection_status=lambda state: seen.append(state.value),
            ),
            relay_factory=lambda **kw: FakeRelay([], **kw),
            backend_factory=lambda config: CountingBackend(),
        )
        await session.start(SessionConfig(api_key_stt="dg_test", auto_todos=False, auto_suggestions=False))
        session.relay.transcript("status update for the team")
        await session.stop()

        assert seen == ["CONNECTED"]
        assert [r.text for r in records] == ["status update for the team"]

    asyncio.run(scenario())
