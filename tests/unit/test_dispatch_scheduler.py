# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
from typing import Any, AsyncIterator

from adapters.llm.base import AnalysisBackend
from adapters.llm.parsing import AnalysisResult, InsightList, ParseError, TodoItem, TodoList
from context.conversation import ConversationContext
from orchestrator.dispatch import AIDispatchScheduler
from orchestrator.enums.error_kind import ErrorKind
from orchestrator.enums.service import AnalysisKind
from orchestrator.enums.state import SlotState
from orchestrator.rate_limit import SlidingWindowRateLimiter
from transcript.models import AnalysisRequest


TODO = (AnalysisKind.TODO,)


class FakeBackend(AnalysisBackend):
    def __init__(self, *, delay_s: float = 0.0, fail: Exception | None = None,
                 result: AnalysisResult | None = None) -> None:
        self.delay_s = delay_s
        self.fail = fail
        self.result = result
        self.requests: list[AnalysisRequest] = []
        self.active = 0
        self.max_active: dict[AnalysisKind, int] = {}
        self._active_by_kind: dict[AnalysisKind, int] = {}
        self.questions: list[str] = []
        self.active_chats = 0
        self.max_active_chats = 0

    async def analyze(self, request: AnalysisRequest, context: ConversationContext | None = None) -> AnalysisResult:
        self.requests.append(request)
        n = self._active_by_kind.get(request.kind, 0) + 1
        self._active_by_kind[request.kind] = n
        self.max_active[request.kind] = max(self.max_active.get(request.kind, 0), n)
        try:
            await asyncio.sleep(self.delay_s)
            if self.fail is not None:
                raise self.fail
            if self.result is not None:
                return self.result
            if request.kind is AnalysisKind.TODO:
                return TodoList(items=(TodoItem(text=f"todo for: {request.text}", priority="high"),))
            return InsightList(insights=(f"insight for: {request.text}",))
        finally:
            self._active_by_kind[request.kind] -= 1

    async def answer(self, query: str, context: ConversationContext | None = None) -> AsyncIterator[str]:
        self.questions.append(query)
        self.active_chats += 1
        self.max_active_chats = max(self.max_active_chats, self.active_chats)
        try:
            await asyncio.sleep(self.delay_s)
            if self.fail is not None:
                raise self.fail
            yield "answer to: "
            yield query
        finally:
            self.active_chats -= 1


class Sink:
    def __init__(self) -> None:
        self.todos: list[tuple[str, str]] = []
        self.insights: list[str] = []
        self.errors: list[tuple[ErrorKind, str]] = []
        self.chat_deltas: list[tuple[str, str]] = []
        self.chat_answers: list[tuple[str, str]] = []


def make_scheduler(backend: AnalysisBackend, sink: Sink, **kwargs: Any) -> AIDispatchScheduler:
    params: dict[str, Any] = {
        "backend": backend,
        "session_id": "sess_test",
        "limiter": SlidingWindowRateLimiter(min_spacing_ms=0),
        "debounce_ms": 30,
        "on_todo": lambda text, priority: sink.todos.append((text, priority)),
        "on_insight": sink.insights.append,
        "on_error": lambda kind, detail: sink.errors.append((kind, detail)),
        "on_chat_delta": lambda request_id, delta: sink.chat_deltas.append((request_id, delta)),
        "on_chat_answer": lambda request_id, text: sink.chat_answers.append((request_id, text)),
    }
    params.update(kwargs)
    return AIDispatchScheduler(**params)


# ---------------------------------------------------------------------
# Debounce
# ---------------------------------------------------------------------

def test_burst_dispatches_once_with_last_text():
    async def scenario() -> None:
        backend, sink = FakeBackend(), Sink()
        scheduler = make_scheduler(backend, sink, debounce_ms=50)

        for i in range(10):
            scheduler.submit(f"meaningful text number {i}", TODO)
            await asyncio.sleep(0.005)

        assert backend.requests == []
        assert scheduler.state(AnalysisKind.TODO) is SlotState.PENDING_DISPATCH

        await asyncio.sleep(0.15)

        assert [r.text for r in backend.requests] == ["meaningful text number 9"]
        assert sink.todos == [("todo for: meaningful text number 9", "high")]
        assert scheduler.state(AnalysisKind.TODO) is SlotState.IDLE
        await scheduler.stop()

    asyncio.run(scenario())


# ---------------------------------------------------------------------
# Mutual exclusion
# ---------------------------------------------------------------------

def test_at_most_one_request_in_flight_per_kind():
    async def scenario() -> None:
        backend, sink = FakeBackend(delay_s=0.15), Sink()
        scheduler = make_scheduler(backend, sink, debounce_ms=10)

        scheduler.submit("first meaningful text", TODO)
        await asyncio.sleep(0.04)
        assert scheduler.state(AnalysisKind.TODO) is SlotState.IN_FLIGHT

        scheduler.submit("second meaningful text", TODO)
        await asyncio.sleep(0.05)
        assert len(backend.requests) == 1
        assert scheduler.state(AnalysisKind.TODO) is SlotState.IN_FLIGHT

        await asyncio.sleep(0.4)

        assert [r.text for r in backend.requests] == ["first meaningful text", "second meaningful text"]
        assert backend.max_active[AnalysisKind.TODO] == 1
        await scheduler.stop()

    asyncio.run(scenario())


def test_kinds_are_independent():
    async def scenario() -> None:
        backend, sink = FakeBackend(delay_s=0.05), Sink()
        scheduler = make_scheduler(backend, sink, debounce_ms=10)

        scheduler.submit("we should expand to new markets", (AnalysisKind.TODO, AnalysisKind.SUGGESTION))
        await asyncio.sleep(0.2)

        assert sorted(r.kind.value for r in backend.requests) == ["suggestion", "todo"]
        assert len(sink.todos) == 1
        assert len(sink.insights) == 1
        assert scheduler.dispatched(AnalysisKind.TODO) == 1
        await scheduler.stop()

    asyncio.run(scenario())


# ---------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------

def test_timeout_frees_slot_and_reports_recoverable_error():
    async def scenario() -> None:
        backend, sink = FakeBackend(delay_s=1.0), Sink()
        scheduler = make_scheduler(
            backend, sink, debounce_ms=5, timeouts_ms={AnalysisKind.TODO: 30},
        )

        scheduler.submit("slow meaningful request", TODO)
        await asyncio.sleep(0.15)

        assert [kind for kind, _ in sink.errors] == [ErrorKind.AI_REQUEST_TIMEOUT]
        assert not ErrorKind.AI_REQUEST_TIMEOUT.fatal
        assert scheduler.state(AnalysisKind.TODO) is SlotState.IDLE
        assert sink.todos == []

        backend.delay_s = 0.0
        scheduler.submit("fast meaningful request", TODO)
        await asyncio.sleep(0.1)

        assert len(backend.requests) == 2
        assert sink.todos == [("todo for: fast meaningful request", "high")]
        await scheduler.stop()

    asyncio.run(scenario())


def test_backend_exception_reported_and_dropped():
    async def scenario() -> None:
        backend, sink = FakeBackend(fail=RuntimeError("503 from provider")), Sink()
        scheduler = make_scheduler(backend, sink, debounce_ms=5)

        scheduler.submit("meaningful text here", TODO)
        await asyncio.sleep(0.1)

        assert sink.errors[0][0] is ErrorKind.AI_REQUEST_FAILED
        assert "503" in sink.errors[0][1]
        assert scheduler.state(AnalysisKind.TODO) is SlotState.IDLE
        await scheduler.stop()

    asyncio.run(scenario())


def test_unparseable_response_reported():
    async def scenario() -> None:
        backend = FakeBackend(result=ParseError(reason="todos_not_json", raw="nope"))
        sink = Sink()
        scheduler = make_scheduler(backend, sink, debounce_ms=5)

        scheduler.submit("meaningful text here", TODO)
        await asyncio.sleep(0.1)

        assert sink.todos == []
        assert sink.errors == [(ErrorKind.AI_REQUEST_FAILED, "todo: todos_not_json")]
        await scheduler.stop()

    asyncio.run(scenario())


# ---------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------

def test_rate_limited_dispatch_is_deferred_not_dropped():
    async def scenario() -> None:
        backend, sink = FakeBackend(), Sink()
        limiter = SlidingWindowRateLimiter(max_requests=1, window_s=0.2, min_spacing_ms=0)
        scheduler = make_scheduler(backend, sink, debounce_ms=5, limiter=limiter)

        scheduler.submit("first meaningful text", TODO)
        await asyncio.sleep(0.05)
        scheduler.submit("second meaningful text", TODO)
        await asyncio.sleep(0.05)

        assert len(backend.requests) == 1
        assert scheduler.state(AnalysisKind.TODO) is SlotState.PENDING_DISPATCH

        await asyncio.sleep(0.3)

        assert [r.text for r in backend.requests] == ["first meaningful text", "second meaningful text"]
        await scheduler.stop()

    asyncio.run(scenario())


# ---------------------------------------------------------------------
# Stop
# ---------------------------------------------------------------------

def test_stop_cancels_timers_and_requests():
    async def scenario() -> None:
        backend, sink = FakeBackend(delay_s=1.0), Sink()
        scheduler = make_scheduler(backend, sink, debounce_ms=5)

        scheduler.submit("in flight text", TODO)
        await asyncio.sleep(0.03)
        scheduler.submit("pending text", TODO)

        await scheduler.stop()
        scheduler.submit("after stop", TODO)
        await asyncio.sleep(0.05)

        assert [r.text for r in backend.requests] == ["in flight text"]
        assert scheduler.state(AnalysisKind.TODO) is SlotState.IDLE
        assert sink.todos == []
        assert sink.errors == []

    asyncio.run(scenario())


# ---------------------------------------------------------------------
# User questions
# ---------------------------------------------------------------------

def test_chat_answer_streams_deltas_then_full_text():
    async def scenario() -> None:
        backend, sink = FakeBackend(), Sink()
        scheduler = make_scheduler(backend, sink)

        request_id = scheduler.ask("  what is the budget?  ")
        await asyncio.sleep(0.05)

        assert request_id == "chat-1"
        assert backend.questions == ["what is the budget?"]
        assert sink.chat_deltas == [("chat-1", "answer to: "), ("chat-1", "what is the budget?")]
        assert sink.chat_answers == [("chat-1", "answer to: what is the budget?")]
        assert sink.errors == []
        await scheduler.stop()

    asyncio.run(scenario())


def test_chat_questions_are_answered_one_at_a_time_in_order():
    async def scenario() -> None:
        backend, sink = FakeBackend(delay_s=0.03), Sink()
        scheduler = make_scheduler(backend, sink)

        first = scheduler.ask("first question")
        second = scheduler.ask("second question")
        await asyncio.sleep(0.2)

        assert (first, second) == ("chat-1", "chat-2")
        assert [rid for rid, _ in sink.chat_answers] == ["chat-1", "chat-2"]
        assert backend.max_active_chats == 1
        await scheduler.stop()

    asyncio.run(scenario())


def test_blank_question_is_not_queued():
    async def scenario() -> None:
        backend, sink = FakeBackend(), Sink()
        scheduler = make_scheduler(backend, sink)

        assert scheduler.ask("   ") is None
        await asyncio.sleep(0.02)

        assert backend.questions == []
        await scheduler.stop()

    asyncio.run(scenario())


def test_chat_timeout_reported_without_answer():
    async def scenario() -> None:
        backend, sink = FakeBackend(delay_s=1.0), Sink()
        scheduler = make_scheduler(backend, sink, chat_timeout_ms=30)

        scheduler.ask("slow question")
        await asyncio.sleep(0.15)

        assert sink.chat_answers == []
        assert sink.errors == [(ErrorKind.AI_REQUEST_TIMEOUT, "chat chat-1 timed out")]
        await scheduler.stop()

    asyncio.run(scenario())


def test_chat_backend_failure_reported():
    async def scenario() -> None:
        backend, sink = FakeBackend(fail=RuntimeError("401 invalid key")), Sink()
        scheduler = make_scheduler(backend, sink)

        scheduler.ask("any question")
        await asyncio.sleep(0.05)

        assert sink.chat_answers == []
        assert sink.errors[0][0] is ErrorKind.AI_REQUEST_FAILED
        assert "401" in sink.errors[0][1]
        await scheduler.stop()

    asyncio.run(scenario())


def test_chat_shares_the_session_rate_limiter():
    async def scenario() -> None:
        backend, sink = FakeBackend(), Sink()
        limiter = SlidingWindowRateLimiter(max_requests=1, window_s=0.2, min_spacing_ms=0)
        scheduler = make_scheduler(backend, sink, debounce_ms=5, limiter=limiter)

        scheduler.submit("meaningful text for todos", TODO)
        await asyncio.sleep(0.05)
        assert len(backend.requests) == 1

        scheduler.ask("question while the window is full")
        await asyncio.sleep(0.05)
        assert backend.questions == []

        await asyncio.sleep(0.3)
        assert backend.questions == ["question while the window is full"]
        assert len(sink.chat_answers) == 1
        await scheduler.stop()

    asyncio.run(scenario())


def test_stop_cancels_queued_questions():
    async def scenario() -> None:
        backend, sink = FakeBackend(delay_s=1.0), Sink()
        scheduler = make_scheduler(backend, sink)

        scheduler.ask("first question")
        scheduler.ask("second question")
        await asyncio.sleep(0.02)

        await scheduler.stop()
        assert scheduler.ask("after stop") is None
        await asyncio.sleep(0.02)

        assert backend.questions == ["first question"]
        assert sink.chat_answers == []
        assert sink.errors == []

    asyncio.run(scenario())
