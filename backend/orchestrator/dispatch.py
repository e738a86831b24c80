"""
AI Dispatch Scheduler.

Decides WHEN meaningful transcript text is sent to the analysis backend.

Per analysis kind there is one slot with an explicit state:

    IDLE --submit--> PENDING_DISPATCH --timer fires, limiter ok--> IN_FLIGHT
    PENDING_DISPATCH --submit--> PENDING_DISPATCH      (text replaced, timer restarted)
    PENDING_DISPATCH --timer fires, limiter denies--> PENDING_DISPATCH (timer re-armed)
    IN_FLIGHT --submit--> IN_FLIGHT                    (text pending, timer armed)
    IN_FLIGHT --timer fires--> IN_FLIGHT               (timer re-armed, no dispatch)
    IN_FLIGHT --response/timeout/error--> PENDING_DISPATCH if text pending else IDLE

Rules:
- Debounce: only the newest text of a burst is dispatched.
- Mutual exclusion: at most one request in flight per kind. Kinds are
  independent and may overlap.
- Timeouts: a request exceeding its kind's timeout is abandoned, never
  retried, and frees the slot.
- Rate limiting: one session-wide limiter covers all kinds.
- Failures (timeout, parse error, backend exception) are logged, reported
  as recoverable errors and dropped. Nothing here raises into the caller.

User questions (ask):
- Not debounced and never replaced: every question gets an answer or an
  error. Questions are answered one at a time, in order.
- Each question takes a slot from the same session limiter (waiting for
  it if needed) and the wait plus the streamed answer share one timeout.
- Answer deltas go to on_chat_delta as they arrive, the full text to
  on_chat_answer once the stream ends.

Concurrency:
- submit() is synchronous and never blocks; it must be called on the
  event loop thread.
- Timers and requests are asyncio tasks; stop() cancels and awaits them.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping

from adapters.llm.base import AnalysisBackend
from adapters.llm.parsing import InsightList, ParseError, TodoList
from context.conversation import ConversationContext
from observability.logger import log_event, now_ms
from observability.metrics import timed
from orchestrator.enums.error_kind import ErrorKind
from orchestrator.enums.service import AnalysisKind
from orchestrator.enums.state import SlotState
from orchestrator.rate_limit import SlidingWindowRateLimiter
from spec import (
    AI_CHAT_TIMEOUT_MS,
    AI_DEBOUNCE_MS,
    AI_SUGGESTION_TIMEOUT_MS,
    AI_TODO_TIMEOUT_MS,
)
from transcript.models import AnalysisRequest


TodoCallback = Callable[[str, str], None]
InsightCallback = Callable[[str], None]
ErrorCallback = Callable[[ErrorKind, str], None]
# (request_id, text)
ChatCallback = Callable[[str, str], None]

DEFAULT_TIMEOUTS_MS: Mapping[AnalysisKind, int] = {
    AnalysisKind.TODO: AI_TODO_TIMEOUT_MS,
    AnalysisKind.SUGGESTION: AI_SUGGESTION_TIMEOUT_MS,
}


@dataclass
class _KindSlot:
    """Mutable per-kind bookkeeping. Owned by the scheduler only."""
    kind: AnalysisKind
    state: SlotState = SlotState.IDLE
    pending_text: str | None = None
    timer: asyncio.Task[None] | None = None
    request: asyncio.Task[None] | None = None
    dispatched: int = 0


class AIDispatchScheduler:
    """
    Debounced, mutually exclusive, rate-limited AI dispatch.

    One instance per call session.
    """

    def __init__(
        self,
        *,
        backend: AnalysisBackend,
        session_id: str | None = None,
        context: ConversationContext | None = None,
        limiter: SlidingWindowRateLimiter | None = None,
        debounce_ms: int = AI_DEBOUNCE_MS,
        timeouts_ms: Mapping[AnalysisKind, int] | None = None,
        chat_timeout_ms: int = AI_CHAT_TIMEOUT_MS,
        on_todo: TodoCallback | None = None,
        on_insight: InsightCallback | None = None,
        on_error: ErrorCallback | None = None,
        on_chat_delta: ChatCallback | None = None,
        on_chat_answer: ChatCallback | None = None,
    ) -> None:
        if debounce_ms < 0:
            raise ValueError("debounce_ms must be >= 0")

        self._backend = backend
        self._session_id = session_id
        self._context = context
        self._limiter = limiter or SlidingWindowRateLimiter()
        self._debounce_s = debounce_ms / 1000.0
        self._timeouts_s = {
            kind: ms / 1000.0
            for kind, ms in {**DEFAULT_TIMEOUTS_MS, **(timeouts_ms or {})}.items()
        }
        self._on_todo = on_todo
        self._on_insight = on_insight
        self._on_error = on_error
        self._chat_timeout_s = chat_timeout_ms / 1000.0
        self._on_chat_delta = on_chat_delta
        self._on_chat_answer = on_chat_answer

        self._slots: dict[AnalysisKind, _KindSlot] = {
            kind: _KindSlot(kind=kind) for kind in AnalysisKind
        }
        self._stopped = False

        self._chat_tasks: set[asyncio.Task[None]] = set()
        self._chat_lock: asyncio.Lock | None = None
        self._chat_seq = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, text: str, kinds: Iterable[AnalysisKind]) -> None:
        """
        Offer new meaningful text to the given kinds.

        Replaces any pending text and restarts each kind's debounce timer.
        """
        if self._stopped:
            return

        for kind in kinds:
            slot = self._slots[kind]
            slot.pending_text = text
            if slot.state is SlotState.IDLE:
                slot.state = SlotState.PENDING_DISPATCH
            self._arm(slot, self._debounce_s)

    def ask(self, query: str) -> str | None:
        """
        Queue one user question about the call.

        Returns the request id the answer callbacks will carry, or None
        when the scheduler is stopped or the question is blank.
        """
        query = query.strip()
        if self._stopped or not query:
            return None

        if self._chat_lock is None:
            self._chat_lock = asyncio.Lock()
        self._chat_seq += 1
        request_id = f"chat-{self._chat_seq}"

        log_event({
            "event_type": "AI_CHAT_QUEUED",
            "session_id": self._session_id,
            "request_id": request_id,
            "char_count": len(query),
        })

        task = asyncio.get_running_loop().create_task(self._run_chat(request_id, query))
        self._chat_tasks.add(task)
        task.add_done_callback(self._chat_tasks.discard)
        return request_id

    def state(self, kind: AnalysisKind) -> SlotState:
        """Current slot state of a kind."""
        return self._slots[kind].state

    def dispatched(self, kind: AnalysisKind) -> int:
        """Number of requests started for a kind."""
        return self._slots[kind].dispatched

    def snapshot(self) -> dict[str, dict[str, object]]:
        """Lightweight per-kind view for logging."""
        return {
            kind.value: {
                "state": slot.state.value,
                "pending": slot.pending_text is not None,
                "dispatched": slot.dispatched,
            }
            for kind, slot in self._slots.items()
        }

    async def stop(self) -> None:
        """
        Cancel all timers, in-flight requests and queued questions and
        wait for them.

        Idempotent. After stop(), submit() and ask() are no-ops.
        """
        self._stopped = True

        tasks: list[asyncio.Task[None]] = []
        for slot in self._slots.values():
            for task in (slot.timer, slot.request):
                if task is not None and not task.done():
                    task.cancel()
                    tasks.append(task)
            slot.timer = None
            slot.pending_text = None

        for task in list(self._chat_tasks):
            if not task.done():
                task.cancel()
                tasks.append(task)

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for slot in self._slots.values():
            slot.request = None
            slot.state = SlotState.IDLE

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _arm(self, slot: _KindSlot, delay_s: float) -> None:
        if slot.timer is not None and not slot.timer.done():
            slot.timer.cancel()
        slot.timer = asyncio.get_running_loop().create_task(self._timer(slot, delay_s))

    async def _timer(self, slot: _KindSlot, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        slot.timer = None
        self._on_timer_fired(slot)

    def _on_timer_fired(self, slot: _KindSlot) -> None:
        if self._stopped or slot.pending_text is None:
            return

        if slot.request is not None:
            # Kind busy: wait out another debounce window
            log_event({
                "event_type": "AI_DISPATCH_DEFERRED",
                "level": "DEBUG",
                "session_id": self._session_id,
                "kind": slot.kind.value,
                "reason": "in_flight",
            })
            self._arm(slot, self._debounce_s)
            return

        wait_s = self._limiter.reserve()
        if wait_s > 0:
            log_event({
                "event_type": "AI_DISPATCH_DEFERRED",
                "level": "DEBUG",
                "session_id": self._session_id,
                "kind": slot.kind.value,
                "reason": "rate_limited",
                "retry_in_ms": int(wait_s * 1000),
            })
            self._arm(slot, wait_s)
            return

        self._dispatch(slot)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _dispatch(self, slot: _KindSlot) -> None:
        assert slot.pending_text is not None
        request = AnalysisRequest(
            text=slot.pending_text,
            kind=slot.kind,
            submitted_at=now_ms(),
        )
        slot.pending_text = None
        slot.state = SlotState.IN_FLIGHT
        slot.dispatched += 1

        log_event({
            "event_type": "AI_DISPATCHED",
            "session_id": self._session_id,
            "kind": slot.kind.value,
            "char_count": len(request.text),
        })

        slot.request = asyncio.get_running_loop().create_task(
            self._run_request(slot, request)
        )

    async def _run_request(self, slot: _KindSlot, request: AnalysisRequest) -> None:
        timeout_s = self._timeouts_s[slot.kind]
        try:
            with timed(
                f"ai_request_{slot.kind.value}",
                session_id=self._session_id,
            ):
                result = await asyncio.wait_for(
                    self._backend.analyze(request, self._context),
                    timeout=timeout_s,
                )
            self._deliver(slot.kind, result)

        except asyncio.TimeoutError:
            log_event({
                "event_type": "AI_REQUEST_TIMEOUT",
                "level": "WARNING",
                "session_id": self._session_id,
                "kind": slot.kind.value,
                "timeout_ms": int(timeout_s * 1000),
            })
            self._report(ErrorKind.AI_REQUEST_TIMEOUT, f"{slot.kind.value} request timed out")

        except asyncio.CancelledError:
            raise

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "AI_REQUEST_FAILED",
                "level": "ERROR",
                "session_id": self._session_id,
                "kind": slot.kind.value,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            self._report(ErrorKind.AI_REQUEST_FAILED, f"{type(exc).__name__}: {exc}")

        finally:
            slot.request = None
            if not self._stopped:
                slot.state = (
                    SlotState.PENDING_DISPATCH
                    if slot.pending_text is not None
                    else SlotState.IDLE
                )

    # ------------------------------------------------------------------
    # User questions
    # ------------------------------------------------------------------

    async def _run_chat(self, request_id: str, query: str) -> None:
        assert self._chat_lock is not None
        async with self._chat_lock:
            parts: list[str] = []
            try:
                with timed("ai_request_chat", session_id=self._session_id):
                    await asyncio.wait_for(
                        self._stream_answer(request_id, query, parts),
                        timeout=self._chat_timeout_s,
                    )

            except asyncio.TimeoutError:
                log_event({
                    "event_type": "AI_REQUEST_TIMEOUT",
                    "level": "WARNING",
                    "session_id": self._session_id,
                    "kind": "chat",
                    "request_id": request_id,
                    "timeout_ms": int(self._chat_timeout_s * 1000),
                })
                self._report(ErrorKind.AI_REQUEST_TIMEOUT, f"chat {request_id} timed out")
                return

            except asyncio.CancelledError:
                raise

            except Exception as exc:  # pylint: disable=broad-exception-caught
                log_event({
                    "event_type": "AI_REQUEST_FAILED",
                    "level": "ERROR",
                    "session_id": self._session_id,
                    "kind": "chat",
                    "request_id": request_id,
                    "exception": type(exc).__name__,
                    "message": str(exc),
                })
                self._report(ErrorKind.AI_REQUEST_FAILED, f"chat {request_id}: {type(exc).__name__}: {exc}")
                return

            answer = "".join(parts)
            log_event({
                "event_type": "AI_CHAT_ANSWERED",
                "session_id": self._session_id,
                "request_id": request_id,
                "char_count": len(answer),
            })
            self._safe_call(self._on_chat_answer, request_id, answer)

    async def _stream_answer(self, request_id: str, query: str, parts: list[str]) -> None:
        while True:
            wait_s = self._limiter.reserve()
            if wait_s <= 0:
                break
            log_event({
                "event_type": "AI_DISPATCH_DEFERRED",
                "level": "DEBUG",
                "session_id": self._session_id,
                "kind": "chat",
                "reason": "rate_limited",
                "retry_in_ms": int(wait_s * 1000),
            })
            await asyncio.sleep(wait_s)

        async for delta in self._backend.answer(query, self._context):
            parts.append(delta)
            self._safe_call(self._on_chat_delta, request_id, delta)

    def _deliver(self, kind: AnalysisKind, result: object) -> None:
        if kind is AnalysisKind.TODO and isinstance(result, TodoList):
            for item in result.items:
                self._safe_call(self._on_todo, item.text, item.priority)
            return

        if kind is AnalysisKind.SUGGESTION and isinstance(result, InsightList):
            for insight in result.insights:
                self._safe_call(self._on_insight, insight)
            return

        reason = result.reason if isinstance(result, ParseError) else "unexpected_result_type"
        log_event({
            "event_type": "AI_RESPONSE_UNPARSEABLE",
            "level": "WARNING",
            "session_id": self._session_id,
            "kind": kind.value,
            "reason": reason,
        })
        self._report(ErrorKind.AI_REQUEST_FAILED, f"{kind.value}: {reason}")

    def _report(self, kind: ErrorKind, detail: str) -> None:
        self._safe_call(self._on_error, kind, detail)

    def _safe_call(self, callback: Callable[..., None] | None, *args: object) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "AI_CALLBACK_FAILED",
                "level": "ERROR",
                "session_id": self._session_id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
