"""Tests for the session concurrency guard."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent.action_loop import AgentLoop
from agent.chat_types import (
    EmotionData,
    GenerationOutcome,
    Sender,
    StreamEvent,
    TerminatedBy,
    ThinkingMode,
    Turn,
    UserPreferences,
)
from agent.config import AgentSettings
from agent.providers.dispatcher import ProviderDispatcher
from agent.providers.native import GeminiProvider
from agent.search_escalation import SearchEscalation
from gateway.session_guard import (
    TIMEOUT_MESSAGE,
    AgentStatus,
    ChatContext,
    SessionGuard,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeLoop:
    """Stands in for AgentLoop: streams ``chunks`` then returns an outcome."""

    def __init__(self, chunks=("Hello", " there"), *, model="gemini-2.5-flash", gate=None):
        self.chunks = list(chunks)
        self.model = model
        self.gate = gate
        self.requests = []

    async def run(self, request, on_event=None):
        self.requests.append(request)
        text = ""
        for chunk in self.chunks:
            if self.gate is not None:
                await self.gate.wait()
            if request.cancellation.cancelled:
                return GenerationOutcome(final_text=text or "(Generation stopped by user)",
                                         model=self.model, terminated_by=TerminatedBy.ABORT)
            text += chunk
            on_event(StreamEvent(text=chunk))
        return GenerationOutcome(final_text=text, model=self.model)


class FakeStore:
    def __init__(self, fail_on=()):
        self.saved = []
        self.chat_updates = []
        self.fail_on = set(fail_on)

    async def add_message(self, record):
        if record["sender"] in self.fail_on:
            raise RuntimeError("database unavailable")
        saved = {**record, "id": f"db-{len(self.saved) + 1}"}
        self.saved.append(saved)
        return saved

    async def update_chat(self, chat_id, changes):
        self.chat_updates.append((chat_id, changes))


class HangingStream:
    """Gemini response stream that yields ``chunks`` and then never returns.

    It ignores the request's cancellation token, like a socket read that
    is waiting on a stalled backend.
    """

    def __init__(self, chunks=()):
        self._chunks = [SimpleNamespace(text=c, candidates=[]) for c in chunks]
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._chunks:
            return self._chunks.pop(0)
        await asyncio.Event().wait()

    async def aclose(self):
        self.closed = True


def _agent_loop(stream, settings):
    """A real AgentLoop whose Gemini client returns ``stream``."""
    client = MagicMock()
    client.aio.models.generate_content_stream = AsyncMock(return_value=stream)
    dispatcher = ProviderDispatcher(settings, native=GeminiProvider(client=client))
    return AgentLoop(dispatcher, settings, search=SearchEscalation(search_fn=AsyncMock(return_value=[])))


def _guard(loop=None, store=None, active="c1", **kwargs):
    active_ref = {"id": active}
    guard = SessionGuard(
        loop or FakeLoop(),
        store=store or FakeStore(),
        settings=kwargs.pop("settings", AgentSettings(gemini_api_key="k")),
        active_conversation=lambda: active_ref["id"],
        **kwargs,
    )
    return guard, active_ref


# ---------------------------------------------------------------------------
# Relevance
# ---------------------------------------------------------------------------

class TestRelevance:
    def test_is_relevant_is_a_pure_comparison(self):
        assert SessionGuard.is_relevant("c1", "c1")
        assert not SessionGuard.is_relevant("c1", "c2")
        assert not SessionGuard.is_relevant("c1", None)


# ---------------------------------------------------------------------------
# Single-flight
# ---------------------------------------------------------------------------

class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_second_send_is_rejected_while_in_flight(self):
        gate = asyncio.Event()
        loop = FakeLoop(gate=gate)
        guard, _ = _guard(loop)
        chat = ChatContext(id="c1", name="Existing")

        first = asyncio.create_task(guard.send("one", chat=chat))
        await asyncio.sleep(0)
        assert guard.is_busy("c1")

        second = await guard.send("two", chat=chat)
        assert second is None

        gate.set()
        outcome = await first
        assert outcome.final_text == "Hello there"
        assert len(loop.requests) == 1
        assert not guard.is_busy("c1")

    @pytest.mark.asyncio
    async def test_different_sessions_run_independently(self):
        gate = asyncio.Event()
        guard, _ = _guard(FakeLoop(gate=gate))

        a = asyncio.create_task(guard.send("a", chat=ChatContext(id="c1", name="A")))
        b = asyncio.create_task(guard.send("b", chat=ChatContext(id="c2", name="B")))
        await asyncio.sleep(0)
        assert guard.is_busy("c1") and guard.is_busy("c2")
        gate.set()
        assert (await a) is not None and (await b) is not None

    @pytest.mark.asyncio
    async def test_empty_message_is_a_noop(self):
        loop = FakeLoop()
        guard, _ = _guard(loop)

        assert await guard.send("   ", chat=ChatContext(id="c1")) is None
        assert loop.requests == []


# ---------------------------------------------------------------------------
# Deltas, status and ledger
# ---------------------------------------------------------------------------

class TestDeltasAndLedger:
    @pytest.mark.asyncio
    async def test_deltas_are_tagged_with_conversation(self):
        deltas = []
        guard, _ = _guard(on_delta=deltas.append)

        await guard.send("hi", chat=ChatContext(id="c1", name="Chat"))

        assert [d.conversation_id for d in deltas] == ["c1", "c1"]
        assert "".join(d.event.text for d in deltas) == "Hello there"

    @pytest.mark.asyncio
    async def test_navigating_away_still_persists(self):
        gate = asyncio.Event()
        store = FakeStore()
        deltas = []
        statuses = []
        guard, active = _guard(FakeLoop(gate=gate), store, on_delta=deltas.append,
                               on_status=lambda cid, s: statuses.append(s))

        task = asyncio.create_task(guard.send("hi", chat=ChatContext(id="c1", name="Chat")))
        await asyncio.sleep(0)
        active["id"] = "c2"
        gate.set()
        await task

        assert [r["sender"] for r in store.saved] == ["user", "ai"]
        assert store.saved[1]["text"] == "Hello there"
        assert len(deltas) == 2
        # Only the status set before navigating away was published
        assert statuses == [AgentStatus.THINKING]

    @pytest.mark.asyncio
    async def test_temp_records_are_reconciled_in_place(self):
        store = FakeStore()
        guard, _ = _guard(store=store)

        await guard.send("hi", chat=ChatContext(id="c1", name="Chat"))

        ledger = guard.ledger("c1")
        assert [r["id"] for r in ledger] == ["db-1", "db-2"]
        assert ledger[1]["text"] == "Hello there"

    @pytest.mark.asyncio
    async def test_failed_ai_save_keeps_provisional_record(self):
        store = FakeStore(fail_on={"ai"})
        guard, _ = _guard(store=store)

        await guard.send("hi", chat=ChatContext(id="c1", name="Chat"))

        ledger = guard.ledger("c1")
        assert ledger[0]["id"] == "db-1"
        assert ledger[1]["id"].startswith("temp-ai-")
        assert ledger[1]["text"] == "Hello there"

    @pytest.mark.asyncio
    async def test_think_markers_drive_status(self):
        statuses = []
        loop = FakeLoop(chunks=["<THINK>plan", "</THINK>", "answer"])
        guard, _ = _guard(loop, on_status=lambda cid, s: statuses.append(s))

        await guard.send("hi", chat=ChatContext(id="c1", name="Chat"))

        assert statuses == [AgentStatus.THINKING, AgentStatus.PLANNING, AgentStatus.BUILDING, AgentStatus.IDLE]
        assert guard.status == AgentStatus.IDLE


# ---------------------------------------------------------------------------
# Cancellation and timeout
# ---------------------------------------------------------------------------

class TestStopAndTimeout:
    @pytest.mark.asyncio
    async def test_stop_returns_partial_text_without_saving_reply(self):
        gate = asyncio.Event()
        store = FakeStore()
        loop = FakeLoop(chunks=["part", "rest"], gate=gate)
        guard, _ = _guard(loop, store)

        task = asyncio.create_task(guard.send("hi", chat=ChatContext(id="c1", name="Chat")))
        await asyncio.sleep(0)
        assert guard.stop("c1")
        gate.set()
        outcome = await task

        assert outcome.terminated_by == TerminatedBy.ABORT
        assert [r["sender"] for r in store.saved] == ["user"]
        assert guard.stop("c1") is False

    @pytest.mark.asyncio
    async def test_watchdog_cancels_a_silent_provider(self):
        settings = AgentSettings(gemini_api_key="k", safety_timeout=0.05)
        guard, _ = _guard(_agent_loop(HangingStream(), settings), settings=settings)

        outcome = await asyncio.wait_for(guard.send("hi", chat=ChatContext(id="c1", name="Chat")), 2.0)

        assert outcome.terminated_by == TerminatedBy.ERROR
        assert outcome.error == TIMEOUT_MESSAGE
        assert guard.status == AgentStatus.ERROR
        assert guard.ledger("c1")[-1]["text"] == f"⚠️ I encountered an error: {TIMEOUT_MESSAGE}"
        assert not guard.is_busy("c1")

    @pytest.mark.asyncio
    async def test_stop_interrupts_a_stalled_read(self):
        settings = AgentSettings(gemini_api_key="k")
        stream = HangingStream(["partial"])
        store = FakeStore()
        received = asyncio.Event()
        guard, _ = _guard(_agent_loop(stream, settings), store, settings=settings,
                          on_delta=lambda delta: received.set())

        task = asyncio.create_task(guard.send("hi", chat=ChatContext(id="c1", name="Chat")))
        await asyncio.wait_for(received.wait(), 2.0)
        assert guard.stop("c1")
        outcome = await asyncio.wait_for(task, 2.0)

        assert outcome.terminated_by == TerminatedBy.ABORT
        assert outcome.final_text == "partial"
        assert stream.closed
        assert [r["sender"] for r in store.saved] == ["user"]
        assert guard.status == AgentStatus.IDLE
        assert not guard.is_busy("c1")

    @pytest.mark.asyncio
    async def test_stop_cancels_a_loop_that_ignores_the_token(self):
        async def run(request, on_event=None):
            await asyncio.Event().wait()

        guard, _ = _guard(SimpleNamespace(run=run))

        task = asyncio.create_task(guard.send("hi", chat=ChatContext(id="c1", name="Chat")))
        await asyncio.sleep(0.01)
        assert guard.stop("c1")
        outcome = await asyncio.wait_for(task, 2.0)

        assert outcome.terminated_by == TerminatedBy.ABORT
        assert outcome.final_text == "(Generation stopped by user)"

    @pytest.mark.asyncio
    async def test_loop_crash_marks_pending_record(self):
        loop = MagicMock()
        loop.run = AsyncMock(side_effect=RuntimeError("kaboom"))
        guard, _ = _guard(loop)

        outcome = await guard.send("hi", chat=ChatContext(id="c1", name="Chat"))

        assert outcome.terminated_by == TerminatedBy.ERROR
        assert guard.status == AgentStatus.ERROR
        assert guard.ledger("c1")[-1]["text"] == "⚠️ I encountered an error: kaboom"
        assert not guard.is_busy("c1")


# ---------------------------------------------------------------------------
# Emotion, titles, memory, model choice
# ---------------------------------------------------------------------------

class TestSideEffects:
    @pytest.mark.asyncio
    async def test_ready_classifier_is_awaited_with_prior_context(self):
        classifier = MagicMock()
        classifier.is_ready.return_value = True
        classifier.analyze = AsyncMock(return_value=EmotionData("Serious", {"Serious": 90}))
        loop = FakeLoop()
        guard, _ = _guard(loop, emotion_classifier=classifier)
        prior = EmotionData("Joy", {"Joy": 70})
        history = [Turn(Sender.USER, "before", emotion=prior), Turn(Sender.AI, "last reply")]

        await guard.send("why is this broken", chat=ChatContext(id="c1", name="Chat"), history=history)

        classifier.analyze.assert_awaited_once_with("why is this broken", "last reply", prior)
        assert loop.requests[0].user_emotion.dominant == "Serious"
        assert guard.current_emotion == "Serious"

    @pytest.mark.asyncio
    async def test_cold_classifier_warms_up_in_background(self):
        classifier = MagicMock()
        classifier.is_ready.return_value = False
        classifier.warm_up = AsyncMock()
        loop = FakeLoop()
        guard, _ = _guard(loop, emotion_classifier=classifier)

        await guard.send("hello", chat=ChatContext(id="c1", name="Chat"))
        await guard.drain()

        classifier.warm_up.assert_awaited_once()
        assert loop.requests[0].user_emotion == EmotionData.friendly_default()

    @pytest.mark.asyncio
    async def test_project_chats_skip_emotion(self):
        classifier = MagicMock()
        classifier.is_ready.return_value = True
        classifier.analyze = AsyncMock()
        guard, _ = _guard(emotion_classifier=classifier)

        await guard.send("hello", chat=ChatContext(id="c1", name="Chat", project_id="p1"))

        classifier.analyze.assert_not_called()

    @pytest.mark.asyncio
    async def test_new_chat_gets_local_title(self):
        store = FakeStore()
        chat = ChatContext(id="c1")
        guard, _ = _guard(store=store)

        await guard.send("<b>Plan</b> my trip to Lisbon next week", chat=chat)
        await guard.drain()

        assert store.chat_updates == [("c1", {"name": "Plan my trip to"})]
        assert chat.name == "Plan my trip to"

    @pytest.mark.asyncio
    async def test_memory_extraction_receives_final_text(self):
        extractor = MagicMock()
        extractor.extract_and_save = AsyncMock()
        guard, _ = _guard(memory_extractor=extractor, user_id="u1")

        await guard.send("hi", chat=ChatContext(id="c1", name="Chat"))
        await guard.drain()

        extractor.extract_and_save.assert_awaited_once_with("u1", "hi", "Hello there", None)

    @pytest.mark.asyncio
    async def test_model_resolution(self):
        loop = FakeLoop()
        guard, _ = _guard(loop, profile=UserPreferences(preferred_chat_model="anthropic/claude-3.5-sonnet"))
        chat = ChatContext(id="c1", name="Chat")

        await guard.send("a", chat=chat)
        await guard.send("b", chat=chat, mode_or_model="openai/gpt-4o")
        await guard.send("c", chat=chat, mode_or_model="deep")

        assert loop.requests[0].model == "anthropic/claude-3.5-sonnet"
        assert loop.requests[0].thinking_mode == ThinkingMode.FAST
        assert loop.requests[1].model == "openai/gpt-4o"
        assert loop.requests[2].thinking_mode == ThinkingMode.DEEP

    @pytest.mark.asyncio
    async def test_default_mode_is_instant_without_native_key(self):
        loop = FakeLoop()
        guard, _ = _guard(loop, settings=AgentSettings())

        await guard.send("a", chat=ChatContext(id="c1", name="Chat"))

        assert loop.requests[0].thinking_mode == ThinkingMode.INSTANT
