"""
Session concurrency guard.

Wraps the agent loop with everything a chat front end needs around one
send: single-flight per session, a safety watchdog, optimistic message
records, emotion detection, persistence and the fire-and-forget side
tasks (title generation, memory extraction).

The "currently viewed" conversation belongs to the caller and can change
at any time. The guard never caches it: every UI-facing decision reads
it fresh through ``active_conversation`` and checks is_relevant().
Deltas are always published, tagged with their owning conversation, so
persistence completes even after the user navigates away.

Usage:
    guard = SessionGuard(loop, store=store, active_conversation=lambda: ui.chat_id)
    outcome = await guard.send("hello", chat=ChatContext(id="c1"))
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from agent.action_loop import STOPPED_BY_USER_TEXT, AgentLoop
from agent.cancellation import CancellationToken
from agent.chat_types import (
    AgentRequest,
    EmotionData,
    FileRef,
    GenerationOutcome,
    Sender,
    StreamEvent,
    TerminatedBy,
    ThinkingMode,
    Turn,
    UserPreferences,
)
from agent.collaborators import EmotionClassifier, MemoryExtractor, MessageStore
from agent.config import AgentSettings
from agent.errors import UserCancelled
from agent.titles import generate_chat_title, needs_title
from bubble_constants import NEW_CHAT_NAME

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Response timed out. The operation took too long."
PENDING_USER_EMOTION = {"dominant": "Friendly (Default)", "scores": {"Joy": 50, "Neutral": 50}}

_MODES = {m.value for m in ThinkingMode}


class AgentStatus(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    PLANNING = "planning"
    BUILDING = "building"
    ERROR = "error"


@dataclass
class ChatContext:
    id: str
    name: str = NEW_CHAT_NAME
    project_id: Optional[str] = None


@dataclass(frozen=True)
class GuardDelta:
    conversation_id: str
    event: StreamEvent


@dataclass
class _Flight:
    """State of one in-flight send."""
    conversation_id: str
    token: CancellationToken
    temp_ai_id: str
    text: str = ""
    timed_out: bool = False
    watchdog: Optional[asyncio.Task] = None
    first_delta_seen: bool = False

    def disarm(self) -> None:
        if self.watchdog is not None and not self.watchdog.done():
            self.watchdog.cancel()


class SessionGuard:
    """Single-flight sender for chat conversations.

    Args:
        loop: The agent loop that performs generation.
        store: Message persistence.
        settings: Defaults for model, thinking mode and the safety timeout.
        profile: Preferences of the user sending through this guard.
        user_id: Owner id stamped on user records.
        emotion_classifier: Optional on-device classifier.
        memory_extractor: Optional long-term memory writer.
        title_provider: Anything with ``generate_text`` for model titles.
        active_conversation: Returns the conversation the caller is viewing.
        on_delta: Receives every streamed delta, tagged with its conversation.
        on_status: Receives (conversation_id, status) while that conversation is relevant.
    """

    def __init__(self, loop: AgentLoop, *, store: MessageStore,
                 settings: Optional[AgentSettings] = None,
                 profile: Optional[UserPreferences] = None,
                 user_id: str = "guest",
                 emotion_classifier: Optional[EmotionClassifier] = None,
                 memory_extractor: Optional[MemoryExtractor] = None,
                 title_provider=None,
                 active_conversation: Optional[Callable[[], Optional[str]]] = None,
                 on_delta: Optional[Callable[[GuardDelta], None]] = None,
                 on_status: Optional[Callable[[str, AgentStatus], None]] = None):
        self._loop = loop
        self._store = store
        self._settings = settings or AgentSettings()
        self.profile = profile or UserPreferences()
        self.user_id = user_id
        self._emotion = emotion_classifier
        self._memory_extractor = memory_extractor
        self._title_provider = title_provider
        self._active_conversation = active_conversation or (lambda: None)
        self._on_delta = on_delta
        self._on_status = on_status

        # Key: session key, Value: the flight currently generating for it
        self._running: Dict[str, _Flight] = {}
        self._ledgers: Dict[str, List[Dict[str, Any]]] = {}
        self._background: Set[asyncio.Task] = set()
        self.status = AgentStatus.IDLE
        self.current_emotion: Optional[str] = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def is_relevant(conversation_id: str, active_conversation_id: Optional[str]) -> bool:
        """True when the caller is viewing ``conversation_id``."""
        return active_conversation_id is not None and conversation_id == active_conversation_id

    def _relevant_now(self, conversation_id: str) -> bool:
        return self.is_relevant(conversation_id, self._active_conversation())

    def is_busy(self, session_key: str) -> bool:
        return session_key in self._running

    def ledger(self, conversation_id: str) -> List[Dict[str, Any]]:
        """Provisional and persisted message records, in display order."""
        return self._ledgers.setdefault(conversation_id, [])

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def stop(self, session_key: str) -> bool:
        """Cancel the generation in flight for ``session_key``, if any."""
        flight = self._running.get(session_key)
        if flight is None:
            return False
        flight.token.cancel("stopped by user")
        flight.disarm()
        self._set_status(flight.conversation_id, AgentStatus.IDLE)
        logger.info("Generation stopped for session %s", session_key)
        return True

    async def drain(self) -> None:
        """Wait for outstanding background tasks (titles, memory, warm-up)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background task %s failed: %s", task.get_name(), exc)

    def _set_status(self, conversation_id: str, status: AgentStatus) -> None:
        if not self._relevant_now(conversation_id):
            return
        self.status = status
        if self._on_status is not None:
            self._on_status(conversation_id, status)

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    def _resolve_mode_and_model(self, mode_or_model: Optional[str]):
        mode = mode_or_model or self._settings.default_thinking_mode
        override = None
        if mode not in _MODES:
            override, mode = mode, ThinkingMode.FAST.value
        model = override or self.profile.preferred_chat_model or self._settings.default_model
        return ThinkingMode(mode), model

    async def _detect_emotion(self, text: str, chat: ChatContext,
                              history: Sequence[Turn]) -> Optional[EmotionData]:
        if not text.strip() or chat.project_id or self._emotion is None:
            return None
        last_ai_text = history[-1].text if history and history[-1].sender == Sender.AI else None
        last_user = history[-2] if len(history) > 1 and history[-2].sender == Sender.USER else None
        last_emotion = last_user.emotion if last_user is not None else None

        if self._emotion.is_ready():
            try:
                detected = await self._emotion.analyze(text, last_ai_text, last_emotion)
            except Exception as e:
                logger.warning("Emotion analysis failed, using default: %s", e)
                return None
            if self._relevant_now(chat.id):
                self.current_emotion = detected.dominant
            return detected

        # Warm up for future turns; this one proceeds with the default
        self._spawn(self._emotion.warm_up(), "emotion-warm-up")
        return EmotionData.friendly_default()

    async def _update_title(self, chat: ChatContext, text: str) -> None:
        title = await generate_chat_title(text, self._title_provider)
        if title and title != NEW_CHAT_NAME and needs_title(chat.name):
            await self._store.update_chat(chat.id, {"name": title})
            chat.name = title
            logger.debug("Chat %s titled %r", chat.id, title)

    def _replace_record(self, conversation_id: str, record_id: str,
                        replacements: Sequence[Dict[str, Any]]) -> None:
        ledger = self.ledger(conversation_id)
        for i, record in enumerate(ledger):
            if record.get("id") == record_id:
                ledger[i:i + 1] = list(replacements)
                return
        ledger.extend(replacements)

    def _set_pending_text(self, conversation_id: str, record_id: str, text: str) -> None:
        for record in self.ledger(conversation_id):
            if record.get("id") == record_id:
                record["text"] = text
                return

    def _on_event(self, flight: _Flight, event: StreamEvent) -> None:
        if flight.token.cancelled:
            return
        if not flight.first_delta_seen:
            flight.first_delta_seen = True
            flight.disarm()

        chunk = event.text
        if "<THINK>" in chunk:
            self._set_status(flight.conversation_id, AgentStatus.PLANNING)
        elif "</THINK>" in chunk or "[FILE:" in chunk:
            self._set_status(flight.conversation_id, AgentStatus.BUILDING)

        flight.text += chunk
        self._set_pending_text(flight.conversation_id, flight.temp_ai_id, flight.text)
        if self._on_delta is not None:
            self._on_delta(GuardDelta(conversation_id=flight.conversation_id, event=event))

    async def _watchdog(self, flight: _Flight, timeout: float) -> None:
        await asyncio.sleep(timeout)
        if flight.token.cancelled:
            return
        logger.warning("Response timed out after %.0fs for chat %s", timeout, flight.conversation_id)
        flight.timed_out = True
        flight.token.cancel("timeout")
        self._set_status(flight.conversation_id, AgentStatus.ERROR)

    async def send(self, text: str, *, chat: ChatContext, files: Sequence[FileRef] = (),
                   history: Sequence[Turn] = (), mode_or_model: Optional[str] = None,
                   session_key: Optional[str] = None) -> Optional[GenerationOutcome]:
        """Send one user message and generate the reply.

        Returns None without side effects when there is nothing to send or
        a generation is already in flight for the session.
        """
        if not text.strip() and not files:
            return None
        key = session_key or chat.id
        if self.is_busy(key):
            logger.info("Session %s already generating, ignoring send", key)
            return None

        ts = int(time.time() * 1000)
        flight = _Flight(conversation_id=chat.id, token=CancellationToken(), temp_ai_id=f"temp-ai-{ts}")
        self._running[key] = flight
        self._set_status(chat.id, AgentStatus.THINKING)
        flight.watchdog = asyncio.create_task(self._watchdog(flight, self._settings.safety_timeout))

        try:
            return await self._send(text, chat, list(files), list(history), mode_or_model, flight, ts)
        except Exception as e:
            message = str(e) or "An unknown error occurred."
            logger.error("Message execution failed: %s", message, exc_info=True)
            self._set_status(chat.id, AgentStatus.ERROR)
            self._set_pending_text(chat.id, flight.temp_ai_id, f"⚠️ I encountered an error: {message}")
            return GenerationOutcome(final_text=flight.text, terminated_by=TerminatedBy.ERROR, error=message)
        finally:
            flight.disarm()
            self._running.pop(key, None)

    async def _send(self, text: str, chat: ChatContext, files: List[FileRef], history: List[Turn],
                    mode_or_model: Optional[str], flight: _Flight, ts: int) -> GenerationOutcome:
        mode, model = self._resolve_mode_and_model(mode_or_model)
        temp_user_id = f"temp-user-{ts}"

        user_record: Dict[str, Any] = {
            "project_id": chat.project_id,
            "chat_id": chat.id,
            "user_id": self.user_id,
            "text": "" if not text.strip() and files else text,
            "sender": Sender.USER.value,
            "emotion_data": dict(PENDING_USER_EMOTION),
        }
        if files:
            user_record["attachments"] = [{"name": f.name, "type": f.mime_type} for f in files]
        ledger = self.ledger(chat.id)
        ledger.append({**user_record, "id": temp_user_id})
        ledger.append({"id": flight.temp_ai_id, "project_id": chat.project_id, "chat_id": chat.id,
                       "text": "", "sender": Sender.AI.value})

        emotion = await self._detect_emotion(text, chat, history)
        if emotion is not None:
            user_record["emotion_data"] = asdict(emotion)
            self._set_pending_emotion(chat.id, temp_user_id, user_record["emotion_data"])

        try:
            saved_user = await self._store.add_message(user_record)
        except Exception as e:
            logger.warning("Failed to save user message: %s", e)
        else:
            self._replace_record(chat.id, temp_user_id, [saved_user])

        if text.strip() and needs_title(chat.name):
            self._spawn(self._update_title(chat, text.strip()), f"title-{chat.id}")

        request = AgentRequest(
            prompt=text,
            attachments=tuple(files),
            history=tuple(history),
            model=model,
            thinking_mode=mode,
            cancellation=flight.token,
            profile=self.profile,
            user_emotion=emotion,
            user_id=self.user_id,
        )
        try:
            outcome = await flight.token.race(
                self._loop.run(request, on_event=lambda event: self._on_event(flight, event)))
        except UserCancelled:
            # The run was still pending when the token fired and has been cancelled
            outcome = GenerationOutcome(final_text=flight.text or STOPPED_BY_USER_TEXT, model=model,
                                        terminated_by=TerminatedBy.ABORT)

        if flight.timed_out:
            self._set_pending_text(chat.id, flight.temp_ai_id, f"⚠️ I encountered an error: {TIMEOUT_MESSAGE}")
            return GenerationOutcome(final_text=flight.text, model=outcome.model,
                                     terminated_by=TerminatedBy.ERROR, iterations=outcome.iterations,
                                     error=TIMEOUT_MESSAGE)
        if flight.token.cancelled or outcome.stopped_by_user:
            self._set_status(chat.id, AgentStatus.IDLE)
            return outcome

        final_text = outcome.final_text or flight.text
        if self._memory_extractor is not None:
            self._spawn(
                self._memory_extractor.extract_and_save(self.user_id, text, final_text, chat.project_id),
                f"memory-{chat.id}",
            )

        ai_record: Dict[str, Any] = {
            "project_id": chat.project_id,
            "chat_id": chat.id,
            "text": final_text,
            "sender": Sender.AI.value,
            "model": outcome.model or model,
        }
        if outcome.grounding_metadata:
            ai_record["grounding_metadata"] = outcome.grounding_metadata
        try:
            saved_ai = await self._store.add_message(ai_record)
        except Exception as e:
            logger.warning("Failed to save AI message: %s", e)
            self._set_pending_text(chat.id, flight.temp_ai_id, final_text)
        else:
            self._replace_record(chat.id, flight.temp_ai_id, [saved_ai])

        self._set_status(chat.id, AgentStatus.IDLE)
        return outcome

    def _set_pending_emotion(self, conversation_id: str, record_id: str, emotion: Dict[str, Any]) -> None:
        for record in self.ledger(conversation_id):
            if record.get("id") == record_id:
                record["emotion_data"] = emotion
                return
