"""Contracts for the services the agent core consumes but does not own.

Storage, long-term memory, emotion classification and the canvas builder
live outside this package. Anything that structurally matches these
protocols can be passed in.
"""

from typing import Any, Dict, Iterable, Optional, Protocol, runtime_checkable

from agent.chat_types import AgentRequest, EmotionData, GenerationOutcome

MEMORY_TOPICS = (
    "inner_personal",
    "outer_personal",
    "personal",
    "interests",
    "preferences",
    "custom",
    "codebase",
    "aesthetic",
    "project",
)


@runtime_checkable
class MemoryProvider(Protocol):
    async def get_context(self, topics: Iterable[str]) -> Dict[str, Any]: ...


@runtime_checkable
class EmotionClassifier(Protocol):
    def is_ready(self) -> bool: ...

    async def warm_up(self) -> None: ...

    async def analyze(
        self,
        text: str,
        prior_ai_text: Optional[str] = None,
        prior_emotion: Optional[EmotionData] = None,
    ) -> EmotionData: ...


@runtime_checkable
class CanvasAgent(Protocol):
    async def run(self, request: AgentRequest) -> GenerationOutcome: ...


@runtime_checkable
class MessageStore(Protocol):
    """Persists messages. ``add_message`` returns the stored record with its id."""

    async def add_message(self, record: Dict[str, Any]) -> Dict[str, Any]: ...

    async def update_chat(self, chat_id: str, changes: Dict[str, Any]) -> None: ...


@runtime_checkable
class MemoryExtractor(Protocol):
    async def extract_and_save(self, user_id: str, user_text: str, ai_text: str,
                               project_id: Optional[str] = None) -> None: ...
