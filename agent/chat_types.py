"""Data model shared by the assembler, dispatcher, loop and guard."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from agent.cancellation import CancellationToken


class Sender(str, Enum):
    USER = "user"
    AI = "ai"


class ThinkingMode(str, Enum):
    INSTANT = "instant"
    FAST = "fast"
    THINK = "think"
    DEEP = "deep"


class RoutingAction(str, Enum):
    SIMPLE = "SIMPLE"
    DEEP_SEARCH = "DEEP_SEARCH"
    IMAGE = "IMAGE"
    PROJECT = "PROJECT"
    CANVAS = "CANVAS"
    STUDY = "STUDY"


class TerminatedBy(str, Enum):
    LOOP_END = "loopEnd"
    LOOP_EXHAUSTED = "loopExhausted"
    CANVAS_HANDOFF = "canvasHandoff"
    ABORT = "abort"
    ERROR = "error"


@dataclass
class EmotionData:
    dominant: str
    scores: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def neutral(cls) -> "EmotionData":
        return cls(dominant="Neutral", scores={"Neutral": 100})

    @classmethod
    def friendly_default(cls) -> "EmotionData":
        """Used while the on-device classifier is still warming up."""
        return cls(dominant="Friendly", scores={"Joy": 80, "Curiosity": 20})

    @classmethod
    def coerce(cls, value: Any) -> "EmotionData":
        """Accept None, a bare label, a mapping or an EmotionData."""
        if value is None:
            return cls.neutral()
        if isinstance(value, EmotionData):
            return value
        if isinstance(value, str):
            return cls(dominant=value, scores={value: 100})
        if isinstance(value, dict):
            return cls(
                dominant=value.get("dominant", "Neutral"),
                scores=dict(value.get("scores") or {}),
            )
        raise TypeError(f"Cannot interpret {type(value).__name__} as EmotionData")

    @property
    def is_serious(self) -> bool:
        return self.scores.get("Serious", 0) > 50 or self.scores.get("Anger", 0) > 50


@dataclass(frozen=True)
class Turn:
    sender: Sender
    text: str
    model: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    emotion: Optional[EmotionData] = None


@dataclass(frozen=True)
class FileRef:
    """An attachment. Either ``data`` or ``path`` supplies the bytes."""
    name: str
    mime_type: str = ""
    data: Optional[bytes] = None
    path: Optional[str] = None

    def read_bytes(self) -> bytes:
        if self.data is not None:
            return self.data
        if self.path:
            return Path(self.path).read_bytes()
        raise FileNotFoundError(f"No content for attachment {self.name}")

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


@dataclass(frozen=True)
class UserPreferences:
    tone: str = "default"             # serious | ambient | default
    length: str = "default"           # compact | long | default
    custom_instructions: str = ""
    preferred_chat_model: Optional[str] = None
    preferred_deep_model: Optional[str] = None
    openrouter_api_key: Optional[str] = None
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class AgentRequest:
    prompt: str
    attachments: Tuple[FileRef, ...] = ()
    history: Tuple[Turn, ...] = ()
    model: Optional[str] = None
    thinking_mode: ThinkingMode = ThinkingMode.FAST
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    profile: UserPreferences = field(default_factory=UserPreferences)
    user_emotion: Optional[EmotionData] = None
    user_id: str = "guest"


@dataclass(frozen=True)
class StreamEvent:
    """One ordered delta. Notices are visible to the user but are not
    part of the generated text."""
    text: str
    grounding: Tuple[Dict[str, Any], ...] = ()
    is_notice: bool = False


@dataclass
class Routing:
    action: RoutingAction = RoutingAction.SIMPLE
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationOutcome:
    final_text: str
    model: Optional[str] = None
    grounding_metadata: Optional[List[Dict[str, Any]]] = None
    terminated_by: TerminatedBy = TerminatedBy.LOOP_END
    routing: Optional[Routing] = None
    iterations: int = 0
    error: Optional[str] = None

    @property
    def stopped_by_user(self) -> bool:
        return self.terminated_by == TerminatedBy.ABORT
