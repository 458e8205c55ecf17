"""Strategy interface shared by every generation backend."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Sequence

from agent.attachments import ProcessedAttachment
from agent.cancellation import CancellationToken
from agent.chat_types import Sender, StreamEvent, Turn


@dataclass
class GenerationCall:
    """Everything one streamed generation needs.

    ``turns`` ends with the user turn being answered; ``attachments`` belong
    to that last turn. A provider that falls back to another model updates
    ``model`` in place so the caller can report the model actually used.
    """
    model: str
    system_instruction: str
    turns: Sequence[Turn]
    attachments: List[ProcessedAttachment] = field(default_factory=list)
    thinking_budget: int = 0
    cancellation: CancellationToken = field(default_factory=CancellationToken)

    @property
    def history(self) -> Sequence[Turn]:
        return self.turns[:-1]

    @property
    def prompt(self) -> str:
        return self.turns[-1].text if self.turns else ""


def build_turns(history: Sequence[Turn], prompt: str) -> List[Turn]:
    """History plus the current prompt as the final user turn.

    A trailing user turn in the history is the message being answered, so it
    is dropped in favour of ``prompt``. Turns with no text are skipped.
    """
    if history and history[-1].sender == Sender.USER:
        history = history[:-1]
    turns = [t for t in history if t.text.strip()]
    turns.append(Turn(sender=Sender.USER, text=prompt))
    return turns


class GenerationProvider(ABC):
    """One backend. Implementations stream StreamEvents in receipt order."""

    provider_id: str = ""

    @abstractmethod
    def stream(self, call: GenerationCall) -> AsyncIterator[StreamEvent]:
        """Lazily stream a generation. Restartable only via a new call."""
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release any network clients held by the provider."""
        return None
