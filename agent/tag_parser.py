"""Incremental parser for inline action tags in streamed model output.

The model requests sub-behaviors by wrapping text in tag pairs such as
``<SEARCH>query</SEARCH>``. Deltas arrive in arbitrary pieces, so a tag can
be split across chunks ("<SEA" + "RCH>"). TagParser keeps the iteration
text, rescans only the unresolved tail on every feed() and emits one
ActionSignal per completed pair, ordered by where the pair closed.

Each tag kind is matched independently (a search tag nested inside a think
block is still reported). ``<THINK>`` and ``</THINK>`` are reported as
separate markers because callers react to the start of reasoning before
it completes. Tag names are case-sensitive.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Set, Tuple


class SignalKind(str, Enum):
    SEARCH = "search"
    DEEP = "deep"
    IMAGE = "image"
    PROJECT = "project"
    CANVAS = "canvas"
    STUDY = "study"
    THINK_START = "think_start"
    THINK_END = "think_end"


@dataclass(frozen=True)
class ActionSignal:
    kind: SignalKind
    content: str = ""
    start: int = 0
    end: int = 0
    # Rank of the spelling that matched; only canvas has more than one
    variant: int = 0


def _pair(open_name: str, close_name: Optional[str] = None) -> "re.Pattern":
    close_name = close_name or open_name
    return re.compile(rf"<{open_name}>(.*?)</{close_name}>", re.DOTALL)


# (kind, variant, pattern). Canvas accepts the historical spellings; a lower
# variant wins regardless of where it appears in the text.
_PAIR_PATTERNS: Tuple[Tuple[SignalKind, int, "re.Pattern"], ...] = (
    (SignalKind.SEARCH, 0, _pair("SEARCH")),
    (SignalKind.DEEP, 0, _pair("DEEP")),
    (SignalKind.IMAGE, 0, _pair("IMAGE")),
    (SignalKind.PROJECT, 0, _pair("PROJECT")),
    (SignalKind.STUDY, 0, _pair("STUDY")),
    (SignalKind.CANVAS, 0, _pair("CANVAS_TRIGGER")),
    (SignalKind.CANVAS, 1, _pair("CANVAS_TRIGGER", "CANVASTRIGGER")),
    (SignalKind.CANVAS, 2, _pair("CANVAS")),
    (SignalKind.CANVAS, 3, _pair("CANVASTRIGGER")),
)

_OPEN_TAG_RE = re.compile(r"<(SEARCH|DEEP|IMAGE|PROJECT|STUDY|CANVAS_TRIGGER|CANVASTRIGGER|CANVAS)>")
_THINK_MARKER_RE = re.compile(r"<(/?)THINK>")

CANVAS_CLOSE_TAGS = ("</CANVAS_TRIGGER>", "</CANVASTRIGGER>", "</CANVAS>")

# Longest tag that can straddle a chunk boundary
_MAX_TAG_LEN = len("</CANVAS_TRIGGER>")


class TagParser:
    """Feeds deltas in, gets ActionSignals out.

    One parser covers one generation iteration; create a new one (or call
    reset()) when the loop re-enters generation.
    """

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self._text = ""
        self._scan_from = 0
        self._emitted: Set[Tuple[int, SignalKind]] = set()
        self.signals: List[ActionSignal] = []

    @property
    def text(self) -> str:
        return self._text

    def feed(self, chunk: str) -> List[ActionSignal]:
        """Append a delta and return the signals it completed."""
        if not chunk:
            return []
        self._text += chunk
        window_start = self._scan_from
        window = self._text[window_start:]

        found: List[ActionSignal] = []
        pair_starts: Set[int] = set()
        for kind, variant, pattern in _PAIR_PATTERNS:
            for m in pattern.finditer(window):
                start = window_start + m.start()
                pair_starts.add(start)
                found.append(ActionSignal(kind, m.group(1), start, window_start + m.end(), variant))
        for m in _THINK_MARKER_RE.finditer(window):
            kind = SignalKind.THINK_END if m.group(1) else SignalKind.THINK_START
            found.append(ActionSignal(kind, "", window_start + m.start(), window_start + m.end()))

        new_signals = []
        for signal in sorted(found, key=lambda s: (s.end, s.start)):
            key = (signal.start, signal.kind)
            if key in self._emitted:
                continue
            # Canvas variants can overlap on the same opening tag; first one wins
            self._emitted.add(key)
            new_signals.append(signal)

        spans = [(s.start, s.end) for s in found if s.kind not in (SignalKind.THINK_START, SignalKind.THINK_END)]
        pending = []
        for m in _OPEN_TAG_RE.finditer(window):
            pos = window_start + m.start()
            if pos in pair_starts or any(start < pos < end for start, end in spans):
                continue
            pending.append(pos)
        tail = max(len(self._text) - _MAX_TAG_LEN, 0)
        self._scan_from = min(pending + [tail])
        self._emitted = {k for k in self._emitted if k[0] >= self._scan_from}

        self.signals.extend(new_signals)
        return new_signals

    def has_canvas_close(self) -> bool:
        return any(tag in self._text for tag in CANVAS_CLOSE_TAGS)


@dataclass(frozen=True)
class IterationTags:
    """What one generation iteration asked for, in loop-evaluation terms."""
    search_tag_count: int
    search_queries: Tuple[str, ...]
    deep: Optional[str] = None
    image: Optional[str] = None
    project: Optional[str] = None
    canvas: Optional[str] = None
    study: Optional[str] = None

    @classmethod
    def from_signals(cls, signals: Iterable[ActionSignal]) -> "IterationTags":
        signals = sorted(signals, key=lambda s: s.start)
        searches = [s for s in signals if s.kind == SignalKind.SEARCH]

        def first(kind: SignalKind) -> Optional[str]:
            # Only the winning match counts: an empty one means no action
            matches = [s for s in signals if s.kind == kind]
            if not matches:
                return None
            return min(matches, key=lambda s: (s.variant, s.start)).content or None

        return cls(
            search_tag_count=len(searches),
            search_queries=tuple(q for q in (s.content.strip() for s in searches) if q),
            deep=first(SignalKind.DEEP),
            image=first(SignalKind.IMAGE),
            project=first(SignalKind.PROJECT),
            canvas=first(SignalKind.CANVAS),
            study=first(SignalKind.STUDY),
        )

    @classmethod
    def from_text(cls, text: str) -> "IterationTags":
        parser = TagParser()
        parser.feed(text)
        return cls.from_signals(parser.signals)
