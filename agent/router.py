"""Pre-call routing heuristic.

Picks the loop's initial RoutingAction from the raw prompt. Only SIMPLE
changes nothing; the other actions record intent for the external
collaborators (image generation, project builder, study planner).
"""

import logging
import re

from agent.chat_types import Routing, RoutingAction

logger = logging.getLogger(__name__)

_IMAGE_RE = re.compile(
    r"\b(generate|create|make|draw|paint|render)\s+(me\s+)?(an?\s+)?(image|picture|drawing|illustration)\b",
    re.IGNORECASE,
)
_STUDY_RE = re.compile(r"\b(study|learning)\s+plan\b", re.IGNORECASE)
_PROJECT_RE = re.compile(r"\b(build|create|scaffold)\s+(me\s+)?an?\s+(\w+\s+)?project\b|\bmulti-file project\b",
                         re.IGNORECASE)


def route_prompt(prompt: str) -> Routing:
    text = (prompt or "").strip()
    if not text:
        return Routing()
    if _IMAGE_RE.search(text):
        routing = Routing(RoutingAction.IMAGE, {"prompt": text})
    elif _STUDY_RE.search(text):
        routing = Routing(RoutingAction.STUDY, {"topic": text})
    elif _PROJECT_RE.search(text):
        routing = Routing(RoutingAction.PROJECT, {"description": text})
    else:
        return Routing()
    logger.debug("Pre-call routing selected %s", routing.action.value)
    return routing
