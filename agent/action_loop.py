"""
Action loop controller.

Drives one agent request: resolves the model, runs pre-emptive search,
then repeatedly streams a generation and inspects the iteration's action
tags to decide whether to re-enter generation with a new prompt, hand off
to the canvas collaborator, or stop.

Usage:
    loop = AgentLoop(ProviderDispatcher(settings), settings, memory_provider=memory)
    outcome = await loop.run(request, on_event=lambda ev: print(ev.text, end=""))
"""

import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from agent.attachments import instant_mode_context, process_attachments
from agent.chat_types import (
    AgentRequest,
    GenerationOutcome,
    Routing,
    RoutingAction,
    StreamEvent,
    TerminatedBy,
    ThinkingMode,
)
from agent.collaborators import CanvasAgent, MemoryProvider
from agent.config import AgentSettings
from agent.errors import UserCancelled, user_friendly_error
from agent.prompt_assembler import PromptAssembler, load_memory_context
from agent.prompt_builder import INSTANT_MODE_IDENTITY
from agent.providers.base import GenerationCall, build_turns
from agent.providers.dispatcher import ModelSelection, ProviderDispatcher
from agent.router import route_prompt
from agent.search_escalation import SearchEscalation
from agent.tag_parser import IterationTags, TagParser

logger = logging.getLogger(__name__)

STOPPED_BY_USER_TEXT = "(Generation stopped by user)"
INSTANT_UNAVAILABLE_MESSAGE = "Instant mode service unavailable."
CANVAS_UNAVAILABLE_MESSAGE = "Canvas building is not available right now."

EventCallback = Callable[[StreamEvent], None]


@dataclass
class _LoopState:
    """Mutable bookkeeping for one request."""
    final_text: str = ""
    grounding: List[Dict[str, Any]] = field(default_factory=list)
    fallback_search_context: str = ""
    iterations: int = 0

    def outcome(self, model: Optional[str], terminated_by: TerminatedBy,
                routing: Optional[Routing] = None, text: Optional[str] = None,
                error: Optional[str] = None) -> GenerationOutcome:
        return GenerationOutcome(
            final_text=self.final_text if text is None else text,
            model=model,
            grounding_metadata=list(self.grounding) or None,
            terminated_by=terminated_by,
            routing=routing,
            iterations=self.iterations,
            error=error,
        )


class AgentLoop:
    """Bounded generate-inspect-reenter loop.

    Args:
        dispatcher: Model selection and provider streaming.
        settings: Loop bound and search tunables.
        memory_provider: Long-term memory source (optional).
        canvas_agent: Collaborator that builds canvas apps (optional).
        search: Search escalation; built from settings when omitted.
    """

    def __init__(self, dispatcher: ProviderDispatcher, settings: Optional[AgentSettings] = None, *,
                 memory_provider: Optional[MemoryProvider] = None,
                 canvas_agent: Optional[CanvasAgent] = None,
                 search: Optional[SearchEscalation] = None):
        self._dispatcher = dispatcher
        self._settings = settings or AgentSettings()
        self._memory_provider = memory_provider
        self._canvas_agent = canvas_agent
        self._search = search or SearchEscalation(
            limit=self._settings.search_limit,
            url=self._settings.search_url,
            timeout=self._settings.search_timeout,
        )

    @property
    def max_loops(self) -> int:
        return self._settings.max_loops

    async def run(self, request: AgentRequest, on_event: Optional[EventCallback] = None) -> GenerationOutcome:
        """Run a request to completion. Never raises for provider failures.

        Cancellation yields an ABORT outcome carrying the text streamed so
        far, even when the provider is stuck mid-read; any other escaping
        error yields an ERROR outcome whose text is the warning-prefixed
        user-facing message.
        """
        emit = on_event or (lambda event: None)
        state = _LoopState()
        memory = await load_memory_context(self._memory_provider)

        if request.thinking_mode == ThinkingMode.INSTANT:
            try:
                return await request.cancellation.race(self._run_instant(request, memory, emit, state))
            except UserCancelled:
                return self._aborted(state, "instant")

        selection = self._dispatcher.select(request)
        for notice in selection.notices:
            emit(StreamEvent(text=notice, is_notice=True))

        try:
            # A cancel interrupts the run even while a provider read is pending
            return await request.cancellation.race(self._run_loop(request, selection, memory, emit, state))
        except UserCancelled:
            logger.info("Generation cancelled after %d iteration(s)", state.iterations)
            return self._aborted(state, selection.model)
        except Exception as e:
            if request.cancellation.cancelled:
                return self._aborted(state, selection.model)
            logger.error("Agent request failed on %s: %s", selection.model, e, exc_info=True)
            return state.outcome(selection.model, TerminatedBy.ERROR,
                                 text=f"⚠️ {user_friendly_error(e)}", error=str(e))

    @staticmethod
    def _aborted(state: _LoopState, model: Optional[str]) -> GenerationOutcome:
        return state.outcome(model, TerminatedBy.ABORT, text=state.final_text or STOPPED_BY_USER_TEXT)

    # ------------------------------------------------------------------
    # Standard path
    # ------------------------------------------------------------------

    async def _run_loop(self, request: AgentRequest, selection: ModelSelection, memory: Dict[str, Any],
                        emit: EventCallback, state: _LoopState) -> GenerationOutcome:
        cancellation = request.cancellation
        routing = route_prompt(request.prompt)
        assembler = PromptAssembler(
            model=selection.model,
            thinking_budget=selection.thinking_budget,
            profile=request.profile,
            emotion=request.user_emotion,
        )
        attachments = process_attachments(request.attachments)

        external_search = ""
        preemptive = await self._search.preemptive(
            request.prompt,
            supports_search=selection.supports_search,
            is_admin=request.profile.is_admin,
            cancellation=cancellation,
        )
        if preemptive is not None:
            emit(StreamEvent(text=preemptive.echo))
            state.final_text += preemptive.echo
            state.grounding.extend(preemptive.grounding)
            external_search = preemptive.context

        current_prompt = request.prompt
        while state.iterations < self.max_loops:
            if cancellation.cancelled:
                break
            state.iterations += 1
            logger.debug("Iteration %d/%d action=%s model=%s", state.iterations, self.max_loops,
                         routing.action.value, selection.model)

            call = GenerationCall(
                model=selection.model,
                system_instruction=assembler.system_prompt(memory=memory, external_web_search=external_search),
                turns=build_turns(request.history, current_prompt),
                attachments=attachments,
                thinking_budget=selection.thinking_budget,
                cancellation=cancellation,
            )
            parser = await self._generate(selection, call, emit, state)
            if cancellation.cancelled:
                break

            tags = IterationTags.from_signals(parser.signals)

            if tags.search_queries:
                query = tags.search_queries[0]
                reactive = await self._search.reactive(
                    query, request.prompt, supports_search=selection.supports_search, cancellation=cancellation,
                )
                if cancellation.cancelled:
                    break
                if reactive is not None:
                    state.fallback_search_context = reactive.fallback_context
                    current_prompt = reactive.prompt
                    routing = Routing()
                    continue

            if tags.deep:
                routing = Routing(RoutingAction.DEEP_SEARCH)
                current_prompt = tags.deep
                continue

            if tags.search_tag_count == 1 and not state.fallback_search_context:
                # A lone search tag with nothing fetched is the final answer
                return state.outcome(selection.model, TerminatedBy.LOOP_END, routing)

            if tags.image:
                routing = Routing(RoutingAction.IMAGE, {"prompt": tags.image})
                current_prompt = tags.image
                continue

            if tags.project:
                routing = Routing(RoutingAction.PROJECT)
                current_prompt = tags.project
                continue

            if tags.canvas:
                return await self._hand_off_to_canvas(request, tags.canvas.strip(), selection, state)

            if tags.study:
                routing = Routing(RoutingAction.STUDY)
                current_prompt = tags.study
                continue

            if not state.final_text.strip() and state.fallback_search_context:
                state.final_text = state.fallback_search_context
                emit(StreamEvent(text=state.fallback_search_context))
            return state.outcome(selection.model, TerminatedBy.LOOP_END, routing)

        if cancellation.cancelled:
            return self._aborted(state, selection.model)
        logger.info("Loop bound of %d reached, returning accumulated text", self.max_loops)
        return state.outcome(selection.model, TerminatedBy.LOOP_EXHAUSTED, routing)

    async def _generate(self, selection: ModelSelection, call: GenerationCall,
                        emit: EventCallback, state: _LoopState) -> TagParser:
        """Stream one iteration, forwarding deltas. Returns the iteration's parser."""
        parser = TagParser()
        stream = self._dispatcher.stream(selection, call)
        try:
            async for event in stream:
                if call.cancellation.cancelled:
                    break
                if event.is_notice:
                    emit(event)
                    continue
                if event.grounding:
                    state.grounding.extend(event.grounding)
                if not event.text:
                    continue
                state.final_text += event.text
                emit(event)
                parser.feed(event.text)
                if parser.has_canvas_close():
                    logger.debug("Canvas tag closed, stopping stream early")
                    break
        finally:
            await stream.aclose()
        return parser

    async def _hand_off_to_canvas(self, request: AgentRequest, prompt: str,
                                  selection: ModelSelection, state: _LoopState) -> GenerationOutcome:
        state.final_text = ""
        routing = Routing(RoutingAction.CANVAS, {"prompt": prompt})
        if self._canvas_agent is None:
            logger.warning("Canvas tag emitted but no canvas agent is configured")
            return state.outcome(selection.model, TerminatedBy.CANVAS_HANDOFF, routing,
                                 text=f"⚠️ {CANVAS_UNAVAILABLE_MESSAGE}", error=CANVAS_UNAVAILABLE_MESSAGE)
        logger.info("Handing off to canvas agent")
        result = await self._canvas_agent.run(replace(request, prompt=prompt))
        return replace(result, terminated_by=TerminatedBy.CANVAS_HANDOFF,
                       routing=result.routing or routing,
                       iterations=state.iterations)

    # ------------------------------------------------------------------
    # Instant mode
    # ------------------------------------------------------------------

    async def _run_instant(self, request: AgentRequest, memory: Dict[str, Any],
                           emit: EventCallback, state: _LoopState) -> GenerationOutcome:
        system = INSTANT_MODE_IDENTITY
        memory_json = json.dumps(memory, ensure_ascii=False, default=str)
        if len(memory_json) > 10:
            system += f"\n\n=== USER MEMORY & CONTEXT ===\n{memory_json}\n"

        call = GenerationCall(
            model="instant",
            system_instruction=system,
            turns=build_turns(request.history, request.prompt + instant_mode_context(request.attachments)),
            cancellation=request.cancellation,
        )
        state.iterations = 1
        stream = self._dispatcher.instant.stream(call)
        try:
            async for event in stream:
                if request.cancellation.cancelled:
                    break
                state.final_text += event.text
                emit(event)
        except UserCancelled:
            return self._aborted(state, call.model)
        except Exception as e:
            logger.error("Instant mode failed: %s", e, exc_info=True)
            return state.outcome(call.model, TerminatedBy.ERROR,
                                 text=f"⚠️ {INSTANT_UNAVAILABLE_MESSAGE}", error=str(e))
        finally:
            await stream.aclose()
        if request.cancellation.cancelled:
            return self._aborted(state, call.model)
        return state.outcome(call.model, TerminatedBy.LOOP_END)


