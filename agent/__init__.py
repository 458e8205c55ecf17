"""Agent execution core.

Module Overview
---------------
**prompt_builder.py / prompt_assembler.py**
    System instruction assembly: persona with model identity, thinking
    directive, style and emotion blocks, memory and current time.

**providers/**
    Generation backends behind one streaming interface, plus per-request
    model selection and the quota/fallback retry ladder.

**tag_parser.py**
    Incremental parser turning inline action tags in streamed output into
    typed ActionSignal events.

**search_escalation.py**
    Pre-emptive and reactive web search around the generation loop.

**action_loop.py**
    The bounded action state machine driving generation iterations.

**router.py**
    Keyword routing heuristic that picks the initial action.

**titles.py**
    Conversation title generation.

**attachments.py / chat_types.py / collaborators.py / errors.py / config.py / cancellation.py**
    Supporting data model, contracts, error taxonomy and configuration.

The Session Concurrency Guard that drives this package lives in
gateway/session_guard.py.
"""
