"""Generation backends.

**registry.py**
    Provider metadata and the model-family rules (native vs compatible,
    vision, search and thinking support).

**base.py**
    GenerationCall and the GenerationProvider strategy interface.

**native.py**
    Gemini via google-genai, including the quota/fallback retry ladder.

**compatible.py**
    OpenRouter chat completions over server-sent events.

**instant.py**
    Key-less completion chain used by instant mode.

**dispatcher.py**
    Per-request model selection and dispatch to one of the strategies.
"""
