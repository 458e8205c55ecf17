"""Shared constants for Bubble Agent.

Import-safe module with no dependencies, so it can be imported from
anywhere without circular imports.
"""

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
OPENROUTER_MODELS_URL = f"{OPENROUTER_BASE_URL}/models"
OPENROUTER_CHAT_URL = f"{OPENROUTER_BASE_URL}/chat/completions"
OPENROUTER_APP_TITLE = "Bubble AI"
OPENROUTER_APP_REFERER = "https://bubble.ai"

BUBBLE_SEARCH_URL = "https://bubble-search-api-ndni.vercel.app/api/search"
DUCKDUCKGO_API_URL = "https://api.duckduckgo.com/"

HF_INSTANT_MODEL = "microsoft/Phi-3-mini-4k-instruct"
HF_INFERENCE_URL = f"https://api-inference.huggingface.co/models/{HF_INSTANT_MODEL}"
LEGACY_FREE_CHAT_URL = "https://apifreellm.com/api/chat"

DEFAULT_MODEL = "gemini-2.5-flash"
DEEP_THINKING_MODEL = "gemini-3-pro-preview"
TITLE_MODEL = DEFAULT_MODEL

MAX_LOOPS = 6
NEW_CHAT_NAME = "New Chat"
