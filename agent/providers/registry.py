"""
Provider registry for the generation backends.

Lightweight and dependency-safe: the dispatcher, the key validators and
the command-line driver share the same provider metadata and the same
model-family rules from here.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Tuple

from bubble_constants import HF_INFERENCE_URL, OPENROUTER_BASE_URL

EnvGetter = Callable[[str], Optional[str]]

NATIVE = "gemini"
COMPATIBLE = "openrouter"
INSTANT = "instant"


@dataclass(frozen=True)
class ProviderMeta:
    id: str
    label: str
    default_base_url: str = ""
    api_key_env_vars: Tuple[str, ...] = ()
    base_url_env_var: Optional[str] = None
    aliases: Tuple[str, ...] = ()
    requires_user_key: bool = False
    builtin_search: bool = False


PROVIDERS: Dict[str, ProviderMeta] = {
    NATIVE: ProviderMeta(
        id=NATIVE,
        label="Google Gemini",
        api_key_env_vars=("GEMINI_API_KEY", "GOOGLE_API_KEY"),
        aliases=("google", "native"),
        builtin_search=True,
    ),
    COMPATIBLE: ProviderMeta(
        id=COMPATIBLE,
        label="OpenRouter",
        default_base_url=OPENROUTER_BASE_URL,
        api_key_env_vars=("OPENROUTER_API_KEY",),
        base_url_env_var="OPENROUTER_BASE_URL",
        aliases=("compatible", "or"),
        requires_user_key=True,
    ),
    INSTANT: ProviderMeta(
        id=INSTANT,
        label="Instant (free)",
        default_base_url=HF_INFERENCE_URL,
        api_key_env_vars=("HF_TOKEN",),
        aliases=("free",),
    ),
}

_ALIAS_TO_PROVIDER: Dict[str, str] = {}
for _pid, _meta in PROVIDERS.items():
    _ALIAS_TO_PROVIDER[_pid] = _pid
    for _alias in _meta.aliases:
        _ALIAS_TO_PROVIDER[_alias.lower()] = _pid

# Substrings that mark a compatible-provider model as accepting images
_VISION_MARKERS = ("vision", "gemini", "claude", "gpt-4")


def normalize_provider_id(provider_id: Optional[str], default: str = NATIVE) -> str:
    """Normalize a provider ID or alias to a canonical ID."""
    if not provider_id:
        return default
    key = provider_id.strip().lower()
    if not key:
        return default
    return _ALIAS_TO_PROVIDER.get(key, key)


def get_provider(provider_id: str) -> Optional[ProviderMeta]:
    return PROVIDERS.get(normalize_provider_id(provider_id))


def iter_api_key_env_vars(provider_id: str) -> Iterable[str]:
    meta = get_provider(provider_id)
    if not meta:
        return ()
    return meta.api_key_env_vars


def resolve_provider_api_key(
    provider_id: str,
    *,
    env_get: EnvGetter = os.getenv,
    explicit_api_key: Optional[str] = None,
) -> Optional[str]:
    if explicit_api_key:
        return explicit_api_key
    for env_var in iter_api_key_env_vars(provider_id):
        value = env_get(env_var)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def resolve_provider_base_url(
    provider_id: str,
    *,
    env_get: EnvGetter = os.getenv,
) -> Optional[str]:
    meta = get_provider(provider_id)
    if not meta:
        return None
    if meta.base_url_env_var:
        env_value = env_get(meta.base_url_env_var)
        if isinstance(env_value, str) and env_value.strip():
            return env_value.strip().rstrip("/")
    if meta.default_base_url:
        return meta.default_base_url.rstrip("/")
    return None


# -- Model family rules ------------------------------------------------------

def is_native_model(model: Optional[str]) -> bool:
    """Gemini/Veo family or anything Google-hosted. Empty means the default."""
    if not model:
        return True
    lower = model.lower()
    return lower.startswith("gemini") or lower.startswith("veo") or "google" in lower


def provider_for_model(model: Optional[str]) -> str:
    return NATIVE if is_native_model(model) else COMPATIBLE


def model_supports_search(model: str, provider_id: str) -> bool:
    """Providers with built-in grounding and Perplexity models search on their own."""
    meta = get_provider(provider_id)
    return bool(meta and meta.builtin_search) or "perplexity" in model.lower()


def model_supports_vision(model: str) -> bool:
    lower = model.lower()
    return any(marker in lower for marker in _VISION_MARKERS)


def model_supports_thinking(model: str) -> bool:
    return "gemini-2.5" in model or "gemini-3" in model
