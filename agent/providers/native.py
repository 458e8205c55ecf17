"""Native Gemini backend (google-genai SDK) with the retry/fallback ladder.

Ladder, applied while opening the stream (before any text is delivered):
    - model not found / bad request: swap to the fallback model once and
      retry; if the failing model already is the fallback, propagate
    - quota / rate limit: wait 2^attempt * 2000ms + 1000ms and retry, up
      to ``quota_retries`` times, then propagate
    - anything else: propagate immediately

Every retry is announced through a notice event before it happens. Errors
raised after the first chunk arrived propagate without retry so no text is
ever delivered twice.
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from google import genai
from google.genai import types

from agent.chat_types import Sender, StreamEvent
from agent.errors import (
    ModelUnavailable,
    NetworkFailure,
    ProviderAuthError,
    QuotaExceeded,
    UserCancelled,
    classify_provider_error,
)
from agent.prompt_builder import friendly_model_name
from agent.providers.base import GenerationCall, GenerationProvider
from agent.providers.registry import NATIVE
from bubble_constants import DEFAULT_MODEL

logger = logging.getLogger(__name__)

THINKING_MAX_OUTPUT_TOKENS = 65536


def backoff_delay(attempt: int) -> float:
    """Seconds to wait before quota retry number ``attempt`` (0-based)."""
    return (2 ** attempt * 2000 + 1000) / 1000.0


def grounding_chunks(chunk: Any) -> List[Dict[str, Any]]:
    """Extract ``candidates[0].grounding_metadata.grounding_chunks`` as dicts."""
    candidates = getattr(chunk, "candidates", None) or []
    if not candidates:
        return []
    metadata = getattr(candidates[0], "grounding_metadata", None)
    chunks = getattr(metadata, "grounding_chunks", None) or []
    records = []
    for gc in chunks:
        if isinstance(gc, dict):
            records.append(gc)
        elif hasattr(gc, "model_dump"):
            records.append(gc.model_dump(exclude_none=True))
    return records


class GeminiProvider(GenerationProvider):
    """Streams from Gemini with built-in Google Search grounding enabled.

    Args:
        api_key: Gemini API key. Only needed when ``client`` is not given.
        fallback_model: Model swapped in when the requested one is unavailable.
        quota_retries: Maximum number of backoff retries on quota errors.
        client: Pre-built ``genai.Client`` (tests inject a fake here).
    """

    provider_id = NATIVE

    def __init__(self, api_key: str = "", *, fallback_model: str = DEFAULT_MODEL,
                 quota_retries: int = 3, client=None):
        self._api_key = api_key
        self._fallback_model = fallback_model
        self._quota_retries = quota_retries
        self._client = client

    @property
    def client(self):
        if self._client is None:
            if not self._api_key:
                raise ProviderAuthError("Gemini API key is not configured.")
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    @property
    def fallback_model(self) -> str:
        return self._fallback_model

    # -- Request building ----------------------------------------------------

    def build_contents(self, call: GenerationCall) -> List[types.Content]:
        contents = []
        for turn in call.history:
            role = "user" if turn.sender == Sender.USER else "model"
            contents.append(types.Content(role=role, parts=[types.Part.from_text(text=turn.text)]))

        parts = []
        if call.prompt or not call.attachments:
            parts.append(types.Part.from_text(text=call.prompt))
        for attachment in call.attachments:
            if attachment.is_image:
                parts.append(types.Part.from_bytes(data=attachment.data, mime_type=attachment.mime_type))
            else:
                parts.append(types.Part.from_text(text=attachment.text))
        contents.append(types.Content(role="user", parts=parts))
        return contents

    def build_config(self, call: GenerationCall) -> types.GenerateContentConfig:
        kwargs: Dict[str, Any] = {
            "system_instruction": call.system_instruction,
            "tools": [types.Tool(google_search=types.GoogleSearch())],
        }
        if call.thinking_budget > 0:
            kwargs["thinking_config"] = types.ThinkingConfig(thinking_budget=call.thinking_budget)
            kwargs["max_output_tokens"] = THINKING_MAX_OUTPUT_TOKENS
        return types.GenerateContentConfig(**kwargs)

    # -- Streaming -------------------------------------------------------------

    async def stream(self, call: GenerationCall) -> AsyncIterator[StreamEvent]:
        contents = self.build_contents(call)
        config = self.build_config(call)
        quota_attempt = 0

        while True:
            call.cancellation.raise_if_cancelled()
            try:
                response = await self.client.aio.models.generate_content_stream(
                    model=call.model, contents=contents, config=config,
                )
                first = await response.__anext__()
                break
            except StopAsyncIteration:
                return
            except Exception as raw:
                err = classify_provider_error(raw, call.model)
                if isinstance(err, ModelUnavailable) and call.model != self._fallback_model:
                    logger.warning("Model %s unavailable, falling back to %s: %s",
                                   call.model, self._fallback_model, raw)
                    yield StreamEvent(
                        text=(f"(Model {call.model} unavailable. Falling back to "
                              f"{friendly_model_name(self._fallback_model)}...)"),
                        is_notice=True,
                    )
                    call.model = self._fallback_model
                    continue
                if isinstance(err, QuotaExceeded) and quota_attempt < self._quota_retries:
                    delay = backoff_delay(quota_attempt)
                    logger.warning("Quota limit hit (attempt %d/%d). Retrying in %.0fs",
                                   quota_attempt + 1, self._quota_retries, delay)
                    yield StreamEvent(text=f"(Rate limit hit. Retrying in {round(delay)}s...)", is_notice=True)
                    if await call.cancellation.sleep(delay):
                        raise UserCancelled("cancelled during rate-limit backoff")
                    quota_attempt += 1
                    continue
                if err is raw:
                    raise
                raise err from raw

        try:
            event = self._to_event(first)
            if event is not None:
                yield event
            async for chunk in response:
                if call.cancellation.cancelled:
                    break
                event = self._to_event(chunk)
                if event is not None:
                    yield event
        except Exception as raw:
            err = classify_provider_error(raw, call.model)
            if err is raw:
                raise
            raise err from raw
        finally:
            aclose = getattr(response, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    logger.debug("Error closing Gemini stream: %s", e)

    @staticmethod
    def _to_event(chunk: Any) -> Optional[StreamEvent]:
        text = getattr(chunk, "text", None) or ""
        grounding = grounding_chunks(chunk)
        if not text and not grounding:
            return None
        return StreamEvent(text=text, grounding=tuple(grounding))

    # -- One-shot helpers ------------------------------------------------------

    async def generate_text(self, prompt: str, *, model: Optional[str] = None,
                            max_output_tokens: int = 256, temperature: float = 0.7) -> str:
        """Non-streamed completion used for side tasks such as titles."""
        try:
            response = await self.client.aio.models.generate_content(
                model=model or self._fallback_model,
                contents=prompt,
                config=types.GenerateContentConfig(
                    max_output_tokens=max_output_tokens, temperature=temperature,
                ),
            )
        except Exception as raw:
            err = classify_provider_error(raw, model)
            if err is raw:
                raise
            raise err from raw
        return getattr(response, "text", None) or ""


async def validate_gemini_key(api_key: str, *, client=None) -> Tuple[bool, Optional[str]]:
    """Check a Gemini key with a one-token request.

    Quota errors mean the key itself is valid, so they count as success.
    """
    if not api_key:
        return False, "API key cannot be empty."
    provider = GeminiProvider(api_key, client=client)
    try:
        await provider.generate_text("hi", max_output_tokens=1)
    except QuotaExceeded:
        logger.warning("Key validation hit the quota limit; treating key as valid")
        return True, None
    except ProviderAuthError as e:
        if "permission" in str(e).lower():
            return False, "The API key does not have permission for this operation. Please check its permissions."
        return False, "The provided API key is not valid. Please ensure it is correct and has not expired."
    except NetworkFailure:
        return False, "Could not connect to the AI service. Please check your internet connection."
    except Exception as e:
        return False, f"Validation failed: {e}"
    return True, None
