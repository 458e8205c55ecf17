"""OpenAI-compatible streaming backend (OpenRouter) over raw SSE.

The chat-completions stream is read line by line: ``data: {json}`` lines
carry ``choices[0].delta.content`` increments, ``data: [DONE]`` ends the
stream, and a malformed line is logged and skipped without aborting.
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from agent.chat_types import Sender, StreamEvent
from agent.errors import (
    NetworkFailure,
    ProviderAuthError,
    VISION_UNSUPPORTED_MESSAGE,
    VisionNotSupported,
    error_for_status,
)
from agent.providers.base import GenerationCall, GenerationProvider
from agent.providers.registry import COMPATIBLE, model_supports_vision
from bubble_constants import (
    OPENROUTER_APP_REFERER,
    OPENROUTER_APP_TITLE,
    OPENROUTER_BASE_URL,
    OPENROUTER_MODELS_URL,
)

logger = logging.getLogger(__name__)

_DONE = object()


def parse_sse_line(line: str) -> Any:
    """Return the decoded payload of one SSE line.

    None for lines that carry nothing usable (comments, blank lines, other
    fields, malformed JSON); the module-level ``_DONE`` sentinel for
    ``[DONE]``.
    """
    line = line.strip()
    if not line.startswith("data: "):
        return None
    data = line[6:]
    if data == "[DONE]":
        return _DONE
    try:
        return json.loads(data)
    except json.JSONDecodeError:
        logger.warning("Skipping malformed stream chunk: %s", data[:200])
        return None


def delta_text(payload: Dict[str, Any]) -> str:
    try:
        return payload["choices"][0]["delta"].get("content") or ""
    except (KeyError, IndexError, TypeError, AttributeError):
        return ""


class OpenRouterProvider(GenerationProvider):
    """Streams chat completions from OpenRouter with the user's key.

    Args:
        api_key: The user's OpenRouter key.
        base_url: API root; the chat-completions path is appended.
        referer/title: Identifying headers OpenRouter attributes traffic to.
        temperature: Sampling temperature sent with every request.
        http_client: Shared ``httpx.AsyncClient``; one is created per call otherwise.
    """

    provider_id = COMPATIBLE

    def __init__(self, api_key: Optional[str], *, base_url: str = OPENROUTER_BASE_URL,
                 referer: str = OPENROUTER_APP_REFERER, title: str = OPENROUTER_APP_TITLE,
                 temperature: float = 0.7, http_client: Optional[httpx.AsyncClient] = None):
        self._api_key = api_key
        self._url = f"{base_url.rstrip('/')}/chat/completions"
        self._referer = referer
        self._title = title
        self._temperature = temperature
        self._client = http_client

    def build_messages(self, call: GenerationCall) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = [{"role": "system", "content": call.system_instruction}]
        for turn in call.history:
            role = "user" if turn.sender == Sender.USER else "assistant"
            messages.append({"role": role, "content": turn.text})

        content: List[Dict[str, Any]] = [{"type": "text", "text": call.prompt}]
        has_image = False
        for attachment in call.attachments:
            if attachment.is_image:
                has_image = True
                content.append({"type": "image_url", "image_url": {"url": attachment.data_url}})
            else:
                content.append({"type": "text", "text": attachment.text})

        if has_image and not model_supports_vision(call.model):
            raise VisionNotSupported(VISION_UNSUPPORTED_MESSAGE)

        messages.append({"role": "user", "content": content})
        return messages

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self._referer,
            "X-Title": self._title,
        }

    async def stream(self, call: GenerationCall) -> AsyncIterator[StreamEvent]:
        if not self._api_key:
            raise ProviderAuthError("OpenRouter API Key not found.")
        payload = {
            "model": call.model,
            "messages": self.build_messages(call),
            "stream": True,
            "temperature": self._temperature,
        }
        call.cancellation.raise_if_cancelled()

        client = self._client or httpx.AsyncClient(timeout=httpx.Timeout(120.0, connect=15.0))
        owns_client = self._client is None
        try:
            async with client.stream("POST", self._url, json=payload, headers=self._headers()) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise error_for_status(
                        response.status_code,
                        f"OpenRouter Error {response.status_code}: {_error_detail(body)}",
                        call.model,
                    )
                async for line in response.aiter_lines():
                    if call.cancellation.cancelled:
                        break
                    parsed = parse_sse_line(line)
                    if parsed is _DONE:
                        break
                    if not isinstance(parsed, dict):
                        continue
                    text = delta_text(parsed)
                    if text:
                        yield StreamEvent(text=text)
        except httpx.TransportError as e:
            raise NetworkFailure(f"OpenRouter connection failed: {e}") from e
        finally:
            if owns_client:
                await client.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def _error_detail(body: str) -> str:
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        return body
    if isinstance(parsed, dict):
        error = parsed.get("error")
        if isinstance(error, dict) and error.get("message"):
            return error["message"]
    return body


async def validate_openrouter_key(api_key: str, *,
                                  http_client: Optional[httpx.AsyncClient] = None) -> Tuple[bool, Optional[str]]:
    """Check a key by listing models, a lightweight read operation."""
    if not api_key:
        return False, "API key cannot be empty."
    client = http_client or httpx.AsyncClient(timeout=15.0)
    try:
        response = await client.get(
            OPENROUTER_MODELS_URL,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        )
    except httpx.HTTPError as e:
        logger.warning("OpenRouter key validation failed: %s", e)
        return False, "Could not connect to OpenRouter. Please check your connection."
    finally:
        if http_client is None:
            await client.aclose()

    if response.is_success:
        return True, None
    if response.status_code == 401:
        return False, "Invalid OpenRouter API key."
    return False, f"Validation failed: {_error_detail(response.text) or f'API returned status {response.status_code}'}"
