"""Instant mode: key-less completion chain for users without a Gemini key.

Providers are tried in order (Hugging Face public inference, then the
legacy free chat API). Both return the whole answer at once, so the text
is replayed in small chunks to keep the streaming contract. When every
provider fails the user gets a "busy" message instead of an error.
"""

import logging
import os
from typing import AsyncIterator, List, Optional, Tuple

import httpx

from agent.chat_types import Sender, StreamEvent
from agent.errors import AgentError
from agent.providers.base import GenerationCall, GenerationProvider
from agent.providers.registry import INSTANT
from bubble_constants import HF_INFERENCE_URL, HF_INSTANT_MODEL, LEGACY_FREE_CHAT_URL

logger = logging.getLogger(__name__)

INSTANT_BUSY_MESSAGE = (
    "Instant AI services are currently busy. Please try again or use a Standard model."
)


def _role(sender: Sender) -> str:
    return "user" if sender == Sender.USER else "assistant"


def phi3_prompt(system: str, messages: List[Tuple[str, str]]) -> str:
    prompt = f"<|system|>\n{system}<|end|>\n" if system else ""
    for role, content in messages:
        prompt += f"<|{role}|>\n{content}<|end|>\n"
    return prompt + "<|assistant|>\n"


def transcript_payload(system: str, messages: List[Tuple[str, str]]) -> str:
    conversation = "\n".join(
        f"{'User' if role == 'user' else 'Assistant'}: {content}" for role, content in messages
    )
    return f"{system}\n\n=== CONVERSATION ===\n{conversation}\n\nAssistant:"


class InstantProvider(GenerationProvider):
    """Free completion chain.

    Args:
        http_client: Shared ``httpx.AsyncClient``; one is created per call otherwise.
        hf_token: Optional Hugging Face token (raises the public rate limit).
        chunk_delay: Pause between replayed chunks, in seconds.
    """

    provider_id = INSTANT

    def __init__(self, *, http_client: Optional[httpx.AsyncClient] = None,
                 hf_token: Optional[str] = None, chunk_delay: float = 0.005):
        self._client = http_client
        self._hf_token = hf_token if hf_token is not None else os.getenv("HF_TOKEN")
        self._chunk_delay = chunk_delay

    async def _try_hugging_face(self, client: httpx.AsyncClient, call: GenerationCall,
                                messages: List[Tuple[str, str]]) -> Tuple[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._hf_token:
            headers["Authorization"] = f"Bearer {self._hf_token}"
        response = await client.post(HF_INFERENCE_URL, headers=headers, json={
            "inputs": phi3_prompt(call.system_instruction, messages),
            "parameters": {"max_new_tokens": 512, "return_full_text": False, "temperature": 0.7},
        })
        if not response.is_success:
            raise AgentError(f"HF Status: {response.status_code}")
        result = response.json()
        first = result[0] if isinstance(result, list) and result else result
        text = first.get("generated_text") if isinstance(first, dict) else None
        if not text:
            raise AgentError("Empty response from HF")
        return text, f"HF ({HF_INSTANT_MODEL})"

    async def _try_legacy(self, client: httpx.AsyncClient, call: GenerationCall,
                          messages: List[Tuple[str, str]]) -> Tuple[str, str]:
        response = await client.post(LEGACY_FREE_CHAT_URL, json={
            "message": transcript_payload(call.system_instruction, messages),
        })
        if not response.is_success:
            raise AgentError(f"HTTP Error: {response.status_code}")
        data = response.json()
        if not isinstance(data, dict):
            raise AgentError(f"Unexpected legacy payload: {type(data).__name__}")
        if data.get("status") != "success" or not data.get("response"):
            raise AgentError(data.get("error") or "API returned error status")
        return data["response"], "Legacy API"

    async def _replay(self, text: str, chunk_size: int, call: GenerationCall) -> AsyncIterator[StreamEvent]:
        for i in range(0, len(text), chunk_size):
            if call.cancellation.cancelled:
                return
            yield StreamEvent(text=text[i:i + chunk_size])
            if self._chunk_delay and await call.cancellation.sleep(self._chunk_delay):
                return

    async def stream(self, call: GenerationCall) -> AsyncIterator[StreamEvent]:
        messages = [(_role(t.sender), t.text) for t in call.turns]
        client = self._client or httpx.AsyncClient(timeout=60.0)
        owns_client = self._client is None
        try:
            for attempt, chunk_size in ((self._try_hugging_face, 8), (self._try_legacy, 4)):
                call.cancellation.raise_if_cancelled()
                try:
                    text, model_used = await attempt(client, call, messages)
                except (httpx.HTTPError, AgentError, ValueError) as e:
                    logger.warning("Instant provider %s failed: %s", attempt.__name__, e)
                    continue
                call.model = model_used
                async for event in self._replay(text, chunk_size, call):
                    yield event
                return
        finally:
            if owns_client:
                await client.aclose()

        call.model = "Error"
        yield StreamEvent(text=INSTANT_BUSY_MESSAGE)
