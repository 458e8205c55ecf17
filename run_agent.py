#!/usr/bin/env python3
"""
Bubble Agent Runner

Command-line driver for the agent core. Wires settings, the provider
dispatcher, the action loop and the session guard together and streams
one reply to stdout.

Usage:
    python run_agent.py --query "who won the race today"
    python run_agent.py --query "explain monads" --thinking_mode think --verbose
"""

import asyncio
import itertools
import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, List, Optional

import fire

from agent.action_loop import AgentLoop
from agent.config import AgentSettings, ConfigValidationError, load_environment
from agent.providers.dispatcher import ProviderDispatcher
from gateway.session_guard import ChatContext, GuardDelta, SessionGuard

logger = logging.getLogger(__name__)


class InMemoryMessageStore:
    """Message store for local runs. Records live for the life of the process."""

    def __init__(self):
        self.messages: List[Dict[str, Any]] = []
        self.chats: Dict[str, Dict[str, Any]] = {}
        self._ids = itertools.count(1)

    async def add_message(self, record: Dict[str, Any]) -> Dict[str, Any]:
        saved = {**record, "id": f"msg-{next(self._ids)}", "created_at": datetime.now().isoformat()}
        self.messages.append(saved)
        return saved

    async def update_chat(self, chat_id: str, changes: Dict[str, Any]) -> None:
        self.chats.setdefault(chat_id, {}).update(changes)


def setup_logging(home, verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )
    # Keep third-party libraries quiet; our own retry logging is more informative
    for noisy in ('httpx', 'httpcore', 'google_genai', 'asyncio'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    log_dir = home / "logs"
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.debug("Not writing log file: %s", e)
        return
    file_handler = RotatingFileHandler(
        log_dir / "agent.log", maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8",
    )
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))
    logging.getLogger().addHandler(file_handler)


async def run_once(query: str, settings: AgentSettings, *, model: Optional[str] = None,
                   thinking_mode: Optional[str] = None, conversation_id: str = "cli"):
    store = InMemoryMessageStore()
    dispatcher = ProviderDispatcher(settings)
    loop = AgentLoop(dispatcher, settings)

    def print_delta(delta: GuardDelta) -> None:
        sys.stdout.write(delta.event.text)
        sys.stdout.flush()

    guard = SessionGuard(
        loop,
        store=store,
        settings=settings,
        title_provider=dispatcher.native if settings.gemini_api_key else None,
        active_conversation=lambda: conversation_id,
        on_delta=print_delta,
    )
    try:
        outcome = await guard.send(query, chat=ChatContext(id=conversation_id),
                                   mode_or_model=model or thinking_mode)
        await guard.drain()
    finally:
        await dispatcher.aclose()
    return outcome, store


def main(
    query: str = None,
    model: str = None,
    thinking_mode: str = None,
    conversation_id: str = "cli",
    verbose: bool = False,
):
    """
    Run one query through the agent and stream the reply.

    Args:
        query (str): The user message.
        model (str): Model override (Gemini id or OpenRouter "provider/model").
        thinking_mode (str): instant | fast | think | deep. Defaults from the configured keys.
        conversation_id (str): Conversation the message belongs to.
        verbose (bool): Enable debug logging.
    """
    home = load_environment()
    setup_logging(home, verbose)

    if not query:
        print("❌ No query given. Use --query \"...\"")
        return

    try:
        settings = AgentSettings.from_env()
    except ConfigValidationError as e:
        print(f"❌ Invalid configuration: {e}")
        return

    print(f"\n📝 User Query: {query}")
    print("=" * 50)
    outcome, store = asyncio.run(run_once(
        query, settings, model=model, thinking_mode=thinking_mode, conversation_id=conversation_id,
    ))
    print("\n" + "=" * 50)

    if outcome is None:
        print("⚠️ Nothing was sent.")
        return
    print(f"🤖 Model: {outcome.model}")
    print(f"🔁 Iterations: {outcome.iterations}")
    print(f"🏁 Terminated by: {outcome.terminated_by.value}")
    if outcome.grounding_metadata:
        print("📚 Sources:")
        for i, record in enumerate(outcome.grounding_metadata, start=1):
            web = record.get("web") or {}
            print(f"  [{i}] {web.get('title', '')} {web.get('uri', '')}")
    if outcome.error:
        print(f"❌ Error: {outcome.error}")
    title = store.chats.get(conversation_id, {}).get("name")
    if title:
        print(f"🏷️ Title: {title}")


def cli():
    fire.Fire(main)


if __name__ == "__main__":
    cli()
