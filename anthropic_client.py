"""Claude transport for the formatting step (FORMAT_PROVIDER=anthropic)."""

from __future__ import annotations

import logging
import os
from typing import Any

import anthropic

from errors import RateLimitError, TransientLookupError

CLAUDE_MODEL = os.getenv("CLAUDE_MODEL", "claude-sonnet-4-5")
REQUEST_TIMEOUT_SECONDS = float(os.getenv("FORMAT_TIMEOUT_SECONDS", "20"))

LOGGER = logging.getLogger(__name__)


def claude_chat(messages: list[dict[str, str]], max_tokens: int = 512) -> str:
    """Send OpenAI-style chat messages to Claude and return the reply text.

    System messages go through the dedicated ``system=`` parameter. Rate
    limits raise RateLimitError and dropped connections raise
    TransientLookupError; timeouts propagate as the SDK raises them.
    """
    api_key = os.getenv("ANTHROPIC_API_KEY")
    if not api_key:
        raise RuntimeError("ANTHROPIC_API_KEY environment variable is required")

    system, conversation = _split_system(messages)
    request: dict[str, Any] = {
        "model": os.getenv("CLAUDE_MODEL", CLAUDE_MODEL),
        "max_tokens": max_tokens,
        "messages": conversation,
    }
    if system:
        request["system"] = system

    client = anthropic.Anthropic(api_key=api_key, timeout=REQUEST_TIMEOUT_SECONDS)
    LOGGER.debug("Calling Claude model=%s with %s message(s)", request["model"], len(conversation))
    try:
        response = client.messages.create(**request)
    except anthropic.RateLimitError as exc:
        raise RateLimitError(f"Anthropic rate limit or quota exhausted: {exc}") from exc
    except anthropic.APITimeoutError:
        raise
    except anthropic.APIConnectionError as exc:
        raise TransientLookupError(f"Anthropic connection failed: {exc}") from exc

    text = "".join(getattr(block, "text", "") for block in response.content)
    if not text.strip():
        raise RuntimeError("Claude returned an empty response")
    return text


def _split_system(messages: list[dict[str, str]]) -> tuple[str, list[dict[str, str]]]:
    system_parts = [msg["content"] for msg in messages if msg["role"] == "system"]
    conversation = [
        {"role": msg["role"], "content": msg["content"]}
        for msg in messages
        if msg["role"] != "system"
    ]
    return "\n\n".join(system_parts), conversation
