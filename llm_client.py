"""OpenAI-compatible LLM client: three-line formatting of lookups and job Q&A."""

from __future__ import annotations

import logging
import os
from typing import Any

import openai
from openai import OpenAI

from errors import RateLimitError, TransientLookupError

OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_TEMPERATURE = float(os.getenv("OPENAI_TEMPERATURE", "0.1"))
REQUEST_TIMEOUT_SECONDS = float(os.getenv("FORMAT_TIMEOUT_SECONDS", "20"))

LOGGER = logging.getLogger(__name__)

FORMAT_SYSTEM_PROMPT = """You turn research notes about one electronic component into a catalog entry.
Respond with EXACTLY three lines and nothing else. No numbering, no labels, no markdown.

Line 1: the component description in the catalog format below.
Line 2: the most specific source URL (full, starting with https://), or NO_SOURCE.
Line 3: a second, different source URL (full, starting with https://), or NO_SECOND_SOURCE.

DESCRIPTION RULES:
1. Never drop a parameter present in the original description; add parameters found in the research.
2. Never include the part number or manufacturer names.
3. Units: OHM -> R, KOHM -> K, MOHM -> M (50R, 1.8K, 2.2M).
   UF -> MF (10MF). NF -> MF when >= 100 (470NF -> 0.47MF), otherwise PF (1NF -> 1000PF).
4. CER / CERAMIC -> CRM.
5. End with the mounting type (SMT or TH) when the package makes it clear.

FORMATS:
Capacitors: CAP CRM <value> <voltage> <tolerance> <dielectric> <size> <mount> <parameters>
  e.g. CAP CRM 39PF 50V 2% COG 0402 SMT
Resistors: RES <value> <power> <tolerance> <size> <mount> <parameters>
  e.g. RES 1.8K 0.0625W 1% 0402 SMT
Inductors: IND <value> <current> <tolerance> <size> <parameters>
  e.g. IND 12NH 1.24A 2% 0402 Q=30
Filters: FILTER <type> <frequency> <size> <parameters>
  e.g. FILTER BAND 1567.5MHZ 1DB SMT
Connectors: CONN <type> <pins> <pitch> <mount> <parameters>
  e.g. CONN COAX 1P 1.778MM SMT UFL
ICs: IC <function> <key parameters> <package>-<pins> <mount>
  e.g. IC OPAMP DUAL 1MHZ SOIC-8 SMT"""

CHAT_SYSTEM_PROMPT = """You are analyzing a Bill of Materials spreadsheet and helping complete component descriptions.
Answer the user's questions about the components using all information available, including
distributor and manufacturer sites. Explanations and recommendations are welcome."""


def format_lookup(raw_text: str, part_number: str | None = None, description: str | None = None) -> str:
    """Ask the formatting model for the three-line answer (description, source, second source).

    The reply is returned verbatim; validating the three-line shape is the
    caller's job. FORMAT_PROVIDER=anthropic routes the call to Claude.
    """
    messages = [
        {"role": "system", "content": FORMAT_SYSTEM_PROMPT},
        {"role": "user", "content": _format_user_prompt(raw_text, part_number, description)},
    ]

    provider = os.getenv("FORMAT_PROVIDER", "openai").strip().lower()
    if provider == "anthropic":
        from anthropic_client import claude_chat  # noqa: PLC0415

        LOGGER.info("Formatting part_number=%s with Claude", part_number)
        return claude_chat(messages, max_tokens=512)

    LOGGER.info("Formatting part_number=%s with OpenAI", part_number)
    return _chat(messages, max_completion_tokens=512)


def answer_question(question: str, history: list[dict[str, Any]] | None = None) -> str:
    """Free-form Q&A about a job's components, with the job's chat history as context."""
    messages: list[dict[str, str]] = [{"role": "system", "content": CHAT_SYSTEM_PROMPT}]
    for item in history or []:
        role = item.get("role")
        content = item.get("content")
        if role in {"user", "assistant"} and isinstance(content, str):
            messages.append({"role": role, "content": content})
    messages.append({"role": "user", "content": question})
    return _chat(messages)


def _format_user_prompt(raw_text: str, part_number: str | None, description: str | None) -> str:
    return (
        f"Part number: {part_number or 'Not available.'}\n"
        f"Original description: {description or 'Not available.'}\n\n"
        f"Research notes:\n{raw_text}\n"
    )


def _chat(messages: list[dict[str, str]], **kwargs: Any) -> str:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise RuntimeError("OPENAI_API_KEY environment variable is required")

    client = OpenAI(
        api_key=api_key,
        base_url=os.getenv("OPENAI_BASE_URL") or None,
        timeout=REQUEST_TIMEOUT_SECONDS,
    )

    try:
        response = client.chat.completions.create(
            model=OPENAI_MODEL,
            temperature=OPENAI_TEMPERATURE,
            messages=messages,
            **kwargs,
        )
    except openai.RateLimitError as exc:
        raise RateLimitError(f"OpenAI rate limit or quota exhausted: {exc}") from exc
    except openai.APITimeoutError:
        raise
    except openai.APIConnectionError as exc:
        raise TransientLookupError(f"OpenAI connection failed: {exc}") from exc

    content = response.choices[0].message.content
    if not content:
        raise RuntimeError("OpenAI returned an empty response")
    return content
