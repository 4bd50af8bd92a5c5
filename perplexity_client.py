"""Perplexity API client for component specification lookup."""

from __future__ import annotations

import logging
import os
from typing import Any

import requests

from errors import RateLimitError, TransientLookupError

PERPLEXITY_API_URL = "https://api.perplexity.ai/chat/completions"
PERPLEXITY_MODEL = os.getenv("PERPLEXITY_MODEL", "sonar-pro")
PERPLEXITY_TEMPERATURE = float(os.getenv("PERPLEXITY_TEMPERATURE", "0.1"))
REQUEST_TIMEOUT_SECONDS = float(os.getenv("LOOKUP_TIMEOUT_SECONDS", "20"))

# 402 is what the API answers once the account credit is spent.
_QUOTA_STATUS_CODES = frozenset({402, 429})

LOGGER = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an electronic components research assistant.
You will be given a Bill of Materials line: a vendor part number and a free-text description.
Find the authoritative specifications for exactly this part number on distributor and
manufacturer sites (https://www.digikey.com/, https://www.mouser.com/, https://www.datasheets360.com/,
manufacturer datasheets).

Report every parameter you find: component type, value, tolerance, voltage/current/power rating,
temperature coefficient or dielectric, package or case size, mounting type (SMT or through-hole),
pin count, frequency range.
List the full URLs of the product pages or datasheets you used, most specific first.
If the part number cannot be found, say so plainly instead of guessing."""


def search_component(description: str, part_number: str) -> str:
    """Look up one component and return the raw research text with its citations.

    Raises TransientLookupError on dropped connections and RateLimitError when
    the account is out of quota; every other failure propagates unchanged.
    """
    api_key = os.getenv("PERPLEXITY_API_KEY")
    if not api_key:
        raise RuntimeError("PERPLEXITY_API_KEY environment variable is required")

    LOGGER.info("Looking up part_number=%s with Perplexity", part_number)
    body = _call_perplexity(api_key=api_key, description=description, part_number=part_number)
    content = _extract_content(body)

    citations = [url for url in body.get("citations") or [] if isinstance(url, str) and url.strip()]
    if citations:
        content = content.rstrip() + "\n\nSources:\n" + "\n".join(f"- {url.strip()}" for url in citations)
    return content


def _call_perplexity(api_key: str, description: str, part_number: str) -> dict[str, Any]:
    user_prompt = (
        f"Part number: {part_number}\n"
        f"Description: {description or 'Not available.'}\n"
    )

    payload = {
        "model": PERPLEXITY_MODEL,
        "temperature": PERPLEXITY_TEMPERATURE,
        "messages": [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": user_prompt},
        ],
    }
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }

    try:
        response = requests.post(
            PERPLEXITY_API_URL,
            headers=headers,
            json=payload,
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
    except requests.ConnectionError as exc:
        raise TransientLookupError(f"Perplexity connection failed: {exc}") from exc

    if response.status_code in _QUOTA_STATUS_CODES:
        raise RateLimitError(
            f"Perplexity quota exhausted (HTTP {response.status_code}): {response.text[:200]}"
        )
    response.raise_for_status()
    return response.json()


def _extract_content(body: Any) -> str:
    try:
        content = body["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise RuntimeError(f"Unexpected Perplexity response shape: {body}") from exc

    if not isinstance(content, str) or not content.strip():
        raise RuntimeError("Perplexity returned an empty response")
    return content
