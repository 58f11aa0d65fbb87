"""
Helper utility functions.
"""

import hashlib
import json
import re
import uuid
from typing import Dict, Any, Optional


_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def generate_session_id() -> str:
    """
    Generate a unique session ID.

    Returns:
        Unique session identifier string
    """
    return str(uuid.uuid4())


def format_price(price: Optional[float]) -> str:
    """
    Format a monthly amount for display.

    Args:
        price: Amount in USD (can be None)

    Returns:
        Formatted price string, e.g. ``$1,475``
    """
    if price is None:
        return "N/A"
    return f"${price:,.0f}"


def format_number(value: Optional[float]) -> str:
    """Render 2.0 as ``2`` and 1.5 as ``1.5``."""
    if value is None:
        return "N/A"
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"


def parse_price_string(price_str: str) -> Optional[float]:
    """
    Parse a rent amount such as ``$1,800``, ``1800`` or ``1.8k``.

    Args:
        price_str: Price string to parse

    Returns:
        Amount in USD or None if unparseable
    """
    if not price_str:
        return None

    price_str = price_str.strip().lower().replace("$", "").replace(",", "")

    try:
        if price_str.endswith("k"):
            return float(price_str[:-1]) * 1_000
        return float(price_str)
    except (ValueError, TypeError):
        return None


def normalize_query(text: str, max_length: int = 200) -> str:
    """
    Normalize a query for fingerprinting.

    Lowercases, trims, strips punctuation, collapses whitespace and caps the length.
    """
    normalized = _PUNCTUATION.sub(" ", (text or "").lower())
    normalized = _WHITESPACE.sub(" ", normalized).strip()
    return normalized[:max_length]


def query_fingerprint(
    text: str,
    filters: Optional[Dict[str, Any]] = None,
    namespace: str = "search",
    max_length: int = 200,
) -> str:
    """
    Build a cache key from the normalized query text and its structured filters.

    Args:
        text: Raw query text
        filters: Extracted filters (dict form)
        namespace: Key prefix separating result and answer caches
        max_length: Cap applied to the normalized text

    Returns:
        ``<namespace>:<sha256 hex digest>``
    """
    payload = json.dumps(
        {"q": normalize_query(text, max_length), "f": filters or {}},
        sort_keys=True,
        default=str,
    )
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"{namespace}:{digest[:32]}"


def estimate_tokens(text: str, chars_per_token: float = 3.5) -> int:
    """Rough token estimate for serialized prompt text."""
    if not text:
        return 0
    return int(len(text) / chars_per_token) + 1


def truncate_text(text: str, max_length: int = 100, suffix: str = "...") -> str:
    """
    Truncate text to a maximum length.

    Args:
        text: Text to truncate
        max_length: Maximum length
        suffix: Suffix to add if truncated

    Returns:
        Truncated text
    """
    if len(text) <= max_length:
        return text

    return text[:max_length - len(suffix)] + suffix


def clean_llm_response(response: str) -> str:
    """
    Clean up an LLM response by removing common artifacts.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned response
    """
    if not response:
        return ""

    response = response.strip()

    artifacts = [
        "As an AI language model,",
        "As an AI assistant,",
        "I'd be happy to help!",
        "Certainly!",
        "Of course!",
    ]

    for artifact in artifacts:
        if response.startswith(artifact):
            response = response[len(artifact):].strip()

    return response
