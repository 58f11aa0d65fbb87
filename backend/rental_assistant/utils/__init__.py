"""
Utility functions for the Rental Listing Assistant.
"""

from .helpers import (
    generate_session_id,
    format_price,
    format_number,
    parse_price_string,
    normalize_query,
    query_fingerprint,
    estimate_tokens,
    truncate_text,
    clean_llm_response,
)

__all__ = [
    "generate_session_id",
    "format_price",
    "format_number",
    "parse_price_string",
    "normalize_query",
    "query_fingerprint",
    "estimate_tokens",
    "truncate_text",
    "clean_llm_response",
]
