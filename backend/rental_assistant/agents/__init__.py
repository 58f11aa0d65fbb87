"""
Agent modules for the Rental Listing Assistant.

- QueryAnalyzer: rule-based intent classification and filter extraction
- ResponseAgent: answer generation, fallback and deep-link post-processing
"""

from .query_analyzer import QueryAnalyzer
from .base_agent import BaseAgent
from .response_agent import (
    ResponseAgent,
    GeneratedAnswer,
    NO_PROPERTIES_MESSAGE,
    build_fallback_response,
    postprocess_links,
)

__all__ = [
    "QueryAnalyzer",
    "BaseAgent",
    "ResponseAgent",
    "GeneratedAnswer",
    "NO_PROPERTIES_MESSAGE",
    "build_fallback_response",
    "postprocess_links",
]
