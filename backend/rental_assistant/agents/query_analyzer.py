"""
Query Analyzer - classifies an utterance and extracts structured filters.

Rule-based on purpose: the rules are an accepted approximation and every
function here is a pure function of the (case-insensitive) input text.
"""

import logging
import re
from typing import List, Optional, Sequence

from ..config import get_settings
from ..errors import ClassificationAmbiguous
from ..models.schemas import NumericRange, SearchFilters, SearchQuery
from ..models.state import ActionType, QueryIntent
from ..utils.helpers import parse_price_string

logger = logging.getLogger(__name__)


ACTION_KEYWORDS = {
    ActionType.TOUR: ["tour", "schedule", "visit"],
    ActionType.APPLY: ["apply", "application"],
    ActionType.DETAILS: ["details", "more info", "show me"],
}

GENERIC_LISTING_PHRASES = [
    "what properties",
    "show me properties",
    "all properties",
    "list properties",
    "available properties",
]

CATCH_ALL_PHRASES = [
    "show all",
    "show me all",
    "show me everything",
    "list all",
    "list everything",
    "all listings",
    "all properties",
]

ORDINAL_WORDS = {"first": 0, "second": 1, "third": 2, "fourth": 3}

_FILTER_KEYWORD = re.compile(r"\b(?:bed|bath|rent|price|pet|dog|cat)|\d\s*(?:br|bd|ba)\b")
_DESCRIPTIVE_NOUN = re.compile(r"apartment|house|propert(?:y|ies)|available|looking for")

_OPTION_REFERENCE = re.compile(r"\b(?:option|number|no\.?|#)\s*([1-4])\b")
_ORDINAL_SUFFIX = re.compile(r"\b([1-4])(?:st|nd|rd|th)\b")
_ORDINAL_WORD = re.compile(r"\b(first|second|third|fourth)\b")
# A bare 1-4 that is not part of an amount or a quantity ("2 bed", "$1", "1.5 ba").
_BARE_DIGIT = re.compile(
    r"(?<![\$\d.,])\b([1-4])\b"
    r"(?![\d.,]|\s*-?\s*(?:bed|bd|br|bath|ba\b|sq|k\b|%|people|person|pets?|dogs?|cats?|months?|years?|weeks?|days?))"
)

_BEDS = re.compile(r"\b(\d+)\s*-?\s*(?:bed(?:room)?s?|br|bd)\b")
_STUDIO = re.compile(r"\bstudios?\b")
_BATHS = re.compile(r"\b(\d+(?:\.\d+)?)\s*-?\s*(?:bath(?:room)?s?|ba)\b")

_AMOUNT = r"\$\s?([\d,]+(?:\.\d+)?k?)"
_RENT_RANGE = re.compile(_AMOUNT + r"\s*(?:-|–|to)\s*\$?\s?([\d,]+(?:\.\d+)?k?)")
_RENT_MAX = re.compile(r"(?:under|less than|below|up to|no more than|max(?:imum)?)\s*" + _AMOUNT)
_RENT_MIN = re.compile(r"(?:over|more than|above|at least|min(?:imum)?)\s*" + _AMOUNT)
_RENT_EXACT = re.compile(_AMOUNT)

_SQUARE_FEET = re.compile(
    r"(?:(under|less than|below|up to|over|more than|above|at least)\s*)?"
    r"([\d,]+)\s*(?:sq\.?\s*f(?:ee)?t\.?|square\s*f(?:ee|oo)t|sqft)"
)
_SQFT_MAX_WORDS = {"under", "less than", "below", "up to"}

_PETS = re.compile(r"\b(?:pets?|dogs?|cats?)\b")


class QueryAnalyzer:
    """
    Rule-based intent classification and filter extraction.

    Rules are evaluated in priority order:
    Action > Choice > generic listing (Exact) > filter + noun (Hybrid)
    > filter only (Exact) > Semantic.
    """

    def __init__(self, known_cities: Optional[Sequence[str]] = None):
        """
        Initialize the analyzer.

        Args:
            known_cities: City allow-list (defaults to settings.KNOWN_CITIES)
        """
        cities = known_cities if known_cities is not None else get_settings().KNOWN_CITIES
        # Longest first so "lake oswego" wins over a shorter overlapping name
        self.known_cities: List[str] = sorted((c.lower() for c in cities), key=len, reverse=True)

    # ------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------

    def classify(self, text: str) -> QueryIntent:
        """
        Classify a raw utterance.

        Args:
            text: User message

        Returns:
            QueryIntent; ambiguous input defaults to SEMANTIC
        """
        try:
            return self._classify_with_rules(text.lower())
        except ClassificationAmbiguous:
            logger.debug("No rule matched %r, defaulting to semantic", text[:80])
            return QueryIntent.SEMANTIC

    def _classify_with_rules(self, query: str) -> QueryIntent:
        has_generic_phrase = any(phrase in query for phrase in GENERIC_LISTING_PHRASES)
        # Generic listing phrases ("show me properties") must not read as actions or choices
        residual = self._mask_generic_phrases(query)

        if self.detect_action(residual) is not None:
            return QueryIntent.ACTION

        if self.choice_index(residual) is not None:
            return QueryIntent.CHOICE

        has_filter_keyword = bool(_FILTER_KEYWORD.search(query))

        if has_generic_phrase and not has_filter_keyword:
            return QueryIntent.EXACT

        if has_filter_keyword and _DESCRIPTIVE_NOUN.search(query):
            return QueryIntent.HYBRID

        if has_filter_keyword:
            return QueryIntent.EXACT

        if has_generic_phrase:
            return QueryIntent.EXACT

        raise ClassificationAmbiguous(query)

    @staticmethod
    def _mask_generic_phrases(query: str) -> str:
        masked = query
        for phrase in GENERIC_LISTING_PHRASES:
            masked = masked.replace(phrase, " ")
        if masked != query:
            # "show me all properties" is a listing request, not a details action
            masked = masked.replace("show me", " ")
        return masked

    def detect_action(self, text: str) -> Optional[ActionType]:
        """Return the requested call-to-action, if any."""
        query = text.lower()
        for action, keywords in ACTION_KEYWORDS.items():
            if any(keyword in query for keyword in keywords):
                return action
        return None

    def choice_index(self, text: str) -> Optional[int]:
        """
        Zero-based index of a previously offered option ("2", "second", "option 3").

        Returns:
            Index in 0..3 or None
        """
        query = text.lower()

        for pattern in (_OPTION_REFERENCE, _ORDINAL_SUFFIX, _BARE_DIGIT):
            match = pattern.search(query)
            if match:
                return int(match.group(1)) - 1

        match = _ORDINAL_WORD.search(query)
        if match:
            return ORDINAL_WORDS[match.group(1)]

        return None

    def is_catch_all(self, text: str) -> bool:
        """Whether the query asks for the whole catalog ("*", "show all")."""
        query = text.strip().lower()
        if query == "*":
            return True
        return any(phrase in query for phrase in CATCH_ALL_PHRASES)

    # ------------------------------------------------------------
    # Filter extraction
    # ------------------------------------------------------------

    def extract_filters(self, text: str) -> SearchFilters:
        """
        Extract structured filters from natural language.

        Args:
            text: User message

        Returns:
            SearchFilters with only the detected constraints set
        """
        query = text.lower()
        filters = SearchFilters()

        match = _BEDS.search(query)
        if match:
            filters.beds = int(match.group(1))
        elif _STUDIO.search(query):
            filters.beds = 0

        match = _BATHS.search(query)
        if match:
            filters.baths = float(match.group(1))

        filters.rent = self._extract_rent(query)
        filters.square_feet = self._extract_square_feet(query)
        filters.city = self._extract_city(query)

        # Pet words only ever express "pets wanted"
        if _PETS.search(query):
            filters.pets_allowed = True

        return filters

    def _extract_rent(self, query: str) -> Optional[NumericRange]:
        match = _RENT_RANGE.search(query)
        if match:
            low = parse_price_string(match.group(1))
            high = parse_price_string(match.group(2))
            if low is not None and high is not None:
                return NumericRange(min=min(low, high), max=max(low, high))

        match = _RENT_MAX.search(query)
        if match:
            return NumericRange(max=parse_price_string(match.group(1)))

        match = _RENT_MIN.search(query)
        if match:
            return NumericRange(min=parse_price_string(match.group(1)))

        match = _RENT_EXACT.search(query)
        if match:
            amount = parse_price_string(match.group(1))
            if amount is not None:
                return NumericRange(min=amount, max=amount)

        return None

    def _extract_square_feet(self, query: str) -> Optional[NumericRange]:
        match = _SQUARE_FEET.search(query)
        if not match:
            return None

        qualifier, amount = match.group(1), parse_price_string(match.group(2))
        if amount is None:
            return None
        if qualifier in _SQFT_MAX_WORDS:
            return NumericRange(max=amount)
        # "over 800 sq ft" and a bare "800 sq ft" both read as a minimum size
        return NumericRange(min=amount)

    def _extract_city(self, query: str) -> Optional[str]:
        for city in self.known_cities:
            if re.search(rf"\b{re.escape(city)}\b", query):
                return city.title()
        return None

    # ------------------------------------------------------------
    # Combined
    # ------------------------------------------------------------

    def analyze(self, text: str) -> SearchQuery:
        """
        Build the full SearchQuery for a raw utterance.

        Args:
            text: User message

        Returns:
            SearchQuery with intent, filters, action and choice index
        """
        intent = self.classify(text)
        residual = self._mask_generic_phrases(text.lower())

        return SearchQuery(
            intent=intent,
            text=text,
            filters=self.extract_filters(text),
            action=self.detect_action(residual) if intent == QueryIntent.ACTION else None,
            choice_index=self.choice_index(residual),
        )
