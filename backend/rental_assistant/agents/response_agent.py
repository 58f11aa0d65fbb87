"""
Response Agent - turns candidate listings into a short, conversion-oriented answer.

Responsibilities:
- Shrink candidates to the fields the model needs, within a token budget
- Call the chat model with timeout and retry
- Fall back to a deterministic template when generation keeps failing
- Swap placeholder link markup for the listings' real deep links
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..config import Settings
from ..errors import GenerationFailure, GenerationTimeout, RateLimited
from ..models.schemas import Property
from ..models.state import ActionType
from ..services.llm_service import CompletionResult, LLMService
from ..services.retry import create_generation_retry_policy
from ..utils.helpers import clean_llm_response, estimate_tokens, format_number, format_price, truncate_text
from .base_agent import BaseAgent

logger = logging.getLogger(__name__)


NO_PROPERTIES_MESSAGE = (
    "I don't have any properties available at the moment. "
    "Please try again later or contact us for assistance."
)

_ACTION_PHRASES = {
    ActionType.TOUR: "schedule a tour of",
    ActionType.APPLY: "apply for",
    ActionType.DETAILS: "hear more details about",
}

# [label](target) where target is checked against the known deep links
_MARKDOWN_LINK = re.compile(r"\[([^\]\n]+)\]\(([^)\s]*)\)")
# [TOUR_LINK], [apply url], {view_link}, <TOUR_URL>
_LINK_TOKEN = re.compile(
    r"[\[{<]\s*(tour|schedule|apply|application|view|details)[ _-]?(?:link|url)\s*[\]}>](?!\()",
    re.IGNORECASE,
)
_URL = re.compile(r"https?://\S+")

_TOUR_WORDS = ("tour", "schedule", "visit", "showing")
_APPLY_WORDS = ("apply", "application")


# ============================================================
# Pure helpers
# ============================================================

def tour_link(prop: Property) -> Optional[str]:
    urls = prop.listing_urls
    return urls.schedule_showing_url or urls.view_details_url or urls.property_website_url


def apply_link(prop: Property) -> Optional[str]:
    return prop.listing_urls.apply_now_url


def view_link(prop: Property) -> Optional[str]:
    urls = prop.listing_urls
    return urls.view_details_url or urls.property_website_url or urls.schedule_showing_url


def known_links(candidates: Sequence[Property]) -> set:
    links = set()
    for prop in candidates:
        urls = prop.listing_urls
        for url in (urls.view_details_url, urls.apply_now_url, urls.schedule_showing_url, urls.property_website_url):
            if url:
                links.add(url)
    return links


def link_line(prop: Property) -> str:
    """``[Schedule a tour](...) | [Apply now](...)`` for one listing, or ""."""
    links = []
    if tour_link(prop):
        links.append(f"[Schedule a tour]({tour_link(prop)})")
    if apply_link(prop):
        links.append(f"[Apply now]({apply_link(prop)})")
    if not links:
        return ""
    return f"{prop.property_name}: " + " | ".join(links)


def truncate_candidate(prop: Property) -> Dict[str, Any]:
    """Keep only the fields the model needs; photos and deep links are dropped."""
    unit = prop.unit_details
    terms = prop.rental_terms
    pets = prop.pet_policy

    item: Dict[str, Any] = {
        "listing_id": prop.id,
        "name": prop.property_name,
        "address": prop.address.raw or prop.address.city,
        "beds": unit.beds,
        "baths": unit.baths,
        "square_feet": unit.square_feet,
        "available": unit.available,
        "rent": terms.rent,
        "pets_allowed": pets.pets_allowed.allowed,
    }
    if pets.pets_allowed.allowed and pets.pets_allowed.allowed_types:
        item["pet_types"] = pets.pets_allowed.allowed_types
    if pets.pet_rent:
        item["pet_rent"] = pets.pet_rent
    if terms.application_fee:
        item["application_fee"] = terms.application_fee
    if prop.utilities_included:
        item["utilities_included"] = prop.utilities_included[:5]
    if prop.appliances:
        item["appliances"] = prop.appliances[:5]
    if prop.special_offer.flag and prop.special_offer.text:
        item["special_offer"] = truncate_text(prop.special_offer.text, 120)

    return {key: value for key, value in item.items() if value not in (None, "", [])}


def build_fallback_response(candidates: Sequence[Property]) -> str:
    """
    Deterministic answer built from the top candidate.

    Every degraded path uses this; it already carries the tour/apply links.
    """
    if not candidates:
        return NO_PROPERTIES_MESSAGE

    top = candidates[0]
    unit = top.unit_details

    summary = f"{top.property_name}"
    if top.address.city:
        summary += f" in {top.address.city}"
    summary += f" has a {format_number(unit.beds)} bed, {format_number(unit.baths)} bath home"
    if unit.square_feet:
        summary += f" ({format_number(unit.square_feet)} sq ft)"
    summary += f" for {format_price(top.rental_terms.rent)}/month"
    if top.is_available_now:
        summary += ", available now"
    elif unit.available:
        summary += f", available {unit.available}"
    summary += "."

    sentences = [summary]
    if top.pet_policy.pets_allowed.allowed:
        sentences.append("Pets are welcome.")
    if top.special_offer.flag and top.special_offer.text:
        sentences.append(f"Special offer: {top.special_offer.text.rstrip('.')}.")
    if len(candidates) > 1:
        others = len(candidates) - 1
        sentences.append(f"I found {others} more option{'s' if others > 1 else ''} as well.")
    sentences.append("Would you like to schedule a tour or start an application?")

    text = " ".join(sentences)
    links = link_line(top)
    return f"{text}\n\n{links}" if links else text


def _link_kind(*texts: str) -> str:
    joined = " ".join(texts).lower()
    if any(word in joined for word in _APPLY_WORDS):
        return "apply"
    if any(word in joined for word in _TOUR_WORDS):
        return "tour"
    return "view"


def _link_for(prop: Property, kind: str) -> Optional[str]:
    if kind == "apply":
        return apply_link(prop)
    if kind == "tour":
        return tour_link(prop)
    return view_link(prop)


def _referenced_candidate(text: str, position: int, candidates: Sequence[Property]) -> Property:
    """The candidate named (by id or name) closest before ``position``; else the first."""
    lowered = text[:position].lower()
    best, best_at = candidates[0], -1
    for prop in candidates:
        for mention in (prop.id.lower(), prop.property_name.lower()):
            at = lowered.rfind(mention)
            if at > best_at:
                best, best_at = prop, at
    return best


def postprocess_links(text: str, candidates: Sequence[Property], max_linked: int = 2) -> str:
    """
    Replace placeholder link markup with real deep links.

    Markdown links whose target is not one of the candidates' URLs and bare
    tokens such as ``[TOUR_LINK]`` are rewritten for the referenced listing.
    When no link remains, tour/apply links for the first ``max_linked``
    candidates are appended.
    """
    if not candidates:
        return text

    valid = known_links(candidates)

    def replace_markdown(match: re.Match) -> str:
        label, target = match.group(1), match.group(2)
        if target in valid:
            return match.group(0)
        prop = _referenced_candidate(text, match.start(), candidates)
        url = _link_for(prop, _link_kind(label, target))
        return f"[{label}]({url})" if url else label

    linked = _MARKDOWN_LINK.sub(replace_markdown, text)

    def replace_token(match: re.Match) -> str:
        kind = _link_kind(match.group(1))
        prop = _referenced_candidate(linked, match.start(), candidates)
        url = _link_for(prop, kind)
        if not url:
            return ""
        label = {"apply": "Apply now", "tour": "Schedule a tour"}.get(kind, "View details")
        return f"[{label}]({url})"

    result = _LINK_TOKEN.sub(replace_token, linked)
    result = re.sub(r"[ \t]{2,}", " ", result).strip()

    if _URL.search(result):
        return result

    lines = [line for line in (link_line(prop) for prop in candidates[:max(1, max_linked)]) if line]
    if not lines:
        return result
    return result + "\n\n" + "\n".join(lines)


# ============================================================
# Agent
# ============================================================

@dataclass
class GeneratedAnswer:
    text: str
    used_fallback: bool = False
    latency_ms: float = 0.0
    total_tokens: Optional[int] = None
    candidate_count: int = 0


class ResponseAgent(BaseAgent):
    """
    Composes the final answer for a turn.
    """

    def __init__(self, llm: LLMService, settings: Optional[Settings] = None):
        super().__init__("response_agent", settings)
        self.llm = llm

    def build_context(self, candidates: Sequence[Property]) -> Tuple[str, int]:
        """
        Serialize truncated candidates within CONTEXT_TOKEN_BUDGET.

        Returns:
            (serialized text, number of candidates kept)
        """
        items = [truncate_candidate(prop) for prop in candidates]
        budget = self.settings.CONTEXT_TOKEN_BUDGET
        cpt = self.settings.CHARS_PER_TOKEN

        text = json.dumps(items, ensure_ascii=False)
        cost = estimate_tokens(text, cpt)
        if cost <= budget or len(items) <= 1:
            return text, len(items)

        keep = max(1, int(len(items) * budget / cost))
        while True:
            text = json.dumps(items[:keep], ensure_ascii=False)
            if keep == 1 or estimate_tokens(text, cpt) <= budget:
                break
            keep -= 1

        logger.debug(f"Context shrunk from {len(items)} to {keep} candidates ({cost} tokens est.)")
        return text, keep

    def build_messages(
        self,
        question: str,
        candidates: Sequence[Property],
        history: Optional[List[Dict[str, str]]] = None,
        action: Optional[ActionType] = None,
    ) -> Tuple[List[Dict[str, str]], int]:
        """
        Compose system instruction, recent history and the user turn.

        Returns:
            (messages, number of candidates included)
        """
        context, kept = self.build_context(candidates)

        user_turn = f"Listings (best match first):\n{context}\n\n"
        if action is not None and candidates:
            user_turn += f"The renter wants to {_ACTION_PHRASES[action]} {candidates[0].property_name}.\n"
        user_turn += f"Renter: {question}"

        messages = [{"role": "system", "content": self.system_prompt}]
        messages.extend(history or [])
        messages.append({"role": "user", "content": user_turn})
        return messages, kept

    async def generate(
        self,
        question: str,
        candidates: Sequence[Property],
        history: Optional[List[Dict[str, str]]] = None,
        action: Optional[ActionType] = None,
        selected: bool = False,
    ) -> GeneratedAnswer:
        """
        Generate the answer text for a set of candidates.

        Args:
            question: The user's message
            candidates: Ranked candidate listings
            history: Recent session messages
            action: Requested call-to-action, if any
            selected: Whether the candidates are a single listing the renter picked

        Returns:
            GeneratedAnswer

        Raises:
            RateLimited: Rate limiting persisted through every retry
        """
        if not candidates:
            return GeneratedAnswer(text=NO_PROPERTIES_MESSAGE)

        messages, kept = self.build_messages(question, candidates, history, action)
        used = list(candidates[:kept])
        start = time.perf_counter()

        try:
            result = await self._complete_with_retry(messages)
        except RateLimited:
            raise
        except GenerationFailure as e:
            latency_ms = (time.perf_counter() - start) * 1000
            logger.warning(f"Generation failed, using fallback answer: {e}")
            return GeneratedAnswer(
                text=build_fallback_response(used),
                used_fallback=True,
                latency_ms=latency_ms,
                candidate_count=len(used),
            )

        latency_ms = (time.perf_counter() - start) * 1000
        content = clean_llm_response(result.content)
        if not content:
            logger.warning("Model returned an empty answer, using fallback")
            return GeneratedAnswer(
                text=build_fallback_response(used),
                used_fallback=True,
                latency_ms=latency_ms,
                total_tokens=result.total_tokens,
                candidate_count=len(used),
            )

        max_linked = 1 if selected else self.settings.MAX_LINKED_CANDIDATES
        return GeneratedAnswer(
            text=postprocess_links(content, used, max_linked),
            latency_ms=latency_ms,
            total_tokens=result.total_tokens,
            candidate_count=len(used),
        )

    async def _complete_with_retry(self, messages: List[Dict[str, str]]) -> CompletionResult:
        policy = create_generation_retry_policy(
            max_retries=self.settings.GENERATION_MAX_RETRIES,
            backoff_seconds=self.settings.GENERATION_BACKOFF_SECONDS,
            max_backoff_seconds=self.settings.GENERATION_MAX_BACKOFF_SECONDS,
        )
        async for attempt in policy:
            with attempt:
                try:
                    return await asyncio.wait_for(
                        self.llm.chat_complete(messages),
                        timeout=self.settings.GENERATION_TIMEOUT_SECONDS,
                    )
                except asyncio.TimeoutError as e:
                    raise GenerationTimeout(
                        f"no answer within {self.settings.GENERATION_TIMEOUT_SECONDS}s"
                    ) from e
        raise GenerationFailure("retry policy exhausted without a result")
