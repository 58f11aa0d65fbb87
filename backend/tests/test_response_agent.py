"""Tests for answer generation, fallback and link post-processing."""

import pytest

from rental_assistant.agents.response_agent import (
    NO_PROPERTIES_MESSAGE,
    ResponseAgent,
    build_fallback_response,
    postprocess_links,
    truncate_candidate,
)
from rental_assistant.errors import GenerationFailure, RateLimited
from rental_assistant.models.state import ActionType
from rental_assistant.utils.helpers import estimate_tokens

from .fakes import FakeLLM


LC_TOUR = "https://listings.test/lc-111/tour"
LC_APPLY = "https://listings.test/lc-111/apply"
RK_TOUR = "https://listings.test/rk-2b/tour"
RK_APPLY = "https://listings.test/rk-2b/apply"


@pytest.fixture
def pair(listings):
    """Lincoln Court and Rock 459, in that order."""
    return [listings[0], listings[2]]


class TestFallback:
    def test_fallback_from_top_candidate(self, pair):
        assert build_fallback_response(pair) == (
            "Lincoln Court Townhomes in Fairview has a 2 bed, 1.5 bath home (864 sq ft) "
            "for $1,475/month, available 8/11/25. Pets are welcome. "
            "I found 1 more option as well. "
            "Would you like to schedule a tour or start an application?\n\n"
            f"Lincoln Court Townhomes: [Schedule a tour]({LC_TOUR}) | [Apply now]({LC_APPLY})"
        )

    def test_fallback_mentions_offer_and_availability(self, listings):
        text = build_fallback_response([listings[1]])
        assert "available now" in text
        assert "Special offer: First month free." in text
        assert "more option" not in text

    def test_fallback_without_candidates(self):
        assert build_fallback_response([]) == NO_PROPERTIES_MESSAGE

    def test_fallback_is_deterministic(self, listings):
        assert build_fallback_response(listings) == build_fallback_response(listings)


class TestPostprocessLinks:
    def test_placeholder_markdown_target(self, pair):
        text = postprocess_links("Tour it here: [Book a tour](TOUR_LINK)", pair)
        assert text == f"Tour it here: [Book a tour]({LC_TOUR})"

    def test_link_follows_the_named_listing(self, pair):
        text = postprocess_links("Rock 459 Flats fits. [Apply here](#)", pair)
        assert text == f"Rock 459 Flats fits. [Apply here]({RK_APPLY})"

    @pytest.mark.parametrize("token", ["{apply_link}", "[APPLY_URL]", "<apply link>"])
    def test_bare_tokens(self, pair, token):
        text = postprocess_links(f"Apply today: {token}", pair)
        assert text == f"Apply today: [Apply now]({LC_APPLY})"

    def test_real_links_are_untouched(self, pair):
        original = f"Rock 459 Flats is open for tours: [Schedule]({RK_TOUR})"
        assert postprocess_links(original, pair) == original

    def test_links_appended_when_missing(self, pair):
        text = postprocess_links("Both are great picks.", pair)
        assert text.startswith("Both are great picks.\n\n")
        assert LC_TOUR in text
        assert RK_APPLY in text

    def test_appended_links_respect_limit(self, pair):
        text = postprocess_links("Great pick.", pair, max_linked=1)
        assert LC_TOUR in text
        assert RK_TOUR not in text

    def test_no_candidates_leaves_text(self):
        assert postprocess_links("Nothing here [TOUR_LINK]", []) == "Nothing here [TOUR_LINK]"


class TestContext:
    def test_truncated_candidate_drops_links_and_photos(self, listings):
        item = truncate_candidate(listings[0])
        assert item["listing_id"] == "lc-111"
        assert item["pet_types"] == ["cats", "dogs"]
        assert "listing_urls" not in item
        assert "photos" not in item

    def test_context_fits_budget(self, listings, settings):
        tight = settings.model_copy(update={"CONTEXT_TOKEN_BUDGET": 150})
        agent = ResponseAgent(FakeLLM(), tight)

        text, kept = agent.build_context(listings)

        assert 1 <= kept < len(listings)
        assert kept == 1 or estimate_tokens(text, tight.CHARS_PER_TOKEN) <= 150

    def test_context_always_keeps_one(self, listings, settings):
        agent = ResponseAgent(FakeLLM(), settings.model_copy(update={"CONTEXT_TOKEN_BUDGET": 1}))
        _, kept = agent.build_context(listings)
        assert kept == 1

    def test_messages_include_history_and_action(self, pair, settings):
        agent = ResponseAgent(FakeLLM(), settings)
        history = [{"role": "user", "content": "2 bedroom"}, {"role": "assistant", "content": "Here are two."}]

        messages, kept = agent.build_messages("schedule a tour", pair, history, ActionType.TOUR)

        assert kept == 2
        assert messages[0]["role"] == "system"
        assert messages[1:3] == history
        assert "schedule a tour of Lincoln Court Townhomes" in messages[-1]["content"]
        assert messages[-1]["content"].endswith("Renter: schedule a tour")


class TestGenerate:
    @pytest.mark.asyncio
    async def test_answer_gets_real_links(self, pair, settings):
        llm = FakeLLM(replies=["Lincoln Court Townhomes is a great fit. Want to schedule a tour?"])
        answer = await ResponseAgent(llm, settings).generate("2 bedroom with pets", pair)

        assert not answer.used_fallback
        assert answer.total_tokens == 42
        assert answer.candidate_count == 2
        assert LC_TOUR in answer.text
        assert llm.chat_calls == 1

    @pytest.mark.asyncio
    async def test_selected_listing_links_only_itself(self, listings, settings):
        llm = FakeLLM(replies=["Great choice!"])
        answer = await ResponseAgent(llm, settings).generate("tour", [listings[2], listings[0]], selected=True)
        assert RK_TOUR in answer.text
        assert LC_TOUR not in answer.text

    @pytest.mark.asyncio
    async def test_no_candidates_skips_the_model(self, settings):
        llm = FakeLLM()
        answer = await ResponseAgent(llm, settings).generate("anything?", [])
        assert answer.text == NO_PROPERTIES_MESSAGE
        assert llm.chat_calls == 0

    @pytest.mark.asyncio
    async def test_server_errors_retry_then_fall_back(self, listings, settings):
        llm = FakeLLM(failure=GenerationFailure("upstream exploded", status_code=503))
        answer = await ResponseAgent(llm, settings).generate("2 bedroom", listings)

        assert answer.used_fallback
        assert answer.text == build_fallback_response(listings)
        assert "exploded" not in answer.text
        assert llm.chat_calls == settings.GENERATION_MAX_RETRIES + 1

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, pair, settings):
        llm = FakeLLM(failure=GenerationFailure("bad request", status_code=400))
        answer = await ResponseAgent(llm, settings).generate("2 bedroom", pair)
        assert answer.used_fallback
        assert llm.chat_calls == 1

    @pytest.mark.asyncio
    async def test_timeouts_fall_back(self, pair, settings):
        llm = FakeLLM(chat_delay=1.0)
        fast = settings.model_copy(update={"GENERATION_TIMEOUT_SECONDS": 0.05})

        answer = await ResponseAgent(llm, fast).generate("2 bedroom", pair)

        assert answer.used_fallback
        assert answer.text == build_fallback_response(pair)
        assert llm.chat_calls == fast.GENERATION_MAX_RETRIES + 1

    @pytest.mark.asyncio
    async def test_persistent_rate_limit_propagates(self, pair, settings):
        llm = FakeLLM(failure=RateLimited(retry_after=3))
        with pytest.raises(RateLimited) as excinfo:
            await ResponseAgent(llm, settings).generate("2 bedroom", pair)
        assert excinfo.value.retry_after == 3
        assert llm.chat_calls == settings.GENERATION_MAX_RETRIES + 1

    @pytest.mark.asyncio
    async def test_empty_reply_falls_back(self, pair, settings):
        answer = await ResponseAgent(FakeLLM(replies=["   "]), settings).generate("2 bedroom", pair)
        assert answer.used_fallback
        assert answer.text == build_fallback_response(pair)
