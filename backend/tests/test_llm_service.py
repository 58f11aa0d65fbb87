"""Tests for the OpenAI adapter's error translation and streaming mode."""

from types import SimpleNamespace

import httpx
import openai
import pytest

from rental_assistant.agents.response_agent import ResponseAgent, build_fallback_response
from rental_assistant.errors import GenerationFailure, GenerationTimeout, RateLimited
from rental_assistant.services.llm_service import LLMService


MESSAGES = [{"role": "user", "content": "2 bedroom with pets"}]
REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


class _Completions:
    """Stands in for ``client.chat.completions``."""

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.result


def _client(completions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def _completion(text):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        usage=SimpleNamespace(total_tokens=17),
    )


def _chunk(text):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


async def _stream(*items):
    for item in items:
        if isinstance(item, Exception):
            raise item
        yield item


class TestChatComplete:
    @pytest.mark.asyncio
    async def test_whole_answer(self, settings):
        completions = _Completions(result=_completion("Lincoln Court fits."))
        llm = LLMService(settings, client=_client(completions))

        result = await llm.chat_complete(MESSAGES)

        assert result.content == "Lincoln Court fits."
        assert result.total_tokens == 17
        assert completions.calls[0]["stream"] is False
        assert completions.calls[0]["model"] == settings.OPENAI_MODEL

    @pytest.mark.asyncio
    async def test_no_choices_is_a_generation_failure(self, settings):
        completions = _Completions(result=SimpleNamespace(choices=[], usage=None))
        llm = LLMService(settings, client=_client(completions))

        with pytest.raises(GenerationFailure):
            await llm.chat_complete(MESSAGES)

    @pytest.mark.asyncio
    async def test_unexpected_provider_error_is_a_generation_failure(self, settings):
        llm = LLMService(settings, client=_client(_Completions(error=openai.OpenAIError("unexpected provider error"))))

        with pytest.raises(GenerationFailure) as excinfo:
            await llm.chat_complete(MESSAGES)

        assert excinfo.value.status_code is None

    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self, settings):
        error = openai.RateLimitError(
            "slow down",
            response=httpx.Response(429, headers={"retry-after": "3"}, request=REQUEST),
            body=None,
        )
        llm = LLMService(settings, client=_client(_Completions(error=error)))

        with pytest.raises(RateLimited) as excinfo:
            await llm.chat_complete(MESSAGES)

        assert excinfo.value.retry_after == 3.0

    @pytest.mark.asyncio
    async def test_status_errors_keep_their_code(self, settings):
        error = openai.BadRequestError("bad", response=httpx.Response(400, request=REQUEST), body=None)
        llm = LLMService(settings, client=_client(_Completions(error=error)))

        with pytest.raises(GenerationFailure) as excinfo:
            await llm.chat_complete(MESSAGES)

        assert excinfo.value.status_code == 400

    @pytest.mark.asyncio
    async def test_provider_timeout(self, settings):
        llm = LLMService(settings, client=_client(_Completions(error=openai.APITimeoutError(request=REQUEST))))

        with pytest.raises(GenerationTimeout):
            await llm.chat_complete(MESSAGES)

    @pytest.mark.asyncio
    async def test_unconfigured_service_fails_as_client_error(self, settings):
        llm = LLMService(settings.model_copy(update={"OPENAI_API_KEY": ""}))

        with pytest.raises(GenerationFailure) as excinfo:
            await llm.chat_complete(MESSAGES)

        assert excinfo.value.status_code == 401


class TestStreamedCompletion:
    @pytest.mark.asyncio
    async def test_yields_text_deltas(self, settings):
        stream = _stream(_chunk("Lincoln "), _chunk(None), SimpleNamespace(choices=[]), _chunk("Court"))
        completions = _Completions(result=stream)
        llm = LLMService(settings, client=_client(completions))

        chunks = await llm.chat_complete(MESSAGES, stream=True)

        assert [chunk async for chunk in chunks] == ["Lincoln ", "Court"]
        assert completions.calls[0]["stream"] is True

    @pytest.mark.asyncio
    async def test_errors_mid_stream_are_translated(self, settings):
        stream = _stream(_chunk("Lin"), openai.APIConnectionError(request=REQUEST))
        llm = LLMService(settings, client=_client(_Completions(result=stream)))

        chunks = await llm.chat_complete(MESSAGES, stream=True)
        received = []
        with pytest.raises(GenerationFailure):
            async for chunk in chunks:
                received.append(chunk)

        assert received == ["Lin"]


def test_client_leaves_retries_to_the_retry_policy(settings):
    client = LLMService(settings)._get_client()
    assert client.max_retries == 0


@pytest.mark.asyncio
async def test_provider_errors_fall_back_to_the_template(listings, settings):
    completions = _Completions(error=openai.OpenAIError("unexpected provider error"))
    llm = LLMService(settings, client=_client(completions))
    pair = [listings[0], listings[2]]

    answer = await ResponseAgent(llm, settings).generate("2 bedroom with pets", pair)

    assert answer.used_fallback
    assert answer.text == build_fallback_response(pair)
    assert len(completions.calls) == settings.GENERATION_MAX_RETRIES + 1
