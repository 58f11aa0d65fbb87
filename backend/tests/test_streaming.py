"""Tests for streamed answer delivery."""

import asyncio
import json

import pytest

from rental_assistant.agents.response_agent import build_fallback_response
from rental_assistant.errors import GenerationFailure, RateLimited
from rental_assistant.main import build_services
from rental_assistant.models.state import PipelineStage
from rental_assistant.services.streaming_service import (
    END_MARKER,
    GREETING_RESPONSE,
    StreamEvent,
    is_greeting,
    split_chunks,
)

from .fakes import FakeLLM


SEARCH = "2 bedroom apartments under $2000 with pets"


async def _collect(stream):
    return [event async for event in stream.events()]


def _text(events):
    return "".join(event.content or "" for event in events if not event.done and event.error is None)


class TestHelpers:
    @pytest.mark.parametrize("message", ["hi", "Hello!", "hey there", "Good morning."])
    def test_greetings(self, message):
        assert is_greeting(message)

    @pytest.mark.parametrize("message", ["hi, any 2 bedrooms?", "schedule a tour", ""])
    def test_not_greetings(self, message):
        assert not is_greeting(message)

    def test_chunks_reassemble(self):
        text = "Lincoln Court Townhomes is a great fit."
        chunks = split_chunks(text, 4)
        assert "".join(chunks) == text
        assert all(len(chunk) <= 4 for chunk in chunks)
        assert split_chunks("", 4) == []

    def test_sse_frames(self):
        assert StreamEvent(content="Hi").to_sse() == 'data: {"content": "Hi"}\n\n'
        assert StreamEvent(done=True).to_sse() == f"data: {END_MARKER}\n\n"
        frame = StreamEvent(error="rate_limited", retry_after=3).to_sse()
        assert json.loads(frame[len("data: "):]) == {"error": "rate_limited", "retry_after": 3}


class TestChatStream:
    @pytest.mark.asyncio
    async def test_greeting_streams_character_by_character(self, services, fake_llm):
        stream = services.streaming.open("s1", "Hello!")

        events = await _collect(stream)

        assert _text(events) == GREETING_RESPONSE
        assert all(len(event.content) == 1 for event in events[:-1])
        assert events[-1].done
        assert stream.stage == PipelineStage.DONE
        assert fake_llm.chat_calls == 0
        assert len(await services.sessions.get_history("s1")) == 2

    @pytest.mark.asyncio
    async def test_answer_streams_in_chunks(self, services, settings):
        stream = services.streaming.open("s1", SEARCH)

        events = await _collect(stream)

        assert events[-1].done
        assert sum(1 for event in events if event.done) == 1
        assert _text(events) == stream.answer
        assert all(len(event.content) <= settings.STREAM_CHUNK_SIZE for event in events[:-1])
        assert stream.stage == PipelineStage.DONE
        history = await services.sessions.get_history("s1")
        assert history[-1]["content"] == stream.answer

    @pytest.mark.asyncio
    async def test_streamed_answer_matches_whole_answer(self, services):
        streamed = _text(await _collect(services.streaming.open("s1", SEARCH)))
        whole = await services.workflow.generate("s2", SEARCH)
        assert streamed == whole

    @pytest.mark.asyncio
    async def test_generation_failure_streams_fallback(self, settings, seeded_store):
        llm = FakeLLM(failure=GenerationFailure("boom", status_code=500))
        services = build_services(settings, store=seeded_store, llm=llm)
        stream = services.streaming.open("s1", SEARCH)

        events = await _collect(stream)
        candidates = (await services.search.search_text(SEARCH)).properties

        assert _text(events) == build_fallback_response(candidates)
        assert events[-1].done
        assert stream.stage == PipelineStage.FAILED

    @pytest.mark.asyncio
    async def test_rate_limit_emits_error_event(self, settings, seeded_store):
        services = build_services(settings, store=seeded_store, llm=FakeLLM(failure=RateLimited(retry_after=3)))
        stream = services.streaming.open("s1", SEARCH)

        events = await _collect(stream)

        assert len(events) == 2
        assert events[0].error == "rate_limited"
        assert events[0].retry_after == 3
        assert events[1].done
        assert stream.stage == PipelineStage.FAILED

    @pytest.mark.asyncio
    async def test_cancelling_the_consumer_cancels_generation(self, settings, seeded_store):
        llm = FakeLLM(chat_delay=5.0)
        services = build_services(settings, store=seeded_store, llm=llm)
        stream = services.streaming.open("s1", SEARCH)

        async def consume():
            async for _ in stream.events():
                pass

        consumer = asyncio.create_task(consume())
        await asyncio.wait_for(llm.chat_started.wait(), timeout=2)
        assert stream.stage not in (PipelineStage.DONE, PipelineStage.FAILED)

        consumer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await consumer

        assert stream.stage == PipelineStage.CANCELLED
        assert llm.chat_cancelled
        assert stream._task.done()

    @pytest.mark.asyncio
    async def test_closing_the_stream_early(self, services):
        stream = services.streaming.open("s1", "Hello!")
        events = stream.events()

        first = await events.__anext__()
        await events.aclose()

        assert first.content == GREETING_RESPONSE[0]
        assert stream.stage == PipelineStage.CANCELLED


class TestPipelineStream:
    @pytest.mark.asyncio
    async def test_plain_chunks_end_with_marker(self, services):
        chunks = [chunk async for chunk in services.streaming.stream("s1", SEARCH)]

        assert chunks[-1] == END_MARKER
        assert END_MARKER not in chunks[:-1]
        assert "".join(chunks[:-1]) == services.sessions.get_session("s1").messages[-1].content

    @pytest.mark.asyncio
    async def test_rate_limit_chunk_is_json(self, settings, seeded_store):
        services = build_services(settings, store=seeded_store, llm=FakeLLM(failure=RateLimited(retry_after=3)))

        chunks = [chunk async for chunk in services.streaming.stream("s1", SEARCH)]

        assert json.loads(chunks[0]) == {"error": "rate_limited", "retry_after": 3}
        assert chunks[-1] == END_MARKER
