"""
Streaming delivery of chat answers.

Stages: IDLE -> CLASSIFYING -> SEARCHING -> GENERATING -> STREAMING -> DONE,
with FAILED for turns that degraded to a fallback answer and CANCELLED for
streams the consumer closed early. Greetings skip straight to STREAMING.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

from ..agents.response_agent import build_fallback_response
from ..config import Settings, get_settings
from ..errors import RateLimited, RentalAssistantError
from ..models.state import PipelineStage
from .session_service import SessionService

logger = logging.getLogger(__name__)

END_MARKER = "[DONE]"

GREETING_RESPONSE = (
    "Hi there! I'm your leasing assistant. Tell me what you're looking for, "
    "like a budget or number of bedrooms, and I'll find rentals that fit."
)

_GREETING = re.compile(
    r"^\s*(?:hi|hello|hey|hiya|howdy|greetings|good\s+(?:morning|afternoon|evening))"
    r"(?:\s+there)?[\s!.,]*$",
    re.IGNORECASE,
)

# Stage entered once the named workflow node has finished
_NEXT_STAGE = {
    "classify": PipelineStage.SEARCHING,
    "search": PipelineStage.GENERATING,
    "generate": PipelineStage.STREAMING,
    "no_results": PipelineStage.STREAMING,
    "finalize": PipelineStage.STREAMING,
}


def is_greeting(message: str) -> bool:
    return bool(_GREETING.match(message or ""))


def split_chunks(text: str, size: int) -> List[str]:
    """Fixed-size chunks; concatenating them yields ``text`` exactly."""
    size = max(1, size)
    return [text[i:i + size] for i in range(0, len(text), size)]


@dataclass
class StreamEvent:
    """One frame of a streamed answer."""

    content: Optional[str] = None
    error: Optional[str] = None
    retry_after: Optional[float] = None
    done: bool = False

    def to_dict(self) -> Dict[str, Any]:
        if self.error is not None:
            payload: Dict[str, Any] = {"error": self.error}
            if self.retry_after is not None:
                payload["retry_after"] = self.retry_after
            return payload
        return {"content": self.content or ""}

    def to_sse(self) -> str:
        """Server-sent-events frame."""
        if self.done:
            return f"data: {END_MARKER}\n\n"
        return f"data: {json.dumps(self.to_dict())}\n\n"


class ChatStream:
    """
    A single streamed turn.

    ``stage`` reflects the pipeline state and is safe to read while the
    stream is being consumed.
    """

    def __init__(self, pipeline: "StreamingPipeline", session_id: str, message: str):
        self.pipeline = pipeline
        self.session_id = session_id
        self.message = message
        self.stage = PipelineStage.IDLE
        self.answer: str = ""
        self._candidates: List[Any] = []
        self._used_fallback = False
        self._task: Optional[asyncio.Task] = None

    async def events(self) -> AsyncIterator[StreamEvent]:
        """
        Yield content events, then a final ``done`` event.

        Closing the iterator (or cancelling its consumer) cancels the
        in-flight generation task and waits for it to unwind.
        """
        settings = self.pipeline.settings
        try:
            if is_greeting(self.message):
                self.stage = PipelineStage.STREAMING
                self.answer = GREETING_RESPONSE
                for char in GREETING_RESPONSE:
                    yield StreamEvent(content=char)
                    await asyncio.sleep(settings.GREETING_CHAR_DELAY_SECONDS)
                await self.pipeline.session_service.record_turn(self.session_id, self.message, GREETING_RESPONSE)
                self.stage = PipelineStage.DONE
                yield StreamEvent(done=True)
                return

            self.stage = PipelineStage.CLASSIFYING
            self._task = asyncio.create_task(self._run_turn())
            try:
                self.answer = await self._task
            except RateLimited as e:
                self.stage = PipelineStage.FAILED
                logger.warning(f"Stream for {self.session_id} rate limited: {e}")
                yield StreamEvent(error="rate_limited", retry_after=e.retry_after)
                yield StreamEvent(done=True)
                return
            except RentalAssistantError as e:
                logger.warning(f"Stream for {self.session_id} failed in {self.stage.value}, using fallback: {e}")
                self._used_fallback = True
                self.answer = build_fallback_response(self._candidates)

            self.stage = PipelineStage.STREAMING
            chunks = split_chunks(self.answer, settings.STREAM_CHUNK_SIZE)
            for index, chunk in enumerate(chunks):
                yield StreamEvent(content=chunk)
                if index < len(chunks) - 1:
                    await asyncio.sleep(settings.STREAM_CHUNK_DELAY_SECONDS)

            self.stage = PipelineStage.FAILED if self._used_fallback else PipelineStage.DONE
            yield StreamEvent(done=True)

        except (asyncio.CancelledError, GeneratorExit):
            self.stage = PipelineStage.CANCELLED
            logger.info(f"Stream for {self.session_id} cancelled by the consumer")
            raise
        finally:
            await self._release()

    async def _run_turn(self) -> str:
        answer = ""
        async for node_name, update in self.pipeline.workflow.stream_updates(self.session_id, self.message):
            self.stage = _NEXT_STAGE.get(node_name, self.stage)
            if "candidates" in update:
                self._candidates = update["candidates"]
            if update.get("used_fallback"):
                self._used_fallback = True
            if update.get("answer"):
                answer = update["answer"]
        return answer

    async def _release(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        # The task's own CancelledError is expected here
        await asyncio.gather(task, return_exceptions=True)


class StreamingPipeline:
    """
    Converts a chat turn into an ordered sequence of stream events.
    """

    def __init__(self, workflow, session_service: SessionService, settings: Optional[Settings] = None):
        self.workflow = workflow
        self.session_service = session_service
        self.settings = settings or get_settings()

    def open(self, session_id: str, message: str) -> ChatStream:
        """Create a stream for one turn; nothing runs until it is iterated."""
        return ChatStream(self, session_id, message)

    async def stream(self, session_id: str, message: str) -> AsyncIterator[str]:
        """
        Plain-text chunk sequence terminated by END_MARKER.

        Error events are rendered as their JSON payload.
        """
        events = self.open(session_id, message).events()
        try:
            async for event in events:
                if event.done:
                    yield END_MARKER
                elif event.error is not None:
                    yield json.dumps(event.to_dict())
                else:
                    yield event.content
        finally:
            await events.aclose()
