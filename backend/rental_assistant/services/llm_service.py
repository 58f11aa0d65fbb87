"""
LLM service for OpenAI chat completions and embeddings.

Provider errors are translated into the assistant's error taxonomy here so
callers never depend on ``openai`` exception types.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Union

import openai
from openai import AsyncOpenAI

from ..config import Settings, get_settings
from ..errors import (
    EmbeddingUnavailable,
    GenerationFailure,
    GenerationTimeout,
    RateLimited,
    RentalAssistantError,
)

logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    """Text of a chat completion plus the provider's token accounting."""

    content: str
    total_tokens: Optional[int] = None


def _retry_after_seconds(error: openai.APIStatusError) -> Optional[float]:
    headers = getattr(error.response, "headers", None) or {}
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def translate_provider_error(error: openai.OpenAIError) -> RentalAssistantError:
    """Map an ``openai`` exception onto the generation error taxonomy."""
    if isinstance(error, openai.RateLimitError):
        return RateLimited(str(error), retry_after=_retry_after_seconds(error))
    if isinstance(error, openai.APITimeoutError):
        return GenerationTimeout(str(error))
    if isinstance(error, openai.APIStatusError):
        return GenerationFailure(str(error), status_code=error.status_code)
    if isinstance(error, openai.APIConnectionError):
        return GenerationFailure(f"connection failed: {error}")
    return GenerationFailure(f"provider error: {error}")


class LLMService:
    """
    Service for interacting with OpenAI models.
    """

    def __init__(self, settings: Optional[Settings] = None, client: Optional[AsyncOpenAI] = None):
        self.settings = settings or get_settings()
        self._client = client

    @property
    def is_configured(self) -> bool:
        """Whether an API key (or an injected client) is available."""
        return self._client is not None or bool(self.settings.OPENAI_API_KEY)

    def _get_client(self) -> AsyncOpenAI:
        """Create the OpenAI client on first use."""
        if self._client is None:
            # Retries belong to the generation retry policy alone
            self._client = AsyncOpenAI(api_key=self.settings.OPENAI_API_KEY, max_retries=0)
            logger.info(f"Initialized OpenAI client with model: {self.settings.OPENAI_MODEL}")
        return self._client

    # ------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------

    async def embed(self, text: str) -> List[float]:
        """
        Embed a single text.

        Raises:
            EmbeddingUnavailable: On any provider failure or timeout
        """
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Embed several texts in one request, preserving order.

        Args:
            texts: Texts to embed

        Returns:
            One vector per input text

        Raises:
            EmbeddingUnavailable: On any provider failure or timeout
        """
        if not texts:
            return []
        if not self.is_configured:
            raise EmbeddingUnavailable("OPENAI_API_KEY is not set")

        try:
            response = await asyncio.wait_for(
                self._get_client().embeddings.create(
                    model=self.settings.OPENAI_EMBEDDING_MODEL,
                    input=texts,
                ),
                timeout=self.settings.EMBEDDING_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as e:
            raise EmbeddingUnavailable("embedding request timed out") from e
        except openai.OpenAIError as e:
            raise EmbeddingUnavailable(f"embedding request failed: {e}") from e

        ordered = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in ordered]

    # ------------------------------------------------------------
    # Chat completions
    # ------------------------------------------------------------

    async def chat_complete(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
        stream: bool = False,
    ) -> Union[CompletionResult, AsyncIterator[str]]:
        """
        Run one chat completion.

        Args:
            messages: OpenAI-format message list
            temperature: Sampling temperature (uses settings default if not provided)
            max_tokens: Maximum tokens in response (uses settings default if not provided)
            model: Model to use (uses settings default if not provided)
            stream: Return an async iterator of text deltas instead of a whole result

        Returns:
            CompletionResult, or an async iterator of text chunks when ``stream`` is set

        Raises:
            RateLimited: Provider returned 429
            GenerationTimeout: Provider-side timeout
            GenerationFailure: Any other provider failure (with status code when known)
        """
        if not self.is_configured:
            raise GenerationFailure("OPENAI_API_KEY is not set", status_code=401)

        try:
            response = await self._get_client().chat.completions.create(
                model=model or self.settings.OPENAI_MODEL,
                messages=messages,
                temperature=self.settings.OPENAI_TEMPERATURE if temperature is None else temperature,
                max_tokens=max_tokens or self.settings.OPENAI_MAX_TOKENS,
                stream=stream,
            )
        except openai.OpenAIError as e:
            raise translate_provider_error(e) from e

        if stream:
            return self._iter_deltas(response)

        if not response.choices:
            raise GenerationFailure("provider returned no choices")
        content = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        return CompletionResult(content=content, total_tokens=getattr(usage, "total_tokens", None))

    @staticmethod
    async def _iter_deltas(response) -> AsyncIterator[str]:
        """Yield the non-empty text deltas of a streamed completion."""
        try:
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except openai.OpenAIError as e:
            raise translate_provider_error(e) from e
