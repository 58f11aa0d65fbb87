"""
Error taxonomy for the Rental Listing Assistant.

Internal failures are recovered close to where they happen; only
``RateLimited`` is meant to reach the HTTP boundary.
"""

from typing import Optional


class RentalAssistantError(Exception):
    """Base class for all assistant errors."""


class ClassificationAmbiguous(RentalAssistantError):
    """No classification rule matched the utterance."""


class StoreUnavailable(RentalAssistantError):
    """The key-value store could not be reached or answered with an error."""


class EmbeddingUnavailable(RentalAssistantError):
    """The embedding service could not produce a vector."""


class GenerationFailure(RentalAssistantError):
    """The chat-completion service failed to produce an answer."""

    def __init__(self, message: str = "generation failed", status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_client_error(self) -> bool:
        """4xx responses (other than 429) are never worth retrying."""
        return self.status_code is not None and 400 <= self.status_code < 500


class GenerationTimeout(GenerationFailure):
    """The chat-completion call exceeded its time budget."""

    def __init__(self, message: str = "generation timed out"):
        super().__init__(message, status_code=None)


class SessionPersistFailure(RentalAssistantError):
    """A chat session could not be loaded from or written to the store."""


class RateLimited(RentalAssistantError):
    """The upstream provider asked us to slow down."""

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after
