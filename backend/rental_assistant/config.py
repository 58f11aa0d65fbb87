"""
Configuration settings for the Rental Listing Assistant.
"""

from pathlib import Path
from typing import List
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Keys
    OPENAI_API_KEY: str = ""

    # OpenAI Model Settings
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"
    OPENAI_TEMPERATURE: float = 0.7
    OPENAI_MAX_TOKENS: int = 300
    EMBEDDING_TIMEOUT_SECONDS: float = 3.0

    # Store Settings
    STORE_BACKEND: str = "memory"  # Options: "memory", "redis"
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_SOCKET_TIMEOUT: float = 2.0
    REDIS_SEARCH_INDEX: str = "idx:properties"

    # Search Settings
    SEARCH_MAX_RESULTS: int = 10
    SEARCH_SUPPLEMENT_THRESHOLD: int = 3
    QUERY_FINGERPRINT_MAX_LENGTH: int = 200
    KNOWN_CITIES: List[str] = [
        "portland", "fairview", "gresham", "beaverton", "hillsboro",
        "tigard", "lake oswego", "milwaukie", "troutdale", "vancouver",
    ]

    # Cache Settings
    CACHE_CAPACITY: int = 1000
    SEARCH_CACHE_TTL_SECONDS: float = 300.0
    RESPONSE_CACHE_TTL_SECONDS: float = 120.0

    # Generation Settings
    CONTEXT_TOKEN_BUDGET: int = 1200
    CHARS_PER_TOKEN: float = 3.5
    GENERATION_TIMEOUT_SECONDS: float = 6.0
    GENERATION_MAX_RETRIES: int = 2
    GENERATION_BACKOFF_SECONDS: float = 0.5
    GENERATION_MAX_BACKOFF_SECONDS: float = 4.0
    HISTORY_CONTEXT_MESSAGES: int = 6
    MAX_LINKED_CANDIDATES: int = 2

    # Latency warning thresholds (milliseconds)
    TOTAL_LATENCY_WARN_MS: float = 2000.0
    GENERATION_LATENCY_WARN_MS: float = 5000.0
    SEARCH_LATENCY_WARN_MS: float = 1000.0

    # Streaming Settings
    STREAM_CHUNK_SIZE: int = 24
    STREAM_CHUNK_DELAY_SECONDS: float = 0.02
    GREETING_CHAR_DELAY_SECONDS: float = 0.01

    # Session Settings
    SESSION_TIMEOUT_HOURS: int = 24

    # Paths
    BASE_DIR: Path = Path(__file__).resolve().parent
    SYSTEM_PROMPTS_DIR: Path = BASE_DIR / "prompts"

    # Server Settings
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


DEFAULT_SYSTEM_PROMPT = (
    "You are a leasing assistant for a small portfolio of rental homes. "
    "Answer in 1-3 short sentences, mention the best matching listing by name, "
    "and end with a call to action to tour or apply. "
    "Never write links or URLs yourself."
)


def load_system_prompt(agent_name: str, settings: Settings = None) -> str:
    """
    Load a system prompt from the prompts directory.

    Args:
        agent_name: Name of the agent (e.g., 'response_agent')
        settings: Optional settings override

    Returns:
        The prompt text content, or the built-in default when the file is missing
    """
    settings = settings or get_settings()
    prompt_file = Path(settings.SYSTEM_PROMPTS_DIR) / f"{agent_name}_prompt.txt"

    if prompt_file.exists():
        return prompt_file.read_text(encoding="utf-8").strip()
    return DEFAULT_SYSTEM_PROMPT
