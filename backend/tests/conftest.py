"""Shared pytest fixtures for all tests."""

import pytest
import pytest_asyncio

from rental_assistant.config import Settings
from rental_assistant.main import build_services
from rental_assistant.services.store_service import InMemoryStore

from .fakes import FakeLLM, make_listing, seed_store


@pytest.fixture
def settings():
    """Settings with no waits so retry and streaming tests run instantly."""
    return Settings(
        _env_file=None,
        OPENAI_API_KEY="test-key",
        STORE_BACKEND="memory",
        GENERATION_TIMEOUT_SECONDS=1.0,
        GENERATION_BACKOFF_SECONDS=0.0,
        GENERATION_MAX_BACKOFF_SECONDS=0.0,
        STREAM_CHUNK_SIZE=16,
        STREAM_CHUNK_DELAY_SECONDS=0.0,
        GREETING_CHAR_DELAY_SECONDS=0.0,
    )


@pytest.fixture
def listings():
    """Five listings; sorted by key they are ch, dt, lc, rk, rs."""
    return [
        make_listing(
            "lc-111", "Lincoln Court Townhomes", "Fairview", 2, 1.5, 864, 1475,
            pets=["cats", "dogs"], available="8/11/25", appliances=["Dishwasher", "Microwave"],
        ),
        make_listing(
            "dt-456", "Downtown Luxury Apartments", "Portland", 1, 1, 650, 1850,
            offer="First month free", appliances=["Dishwasher", "Washer/Dryer"],
        ),
        make_listing("rk-2b", "Rock 459 Flats", "Gresham", 2, 2, 980, 1695, pets=["cats"]),
        make_listing(
            "ch-8120", "Cedar Hills Cottage", "Beaverton", 3, 2, 1320, 2450,
            pets=["dogs"], available="9/1/25",
        ),
        make_listing("rs-5", "Riverside Studio Lofts", "Milwaukie", 0, 1, 480, 1195),
    ]


@pytest.fixture
def store():
    return InMemoryStore()


@pytest_asyncio.fixture
async def seeded_store(store, listings):
    await seed_store(store, listings)
    return store


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def services(settings, seeded_store, fake_llm):
    """Fully wired services over the seeded in-memory store."""
    return build_services(settings, store=seeded_store, llm=fake_llm)
