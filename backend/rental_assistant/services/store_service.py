"""
Key-value store adapters for listings, embeddings and sessions.

Documents are JSON objects stored under prefixed keys:
``property:<listing_id>``, ``embedding:<listing_id>``, ``session:<session_id>``.
"""

import asyncio
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from ..config import Settings, get_settings
from ..errors import StoreUnavailable
from ..models.schemas import SearchFilters

logger = logging.getLogger(__name__)

PROPERTY_PREFIX = "property:"
EMBEDDING_PREFIX = "embedding:"
SESSION_PREFIX = "session:"


class BaseStore(ABC):
    """
    Abstract document store.

    Implementations raise ``StoreUnavailable`` for backend failures; callers
    decide how to degrade.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the document stored under ``key`` or None."""

    @abstractmethod
    async def set(self, key: str, doc: Dict[str, Any], ttl: Optional[float] = None) -> None:
        """Store ``doc`` under ``key``, optionally expiring after ``ttl`` seconds."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete ``key``; True if something was removed."""

    @abstractmethod
    async def list_keys_by_prefix(self, prefix: str) -> List[str]:
        """All keys starting with ``prefix``, sorted."""

    async def get_many(self, keys: List[str]) -> List[Optional[Dict[str, Any]]]:
        """Fetch several documents concurrently, preserving order."""
        return list(await asyncio.gather(*(self.get(key) for key in keys)))

    async def filtered_search(self, filters: SearchFilters) -> Optional[List[str]]:
        """
        Native filtered search, if the backend has one.

        Returns:
            Matching keys, or None when the capability is absent. Results are a
            pre-filter only; callers still evaluate every predicate.
        """
        return None

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryStore(BaseStore):
    """Process-local store used for development and tests."""

    def __init__(self, clock=time.monotonic):
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            raw, expires_at = item
            if expires_at is not None and self._clock() >= expires_at:
                del self._data[key]
                return None
        return json.loads(raw)

    async def set(self, key: str, doc: Dict[str, Any], ttl: Optional[float] = None) -> None:
        # Serialize outside the lock; readers only ever see complete documents
        raw = json.dumps(doc, default=str)
        expires_at = self._clock() + ttl if ttl else None
        with self._lock:
            self._data[key] = (raw, expires_at)

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    async def list_keys_by_prefix(self, prefix: str) -> List[str]:
        with self._lock:
            return sorted(key for key in self._data if key.startswith(prefix))


INDEX_PREFIX = "propidx:"
_INDEXED_FIELDS = ("beds", "baths", "rent", "square_feet")


def index_fields(doc: Dict[str, Any]) -> Dict[str, float]:
    """Numeric fields of a listing document, as mirrored into the search index."""
    unit = doc.get("unit_details") or {}
    terms = doc.get("rental_terms") or {}
    values = {
        "beds": unit.get("beds"),
        "baths": unit.get("baths"),
        "rent": terms.get("rent"),
        "square_feet": unit.get("square_feet"),
    }
    return {name: float(value) for name, value in values.items() if isinstance(value, (int, float))}


class RedisStore(BaseStore):
    """
    Redis-backed store using ``redis.asyncio``.

    Each listing also gets a ``propidx:<listing_id>`` hash of its numeric
    fields. When the RediSearch module is loaded, an index over those hashes
    serves ``filtered_search``; otherwise the capability is reported absent.
    """

    def __init__(self, url: str, socket_timeout: float = 2.0, search_index: str = "idx:properties"):
        self._client = aioredis.from_url(
            url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            decode_responses=True,
        )
        self.search_index = search_index
        self._search_supported: Optional[bool] = None

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self._client.get(key)
        except (RedisError, OSError) as e:
            raise StoreUnavailable(f"GET {key} failed: {e}") from e
        return self._decode(key, raw)

    async def get_many(self, keys: List[str]) -> List[Optional[Dict[str, Any]]]:
        if not keys:
            return []
        try:
            raws = await self._client.mget(keys)
        except (RedisError, OSError) as e:
            raise StoreUnavailable(f"MGET failed: {e}") from e
        return [self._decode(key, raw) for key, raw in zip(keys, raws)]

    async def set(self, key: str, doc: Dict[str, Any], ttl: Optional[float] = None) -> None:
        payload = json.dumps(doc, default=str)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.set(key, payload, px=int(ttl * 1000) if ttl else None)
                if key.startswith(PROPERTY_PREFIX):
                    index_key = self._index_key(key)
                    pipe.delete(index_key)
                    fields = index_fields(doc)
                    if fields:
                        pipe.hset(index_key, mapping=fields)
                await pipe.execute()
        except (RedisError, OSError) as e:
            raise StoreUnavailable(f"SET {key} failed: {e}") from e

    async def delete(self, key: str) -> bool:
        try:
            removed = await self._client.delete(key)
            if key.startswith(PROPERTY_PREFIX):
                await self._client.delete(self._index_key(key))
        except (RedisError, OSError) as e:
            raise StoreUnavailable(f"DEL {key} failed: {e}") from e
        return bool(removed)

    async def list_keys_by_prefix(self, prefix: str) -> List[str]:
        try:
            keys = [key async for key in self._client.scan_iter(match=f"{prefix}*", count=500)]
        except (RedisError, OSError) as e:
            raise StoreUnavailable(f"SCAN {prefix}* failed: {e}") from e
        return sorted(keys)

    async def filtered_search(self, filters: SearchFilters) -> Optional[List[str]]:
        if self._search_supported is False:
            return None

        expression = build_filter_expression(filters)
        if expression == "*":
            # Nothing numeric to narrow on
            return None

        try:
            if await self._ensure_index():
                # A fresh index is still back-filling; do not trust it yet
                return None
            result = await self._client.execute_command(
                "FT.SEARCH", self.search_index, expression, "NOCONTENT", "LIMIT", 0, 10000
            )
        except ResponseError as e:
            logger.info(f"Native filtered search unavailable ({e}); using key enumeration")
            self._search_supported = False
            return None
        except (RedisError, OSError) as e:
            raise StoreUnavailable(f"FT.SEARCH failed: {e}") from e

        return [PROPERTY_PREFIX + str(key)[len(INDEX_PREFIX):] for key in result[1:]]

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError):
            return False

    async def close(self) -> None:
        await self._client.aclose()

    async def _ensure_index(self) -> bool:
        """Create the numeric index on first use. Returns True if it was just created."""
        if self._search_supported:
            return False

        schema = [part for name in _INDEXED_FIELDS for part in (name, "NUMERIC")]
        created = True
        try:
            await self._client.execute_command(
                "FT.CREATE", self.search_index, "ON", "HASH", "PREFIX", 1, INDEX_PREFIX, "SCHEMA", *schema
            )
            logger.info(f"Created search index {self.search_index}")
        except ResponseError as e:
            if "already exists" not in str(e).lower():
                raise
            created = False

        self._search_supported = True
        return created

    @staticmethod
    def _index_key(key: str) -> str:
        return INDEX_PREFIX + key[len(PROPERTY_PREFIX):]

    @staticmethod
    def _decode(key: str, raw: Optional[str]) -> Optional[Dict[str, Any]]:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.debug(f"Skipping undecodable document at {key}")
            return None


def build_filter_expression(filters: SearchFilters) -> str:
    """
    Translate the numeric SearchFilters into a RediSearch query string.

    City and pet predicates are left to the caller, so the keys matched are
    always a superset of the true matches.
    """
    clauses = []

    if filters.beds is not None:
        clauses.append(f"@beds:[{filters.beds} {filters.beds}]")
    if filters.baths is not None:
        clauses.append(f"@baths:[{filters.baths} {filters.baths}]")
    for field, bound in (("rent", filters.rent), ("square_feet", filters.square_feet)):
        if bound is not None:
            low = "-inf" if bound.min is None else bound.min
            high = "+inf" if bound.max is None else bound.max
            clauses.append(f"@{field}:[{low} {high}]")

    return " ".join(clauses) or "*"


def create_store(settings: Optional[Settings] = None) -> BaseStore:
    """
    Build the configured store backend.

    Args:
        settings: Optional settings override

    Returns:
        RedisStore when STORE_BACKEND is "redis", else InMemoryStore
    """
    settings = settings or get_settings()

    if settings.STORE_BACKEND.lower() == "redis":
        logger.info(f"Using Redis store at {settings.REDIS_URL}")
        return RedisStore(
            settings.REDIS_URL,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
            search_index=settings.REDIS_SEARCH_INDEX,
        )

    logger.info("Using in-memory store")
    return InMemoryStore()
