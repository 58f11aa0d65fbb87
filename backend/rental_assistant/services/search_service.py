"""
Hybrid Search Service - exact filtering with semantic supplementation.

Search order:
1. Result cache (fingerprint of normalized text + filters)
2. Catch-all queries return the catalog up to the cap
3. With filters: exact predicate search, supplemented by semantic ranking
   when fewer than SEARCH_SUPPLEMENT_THRESHOLD listings match
4. Without filters: semantic ranking, supplemented by the full catalog
"""

import asyncio
import logging
import time
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
from pydantic import ValidationError

from ..agents.query_analyzer import QueryAnalyzer
from ..config import Settings, get_settings
from ..errors import EmbeddingUnavailable, StoreUnavailable
from ..models.schemas import Property, SearchFilters, SearchQuery, SearchResult
from ..utils.helpers import query_fingerprint
from .cache_service import CacheService
from .llm_service import LLMService
from .store_service import BaseStore, EMBEDDING_PREFIX, PROPERTY_PREFIX

logger = logging.getLogger(__name__)


def matches_filters(prop: Property, filters: SearchFilters) -> bool:
    """
    Evaluate every present filter predicate against a listing.

    Absent filters always pass; a listing missing a filtered field fails.
    """
    unit = prop.unit_details

    if filters.beds is not None and unit.beds != filters.beds:
        return False

    if filters.baths is not None and unit.baths != filters.baths:
        return False

    if filters.rent is not None and not filters.rent.contains(prop.rental_terms.rent):
        return False

    if filters.city:
        haystack = (prop.address.city or prop.address.raw).lower()
        if filters.city.lower() not in haystack:
            return False

    if filters.pets_allowed is not None and prop.pet_policy.pets_allowed.allowed != filters.pets_allowed:
        return False

    if filters.square_feet is not None and not filters.square_feet.contains(unit.square_feet):
        return False

    return True


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for mismatched dimensions or zero vectors."""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)

    if va.shape != vb.shape or va.size == 0:
        return 0.0

    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(va, vb) / (norm_a * norm_b))


def build_property_text(prop: Property) -> str:
    """Text representation of a listing used for its embedding."""
    unit = prop.unit_details
    pets = prop.pet_policy
    parts = [
        prop.property_name,
        prop.address.raw,
        f"{unit.beds} bedroom {unit.baths} bathroom",
        f"{unit.square_feet} square feet",
        f"${prop.rental_terms.rent} rent",
        "pets allowed" if pets.pets_allowed.allowed else "no pets",
        f"pet rent ${pets.pet_rent}" if pets.pet_rent else "",
        " ".join(prop.appliances),
        " ".join(prop.utilities_included),
        prop.special_offer.text or "",
    ]
    return " ".join(" ".join(parts).split())


def _merge(primary: Iterable[Property], extra: Iterable[Property], cap: int) -> List[Property]:
    """Append ``extra`` listings not already present, keeping order, up to ``cap``."""
    merged: List[Property] = []
    seen = set()
    for prop in list(primary) + list(extra):
        if len(merged) >= cap:
            break
        if prop.id in seen:
            continue
        seen.add(prop.id)
        merged.append(prop)
    return merged


class HybridSearchService:
    """
    Orchestrates exact and semantic retrieval over the store and embeddings.

    Store failures degrade to empty exact results and embedding failures skip
    semantic supplementation; ``search`` never raises for either.
    """

    def __init__(
        self,
        store: BaseStore,
        embedder: Optional[LLMService] = None,
        cache: Optional[CacheService] = None,
        settings: Optional[Settings] = None,
        analyzer: Optional[QueryAnalyzer] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.embedder = embedder
        self.cache = cache
        self.analyzer = analyzer or QueryAnalyzer(self.settings.KNOWN_CITIES)
        self._embeddings: Dict[str, np.ndarray] = {}

    # ------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------

    def fingerprint(self, query: SearchQuery) -> str:
        return query_fingerprint(
            query.text,
            query.filters.to_dict(),
            namespace="search",
            max_length=self.settings.QUERY_FINGERPRINT_MAX_LENGTH,
        )

    async def search(self, query: SearchQuery) -> SearchResult:
        """
        Run the hybrid search for a classified query.

        Args:
            query: SearchQuery from the query analyzer

        Returns:
            SearchResult with at most SEARCH_MAX_RESULTS listings
        """
        start = time.perf_counter()

        async def compute():
            found = await self._run_search(query)
            # Empty results are not cached; they are usually a degradation
            return tuple(found) or None

        if self.cache is not None:
            payload, cache_hit = await self.cache.get_or_compute(self.fingerprint(query), compute)
        else:
            payload, cache_hit = await compute(), False

        latency_ms = (time.perf_counter() - start) * 1000
        properties = list(payload or ())

        logger.info(
            f"Search [{query.intent.value}] returned {len(properties)} listings "
            f"in {latency_ms:.1f}ms (cache_hit={cache_hit})"
        )

        return SearchResult(properties=properties, query=query, latency_ms=latency_ms, cache_hit=cache_hit)

    async def search_text(self, text: str) -> SearchResult:
        """Classify free text and search for it."""
        return await self.search(self.analyzer.analyze(text))

    async def add_property(self, prop: Property) -> str:
        """
        Index a listing and its embedding.

        Args:
            prop: Listing to store

        Returns:
            The listing id

        Raises:
            StoreUnavailable: When the listing itself cannot be written
        """
        await self.store.set(f"{PROPERTY_PREFIX}{prop.id}", prop.model_dump(mode="json"))
        self._embeddings.pop(prop.id, None)

        if self.embedder is not None:
            try:
                vector = await self.embedder.embed(build_property_text(prop))
                await self._persist_embedding(prop.id, vector)
            except EmbeddingUnavailable as e:
                logger.warning(f"Stored {prop.id} without embedding: {e}")

        # Cached result sets may no longer reflect the catalog
        if self.cache is not None:
            self.cache.clear()

        logger.info(f"Indexed listing {prop.id} ({prop.property_name})")
        return prop.id

    async def get_properties(self, listing_ids: Sequence[str]) -> List[Property]:
        """
        Fetch listings by id, preserving order and skipping missing or corrupt ones.
        """
        if not listing_ids:
            return []
        try:
            return await self._load_properties([f"{PROPERTY_PREFIX}{i}" for i in listing_ids])
        except StoreUnavailable as e:
            logger.warning(f"Could not load listings {list(listing_ids)}: {e}")
            return []

    async def count_properties(self) -> int:
        try:
            return len(await self.store.list_keys_by_prefix(PROPERTY_PREFIX))
        except StoreUnavailable:
            return 0

    # ------------------------------------------------------------
    # Search paths
    # ------------------------------------------------------------

    async def _run_search(self, query: SearchQuery) -> List[Property]:
        cap = self.settings.SEARCH_MAX_RESULTS
        threshold = self.settings.SEARCH_SUPPLEMENT_THRESHOLD
        filters = query.filters

        if filters.is_empty() and self.analyzer.is_catch_all(query.text):
            return (await self._safe_catalog())[:cap]

        if filters.is_empty():
            catalog, query_vector = await asyncio.gather(
                self._safe_catalog(),
                self._embed_query(query.text),
            )
            results = await self._semantic_rank(query_vector, catalog, cap)
            if len(results) < threshold:
                results = _merge(results, catalog, cap)
            return results

        # Embed while the exact fetch is in flight
        embed_task = asyncio.create_task(self._embed_query(query.text)) if self.embedder else None
        try:
            exact = (await self._exact_search(filters))[:cap]
            if len(exact) >= threshold or embed_task is None:
                return exact

            query_vector = await embed_task
            if query_vector is None:
                return exact

            catalog = await self._safe_catalog()
            semantic = await self._semantic_rank(query_vector, catalog, cap)
            return _merge(exact, semantic, cap)
        finally:
            if embed_task is not None and not embed_task.done():
                embed_task.cancel()
                await asyncio.gather(embed_task, return_exceptions=True)

    async def _exact_search(self, filters: SearchFilters) -> List[Property]:
        try:
            keys = await self.store.filtered_search(filters)
            if keys is None:
                candidates = await self._load_catalog()
            else:
                candidates = await self._load_properties(keys)
        except StoreUnavailable as e:
            logger.warning(f"Exact search degraded to empty result: {e}")
            return []

        # Native search results are a pre-filter only
        return [prop for prop in candidates if matches_filters(prop, filters)]

    async def _semantic_rank(
        self,
        query_vector: Optional[np.ndarray],
        candidates: List[Property],
        limit: int,
    ) -> List[Property]:
        if query_vector is None or not candidates:
            return []

        vectors = await self._embeddings_for(candidates)
        scored = [
            (cosine_similarity(query_vector, vectors[prop.id]), index, prop)
            for index, prop in enumerate(candidates)
            if prop.id in vectors
        ]
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [prop for _, _, prop in scored[:limit]]

    # ------------------------------------------------------------
    # Store access
    # ------------------------------------------------------------

    async def _load_catalog(self) -> List[Property]:
        keys = await self.store.list_keys_by_prefix(PROPERTY_PREFIX)
        return await self._load_properties(keys)

    async def _safe_catalog(self) -> List[Property]:
        try:
            return await self._load_catalog()
        except StoreUnavailable as e:
            logger.warning(f"Catalog enumeration failed: {e}")
            return []

    async def _load_properties(self, keys: List[str]) -> List[Property]:
        docs = await self.store.get_many(keys)
        properties: List[Property] = []
        seen = set()

        for key, doc in zip(keys, docs):
            if doc is None:
                continue
            try:
                prop = Property.model_validate(doc)
            except ValidationError as e:
                logger.debug(f"Excluding corrupt listing {key}: {e.error_count()} validation errors")
                continue
            if prop.id in seen:
                continue
            seen.add(prop.id)
            properties.append(prop)

        return properties

    # ------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------

    async def _embed_query(self, text: str) -> Optional[np.ndarray]:
        if self.embedder is None:
            return None
        try:
            return np.asarray(await self.embedder.embed(text), dtype=float)
        except EmbeddingUnavailable as e:
            logger.warning(f"Semantic search skipped: {e}")
            return None

    async def _embeddings_for(self, candidates: List[Property]) -> Dict[str, np.ndarray]:
        """Precomputed vectors: process memory, then the store, then computed and persisted."""
        missing = [prop for prop in candidates if prop.id not in self._embeddings]

        if missing:
            try:
                docs = await self.store.get_many([f"{EMBEDDING_PREFIX}{prop.id}" for prop in missing])
            except StoreUnavailable as e:
                logger.warning(f"Could not load stored embeddings: {e}")
                docs = [None] * len(missing)

            for prop, doc in zip(missing, docs):
                if doc and doc.get("embedding"):
                    self._embeddings[prop.id] = np.asarray(doc["embedding"], dtype=float)

            await self._compute_missing([prop for prop in missing if prop.id not in self._embeddings])

        return {prop.id: self._embeddings[prop.id] for prop in candidates if prop.id in self._embeddings}

    async def _compute_missing(self, props: List[Property]) -> None:
        if not props or self.embedder is None:
            return
        try:
            vectors = await self.embedder.embed_batch([build_property_text(prop) for prop in props])
        except EmbeddingUnavailable as e:
            logger.warning(f"Could not embed {len(props)} listings: {e}")
            return

        for prop, vector in zip(props, vectors):
            try:
                await self._persist_embedding(prop.id, vector)
            except StoreUnavailable as e:
                logger.warning(f"Embedding for {prop.id} kept in memory only: {e}")

    async def _persist_embedding(self, listing_id: str, vector: Sequence[float]) -> None:
        self._embeddings[listing_id] = np.asarray(vector, dtype=float)
        await self.store.set(
            f"{EMBEDDING_PREFIX}{listing_id}",
            {"listing_id": listing_id, "embedding": list(map(float, vector))},
        )
