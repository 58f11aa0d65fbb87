#!/usr/bin/env python3
"""
Create Sample Data Script

Seeds the configured store with sample rental listings (and their
embeddings when OPENAI_API_KEY is set), or with listings read from a JSON
export.

Usage:
    python -m scripts.create_sample_data
    python -m scripts.create_sample_data --file ./data/listings.json
    python -m scripts.create_sample_data --backend redis
"""

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from rental_assistant.config import get_settings
from rental_assistant.models.schemas import Property
from rental_assistant.services.llm_service import LLMService
from rental_assistant.services.search_service import HybridSearchService
from rental_assistant.services.store_service import create_store

logger = logging.getLogger(__name__)


def _listing(
    listing_id: str,
    name: str,
    street: str,
    city: str,
    zip_code: str,
    beds: float,
    baths: float,
    square_feet: int,
    rent: int,
    available: str,
    pets: List[str],
    appliances: List[str],
    utilities: Sequence[str] = (),
    offer: Optional[str] = None,
) -> Dict[str, Any]:
    """Build one listing document in the catalog's nested shape."""
    base = f"https://listings.example.com/{listing_id}"
    return {
        "source": "sample",
        "property_name": name,
        "address": {"raw": f"{street}, {city}, OR {zip_code}", "city": city, "state": "OR", "zip_code": zip_code},
        "listing_urls": {
            "listing_id": listing_id,
            "view_details_url": f"{base}/details",
            "apply_now_url": f"{base}/apply",
            "schedule_showing_url": f"{base}/tour",
        },
        "unit_details": {
            "beds": beds,
            "baths": baths,
            "square_feet": square_feet,
            "available": available,
            "floorplan_name": f"{beds:g} x {baths:g}",
        },
        "rental_terms": {"rent": rent, "application_fee": 65, "security_deposit": rent},
        "pet_policy": {
            "pets_allowed": {"allowed": bool(pets), "allowed_types": list(pets)},
            "pet_rent": 35 if pets else None,
            "pet_deposit": 500 if pets else None,
        },
        "appliances": list(appliances),
        "utilities_included": list(utilities),
        "photos": [],
        "special_offer": {"flag": offer is not None, "text": offer},
    }


def generate_sample_listings() -> List[Dict[str, Any]]:
    """The built-in sample catalog."""
    return [
        _listing(
            "sample-1", "Lincoln Court Townhomes", "230 Lincoln St, Unit 111", "Fairview", "97024",
            2, 1.5, 864, 1475, "8/11/25", ["cats", "dogs"],
            ["Dishwasher", "Microwave", "Range", "Refrigerator/Freezer"],
        ),
        _listing(
            "sample-2", "Downtown Luxury Apartments", "123 Main St, Unit 456", "Portland", "97201",
            1, 1, 650, 1850, "Now", [],
            ["Dishwasher", "Washer/Dryer", "Refrigerator"], ["Water", "Trash"],
            offer="First month free on 13-month leases",
        ),
        _listing(
            "sample-3", "Rock 459 Flats", "459 NE Rock Ave, Unit 2B", "Gresham", "97030",
            2, 2, 980, 1695, "Now", ["cats"],
            ["Dishwasher", "Range", "Refrigerator"], ["Water", "Sewer"],
        ),
        _listing(
            "sample-4", "Cedar Hills Cottage", "8120 SW Cedar Hills Blvd", "Beaverton", "97005",
            3, 2, 1320, 2450, "9/1/25", ["dogs"],
            ["Dishwasher", "Washer/Dryer", "Range", "Refrigerator"],
        ),
        _listing(
            "sample-5", "Riverside Studio Lofts", "17 River Rd, Unit 5", "Milwaukie", "97222",
            0, 1, 480, 1195, "Now", [],
            ["Microwave", "Refrigerator"], ["Water", "Trash", "Internet"],
        ),
    ]


def load_listings_file(path: Path) -> List[Dict[str, Any]]:
    """
    Read listings from a JSON export.

    Accepts a plain list or the ``{"listings": {"listings": [...]}}`` shape.
    """
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("listings", data)
        if isinstance(data, dict):
            data = data.get("listings", [])
    return list(data)


async def seed(listings: List[Dict[str, Any]], backend: str = None) -> int:
    """
    Validate and index listings.

    Returns:
        Number of listings stored
    """
    settings = get_settings()
    if backend:
        settings = settings.model_copy(update={"STORE_BACKEND": backend})

    store = create_store(settings)
    llm = LLMService(settings)
    if not llm.is_configured:
        logger.warning("OPENAI_API_KEY is not set; listings are stored without embeddings")
    search = HybridSearchService(store, embedder=llm if llm.is_configured else None, settings=settings)

    stored = 0
    try:
        for doc in listings:
            try:
                prop = Property.model_validate(doc)
            except ValidationError as e:
                logger.warning(f"Skipping invalid listing: {e.error_count()} validation errors")
                continue
            await search.add_property(prop)
            stored += 1
    finally:
        await store.close()

    return stored


def main():
    parser = argparse.ArgumentParser(
        description="Seed the listing store with sample rental data"
    )
    parser.add_argument(
        "--file",
        type=str,
        default=None,
        help="JSON file with listings (defaults to the built-in sample catalog)"
    )
    parser.add_argument(
        "--backend",
        type=str,
        choices=["memory", "redis"],
        default=None,
        help="Override STORE_BACKEND"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    listings = load_listings_file(Path(args.file)) if args.file else generate_sample_listings()
    print(f"Indexing {len(listings)} listings...")

    stored = asyncio.run(seed(listings, args.backend))
    print(f"Stored {stored} of {len(listings)} listings")


if __name__ == "__main__":
    main()
