"""
Pydantic schemas for listings, search requests/results and API payloads.
"""

from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field

from .state import QueryIntent, ActionType


# ============================================================
# Listing records
# ============================================================

class Address(BaseModel):
    """Listing address: raw string plus the structured parts we filter on."""

    raw: str = ""
    street_number: Optional[str] = None
    street_name: Optional[str] = None
    street_type: Optional[str] = None
    unit: Optional[str] = None
    city: str = ""
    state: str = ""
    zip_code: Optional[str] = None


class ListingUrls(BaseModel):
    """Deep links for a listing. ``listing_id`` is the catalog identifier."""

    listing_id: str = Field(..., min_length=1)
    view_details_url: Optional[str] = None
    apply_now_url: Optional[str] = None
    schedule_showing_url: Optional[str] = None
    property_website_url: Optional[str] = None


class UnitDetails(BaseModel):
    beds: Optional[float] = None
    baths: Optional[float] = None
    square_feet: Optional[float] = None
    available: str = ""
    floorplan_name: Optional[str] = None


class RentalTerms(BaseModel):
    rent: Optional[float] = None
    application_fee: Optional[float] = None
    security_deposit: Optional[float] = None
    flex_rent_program: bool = False


class PetsAllowed(BaseModel):
    allowed: bool = False
    allowed_types: List[str] = Field(default_factory=list)


class PetPolicy(BaseModel):
    pets_allowed: PetsAllowed = Field(default_factory=PetsAllowed)
    pet_rent: Optional[float] = None
    pet_deposit: Optional[float] = None


class SpecialOffer(BaseModel):
    flag: bool = False
    text: Optional[str] = None


class Property(BaseModel):
    """
    A rental listing as stored under ``property:<listing_id>``.

    A document without a listing id or a property name fails validation and
    is treated as corrupt by the search layer.
    """

    property_name: str = Field(..., min_length=1, description="Display name of the listing")
    address: Address = Field(default_factory=Address)
    listing_urls: ListingUrls
    unit_details: UnitDetails = Field(default_factory=UnitDetails)
    rental_terms: RentalTerms = Field(default_factory=RentalTerms)
    pet_policy: PetPolicy = Field(default_factory=PetPolicy)
    appliances: List[str] = Field(default_factory=list)
    utilities_included: List[str] = Field(default_factory=list)
    photos: List[str] = Field(default_factory=list)
    special_offer: SpecialOffer = Field(default_factory=SpecialOffer)
    description: Optional[str] = None
    source: Optional[str] = None

    class Config:
        extra = "ignore"
        json_schema_extra = {
            "example": {
                "property_name": "Lincoln Court Townhomes",
                "address": {"raw": "230 Lincoln St, Unit 111, Fairview, OR 97024", "city": "Fairview", "state": "OR"},
                "listing_urls": {
                    "listing_id": "lc-111",
                    "schedule_showing_url": "https://example.com/showings/new?listable_uid=lc-111",
                    "apply_now_url": "https://example.com/rental_applications/new?listable_uid=lc-111",
                },
                "unit_details": {"beds": 2, "baths": 1.5, "square_feet": 864, "available": "Now"},
                "rental_terms": {"rent": 1475, "application_fee": 65, "security_deposit": 1475},
                "pet_policy": {"pets_allowed": {"allowed": True, "allowed_types": ["cats", "dogs"]}},
            }
        }

    @property
    def id(self) -> str:
        """Stable, globally unique listing identifier."""
        return self.listing_urls.listing_id

    @property
    def is_available_now(self) -> bool:
        return "now" in self.unit_details.available.lower()


# ============================================================
# Search
# ============================================================

class NumericRange(BaseModel):
    """Inclusive numeric bound; either side may be open."""

    min: Optional[float] = None
    max: Optional[float] = None

    def contains(self, value: Optional[float]) -> bool:
        if value is None:
            return False
        if self.min is not None and value < self.min:
            return False
        if self.max is not None and value > self.max:
            return False
        return True


class SearchFilters(BaseModel):
    """Structured constraints extracted from free text. ``None`` means absent."""

    beds: Optional[int] = None
    baths: Optional[float] = None
    rent: Optional[NumericRange] = None
    city: Optional[str] = None
    pets_allowed: Optional[bool] = None
    square_feet: Optional[NumericRange] = None

    def is_empty(self) -> bool:
        return not self.to_dict()

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class SearchQuery(BaseModel):
    """A classified query. Pure, deterministic derivation from the raw text."""

    intent: QueryIntent
    text: str
    filters: SearchFilters = Field(default_factory=SearchFilters)
    action: Optional[ActionType] = None
    choice_index: Optional[int] = None


class SearchResult(BaseModel):
    """Ordered candidate list for a query."""

    properties: List[Property] = Field(default_factory=list)
    query: SearchQuery
    latency_ms: float = 0.0
    cache_hit: bool = False


# ============================================================
# API payloads
# ============================================================

class ConversationMessage(BaseModel):
    """A single message in the conversation history."""

    id: str = Field(..., description="Message identifier")
    role: str = Field(..., description="Role of the message sender: 'user' or 'assistant'")
    content: str = Field(..., description="Content of the message")
    timestamp: float = Field(..., description="Unix timestamp in seconds")


class ChatRequest(BaseModel):
    """Request model for the chat endpoints."""

    message: Optional[str] = Field(None, description="User's message")
    session_id: Optional[str] = Field(None, alias="sessionId", description="Session identifier; minted when absent")

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "message": "2 bedroom apartments under $2000 with pets",
                "sessionId": "sess_abc123",
            }
        }


class ChatResponse(BaseModel):
    """Response model for the non-streaming chat endpoint."""

    response: str = Field(..., description="Assistant's answer")
    session_id: str = Field(..., alias="sessionId", description="Session identifier")
    timestamp: int = Field(..., description="Epoch milliseconds")

    class Config:
        populate_by_name = True


class SearchResponse(BaseModel):
    """Response model for the direct search endpoint."""

    properties: List[Property]
    intent: QueryIntent
    filters: Dict[str, Any]
    latency_ms: float
    cache_hit: bool


class HistoryResponse(BaseModel):
    """Response model for a session's conversation history."""

    session_id: str
    history: List[ConversationMessage]
    count: int


class PropertyCreateResponse(BaseModel):
    success: bool
    listing_id: str


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str = Field(..., description="Health status")
    version: str = Field(..., description="Application version")
    store_connected: bool = Field(..., description="Whether the key-value store answers")
    llm_configured: bool = Field(..., description="Whether an LLM API key is configured")
