"""
BuzzSync Backend — Venue Search Schemas
=========================================

What:  Response contract for GET /venues/search.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class VenueSearchItem(BaseModel):
    id: uuid.UUID
    name: str
    description: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    venue_type: str
    is_active: bool
    owner_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    distance_km: Optional[float] = Field(
        default=None,
        description="Great-circle distance from the search center; null without a center",
    )


class VenueSearchResponse(BaseModel):
    """
    Offset-paginated search results.

    Offset (not cursor) pagination here: results with a center are ordered by
    distance from a point that changes between searches, so there is no
    stable cursor to hand out.
    """
    venues: List[VenueSearchItem]
    total_count: int = Field(description="Venues matching all filters")
    limit: int
    offset: int
    has_more: bool
