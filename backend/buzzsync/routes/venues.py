"""
BuzzSync Backend — Venue Search Route
=======================================

What:  GET /venues/search — radius, city, type and text filters with paging.
Who:   Map and list screens of the mobile client.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response

from buzzsync.config import settings
from buzzsync.dependencies import get_geo_search_engine
from buzzsync.schemas.common import ErrorResponse
from buzzsync.schemas.venue import VenueSearchResponse
from buzzsync.services.geo_search_service import GeoSearchEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/venues", tags=["Venues"])


@router.get(
    "/search",
    response_model=VenueSearchResponse,
    responses={
        400: {"description": "Malformed coordinates or filters", "model": ErrorResponse},
        503: {"description": "Connection pool exhausted", "model": ErrorResponse},
    },
    summary="Search active venues",
    description=(
        "With lat/lng, returns venues within `radius` km (inclusive) ordered by distance. "
        "Without them, returns venues ordered by name. All filters combine with AND."
    ),
)
async def search_venues(
    response: Response,
    lat: Optional[float] = Query(default=None, description="Center latitude"),
    lng: Optional[float] = Query(default=None, description="Center longitude"),
    radius: Optional[float] = Query(
        default=None,
        description=f"Radius in km (default {settings.search_default_radius_km:g}); needs lat/lng",
    ),
    city: Optional[str] = Query(default=None, description="Case-insensitive city substring"),
    venue_type: Optional[str] = Query(default=None, alias="type", description="Exact venue type"),
    search: Optional[str] = Query(default=None, description="Substring of name or description"),
    limit: int = Query(default=20, ge=1, le=settings.search_max_limit),
    offset: int = Query(default=0, ge=0),
    engine: GeoSearchEngine = Depends(get_geo_search_engine),
) -> VenueSearchResponse:
    result = await engine.search(
        lat=lat,
        lng=lng,
        radius_km=radius,
        city=city,
        venue_type=venue_type,
        search=search,
        limit=limit,
        offset=offset,
    )
    response.headers["X-Total-Count"] = str(result.total_count)
    return VenueSearchResponse(
        venues=result.venues,
        total_count=result.total_count,
        limit=result.limit,
        offset=result.offset,
        has_more=result.has_more,
    )
