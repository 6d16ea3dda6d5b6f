"""
BuzzSync Backend — Venue Geo Search
=====================================

What:  Venue discovery combining a radius around a point with city, type and
       free-text filters.
Why:   The map screen asks "what's open near me that matches X", and the list
       screen asks the same question without a location.
How:   Two paths, chosen by whether a center was supplied.

    With a center (lat, lng):
        1. SQL prefilter on a bounding box padded around the circle
           (handles the poles and longitude wrap at ±180°)
        2. Exact haversine distance per candidate, kept when ≤ radius
        3. Sorted by (distance, name, id), then sliced by offset/limit

    Without a center:
        SQL does filtering, ordering (name, id) and pagination; a COUNT
        query supplies total_count.

Distance model:
    Spherical Earth, R = 6371 km. The boundary is inclusive with a 1e-9 km
    tolerance, so a venue placed at exactly the radius is returned.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, or_, select

from buzzsync.database import ConnectionPoolManager
from buzzsync.exceptions import ValidationError
from buzzsync.models.venue import Venue
from buzzsync.services.change_feed_service import as_utc

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
DISTANCE_EPSILON_KM = 1e-9

# Relative + absolute padding on the prefilter box. The exact check follows.
_BOX_PADDING = 1.001
_BOX_PADDING_KM = 1e-3


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two WGS84 points in kilometres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def bounding_box(
    lat: float, lng: float, radius_km: float
) -> Tuple[float, float, List[Tuple[float, float]]]:
    """
    Latitude bounds plus one or two longitude ranges enclosing the circle.

    Returns (min_lat, max_lat, [(min_lng, max_lng), ...]).
    """
    angular = (radius_km * _BOX_PADDING + _BOX_PADDING_KM) / EARTH_RADIUS_KM
    lat_delta = math.degrees(angular)
    min_lat = lat - lat_delta
    max_lat = lat + lat_delta

    # Circle covers a pole: every longitude is in play
    if min_lat <= -90.0 or max_lat >= 90.0:
        return max(min_lat, -90.0), min(max_lat, 90.0), [(-180.0, 180.0)]

    ratio = math.sin(angular) / math.cos(math.radians(lat))
    if angular >= math.pi / 2 or ratio >= 1.0:
        return min_lat, max_lat, [(-180.0, 180.0)]

    lng_delta = math.degrees(math.asin(ratio))
    min_lng = lng - lng_delta
    max_lng = lng + lng_delta

    if min_lng < -180.0:
        return min_lat, max_lat, [(min_lng + 360.0, 180.0), (-180.0, max_lng)]
    if max_lng > 180.0:
        return min_lat, max_lat, [(min_lng, 180.0), (-180.0, max_lng - 360.0)]
    return min_lat, max_lat, [(min_lng, max_lng)]


def _like_pattern(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


@dataclass
class SearchResult:
    venues: List[Dict[str, Any]]
    total_count: int
    limit: int
    offset: int
    has_more: bool


class GeoSearchEngine:
    """
    Read-only venue search. Only active venues are ever returned.
    """

    def __init__(
        self,
        pool: ConnectionPoolManager,
        default_radius_km: float = 10.0,
        max_limit: int = 100,
    ):
        self.pool = pool
        self.default_radius_km = default_radius_km
        self.max_limit = max_limit

    def _validate_center(
        self, lat: Optional[float], lng: Optional[float]
    ) -> Optional[Tuple[float, float]]:
        if lat is None and lng is None:
            return None
        if lat is None or lng is None:
            raise ValidationError(
                message="Both 'lat' and 'lng' must be supplied together",
                field="lng" if lng is None else "lat",
            )
        if not (math.isfinite(lat) and math.isfinite(lng)):
            raise ValidationError(message="Coordinates must be finite numbers", field="lat")
        if not -90.0 <= lat <= 90.0:
            raise ValidationError(message="'lat' must be between -90 and 90", field="lat")
        if not -180.0 <= lng <= 180.0:
            raise ValidationError(message="'lng' must be between -180 and 180", field="lng")
        return lat, lng

    async def search(
        self,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        radius_km: Optional[float] = None,
        city: Optional[str] = None,
        venue_type: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> SearchResult:
        """
        Find venues matching every supplied filter.

        Args:
            lat, lng:    Optional center; both or neither
            radius_km:   Inclusive radius; ignored without a center
            city:        Case-insensitive substring of the venue's city
            venue_type:  Exact venue type
            search:      Case-insensitive substring of name or description
            limit/offset: Page window

        Raises:
            ValidationError: half a coordinate pair, non-finite or out-of-range
                             coordinates, negative radius, bad page window
        """
        center = self._validate_center(lat, lng)

        if limit < 1:
            raise ValidationError(message="limit must be at least 1", field="limit")
        if offset < 0:
            raise ValidationError(message="offset must not be negative", field="offset")
        limit = min(limit, self.max_limit)

        filters = [Venue.is_active.is_(True)]
        if city:
            filters.append(Venue.city.ilike(_like_pattern(city), escape="\\"))
        if venue_type:
            filters.append(Venue.venue_type == venue_type)
        if search:
            pattern = _like_pattern(search)
            filters.append(
                or_(
                    Venue.name.ilike(pattern, escape="\\"),
                    Venue.description.ilike(pattern, escape="\\"),
                )
            )

        if center is None:
            return await self._search_unbounded(filters, limit, offset)

        radius = self.default_radius_km if radius_km is None else radius_km
        if not math.isfinite(radius) or radius < 0:
            raise ValidationError(message="radius must be a non-negative number", field="radius")
        return await self._search_radius(filters, center, radius, limit, offset)

    async def _search_unbounded(self, filters: list, limit: int, offset: int) -> SearchResult:
        count_stmt = select(func.count()).select_from(Venue).where(*filters)
        page_stmt = (
            select(Venue.__table__)
            .where(*filters)
            .order_by(Venue.name.asc(), Venue.id.asc())
            .limit(limit)
            .offset(offset)
        )

        async with self.pool.connection() as conn:
            total = int((await conn.execute(count_stmt)).scalar_one())
            rows = (await conn.execute(page_stmt)).mappings().all()

        venues = [self._to_dict(row, None) for row in rows]
        return SearchResult(
            venues=venues,
            total_count=total,
            limit=limit,
            offset=offset,
            has_more=offset + len(venues) < total,
        )

    async def _search_radius(
        self,
        filters: list,
        center: Tuple[float, float],
        radius_km: float,
        limit: int,
        offset: int,
    ) -> SearchResult:
        lat, lng = center
        min_lat, max_lat, lng_ranges = bounding_box(lat, lng, radius_km)

        box = [
            Venue.latitude.is_not(None),
            Venue.longitude.is_not(None),
            Venue.latitude.between(min_lat, max_lat),
            or_(*[and_(Venue.longitude >= lo, Venue.longitude <= hi) for lo, hi in lng_ranges]),
        ]
        stmt = select(Venue.__table__).where(*filters, *box)

        async with self.pool.connection() as conn:
            rows = (await conn.execute(stmt)).mappings().all()

        matches = []
        for row in rows:
            distance = haversine_km(lat, lng, row["latitude"], row["longitude"])
            if distance <= radius_km + DISTANCE_EPSILON_KM:
                matches.append((distance, row))
        matches.sort(key=lambda m: (m[0], m[1]["name"], str(m[1]["id"])))

        page = matches[offset:offset + limit]
        logger.debug(
            "Radius search r=%.3fkm: %d candidate(s), %d match(es)",
            radius_km,
            len(rows),
            len(matches),
        )
        return SearchResult(
            venues=[self._to_dict(row, distance) for distance, row in page],
            total_count=len(matches),
            limit=limit,
            offset=offset,
            has_more=offset + len(page) < len(matches),
        )

    @staticmethod
    def _to_dict(row: Any, distance_km: Optional[float]) -> Dict[str, Any]:
        venue = {key: as_utc(value) for key, value in row.items()}
        venue["distance_km"] = round(distance_km, 6) if distance_km is not None else None
        return venue
