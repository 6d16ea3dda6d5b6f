"""
BuzzSync Backend — Venue SQLAlchemy Model
===========================================

What:  ORM model for the `venues` table.
Who:   Read by ChangeFeedService (kind `venues`) and GeoSearchEngine; written
       by clients through the TransactionGateway.

Table Design Rationale:
    - UUID primary key, generated client- or server-side
    - latitude/longitude nullable: venues without coordinates are still
      listable, they just never match a radius search
    - updated_at is the change-feed clock for this table. It must never go
      backwards for a row, so the ORM bumps it on update and the migration
      installs a trigger doing the same for raw-SQL updates.

    Index on (updated_at, id):
        Serves the change feed's "strictly after (ts, id)" range scan.
    Index on (latitude, longitude):
        Serves the radius search's bounding-box prefilter.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, Index, String, Text, Uuid, func, true
from sqlalchemy.orm import Mapped, mapped_column

from buzzsync.database import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Venue(Base):
    """
    A place people go out to.

    Query Patterns:
        - Change feed: WHERE (updated_at, id) > (:since, :after_id) ORDER BY updated_at, id
        - Radius search: WHERE latitude BETWEEN .. AND longitude BETWEEN ..
        - Filters: city ILIKE, venue_type =, name/description ILIKE
    """

    __tablename__ = "venues"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    # ── Location ──────────────────────────────────────────────────────────
    # WGS84 degrees. Range is enforced by the search layer on input, not here.
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Category, e.g. bar, club, lounge. Matched exactly by the type filter.
    venue_type: Mapped[str] = mapped_column(String(50), nullable=False)

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=true(),
    )
    owner_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # ── Timestamps ────────────────────────────────────────────────────────
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("idx_venues_updated_at_id", "updated_at", "id"),
        Index("idx_venues_lat_lng", "latitude", "longitude"),
        Index("idx_venues_city", "city"),
        Index("idx_venues_venue_type", "venue_type"),
    )

    def __repr__(self) -> str:
        return f"<Venue(id={self.id}, name='{self.name}', type='{self.venue_type}')>"
