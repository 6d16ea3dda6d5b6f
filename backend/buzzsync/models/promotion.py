"""
BuzzSync Backend — Promotion SQLAlchemy Model
===============================================

What:  Time-boxed offers a venue runs (happy hours, guest lists, ...).
Why:   Promotions are edited after creation, so the change feed follows
       updated_at, the same way it does for venues.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text, Uuid, func, true
from sqlalchemy.orm import Mapped, mapped_column

from buzzsync.database import Base
from buzzsync.models.venue import utc_now


class Promotion(Base):
    __tablename__ = "promotions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    venue_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("venues.id", ondelete="CASCADE"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=true(),
    )

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
        Index("idx_promotions_updated_at_id", "updated_at", "id"),
        Index("idx_promotions_venue_id", "venue_id"),
    )

    def __repr__(self) -> str:
        return f"<Promotion(id={self.id}, venue_id={self.venue_id}, title='{self.title}')>"
