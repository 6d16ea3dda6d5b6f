"""
BuzzSync Backend — VibeCheck SQLAlchemy Model
===============================================

What:  A user's report of how lively a venue is right now.
Why:   Vibe checks are immutable once written, so their change-feed clock is
       created_at rather than updated_at.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from buzzsync.database import Base
from buzzsync.models.venue import utc_now


class VibeCheck(Base):
    __tablename__ = "vibe_checks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    venue_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("venues.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # 1 (dead) .. 5 (packed)
    energy_level: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint("energy_level BETWEEN 1 AND 5", name="ck_vibe_checks_energy_level"),
        Index("idx_vibe_checks_created_at_id", "created_at", "id"),
        Index("idx_vibe_checks_venue_id", "venue_id"),
    )

    def __repr__(self) -> str:
        return f"<VibeCheck(id={self.id}, venue_id={self.venue_id}, energy={self.energy_level})>"
