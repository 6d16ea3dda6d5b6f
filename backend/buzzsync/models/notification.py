"""
BuzzSync Backend — Notification SQLAlchemy Model
==================================================

What:  Broadcast messages shown in the client's inbox.
Why:   Not tied to a venue, so the notifications feed cannot be venue-scoped.
       `data` is an opaque JSON payload the client interprets by `type`.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, Index, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from buzzsync.database import Base
from buzzsync.models.venue import utc_now


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("idx_notifications_created_at_id", "created_at", "id"),
    )

    def __repr__(self) -> str:
        return f"<Notification(id={self.id}, type='{self.type}')>"
