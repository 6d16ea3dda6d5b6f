"""
BuzzSync Backend — Change Feed Service
========================================

What:  "What changed since T?" for each synchronised resource kind.
Why:   The mobile client keeps an offline copy of venues, vibe checks,
       promotions and notifications, and refreshes it by polling with the
       last cursor it saw.
How:   One keyset query per request against the kind's change clock.

Cursor semantics:
    A cursor is (since, after_id). A row is returned when

        ts > since  OR  (ts == since AND id > after_id)

    ordered by (ts, id) ascending. The response's next_since / next_after_id
    are the last row's values, so feeding them back never skips a row that
    shares a timestamp with the page boundary and never repeats one. Without
    after_id the filter is plain `ts > since`.

Change clocks:
    venues, promotions        → updated_at (mutable rows)
    vibe-checks, notifications → created_at (immutable rows)
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type

from sqlalchemy import and_, or_, select

from buzzsync.database import Base, ConnectionPoolManager
from buzzsync.exceptions import NotFoundError, ValidationError
from buzzsync.models.notification import Notification
from buzzsync.models.promotion import Promotion
from buzzsync.models.venue import Venue
from buzzsync.models.vibe_check import VibeCheck

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeedDefinition:
    kind: str
    model: Type[Base]
    timestamp_column: str
    scope_column: Optional[str]


FEEDS: Dict[str, FeedDefinition] = {
    "venues": FeedDefinition("venues", Venue, "updated_at", "id"),
    "vibe-checks": FeedDefinition("vibe-checks", VibeCheck, "created_at", "venue_id"),
    "promotions": FeedDefinition("promotions", Promotion, "updated_at", "venue_id"),
    "notifications": FeedDefinition("notifications", Notification, "created_at", None),
}

KIND_ALIASES = {"vibe_checks": "vibe-checks"}

# Query strings decode '+' to ' ', which mangles "+02:00" offsets.
_MANGLED_OFFSET = re.compile(r"^(.*T[\d:.]+) (\d{2}(?::?\d{2})?)$")


@dataclass
class FeedPage:
    kind: str
    changes: List[Dict[str, Any]]
    count: int
    has_more: bool
    next_since: datetime
    next_after_id: Optional[str]


def resolve_kind(kind: str) -> FeedDefinition:
    key = KIND_ALIASES.get(kind, kind)
    feed = FEEDS.get(key)
    if feed is None:
        raise ValidationError(
            message=f"Unknown resource kind '{kind}'",
            field="kind",
            context={"allowed": sorted(FEEDS)},
        )
    return feed


def parse_since(value: Optional[str]) -> datetime:
    """
    Parse the client's `since` into an aware UTC datetime.

    Accepts ISO 8601 with `Z`, an explicit offset, or no offset (read as UTC).
    """
    if value is None or not value.strip():
        raise ValidationError(message="The 'since' parameter is required", field="since")

    raw = value.strip()
    mangled = _MANGLED_OFFSET.match(raw)
    if mangled:
        raw = f"{mangled.group(1)}+{mangled.group(2)}"
    if raw[-1] in "Zz":
        raw = raw[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationError(
            message=f"Invalid 'since' timestamp '{value}'. Use ISO 8601, e.g. 2024-01-15T10:30:00Z",
            field="since",
        )

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_uuid(value: str, field: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError(message=f"'{field}' must be a UUID", field=field)


def as_utc(value: Any) -> Any:
    """Storage may hand back naive datetimes (SQLite); they are always UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return value


class ChangeFeedService:
    """
    Read-only change feeds over the pooled connection.

    Stateless apart from its limits; safe to construct per request.
    """

    def __init__(
        self,
        pool: ConnectionPoolManager,
        default_limit: int = 500,
        max_limit: int = 1000,
    ):
        self.pool = pool
        self.default_limit = default_limit
        self.max_limit = max_limit

    async def get_changes(
        self,
        kind: str,
        since: Optional[str],
        venue_id: Optional[str] = None,
        after_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> FeedPage:
        """
        Return rows of `kind` that changed after the cursor.

        Raises:
            ValidationError: unknown kind, bad `since`, bad ids, venue scope on
                             notifications, non-positive limit
            NotFoundError:   venue scope names a venue that does not exist
        """
        feed = resolve_kind(kind)
        since_dt = parse_since(since)

        if limit is None:
            limit = self.default_limit
        if limit < 1:
            raise ValidationError(message="limit must be at least 1", field="limit")
        limit = min(limit, self.max_limit)

        after_uuid = parse_uuid(after_id, "afterId") if after_id else None

        venue_uuid: Optional[uuid.UUID] = None
        if venue_id is not None:
            if feed.scope_column is None:
                raise ValidationError(
                    message=f"The '{feed.kind}' feed cannot be scoped to a venue",
                    field="venueId",
                )
            venue_uuid = parse_uuid(venue_id, "venueId")

        model = feed.model
        ts_col = getattr(model, feed.timestamp_column)
        id_col = model.id

        if after_uuid is None:
            condition = ts_col > since_dt
        else:
            condition = or_(ts_col > since_dt, and_(ts_col == since_dt, id_col > after_uuid))

        stmt = select(model.__table__).where(condition)
        if venue_uuid is not None:
            stmt = stmt.where(getattr(model, feed.scope_column) == venue_uuid)
        stmt = stmt.order_by(ts_col.asc(), id_col.asc()).limit(limit + 1)

        async with self.pool.connection() as conn:
            if venue_uuid is not None:
                found = await conn.execute(select(Venue.id).where(Venue.id == venue_uuid))
                if found.first() is None:
                    raise NotFoundError(resource="venue", resource_id=str(venue_uuid))
            result = await conn.execute(stmt)
            rows = result.mappings().all()

        has_more = len(rows) > limit
        changes = [{key: as_utc(value) for key, value in row.items()} for row in rows[:limit]]

        if changes:
            last = changes[-1]
            next_since = last[feed.timestamp_column]
            next_after_id: Optional[str] = str(last["id"])
        else:
            next_since = since_dt
            next_after_id = str(after_uuid) if after_uuid else None

        logger.debug(
            "Feed %s: %d change(s) since %s (has_more=%s)",
            feed.kind,
            len(changes),
            since_dt.isoformat(),
            has_more,
        )
        return FeedPage(
            kind=feed.kind,
            changes=changes,
            count=len(changes),
            has_more=has_more,
            next_since=next_since,
            next_after_id=next_after_id,
        )
