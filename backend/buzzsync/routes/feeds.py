"""
BuzzSync Backend — Change Feed Routes
=======================================

What:  GET /resources/{kind}/updates — rows of one kind changed after a cursor.
Who:   Called by the mobile client's background sync loop.

Caching:
    Never cached; the whole point is freshness.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Response

from buzzsync.config import settings
from buzzsync.dependencies import get_change_feed_service
from buzzsync.schemas.common import ErrorResponse
from buzzsync.schemas.feed import ChangeFeedResponse
from buzzsync.services.change_feed_service import ChangeFeedService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/resources", tags=["Change Feeds"])


@router.get(
    "/{kind}/updates",
    response_model=ChangeFeedResponse,
    responses={
        400: {"description": "Missing/invalid since, unknown kind or bad scope", "model": ErrorResponse},
        404: {"description": "Scoped venue does not exist", "model": ErrorResponse},
        503: {"description": "Connection pool exhausted", "model": ErrorResponse},
    },
    summary="Changes since a cursor",
    description=(
        "Returns rows of the given kind (venues, vibe-checks, promotions, notifications) "
        "whose change timestamp is after `since`, oldest first. Send back next_since and "
        "next_after_id as `since` and `afterId` on the next poll."
    ),
)
async def get_updates(
    response: Response,
    kind: str = Path(description="venues, vibe-checks, promotions or notifications"),
    since: Optional[str] = Query(default=None, description="ISO 8601 timestamp (required)"),
    venue_id: Optional[str] = Query(default=None, alias="venueId", description="Limit to one venue"),
    after_id: Optional[str] = Query(
        default=None,
        alias="afterId",
        description="Id of the last row already seen at exactly `since`",
    ),
    limit: int = Query(default=settings.feed_default_limit, ge=1, le=settings.feed_max_limit),
    service: ChangeFeedService = Depends(get_change_feed_service),
) -> ChangeFeedResponse:
    page = await service.get_changes(
        kind=kind,
        since=since,
        venue_id=venue_id,
        after_id=after_id,
        limit=limit,
    )
    response.headers["Cache-Control"] = "no-store"
    return ChangeFeedResponse(
        kind=page.kind,
        changes=page.changes,
        count=page.count,
        has_more=page.has_more,
        next_since=page.next_since,
        next_after_id=page.next_after_id,
    )
