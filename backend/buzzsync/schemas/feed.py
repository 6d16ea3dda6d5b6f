"""
BuzzSync Backend — Change Feed Schemas
========================================

What:  Response contract for GET /resources/{kind}/updates.

Polling contract:
    The client stores next_since (and next_after_id) from each response and
    sends them back as `since` / `afterId` on the next poll. While has_more is
    true it should poll again immediately.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ChangeFeedResponse(BaseModel):
    kind: str = Field(description="Canonical resource kind")
    changes: List[Dict[str, Any]] = Field(description="Changed rows, oldest first")
    count: int = Field(description="Number of rows in `changes`")
    has_more: bool = Field(description="True when the page was truncated by `limit`")
    next_since: datetime = Field(description="Cursor timestamp for the next poll (UTC)")
    next_after_id: Optional[str] = Field(
        default=None,
        description="Id of the last row at next_since; send back as afterId",
    )
