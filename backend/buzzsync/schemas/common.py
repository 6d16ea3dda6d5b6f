"""
BuzzSync Backend — Shared Response Schemas
============================================

What:  Error envelope and health payloads shared across routers.
Why:   Clients parse every failure the same way, whichever endpoint raised it.
"""

from typing import Dict, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """
    Standardized error body for all API errors.

    Example:
        {
            "error": "storage_error",
            "message": "The transaction failed and was rolled back.",
            "details": {"failed_index": 1, "rolled_back": true},
            "request_id": "550e8400-e29b-41d4-a716-446655440000"
        }
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class PoolStatsResponse(BaseModel):
    total: int = Field(description="Open connections (idle + in use)")
    idle: int = Field(description="Connections sitting in the pool")
    in_use: int = Field(description="Connections currently checked out")
    waiting: int = Field(description="Callers currently waiting for a connection")
    max_size: int = Field(description="Hard ceiling on open connections")


class HealthResponse(BaseModel):
    """
    Returned by GET /health for load balancers and the client's status banner.

    status:
        healthy     → storage answered SELECT 1 quickly
        degraded    → reachable but slow or saturated (still HTTP 200)
        unreachable → storage probe failed (HTTP 503)
    """
    status: str = Field(description="healthy, degraded or unreachable")
    version: str = Field(description="Application version")
    latency_ms: Optional[float] = Field(default=None, description="SELECT 1 round-trip time")
    pool: PoolStatsResponse
    error: Optional[str] = Field(default=None, description="Failure class when not healthy")
    uptime_seconds: float = Field(description="Seconds since service started")


class DatabaseHealthResponse(HealthResponse):
    """Admin-only storage report: health plus row counts per core table."""
    tables: Dict[str, Optional[int]] = Field(
        default_factory=dict,
        description="Row count per table; null when the table could not be counted",
    )
