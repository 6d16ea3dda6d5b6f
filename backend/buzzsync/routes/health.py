"""
BuzzSync Backend — Health Check Routes
========================================

What:  Pool and storage health for load balancers, plus an admin storage report.
Who:   Docker health checks, load balancers, the admin dashboard.

Status levels:
    - healthy:     storage answered quickly (HTTP 200)
    - degraded:    reachable but slow or saturated (HTTP 200, flag for monitoring)
    - unreachable: storage probe failed (HTTP 503, stop routing traffic)
"""

import logging
import time

from fastapi import APIRouter, Depends, Response

from buzzsync import __version__
from buzzsync.database import UNREACHABLE, Base, ConnectionPoolManager, HealthReport
from buzzsync.dependencies import get_pool, require_admin
from buzzsync.schemas.common import DatabaseHealthResponse, ErrorResponse, HealthResponse, PoolStatsResponse
from buzzsync.services.identity_service import Identity

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()

REPORTED_TABLES = ("venues", "vibe_checks", "promotions", "notifications")


def _health_fields(report: HealthReport) -> dict:
    return {
        "status": report.status,
        "version": __version__,
        "latency_ms": report.latency_ms,
        "pool": PoolStatsResponse(**report.pool.to_dict()),
        "error": report.error,
        "uptime_seconds": round(time.time() - _start_time, 2),
    }


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"description": "Storage unreachable", "model": HealthResponse}},
    summary="Service health check",
    description="Runs SELECT 1 through the pool and reports latency and pool occupancy.",
)
async def health_check(
    response: Response,
    pool: ConnectionPoolManager = Depends(get_pool),
) -> HealthResponse:
    report = await pool.health_check()
    if report.status == UNREACHABLE:
        response.status_code = 503
    return HealthResponse(**_health_fields(report))


@router.get(
    "/health/database",
    response_model=DatabaseHealthResponse,
    responses={
        401: {"description": "Authentication required", "model": ErrorResponse},
        403: {"description": "Admin role required", "model": ErrorResponse},
        503: {"description": "Storage unreachable", "model": DatabaseHealthResponse},
    },
    summary="Admin storage report",
    description="Health snapshot plus row counts of the core tables. Admin only.",
)
async def database_health(
    response: Response,
    pool: ConnectionPoolManager = Depends(get_pool),
    admin: Identity = Depends(require_admin),
) -> DatabaseHealthResponse:
    report = await pool.health_check()
    if report.status == UNREACHABLE:
        response.status_code = 503
        return DatabaseHealthResponse(**_health_fields(report))

    tables = [Base.metadata.tables[name] for name in REPORTED_TABLES]
    counts = await pool.table_counts(tables)
    logger.info("Storage report requested by %s", admin.user_id)
    return DatabaseHealthResponse(**_health_fields(report), tables=counts)
