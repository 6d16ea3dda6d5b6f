"""
BuzzSync Backend — FastAPI Dependencies
=========================================

What:  Providers that hand services and the caller's identity to route handlers.
How:   The pool and identity client are process-wide objects created by the
       application factory and stored on `app.state`; everything else is a
       cheap, stateless wrapper built per request.

Override points for tests:
    app.dependency_overrides[get_current_identity] = lambda: Identity("u1", "admin")
"""

import logging
from typing import Optional

from fastapi import Depends, Request

from buzzsync.config import settings
from buzzsync.database import ConnectionPoolManager
from buzzsync.exceptions import PermissionDenied
from buzzsync.services.change_feed_service import ChangeFeedService
from buzzsync.services.geo_search_service import GeoSearchEngine
from buzzsync.services.identity_service import Identity, IdentityService
from buzzsync.services.transaction_service import TransactionGateway

logger = logging.getLogger(__name__)


def get_pool(request: Request) -> ConnectionPoolManager:
    return request.app.state.pool


def get_identity_service(request: Request) -> IdentityService:
    return request.app.state.identity_service


# ── Services ──────────────────────────────────────────────────────────────

def get_change_feed_service(pool: ConnectionPoolManager = Depends(get_pool)) -> ChangeFeedService:
    return ChangeFeedService(
        pool,
        default_limit=settings.feed_default_limit,
        max_limit=settings.feed_max_limit,
    )


def get_geo_search_engine(pool: ConnectionPoolManager = Depends(get_pool)) -> GeoSearchEngine:
    return GeoSearchEngine(
        pool,
        default_radius_km=settings.search_default_radius_km,
        max_limit=settings.search_max_limit,
    )


def get_transaction_gateway(pool: ConnectionPoolManager = Depends(get_pool)) -> TransactionGateway:
    return TransactionGateway(
        pool,
        max_operations=settings.transaction_max_operations,
        timeout_seconds=settings.transaction_timeout_seconds,
    )


# ── Identity ──────────────────────────────────────────────────────────────

async def get_current_identity(
    request: Request,
    identity_service: IdentityService = Depends(get_identity_service),
) -> Identity:
    """Resolve the caller from the forwarded Cookie / Authorization headers."""
    return await identity_service.resolve(
        cookie=request.headers.get("cookie"),
        authorization=request.headers.get("authorization"),
    )


async def get_transaction_identity(
    request: Request,
    identity_service: IdentityService = Depends(get_identity_service),
) -> Optional[Identity]:
    """Identity for the transaction endpoints; None when auth is switched off."""
    if not settings.transaction_require_auth:
        return None
    return await get_current_identity(request, identity_service)


async def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    if not identity.has_role(settings.admin_role):
        logger.warning("User %s denied admin access", identity.user_id)
        raise PermissionDenied(required_role=settings.admin_role)
    return identity
