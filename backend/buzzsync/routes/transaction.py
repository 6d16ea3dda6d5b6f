"""
BuzzSync Backend — Transaction Gateway Routes
===============================================

What:  POST /transaction (atomic batch) and POST /query (single read-only SELECT).
Who:   The mobile client's offline write queue, and ad-hoc reads.

Status codes:
    200 → committed (transaction) / rows returned (query)
    400 → malformed body or placeholder
    401 → no identity (when TRANSACTION_REQUIRE_AUTH is on)
    403 → statement outside the allow-list; nothing executed
    500 → execution failed; body carries failed_index and rolled_back
    503 → pool exhausted (Retry-After)
    504 → deadline exceeded; rolled back
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends

from buzzsync.dependencies import get_transaction_gateway, get_transaction_identity
from buzzsync.schemas.common import ErrorResponse
from buzzsync.schemas.transaction import (
    OperationResultResponse,
    QueryRequest,
    QueryResponse,
    TransactionRequest,
    TransactionResponse,
)
from buzzsync.services.identity_service import Identity
from buzzsync.services.transaction_service import TransactionGateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Transactions"])

_ERRORS = {
    400: {"description": "Malformed request", "model": ErrorResponse},
    401: {"description": "Authentication required", "model": ErrorResponse},
    403: {"description": "Statement kind not allowed", "model": ErrorResponse},
    500: {"description": "Execution failed and was rolled back", "model": ErrorResponse},
    503: {"description": "Connection pool exhausted", "model": ErrorResponse},
    504: {"description": "Deadline exceeded and rolled back", "model": ErrorResponse},
}


@router.post(
    "/transaction",
    response_model=TransactionResponse,
    responses=_ERRORS,
    summary="Execute a batch of statements atomically",
)
async def execute_transaction(
    body: TransactionRequest,
    gateway: TransactionGateway = Depends(get_transaction_gateway),
    identity: Optional[Identity] = Depends(get_transaction_identity),
) -> TransactionResponse:
    if identity is not None:
        logger.info(
            "User %s submitted a batch of %d operation(s)",
            identity.user_id,
            len(body.operations),
        )
    result = await gateway.execute(
        [(op.sql, op.params) for op in body.operations],
        timeout_ms=body.timeout_ms,
    )
    return TransactionResponse(
        results=[
            OperationResultResponse(
                index=r.index,
                kind=r.kind,
                row_count=r.row_count,
                rows=r.rows,
            )
            for r in result.results
        ],
        committed=result.committed,
        timestamp=result.timestamp,
    )


@router.post(
    "/query",
    response_model=QueryResponse,
    responses=_ERRORS,
    summary="Run a single read-only SELECT",
)
async def run_query(
    body: QueryRequest,
    gateway: TransactionGateway = Depends(get_transaction_gateway),
    identity: Optional[Identity] = Depends(get_transaction_identity),
) -> QueryResponse:
    result = await gateway.run_query(body.sql, body.params, timeout_ms=body.timeout_ms)
    return QueryResponse(rows=result.rows, row_count=result.row_count, timestamp=result.timestamp)
