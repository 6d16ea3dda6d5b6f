"""
BuzzSync Backend — Transaction Gateway
========================================

What:  Executes a client-submitted batch of statements atomically, and runs
       single read-only queries.
Why:   The offline-first client queues writes locally and replays them as one
       batch when it reconnects. Either the whole batch lands or none of it.
How:   classify everything → acquire one connection → BEGIN → execute in order
       → COMMIT, all under a deadline. Any failure rolls back before the
       error leaves this module.

Execution Flow (POST /transaction):
    ┌────────────┐   ┌────────────┐   ┌──────────────┐   ┌──────────┐
    │  Classify  │──▶│  Acquire   │──▶│ BEGIN        │──▶│ COMMIT   │
    │  (parser)  │   │  (pool)    │   │ stmt 0..n-1  │   │ release  │
    └────────────┘   └────────────┘   └──────────────┘   └──────────┘
         │                                   │
         ▼                                   ▼
    Forbidden/Validation              ROLLBACK → StorageError(failed_index)
    (nothing executed)                deadline → ROLLBACK → DeadlineExceeded

Connection hygiene:
    If the rollback itself fails (typically after a cancelled statement) the
    connection is invalidated rather than returned to the pool in an unknown
    state. Release always happens in `finally`.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncTransaction

from buzzsync.database import ConnectionPoolManager
from buzzsync.exceptions import DeadlineExceeded, StorageError, ValidationError
from buzzsync.services.statement_parser import (
    ParsedStatement,
    StatementKind,
    parse_batch,
    parse_statement,
)

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    index: int
    kind: str
    row_count: int
    rows: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class TransactionResult:
    results: List[OperationResult]
    committed: bool
    timestamp: datetime


@dataclass
class QueryResult:
    rows: List[Dict[str, Any]]
    row_count: int
    timestamp: datetime


class _Progress:
    """Index of the statement currently executing; None outside statements."""

    __slots__ = ("current",)

    def __init__(self) -> None:
        self.current: Optional[int] = None


class TransactionGateway:
    """
    Atomic batch executor on top of the connection pool.

    Responsibilities:
        - execute():   validated multi-statement batch in one transaction
        - run_query(): single SELECT in a transaction that is always rolled back

    Error Handling Strategy:
        Classification errors are raised before a connection is acquired.
        Execution errors are wrapped in StorageError carrying only the failing
        index, the rollback flag and the driver exception class name; the
        statement text and parameter values are never logged or returned.
    """

    def __init__(
        self,
        pool: ConnectionPoolManager,
        max_operations: int = 50,
        timeout_seconds: float = 30.0,
    ):
        self.pool = pool
        self.max_operations = max_operations
        self.timeout_seconds = timeout_seconds

    def _deadline(self, timeout_ms: Optional[int]) -> float:
        if timeout_ms is None:
            return self.timeout_seconds
        if timeout_ms <= 0:
            raise ValidationError(message="timeout_ms must be positive", field="timeout_ms")
        return min(timeout_ms / 1000.0, self.timeout_seconds)

    async def execute(
        self,
        operations: Sequence[Tuple[str, Optional[Sequence[Any]]]],
        timeout_ms: Optional[int] = None,
    ) -> TransactionResult:
        """
        Run a batch of (sql, params) pairs atomically.

        Args:
            operations: Ordered statement/parameter pairs; `$n` refers to params[n-1]
            timeout_ms: Optional client deadline, capped at the server maximum

        Returns:
            TransactionResult with one OperationResult per operation, in order

        Raises:
            ValidationError:    empty/oversized batch, malformed entry
            ForbiddenOperation: any statement outside select/insert/update
            PoolExhausted:      no connection within the pool timeout
            StorageError:       a statement failed; transaction rolled back
            DeadlineExceeded:   deadline hit; transaction rolled back
        """
        if not operations:
            raise ValidationError(message="At least one operation is required", field="operations")
        if len(operations) > self.max_operations:
            raise ValidationError(
                message=f"A batch may contain at most {self.max_operations} operations",
                field="operations",
                context={"submitted": len(operations), "max_operations": self.max_operations},
            )

        statements = parse_batch(operations)
        deadline = self._deadline(timeout_ms)

        start = time.perf_counter()
        results = await self._run(statements, deadline, commit=True)
        logger.info(
            "Transaction committed: %d operation(s) [%s] in %.1fms",
            len(results),
            ",".join(r.kind for r in results),
            (time.perf_counter() - start) * 1000,
        )
        return TransactionResult(
            results=results,
            committed=True,
            timestamp=datetime.now(timezone.utc),
        )

    async def run_query(
        self,
        sql: str,
        params: Optional[Sequence[Any]] = None,
        timeout_ms: Optional[int] = None,
    ) -> QueryResult:
        """Run a single SELECT. Anything else is a ForbiddenOperation."""
        statement = parse_statement(sql, params, index=0, allowed={StatementKind.SELECT})
        deadline = self._deadline(timeout_ms)

        results = await self._run([statement], deadline, commit=False)
        return QueryResult(
            rows=results[0].rows,
            row_count=results[0].row_count,
            timestamp=datetime.now(timezone.utc),
        )

    # ── Execution ─────────────────────────────────────────────────────────

    async def _run(
        self,
        statements: List[ParsedStatement],
        deadline: float,
        commit: bool,
    ) -> List[OperationResult]:
        progress = _Progress()
        conn = await self.pool.acquire()
        trans: Optional[AsyncTransaction] = None
        try:
            try:
                trans = await conn.begin()
                return await asyncio.wait_for(
                    self._execute_all(conn, trans, statements, progress, commit),
                    timeout=deadline,
                )
            except asyncio.TimeoutError:
                await self._rollback(conn, trans)
                logger.warning(
                    "Transaction deadline of %.3fs exceeded at operation %s; rolled back",
                    deadline,
                    progress.current,
                )
                raise DeadlineExceeded(timeout_seconds=deadline, failed_index=progress.current)
            except sa_exc.SQLAlchemyError as e:
                await self._rollback(conn, trans)
                logger.warning(
                    "Transaction failed at operation %s (%s); rolled back",
                    progress.current,
                    type(e).__name__,
                )
                raise StorageError(
                    message="The transaction failed and was rolled back.",
                    failed_index=progress.current,
                    rolled_back=True,
                    context={"reason": type(e).__name__},
                ) from e
        finally:
            await self.pool.release(conn)

    async def _execute_all(
        self,
        conn: AsyncConnection,
        trans: AsyncTransaction,
        statements: List[ParsedStatement],
        progress: _Progress,
        commit: bool,
    ) -> List[OperationResult]:
        results: List[OperationResult] = []
        for stmt in statements:
            progress.current = stmt.index
            result = await conn.execute(stmt.clause, stmt.params)
            if result.returns_rows:
                rows = [dict(row) for row in result.mappings().all()]
                row_count = len(rows)
            else:
                rows = []
                row_count = max(result.rowcount, 0)
            results.append(
                OperationResult(index=stmt.index, kind=stmt.kind.value, row_count=row_count, rows=rows)
            )

        progress.current = None
        if commit:
            await trans.commit()
        else:
            await trans.rollback()
        return results

    async def _rollback(self, conn: AsyncConnection, trans: Optional[AsyncTransaction]) -> None:
        if trans is None or not trans.is_active:
            return
        try:
            await trans.rollback()
        except Exception:
            logger.error("Rollback failed; invalidating connection", exc_info=True)
            await conn.invalidate()
