"""
BuzzSync Backend — Transaction Gateway Tests
==============================================

What we test:
    ✅ insert then select in one batch sees the inserted row
    ✅ a failure at index k rolls back everything before it
    ✅ a forbidden statement anywhere means nothing executes
    ✅ deadline expiry rolls back and releases the connection
    ✅ a failed rollback invalidates the connection
    ✅ run_query is SELECT-only and never commits
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy import exc as sa_exc
from sqlalchemy import text

from buzzsync.exceptions import DeadlineExceeded, ForbiddenOperation, StorageError, ValidationError
from buzzsync.services.transaction_service import TransactionGateway

INSERT_VENUE = (
    "INSERT INTO venues (id, name, venue_type, latitude, longitude, is_active, created_at, updated_at) "
    "VALUES ($1, $2, $3, $4, $5, $6, $7, $8)"
)
NOW = "2025-01-01 12:00:00.000000"


async def count_venues(pool) -> int:
    async with pool.connection() as conn:
        return (await conn.execute(text("SELECT COUNT(*) FROM venues"))).scalar_one()


def select_result(rows):
    result = MagicMock()
    result.returns_rows = True
    result.mappings.return_value.all.return_value = rows
    return result


class TestTransactionExecution:
    """Storage-backed batch behaviour."""

    @pytest.mark.asyncio
    async def test_insert_then_select_returns_inserted_row(self, pool):
        gateway = TransactionGateway(pool)
        venue_id = uuid4().hex

        result = await gateway.execute([
            (INSERT_VENUE, [venue_id, "Aurora", "bar", 37.78825, -122.4324, True, NOW, NOW]),
            ("SELECT id, name, venue_type FROM venues WHERE id = $1", [venue_id]),
        ])

        assert result.committed is True
        assert len(result.results) == 2
        assert result.results[0].kind == "insert"
        assert result.results[0].row_count == 1
        assert result.results[1].kind == "select"
        assert result.results[1].rows == [{"id": venue_id, "name": "Aurora", "venue_type": "bar"}]
        assert result.timestamp.tzinfo is not None
        assert await count_venues(pool) == 1

    @pytest.mark.asyncio
    async def test_update_reports_affected_rows(self, pool, seed):
        venue = await seed("venues", name="Old", venue_type="bar")
        gateway = TransactionGateway(pool)

        result = await gateway.execute([
            ("UPDATE venues SET name = $1 WHERE id = $2", ["New", venue["id"].hex]),
        ])

        assert result.results[0].row_count == 1
        assert result.results[0].rows == []

    @pytest.mark.asyncio
    async def test_failure_rolls_back_earlier_operations(self, pool):
        gateway = TransactionGateway(pool)

        with pytest.raises(StorageError) as exc_info:
            await gateway.execute([
                (INSERT_VENUE, [uuid4().hex, "Kept?", "bar", 0.0, 0.0, True, NOW, NOW]),
                ("INSERT INTO venues (id, name, venue_type) VALUES ($1, $2, $3)", [uuid4().hex, None, "bar"]),
                ("SELECT 1", []),
            ])

        assert exc_info.value.failed_index == 1
        assert exc_info.value.rolled_back is True
        assert await count_venues(pool) == 0
        assert pool.stats().in_use == 0

    @pytest.mark.asyncio
    async def test_forbidden_operation_executes_nothing(self, pool):
        gateway = TransactionGateway(pool)

        with pytest.raises(ForbiddenOperation) as exc_info:
            await gateway.execute([
                (INSERT_VENUE, [uuid4().hex, "Never", "bar", 0.0, 0.0, True, NOW, NOW]),
                ("DELETE FROM venues", []),
            ])

        assert exc_info.value.operation_index == 1
        assert await count_venues(pool) == 0


class TestTransactionValidation:

    @pytest.mark.asyncio
    async def test_delete_never_acquires_a_connection(self, mock_pool):
        gateway = TransactionGateway(mock_pool)

        with pytest.raises(ForbiddenOperation):
            await gateway.execute([("SELECT 1", []), ("DELETE FROM venues", [])])

        mock_pool.acquire.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_batch_rejected(self, mock_pool):
        with pytest.raises(ValidationError):
            await TransactionGateway(mock_pool).execute([])

    @pytest.mark.asyncio
    async def test_oversized_batch_rejected(self, mock_pool):
        gateway = TransactionGateway(mock_pool, max_operations=2)
        with pytest.raises(ValidationError):
            await gateway.execute([("SELECT 1", [])] * 3)
        mock_pool.acquire.assert_not_called()

    def test_client_deadline_is_capped(self, mock_pool):
        gateway = TransactionGateway(mock_pool, timeout_seconds=30)
        assert gateway._deadline(None) == 30
        assert gateway._deadline(500) == 0.5
        assert gateway._deadline(120_000) == 30


class TestTransactionFailureHandling:
    """Connection hygiene with mocked connections."""

    @pytest.mark.asyncio
    async def test_deadline_rolls_back_and_releases(self, mock_pool, mock_connection):
        async def slow_execute(*args, **kwargs):
            await asyncio.sleep(5)

        mock_connection.execute = AsyncMock(side_effect=slow_execute)
        gateway = TransactionGateway(mock_pool, timeout_seconds=0.05)

        with pytest.raises(DeadlineExceeded) as exc_info:
            await gateway.execute([("SELECT 1", []), ("SELECT 2", [])])

        assert exc_info.value.failed_index == 0
        assert exc_info.value.rolled_back is True
        mock_connection.trans.rollback.assert_awaited_once()
        mock_connection.trans.commit.assert_not_awaited()
        mock_pool.release.assert_awaited_once_with(mock_connection)

    @pytest.mark.asyncio
    async def test_failed_rollback_invalidates_connection(self, mock_pool, mock_connection):
        mock_connection.execute = AsyncMock(
            side_effect=sa_exc.OperationalError("SELECT 1", {}, Exception("connection reset"))
        )
        mock_connection.trans.rollback = AsyncMock(side_effect=RuntimeError("rollback failed"))

        with pytest.raises(StorageError) as exc_info:
            await TransactionGateway(mock_pool).execute([("SELECT 1", [])])

        assert exc_info.value.failed_index == 0
        mock_connection.invalidate.assert_awaited_once()
        mock_pool.release.assert_awaited_once_with(mock_connection)

    @pytest.mark.asyncio
    async def test_failed_begin_is_a_storage_error(self, mock_pool, mock_connection):
        mock_connection.begin = AsyncMock(
            side_effect=sa_exc.OperationalError("BEGIN", {}, Exception("server closed the connection"))
        )

        with pytest.raises(StorageError) as exc_info:
            await TransactionGateway(mock_pool).execute([("SELECT 1", [])])

        assert exc_info.value.failed_index is None
        assert exc_info.value.context["reason"] == "OperationalError"
        mock_connection.execute.assert_not_awaited()
        mock_connection.trans.rollback.assert_not_awaited()
        mock_pool.release.assert_awaited_once_with(mock_connection)

    @pytest.mark.asyncio
    async def test_success_commits_once(self, mock_pool, mock_connection):
        mock_connection.execute = AsyncMock(return_value=select_result([{"x": 1}]))

        result = await TransactionGateway(mock_pool).execute([("SELECT 1 AS x", [])])

        assert result.results[0].rows == [{"x": 1}]
        mock_connection.trans.commit.assert_awaited_once()
        mock_connection.trans.rollback.assert_not_awaited()


class TestRunQuery:

    @pytest.mark.asyncio
    async def test_select_returns_rows(self, pool, seed):
        await seed("venues", name="Aurora", venue_type="bar", updated_at=datetime(2025, 1, 1, tzinfo=timezone.utc))

        result = await TransactionGateway(pool).run_query(
            "SELECT name FROM venues WHERE venue_type = $1", ["bar"]
        )

        assert result.rows == [{"name": "Aurora"}]
        assert result.row_count == 1

    @pytest.mark.asyncio
    async def test_writes_rejected(self, mock_pool):
        gateway = TransactionGateway(mock_pool)
        with pytest.raises(ForbiddenOperation):
            await gateway.run_query("UPDATE venues SET name = 'x'")
        mock_pool.acquire.assert_not_called()

    @pytest.mark.asyncio
    async def test_query_is_always_rolled_back(self, mock_pool, mock_connection):
        mock_connection.execute = AsyncMock(return_value=select_result([]))

        await TransactionGateway(mock_pool).run_query("SELECT 1")

        mock_connection.trans.rollback.assert_awaited_once()
        mock_connection.trans.commit.assert_not_awaited()
