"""Unit tests for the sync engine.

Tests verify that:
- A sync run imports new orders and closes its checkpoint and log
- Runs that are not due are skipped unless forced
- A run in progress blocks a second one
- Run failures mark the checkpoint and log failed
- Dry runs write nothing
- Single order failures are recorded and the batch carries on
- Stored open orders are promoted when they arrive processed
- Failed orders are retried with backoff
"""

import pytest
from datetime import datetime, timedelta, timezone

from order_sync.checkpoints import Checkpoint
from order_sync.constants import (
    CHECKPOINT_COMPLETED,
    CHECKPOINT_FAILED,
    CHECKPOINT_IN_PROGRESS,
    CHECKPOINT_PENDING,
    SYNC_OPEN_ORDERS,
    SYNC_PROCESSED_ORDERS,
)
from order_sync.database import PersistenceError
from order_sync.linnworks_client import AuthenticationError, TransientFetchError
from order_sync.models import ProcessedOrderFilters
from order_sync.sync_engine import SyncEngine, SyncInProgressError, SyncResult

from tests.fixtures.linnworks_fixtures import (
    make_open_order,
    make_open_orders_batch,
    make_processed_order,
)


def processed_page(orders):
    return {"Data": orders, "TotalEntries": len(orders), "TotalPages": 1}


@pytest.fixture
def client(mock_linnworks_client_factory):
    client = mock_linnworks_client_factory()
    client.get_view_stats.return_value = None
    client.get_open_orders.return_value = []
    client.search_processed_orders.return_value = processed_page([])
    return client


@pytest.fixture
def engine(mock_settings, database, client, mock_session_manager):
    return SyncEngine(
        settings=mock_settings,
        database=database,
        client=client,
        session_manager=mock_session_manager,
    )


def checkpoint_of(database, sync_type=SYNC_OPEN_ORDERS):
    return Checkpoint.get_or_create(database, sync_type)


class TestRunSync:
    """Tests for a normal sync run."""

    @pytest.mark.asyncio
    async def test_imports_new_orders(self, engine, client, database):
        """Test fetched orders are stored and counted."""
        client.get_open_orders.return_value = make_open_orders_batch(3)

        result = await engine.run_sync(SYNC_OPEN_ORDERS)

        assert result.success is True
        assert result.fetched == 3
        assert result.created == 3
        assert database.count_orders() == 3

    @pytest.mark.asyncio
    async def test_checkpoint_and_log_completed(self, engine, client, database):
        """Test the checkpoint completes and the sync log records the run."""
        client.get_open_orders.return_value = make_open_orders_batch(2)

        result = await engine.run_sync(SYNC_OPEN_ORDERS)

        checkpoint = checkpoint_of(database)
        assert checkpoint.status == CHECKPOINT_COMPLETED
        assert checkpoint.last_sync_at == result.completed_at
        assert checkpoint.state.records_created == 2
        [log] = database.get_sync_logs()
        assert log.status == "completed"
        assert log.total_fetched == 2
        assert log.total_created == 2

    @pytest.mark.asyncio
    async def test_first_window_starts_a_week_back(self, engine, client):
        """Test a never-completed checkpoint syncs the last seven days."""
        result = await engine.run_sync(SYNC_OPEN_ORDERS)

        assert result.window_end - result.window_start == timedelta(days=7)
        kwargs = client.get_open_orders.call_args.kwargs
        assert kwargs["date_from"] == result.window_start

    @pytest.mark.asyncio
    async def test_first_window_uses_configured_lookback(self, engine, client, mock_settings):
        """Test the lookback setting sets the first window start."""
        mock_settings.processed_lookback_days = 3

        result = await engine.run_sync(SYNC_OPEN_ORDERS)

        assert result.window_end - result.window_start == timedelta(days=3)

    @pytest.mark.asyncio
    async def test_next_window_starts_at_last_sync(self, engine, database):
        """Test the second window starts where the first completed."""
        first = await engine.run_sync(SYNC_OPEN_ORDERS)

        second = await engine.run_sync(SYNC_OPEN_ORDERS, force=True)

        assert second.window_start == first.completed_at

    @pytest.mark.asyncio
    async def test_window_override(self, engine, client):
        """Test an explicit window replaces the checkpoint window."""
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        end = datetime(2024, 1, 2, tzinfo=timezone.utc)

        result = await engine.run_sync(SYNC_OPEN_ORDERS, window_start=start, window_end=end)

        assert (result.window_start, result.window_end) == (start, end)
        kwargs = client.get_open_orders.call_args.kwargs
        assert (kwargs["date_from"], kwargs["date_to"]) == (start, end)

    @pytest.mark.asyncio
    async def test_processed_sync_with_filters(self, engine, client, database):
        """Test processed orders are fetched with the given filters."""
        client.search_processed_orders.return_value = processed_page([make_processed_order()])
        filters = ProcessedOrderFilters(channel="EBAY")

        result = await engine.run_sync(SYNC_PROCESSED_ORDERS, filters=filters)

        assert result.created == 1
        assert client.search_processed_orders.call_args.kwargs["filters"] is filters
        stored = database.get_order(order_id="3a6f8c2e-0000-4000-8000-000000000001")
        assert stored["is_processed"] == 1

    @pytest.mark.asyncio
    async def test_unknown_sync_type(self, engine):
        """Test an unknown sync type is rejected."""
        with pytest.raises(ValueError):
            await engine.run_sync("customers")


class TestScheduling:
    """Tests for interval and in-progress checks."""

    @pytest.mark.asyncio
    async def test_not_due_skipped(self, engine, client):
        """Test a run inside the interval is skipped."""
        await engine.run_sync(SYNC_OPEN_ORDERS)
        client.get_open_orders.reset_mock()

        result = await engine.run_sync(SYNC_OPEN_ORDERS)

        assert result.not_due is True
        client.get_open_orders.assert_not_called()

    @pytest.mark.asyncio
    async def test_force_ignores_interval(self, engine, database):
        """Test force runs even inside the interval."""
        await engine.run_sync(SYNC_OPEN_ORDERS)

        result = await engine.run_sync(SYNC_OPEN_ORDERS, force=True)

        assert result.not_due is False
        assert len(database.get_sync_logs()) == 2

    @pytest.mark.asyncio
    async def test_in_progress_blocks(self, engine, database):
        """Test a live run blocks a second one, even when forced."""
        checkpoint_of(database).start_sync()

        with pytest.raises(SyncInProgressError):
            await engine.run_sync(SYNC_OPEN_ORDERS, force=True)

        assert checkpoint_of(database).status == CHECKPOINT_IN_PROGRESS
        assert database.get_sync_logs() == []

    @pytest.mark.asyncio
    async def test_stale_run_replaced(self, engine, database):
        """Test a stale in-progress run no longer blocks."""
        checkpoint_of(database).start_sync(now=datetime.now(timezone.utc) - timedelta(hours=2))

        result = await engine.run_sync(SYNC_OPEN_ORDERS)

        assert result.success is True
        assert checkpoint_of(database).status == CHECKPOINT_COMPLETED


class TestRunFailures:
    """Tests for runs that fail."""

    @pytest.mark.asyncio
    async def test_authentication_failure(self, engine, database, mock_session_manager):
        """Test an authentication failure fails the checkpoint and log."""
        mock_session_manager.get_valid_token.side_effect = AuthenticationError("refused")

        with pytest.raises(AuthenticationError):
            await engine.run_sync(SYNC_OPEN_ORDERS)

        checkpoint = checkpoint_of(database)
        assert checkpoint.status == CHECKPOINT_FAILED
        assert "refused" in checkpoint.state.error_message
        [log] = database.get_sync_logs()
        assert log.status == "failed"
        assert "refused" in log.error_message

    @pytest.mark.asyncio
    async def test_failed_run_keeps_window(self, engine, client, database):
        """Test a failed run does not move last_sync_at."""
        before = checkpoint_of(database).last_sync_at
        client.get_view_stats.side_effect = TransientFetchError("down")

        with pytest.raises(TransientFetchError):
            await engine.run_sync(SYNC_OPEN_ORDERS)

        assert checkpoint_of(database).last_sync_at == before

    @pytest.mark.asyncio
    async def test_failed_pages_still_complete(self, engine, client, database, mock_settings):
        """Test skipped pages are reported but the run completes."""
        page_size = mock_settings.page_size
        client.get_open_orders.side_effect = [
            make_open_orders_batch(page_size, start_number=1),
            TransientFetchError("page 2 down"),
            make_open_orders_batch(1, start_number=5000),
        ]

        result = await engine.run_sync(SYNC_OPEN_ORDERS)

        assert result.failed_pages == [2]
        assert result.created == page_size + 1
        checkpoint = checkpoint_of(database)
        assert checkpoint.status == CHECKPOINT_COMPLETED
        assert checkpoint.state.metadata["failed_pages"] == [2]


class TestDryRun:
    """Tests for dry runs."""

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, mock_settings, database, client, mock_session_manager):
        """Test a dry run counts orders but stores no orders, logs or checkpoint changes."""
        engine = SyncEngine(
            mock_settings, database, client,
            session_manager=mock_session_manager, dry_run=True,
        )
        client.get_open_orders.return_value = make_open_orders_batch(2) + [
            make_open_order(order_id=None, number=None)
        ]

        result = await engine.run_sync(SYNC_OPEN_ORDERS)

        assert result.created == 2
        assert result.failed == 1
        assert database.count_orders() == 0
        assert database.count_pending_failed_syncs() == 0
        assert database.get_sync_logs() == []
        assert checkpoint_of(database).status == CHECKPOINT_PENDING

    def test_dry_run_from_settings(self, mock_settings, database, client, mock_session_manager):
        """Test the settings flag enables dry run."""
        mock_settings.dry_run = True

        engine = SyncEngine(mock_settings, database, client, session_manager=mock_session_manager)

        assert engine.dry_run is True


class TestImportOrders:
    """Tests for batch import."""

    def test_missing_identity_recorded(self, engine, database):
        """Test an order without identity fails and is kept for retry."""
        result = SyncResult(sync_type=SYNC_OPEN_ORDERS)

        engine.import_orders(
            [make_open_order(order_id=None, number=None), make_open_order()],
            SYNC_OPEN_ORDERS,
            result,
        )

        assert result.failed == 1
        assert result.created == 1
        [record] = database.get_failed_syncs_ready_for_retry(now=datetime.now(timezone.utc) + timedelta(hours=2))
        assert record.failure_reason == "missing_identifier"
        assert record.order_data["Source"] == "AMAZON"

    def test_batch_duplicates_skipped(self, engine, database):
        """Test a duplicate within the batch is stored once."""
        result = SyncResult(sync_type=SYNC_OPEN_ORDERS)

        engine.import_orders([make_open_order(), make_open_order()], SYNC_OPEN_ORDERS, result)

        assert result.created == 1
        assert result.skipped == 1
        assert database.count_orders() == 1

    def test_existing_open_order_skipped(self, engine, database):
        """Test an already stored open order is skipped."""
        engine.import_orders([make_open_order()], SYNC_OPEN_ORDERS, SyncResult(sync_type=SYNC_OPEN_ORDERS))
        result = SyncResult(sync_type=SYNC_OPEN_ORDERS)

        engine.import_orders([make_open_order()], SYNC_OPEN_ORDERS, result)

        assert result.skipped == 1
        assert result.created == 0

    def test_existing_order_promoted_to_processed(self, engine, database):
        """Test a stored open order arriving processed is updated."""
        engine.import_orders([make_open_order()], SYNC_OPEN_ORDERS, SyncResult(sync_type=SYNC_OPEN_ORDERS))
        result = SyncResult(sync_type=SYNC_PROCESSED_ORDERS)

        engine.import_orders([make_processed_order()], SYNC_PROCESSED_ORDERS, result)

        assert result.updated == 1
        stored = database.get_order(order_id="3a6f8c2e-0000-4000-8000-000000000001")
        assert stored["is_processed"] == 1
        assert stored["status"] == "processed"
        assert database.count_orders() == 1

    def test_persistence_error_recorded(self, engine, database, monkeypatch):
        """Test a write failure is recorded and the rest of the batch imported."""
        original = database.write_record_set

        def flaky_write(record_set):
            if record_set.order["order_number"] == 30000:
                raise PersistenceError("disk I/O error")
            return original(record_set)

        monkeypatch.setattr(database, "write_record_set", flaky_write)
        result = SyncResult(sync_type=SYNC_OPEN_ORDERS)

        engine.import_orders(make_open_orders_batch(3), SYNC_OPEN_ORDERS, result)

        assert result.failed == 1
        assert result.created == 2
        assert database.count_pending_failed_syncs() == 1
        assert any("disk I/O error" in error for error in result.errors)

    def test_number_too_large_does_not_stop_batch(self, engine, database):
        """Test an order whose only key is an oversized number fails alone."""
        result = SyncResult(sync_type=SYNC_OPEN_ORDERS)

        engine.import_orders(
            [
                make_open_order(order_id="good-1", number=1),
                make_open_order(order_id=None, number=10 ** 20),
                make_open_order(order_id="good-2", number=2),
            ],
            SYNC_OPEN_ORDERS,
            result,
        )

        assert result.created == 2
        assert result.failed == 1
        assert database.count_orders() == 2
        assert database.count_pending_failed_syncs() == 1

    def test_number_too_large_with_id_is_stored(self, engine, database):
        """Test an identified order with an oversized number is stored without it."""
        result = SyncResult(sync_type=SYNC_OPEN_ORDERS)

        engine.import_orders(
            [
                make_open_order(order_id="good-1", number=1),
                make_open_order(order_id="huge", number=10 ** 20),
                make_open_order(order_id="good-2", number=2),
            ],
            SYNC_OPEN_ORDERS,
            result,
        )

        assert result.created == 3
        assert result.failed == 0
        assert database.get_order(order_id="huge")["order_number"] is None


class TestRetryFailedSyncs:
    """Tests for retrying failed orders."""

    @pytest.mark.asyncio
    async def test_retry_imports_and_resolves(self, engine, database):
        """Test a retryable record is imported and resolved."""
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        record = database.record_failed_sync(
            SYNC_OPEN_ORDERS, "persistence_error", "disk I/O error",
            make_open_order(), order_id="3a6f8c2e-0000-4000-8000-000000000001", now=past,
        )

        result = await engine.retry_failed_syncs()

        assert result.created == 1
        assert database.get_failed_sync(record.id).is_resolved is True
        assert database.count_orders() == 1

    @pytest.mark.asyncio
    async def test_retry_still_failing(self, engine, database):
        """Test a record that still cannot be imported backs off again."""
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        record = database.record_failed_sync(
            SYNC_OPEN_ORDERS, "missing_identifier", "no id",
            make_open_order(order_id=None, number=None), now=past,
        )

        result = await engine.retry_failed_syncs()

        assert result.failed == 1
        assert result.success is False
        retried = database.get_failed_sync(record.id)
        assert retried.attempt_count == 2
        assert retried.is_resolved is False

    @pytest.mark.asyncio
    async def test_retry_already_stored(self, engine, database):
        """Test a record whose order was stored since is resolved."""
        engine.import_orders([make_open_order()], SYNC_OPEN_ORDERS, SyncResult(sync_type=SYNC_OPEN_ORDERS))
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        record = database.record_failed_sync(
            SYNC_OPEN_ORDERS, "persistence_error", "x",
            make_open_order(), order_id="3a6f8c2e-0000-4000-8000-000000000001", now=past,
        )

        result = await engine.retry_failed_syncs()

        assert result.skipped == 1
        assert database.get_failed_sync(record.id).is_resolved is True

    @pytest.mark.asyncio
    async def test_retry_not_due(self, engine, database):
        """Test records still backing off are left alone."""
        database.record_failed_sync(SYNC_OPEN_ORDERS, "persistence_error", "x", make_open_order(), order_id="a")

        result = await engine.retry_failed_syncs()

        assert result.fetched == 0


class TestRunAll:
    """Tests for running both sync types."""

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_other(self, engine, client, database):
        """Test the processed sync completes when the open sync fails."""
        client.get_view_stats.side_effect = TransientFetchError("down")
        client.search_processed_orders.return_value = processed_page([make_processed_order()])

        summary = await engine.run_all()

        assert SYNC_OPEN_ORDERS in summary.failures
        assert summary.results[SYNC_PROCESSED_ORDERS].created == 1
        assert summary.success is False
        assert any("down" in error for error in summary.total_errors)
        assert checkpoint_of(database, SYNC_PROCESSED_ORDERS).status == CHECKPOINT_COMPLETED


class TestVerifyConnection:
    """Tests for the connection check."""

    @pytest.mark.asyncio
    async def test_verify_connection(self, engine, client):
        """Test the session is checked against Linnworks."""
        client.check_connection.return_value = True

        assert await engine.verify_connection() is True
