"""Unit tests for database operations.

Tests verify that:
- Schema is created correctly
- Orders and related rows are written in one transaction
- Duplicate order IDs are refused
- Existence checks cover IDs and numbers
- Failed order syncs back off and resolve
- Sync logs record start and outcome
- Connections keep their session across credential updates
"""

import pytest
import sqlite3
from datetime import datetime, timedelta, timezone

from order_sync.assembler import assemble
from order_sync.database import Database, DuplicateOrderError, PersistenceError
from order_sync.models import (
    BulkImportRecordSet,
    CanonicalOrder,
    LinnworksConnection,
    SessionToken,
)
from order_sync.normalizer import normalize_order

from tests.fixtures.linnworks_fixtures import make_nested_order, make_open_order


NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestDatabaseInit:
    """Tests for database initialization."""

    def test_creates_database_file(self, temp_db_path):
        """Test database file is created."""
        Database(temp_db_path)

        assert temp_db_path.exists()

    def test_creates_tables(self, temp_db_path):
        """Test all tables are created."""
        Database(temp_db_path)

        with sqlite3.connect(temp_db_path) as conn:
            tables = {
                row[0] for row in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table'"
                ).fetchall()
            }

        assert {
            "linnworks_connections",
            "orders",
            "order_items",
            "order_shipping",
            "order_notes",
            "order_properties",
            "order_identifiers",
            "sync_checkpoints",
            "failed_order_syncs",
            "sync_logs",
        } <= tables

    def test_creates_parent_directory(self, temp_db_path):
        """Test a missing parent directory is created."""
        nested = temp_db_path.parent / "deeper" / "orders.db"

        Database(nested)

        assert nested.exists()

    def test_reopen_is_safe(self, temp_db_path):
        """Test opening an existing database keeps its data."""
        db = Database(temp_db_path)
        db.write_record_set(assemble(CanonicalOrder(number=1)))

        assert Database(temp_db_path).count_orders() == 1


class TestWriteRecordSet:
    """Tests for writing orders."""

    def test_write_order_with_related_rows(self, database):
        """Test the order and every related row are stored and linked."""
        order_pk = database.write_record_set(assemble(normalize_order(make_nested_order())))

        stored = database.get_order(order_id="9b1d2c3e-0000-4000-8000-000000000009")
        assert stored["id"] == order_pk
        assert stored["order_number"] == 20002
        assert stored["created_at"] is not None
        assert len(database.get_related_rows("order_items", order_pk)) == 2
        assert len(database.get_related_rows("order_shipping", order_pk)) == 1
        assert len(database.get_related_rows("order_notes", order_pk)) == 1
        assert len(database.get_related_rows("order_properties", order_pk)) == 1
        assert len(database.get_related_rows("order_identifiers", order_pk)) == 1

    def test_duplicate_order_id(self, database):
        """Test the same Linnworks ID cannot be stored twice."""
        record_set = assemble(normalize_order(make_open_order()))
        database.write_record_set(record_set)

        with pytest.raises(DuplicateOrderError):
            database.write_record_set(record_set)

        assert database.count_orders() == 1

    def test_orders_without_id_can_coexist(self, database):
        """Test several orders without a Linnworks ID are allowed."""
        database.write_record_set(assemble(CanonicalOrder(number=1)))
        database.write_record_set(assemble(CanonicalOrder(number=2)))

        assert database.count_orders() == 2

    def test_failed_child_rolls_back_order(self, database):
        """Test a bad related row leaves no partial order behind."""
        record_set = BulkImportRecordSet(
            order=assemble(CanonicalOrder(order_id="partial", number=9)).order,
            items=[{"order_id": None, "no_such_column": 1}],
        )

        with pytest.raises(PersistenceError):
            database.write_record_set(record_set)

        assert database.order_exists(order_id="partial") is False
        assert database.count_orders() == 0

    def test_number_too_large_for_sqlite(self, database):
        """Test an order number beyond the INTEGER range is a PersistenceError."""
        order_row = assemble(CanonicalOrder(order_id="huge", number=1)).order
        record_set = BulkImportRecordSet(order={**order_row, "order_number": 10 ** 20})

        with pytest.raises(PersistenceError):
            database.write_record_set(record_set)

        assert database.count_orders() == 0

    def test_unknown_related_table(self, database):
        """Test related row lookups are limited to the order tables."""
        with pytest.raises(ValueError):
            database.get_related_rows("sync_logs", 1)


class TestExistingOrders:
    """Tests for existence checks."""

    def test_find_existing_order_keys(self, database):
        """Test IDs and numbers are looked up separately."""
        database.write_record_set(assemble(CanonicalOrder(order_id="a", number=1)))
        database.write_record_set(assemble(CanonicalOrder(number=2)))

        ids, numbers = database.find_existing_order_keys(["a", "b"], [2, 3])

        assert ids == {"a"}
        assert numbers == {2}

    def test_find_existing_many_keys(self, database):
        """Test lookups beyond one statement's parameter chunk."""
        database.write_record_set(assemble(CanonicalOrder(order_id="id-700", number=700)))

        ids, numbers = database.find_existing_order_keys(
            [f"id-{n}" for n in range(1200)], list(range(1200))
        )

        assert ids == {"id-700"}
        assert numbers == {700}

    def test_order_exists(self, database):
        """Test existence by either key."""
        database.write_record_set(assemble(CanonicalOrder(order_id="a", number=1)))

        assert database.order_exists(order_id="a") is True
        assert database.order_exists(order_number=1) is True
        assert database.order_exists(order_id="z", order_number=99) is False
        assert database.order_exists() is False

    def test_mark_order_processed(self, database):
        """Test an open order moves to processed exactly once."""
        database.write_record_set(assemble(CanonicalOrder(order_id="a", number=1)))

        assert database.mark_order_processed("a", 1, NOW, "processed") is True
        assert database.mark_order_processed("a", 1, NOW, "processed") is False

        stored = database.get_order(order_id="a")
        assert stored["is_processed"] == 1
        assert stored["is_open"] == 0
        assert stored["status"] == "processed"

    def test_mark_order_processed_by_number(self, database):
        """Test the number is used when there is no ID."""
        database.write_record_set(assemble(CanonicalOrder(number=5)))

        assert database.mark_order_processed(None, 5, NOW, "processed") is True
        assert database.mark_order_processed(None, None, NOW, "processed") is False

    def test_mark_number_only_order_processed_with_id(self, database):
        """Test an order stored by number alone is promoted and takes on its ID."""
        database.write_record_set(assemble(CanonicalOrder(number=12345)))

        assert database.mark_order_processed("now-has-id", 12345, NOW, "processed") is True

        stored = database.get_order(order_id="now-has-id")
        assert stored["order_number"] == 12345
        assert stored["is_processed"] == 1
        assert database.count_orders() == 1

    def test_mark_processed_leaves_other_ids_alone(self, database):
        """Test a number match never overwrites another order's ID."""
        database.write_record_set(assemble(CanonicalOrder(order_id="first", number=12345)))

        assert database.mark_order_processed("second", 12345, NOW, "processed") is False
        assert database.get_order(order_id="first")["is_processed"] == 0

    def test_existing_keys_ignore_out_of_range_numbers(self, database):
        """Test a number SQLite cannot hold is simply not found."""
        database.write_record_set(assemble(CanonicalOrder(order_id="a", number=1)))

        found_ids, found_numbers = database.find_existing_order_keys(["a"], [1, 10 ** 20])

        assert found_ids == {"a"}
        assert found_numbers == {1}


class TestFailedOrderSyncs:
    """Tests for failed order sync records."""

    def test_record_first_failure(self, database):
        """Test a first failure is retried after an hour."""
        record = database.record_failed_sync(
            order_type="open_orders",
            failure_reason="persistence_error",
            error_message="disk full",
            order_data={"pkOrderID": "a"},
            order_id="a",
            now=NOW,
        )

        assert record.attempt_count == 1
        assert record.next_retry_at == NOW + timedelta(hours=1)
        assert record.order_data == {"pkOrderID": "a"}
        assert record.is_resolved is False

    def test_repeat_failure_reuses_record(self, database):
        """Test a second failure of the same order counts another attempt."""
        first = database.record_failed_sync(
            "open_orders", "persistence_error", "one", {}, order_id="a", now=NOW
        )
        second = database.record_failed_sync(
            "open_orders", "persistence_error", "two", {}, order_id="a", now=NOW
        )

        assert second.id == first.id
        assert second.attempt_count == 2
        assert second.next_retry_at == NOW + timedelta(hours=1)
        assert second.error_message == "two"
        assert database.count_pending_failed_syncs() == 1

    def test_backoff_grows(self, database):
        """Test retry waits of 1h, 6h and then 24h."""
        record = database.record_failed_sync(
            "open_orders", "persistence_error", "x", {}, order_number=7, now=NOW
        )

        second = database.record_retry_failure(record.id, "x", now=NOW)
        third = database.record_retry_failure(record.id, "x", now=NOW)
        fourth = database.record_retry_failure(record.id, "x", now=NOW)

        assert second.next_retry_at == NOW + timedelta(hours=1)
        assert third.next_retry_at == NOW + timedelta(hours=6)
        assert fourth.next_retry_at == NOW + timedelta(hours=24)
        assert fourth.attempt_count == 4
        assert fourth.has_exceeded_max_retries is True

    def test_ready_for_retry(self, database):
        """Test only due, unresolved records are returned."""
        due = database.record_failed_sync(
            "open_orders", "persistence_error", "x", {}, order_id="due", now=NOW - timedelta(hours=2)
        )
        database.record_failed_sync(
            "open_orders", "persistence_error", "x", {}, order_id="later", now=NOW
        )
        resolved = database.record_failed_sync(
            "open_orders", "persistence_error", "x", {}, order_id="done", now=NOW - timedelta(hours=2)
        )
        database.mark_failed_sync_resolved(resolved.id, now=NOW)

        ready = database.get_failed_syncs_ready_for_retry(now=NOW)

        assert [r.id for r in ready] == [due.id]
        assert database.get_failed_sync(resolved.id).resolved_at == NOW

    def test_retry_failure_unknown_record(self, database):
        """Test retrying a missing record fails clearly."""
        with pytest.raises(PersistenceError):
            database.record_retry_failure(999, "x")


class TestSyncLogs:
    """Tests for sync logs."""

    def test_start_and_finish(self, database):
        """Test a log records its outcome and duration."""
        log_id = database.start_sync_log("open_orders", metadata={"window_start": "x"}, now=NOW)
        database.finish_sync_log(
            log_id,
            "completed",
            total_fetched=10,
            total_created=8,
            total_skipped=2,
            now=NOW + timedelta(seconds=125),
        )

        [entry] = database.get_sync_logs()
        assert entry.status == "completed"
        assert entry.total_created == 8
        assert entry.duration_for_humans == "2 minutes 5 seconds"
        assert entry.success_rate == 100.0

    def test_invalid_final_status(self, database):
        """Test a log can only finish as completed or failed."""
        log_id = database.start_sync_log("open_orders")

        with pytest.raises(ValueError):
            database.finish_sync_log(log_id, "started")

    def test_filter_by_type_newest_first(self, database):
        """Test logs are listed newest first and can be filtered."""
        database.start_sync_log("open_orders", now=NOW)
        database.start_sync_log("processed_orders", now=NOW + timedelta(minutes=1))
        database.start_sync_log("open_orders", now=NOW + timedelta(minutes=2))

        logs = database.get_sync_logs(sync_type="open_orders")

        assert [log.started_at for log in logs] == [NOW + timedelta(minutes=2), NOW]


class TestConnections:
    """Tests for connection storage."""

    def test_upsert_keeps_session(self, session_database, mock_settings):
        """Test updating credentials keeps the stored session."""
        session_database.upsert_connection(LinnworksConnection(
            account_id=mock_settings.linnworks_account_id,
            application_id="new-app",
            application_secret="new-secret",
            installation_token="new-token",
        ))

        stored = session_database.get_connection(mock_settings.linnworks_account_id)
        assert stored.application_id == "new-app"
        assert stored.session_token == "session-token-123"
        assert stored.status == "active"

    def test_save_session(self, connected_database):
        """Test saving a session activates the connection."""
        connected_database.save_session("test-account", SessionToken(
            token="tok", server="https://eu-ext.linnworks.net", expires_at=NOW
        ))

        stored = connected_database.get_connection("test-account")
        assert stored.session.token == "tok"
        assert stored.session.expires_at == NOW
        assert stored.status == "active"

    def test_missing_connection(self, database):
        """Test an unknown account returns None."""
        assert database.get_connection("nobody") is None


class TestStats:
    """Tests for statistics."""

    def test_get_stats(self, database):
        """Test order counts and pending failures."""
        database.write_record_set(assemble(CanonicalOrder(order_id="a", number=1)))
        database.write_record_set(assemble(CanonicalOrder(order_id="b", number=2, processed_date=NOW)))
        database.record_failed_sync("open_orders", "persistence_error", "x", {}, order_id="c")

        stats = database.get_stats()

        assert stats["orders"] == {"total": 2, "open": 1, "processed": 1}
        assert stats["pending_failed_syncs"] == 1
