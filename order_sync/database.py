"""SQLite database operations for imported orders and sync state.

Holds the imported orders with their related rows, one checkpoint per
sync type, the audit log of sync runs, failed order imports awaiting
retry, and the Linnworks connection with its current session.
"""

import sqlite3
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from contextlib import contextmanager

from .constants import (
    CHECKPOINT_PENDING,
    INITIAL_LOOKBACK_DAYS,
    SYNC_LOG_COMPLETED,
    SYNC_LOG_FAILED,
    SYNC_LOG_STARTED,
    failed_sync_backoff_hours,
)
from .models import (
    BulkImportRecordSet,
    FailedOrderSync,
    LinnworksConnection,
    SessionToken,
    SyncCheckpoint,
    SyncLogEntry,
    utc_now,
)

logger = logging.getLogger(__name__)

# SQLite limits the number of bound parameters per statement
_IN_CHUNK = 500


class PersistenceError(Exception):
    """Raised when an order cannot be written."""
    pass


class DuplicateOrderError(PersistenceError):
    """Raised when an order with the same Linnworks ID is already stored."""
    pass


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Store datetimes as fixed-width UTC ISO strings so they sort as text."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _chunks(values: List[Any], size: int = _IN_CHUNK) -> Iterable[List[Any]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


class Database:
    """SQLite database manager for orders and sync state."""

    SCHEMA = """
    -- Linnworks account credentials and current session
    CREATE TABLE IF NOT EXISTS linnworks_connections (
        account_id TEXT PRIMARY KEY,
        application_id TEXT NOT NULL,
        application_secret TEXT NOT NULL,
        installation_token TEXT NOT NULL,
        session_token TEXT,
        server_location TEXT,
        session_expires_at TIMESTAMP,
        status TEXT NOT NULL DEFAULT 'pending',
        is_active INTEGER NOT NULL DEFAULT 1,
        updated_at TIMESTAMP
    );

    -- Imported orders
    CREATE TABLE IF NOT EXISTS orders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        linnworks_order_id TEXT UNIQUE,
        order_number INTEGER,
        received_date TIMESTAMP,
        processed_date TIMESTAMP,
        paid_date TIMESTAMP,
        despatch_by_date TIMESTAMP,
        channel_name TEXT,
        subsource TEXT,
        currency TEXT,
        total_charge TEXT,
        postage_cost TEXT,
        postage_cost_ex_tax TEXT,
        tax TEXT,
        profit_margin TEXT,
        total_discount TEXT,
        country_tax_rate TEXT,
        conversion_rate TEXT,
        items_value TEXT,
        total_profit TEXT,
        status TEXT NOT NULL,
        status_code INTEGER,
        is_open INTEGER NOT NULL DEFAULT 1,
        is_processed INTEGER NOT NULL DEFAULT 0,
        is_paid INTEGER NOT NULL DEFAULT 0,
        is_cancelled INTEGER NOT NULL DEFAULT 0,
        is_parked INTEGER NOT NULL DEFAULT 0,
        location_id TEXT,
        channel_reference_number TEXT,
        secondary_reference TEXT,
        external_reference_num TEXT,
        marker INTEGER,
        label_printed INTEGER,
        label_error TEXT,
        invoice_printed INTEGER,
        pick_list_printed INTEGER,
        is_rule_run INTEGER,
        part_shipped INTEGER,
        has_scheduled_delivery INTEGER,
        pickwave_ids TEXT,
        num_items INTEGER,
        payment_method TEXT,
        payment_method_id TEXT,
        last_synced_at TIMESTAMP,
        created_at TIMESTAMP,
        updated_at TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_orders_number ON orders(order_number);
    CREATE INDEX IF NOT EXISTS idx_orders_received ON orders(received_date);

    CREATE TABLE IF NOT EXISTS order_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id INTEGER NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        item_id TEXT,
        stock_item_id TEXT,
        stock_item_int_id INTEGER,
        row_id TEXT,
        item_number TEXT,
        sku TEXT,
        title TEXT,
        item_source TEXT,
        channel_sku TEXT,
        channel_title TEXT,
        barcode_number TEXT,
        category_name TEXT,
        quantity INTEGER NOT NULL DEFAULT 0,
        part_shipped_qty INTEGER,
        price_per_unit TEXT,
        unit_cost TEXT,
        line_total TEXT,
        cost TEXT,
        cost_inc_tax TEXT,
        despatch_stock_unit_cost TEXT,
        discount TEXT,
        discount_value TEXT,
        tax TEXT,
        tax_rate TEXT,
        sales_tax TEXT,
        tax_cost_inclusive INTEGER,
        part_shipped INTEGER,
        weight TEXT,
        shipping_cost TEXT,
        bin_rack TEXT,
        is_service INTEGER,
        composite_sub_items TEXT,
        additional_info TEXT,
        added_date TIMESTAMP,
        line_value TEXT,
        profit TEXT,
        profit_margin TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items(order_id);
    CREATE INDEX IF NOT EXISTS idx_order_items_sku ON order_items(sku);

    CREATE TABLE IF NOT EXISTS order_shipping (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id INTEGER NOT NULL UNIQUE REFERENCES orders(id) ON DELETE CASCADE,
        tracking_number TEXT,
        vendor TEXT,
        postal_service_id TEXT,
        postal_service_name TEXT,
        total_weight TEXT,
        item_weight TEXT,
        package_category TEXT,
        package_type TEXT,
        postage_cost TEXT,
        postage_cost_ex_tax TEXT,
        label_printed INTEGER,
        label_error TEXT,
        invoice_printed INTEGER,
        pick_list_printed INTEGER,
        partial_shipped INTEGER,
        manual_adjust INTEGER
    );

    CREATE TABLE IF NOT EXISTS order_notes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id INTEGER NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        linnworks_note_id TEXT,
        note_date TIMESTAMP,
        is_internal INTEGER,
        note_text TEXT,
        created_by TEXT
    );

    CREATE TABLE IF NOT EXISTS order_properties (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id INTEGER NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        property_type TEXT,
        property_name TEXT,
        property_value TEXT
    );

    CREATE TABLE IF NOT EXISTS order_identifiers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id INTEGER NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        identifier_id INTEGER,
        tag TEXT,
        name TEXT,
        is_custom INTEGER
    );

    -- One progress row per sync type and source
    CREATE TABLE IF NOT EXISTS sync_checkpoints (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        sync_type TEXT NOT NULL,
        source TEXT NOT NULL,
        status TEXT NOT NULL,
        last_sync_at TIMESTAMP,
        sync_started_at TIMESTAMP,
        sync_completed_at TIMESTAMP,
        records_synced INTEGER DEFAULT 0,
        records_created INTEGER DEFAULT 0,
        records_updated INTEGER DEFAULT 0,
        records_failed INTEGER DEFAULT 0,
        metadata TEXT,
        error_message TEXT,
        UNIQUE(sync_type, source)
    );

    -- Orders that could not be imported, retried with backoff
    CREATE TABLE IF NOT EXISTS failed_order_syncs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id TEXT,
        order_number INTEGER,
        order_type TEXT NOT NULL,
        failure_reason TEXT NOT NULL,
        error_message TEXT,
        order_data TEXT,
        exception_context TEXT,
        attempt_count INTEGER NOT NULL DEFAULT 1,
        last_attempted_at TIMESTAMP,
        next_retry_at TIMESTAMP,
        is_resolved INTEGER NOT NULL DEFAULT 0,
        resolved_at TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_failed_syncs_retry
    ON failed_order_syncs(is_resolved, next_retry_at);

    -- Audit log of sync runs
    CREATE TABLE IF NOT EXISTS sync_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        sync_type TEXT NOT NULL,
        status TEXT NOT NULL,
        started_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP,
        total_fetched INTEGER DEFAULT 0,
        total_created INTEGER DEFAULT 0,
        total_updated INTEGER DEFAULT 0,
        total_skipped INTEGER DEFAULT 0,
        total_failed INTEGER DEFAULT 0,
        metadata TEXT,
        error_message TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_sync_logs_started_at
    ON sync_logs(started_at DESC);
    """

    def __init__(self, db_path: Path):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._ensure_directory()
        self._init_schema()

    def _ensure_directory(self) -> None:
        """Ensure the database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _init_schema(self) -> None:
        """Initialize database schema if not exists."""
        with self._get_connection() as conn:
            conn.executescript(self.SCHEMA)
            logger.info(f"Database initialized at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings.

        Yields:
            sqlite3.Connection: Database connection
        """
        conn = sqlite3.connect(
            self.db_path,
            timeout=30.0  # Wait up to 30 seconds for locks to clear
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # =========================================================================
    # CONNECTIONS
    # =========================================================================

    def upsert_connection(self, connection: LinnworksConnection) -> None:
        """Insert a connection or update its credentials, keeping any session.

        Args:
            connection: Connection to save
        """
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO linnworks_connections
                    (account_id, application_id, application_secret, installation_token,
                     status, is_active, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                    application_id = excluded.application_id,
                    application_secret = excluded.application_secret,
                    installation_token = excluded.installation_token,
                    is_active = excluded.is_active,
                    updated_at = excluded.updated_at
                """,
                (
                    connection.account_id,
                    connection.application_id,
                    connection.application_secret,
                    connection.installation_token,
                    connection.status,
                    int(connection.is_active),
                    _ts(utc_now()),
                )
            )
            logger.debug(f"Upserted connection for account {connection.account_id}")

    def get_connection(self, account_id: str) -> Optional[LinnworksConnection]:
        """Get the stored connection of an account.

        Args:
            account_id: Local account identifier

        Returns:
            LinnworksConnection or None if not found
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM linnworks_connections WHERE account_id = ?",
                (account_id,)
            ).fetchone()
            if not row:
                return None
            return LinnworksConnection(
                account_id=row["account_id"],
                application_id=row["application_id"],
                application_secret=row["application_secret"],
                installation_token=row["installation_token"],
                session_token=row["session_token"],
                server_location=row["server_location"],
                session_expires_at=row["session_expires_at"],
                status=row["status"],
                is_active=bool(row["is_active"]),
                updated_at=row["updated_at"],
            )

    def save_session(self, account_id: str, session: SessionToken) -> None:
        """Persist a freshly obtained session and mark the connection active."""
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE linnworks_connections
                SET session_token = ?,
                    server_location = ?,
                    session_expires_at = ?,
                    status = 'active',
                    updated_at = ?
                WHERE account_id = ?
                """,
                (session.token, session.server, _ts(session.expires_at), _ts(utc_now()), account_id)
            )

    def set_connection_status(self, account_id: str, status: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE linnworks_connections SET status = ?, updated_at = ? WHERE account_id = ?",
                (status, _ts(utc_now()), account_id)
            )

    # =========================================================================
    # ORDERS
    # =========================================================================

    @staticmethod
    def _insert_row(conn: sqlite3.Connection, table: str, row: Dict[str, Any]) -> int:
        columns = list(row.keys())
        cursor = conn.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})",
            [row[column] for column in columns],
        )
        return cursor.lastrowid

    def write_record_set(self, record_set: BulkImportRecordSet) -> int:
        """Insert an order and its related rows in one transaction.

        The order row goes in first; its new primary key is then written into
        every related row before those are inserted.

        Args:
            record_set: Assembled rows with unset parent references

        Returns:
            Primary key of the new order row

        Raises:
            DuplicateOrderError: If the Linnworks order ID is already stored
            PersistenceError: On any other database error
        """
        now = _ts(utc_now())
        order_row = {**record_set.order, "created_at": now, "updated_at": now, "last_synced_at": now}

        try:
            with self._get_connection() as conn:
                order_pk = self._insert_row(conn, "orders", order_row)
                attached = record_set.with_parent_key(order_pk)

                for item in attached.items:
                    self._insert_row(conn, "order_items", item)
                if attached.shipping:
                    self._insert_row(conn, "order_shipping", attached.shipping)
                for note in attached.notes:
                    self._insert_row(conn, "order_notes", note)
                for prop in attached.properties:
                    self._insert_row(conn, "order_properties", prop)
                for identifier in attached.identifiers:
                    self._insert_row(conn, "order_identifiers", identifier)
        except sqlite3.IntegrityError as e:
            if "orders.linnworks_order_id" in str(e):
                raise DuplicateOrderError(
                    f"Order {record_set.order.get('linnworks_order_id')} already exists"
                ) from e
            raise PersistenceError(f"Integrity error writing order: {e}") from e
        except (sqlite3.Error, OverflowError) as e:
            raise PersistenceError(f"Database error writing order: {e}") from e

        logger.debug(
            f"Imported order {record_set.order.get('order_number')} "
            f"with {record_set.child_rows} related rows"
        )
        return order_pk

    def find_existing_order_keys(
        self,
        order_ids: Iterable[str],
        order_numbers: Iterable[int],
    ) -> Tuple[Set[str], Set[int]]:
        """Find which Linnworks IDs and order numbers are already stored.

        Args:
            order_ids: Candidate Linnworks order IDs
            order_numbers: Candidate order numbers

        Returns:
            Tuple of (stored IDs, stored numbers) among the candidates
        """
        ids = sorted({i for i in order_ids if i})
        # a number outside the INTEGER range cannot be stored
        numbers = sorted({n for n in order_numbers if n is not None and -2 ** 63 <= n < 2 ** 63})
        found_ids: Set[str] = set()
        found_numbers: Set[int] = set()

        with self._get_connection() as conn:
            for chunk in _chunks(ids):
                cursor = conn.execute(
                    f"SELECT linnworks_order_id FROM orders WHERE linnworks_order_id IN "
                    f"({', '.join('?' for _ in chunk)})",
                    chunk,
                )
                found_ids.update(row["linnworks_order_id"] for row in cursor.fetchall())
            for chunk in _chunks(numbers):
                cursor = conn.execute(
                    f"SELECT order_number FROM orders WHERE order_number IN "
                    f"({', '.join('?' for _ in chunk)})",
                    chunk,
                )
                found_numbers.update(row["order_number"] for row in cursor.fetchall())

        return found_ids, found_numbers

    def order_exists(self, order_id: Optional[str] = None, order_number: Optional[int] = None) -> bool:
        """Whether an order is stored under either the ID or the number."""
        found_ids, found_numbers = self.find_existing_order_keys(
            [order_id] if order_id else [],
            [order_number] if order_number is not None else [],
        )
        return bool(found_ids or found_numbers)

    def get_order(
        self,
        order_id: Optional[str] = None,
        order_number: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        """Get a stored order row by Linnworks ID, else by order number."""
        with self._get_connection() as conn:
            row = None
            if order_id:
                row = conn.execute(
                    "SELECT * FROM orders WHERE linnworks_order_id = ?", (order_id,)
                ).fetchone()
            if row is None and order_number is not None:
                row = conn.execute(
                    "SELECT * FROM orders WHERE order_number = ? ORDER BY id LIMIT 1",
                    (order_number,)
                ).fetchone()
            return dict(row) if row else None

    def get_related_rows(self, table: str, order_pk: int) -> List[Dict[str, Any]]:
        """Get the rows of a related table belonging to one order."""
        if table not in {
            "order_items", "order_shipping", "order_notes",
            "order_properties", "order_identifiers",
        }:
            raise ValueError(f"Unknown related table: {table}")
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"SELECT * FROM {table} WHERE order_id = ? ORDER BY id", (order_pk,)
            )
            return [dict(row) for row in cursor.fetchall()]

    def count_orders(self) -> int:
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM orders").fetchone()[0]

    def mark_order_processed(
        self,
        order_id: Optional[str],
        order_number: Optional[int],
        processed_date: datetime,
        status: str,
    ) -> bool:
        """Move a stored open order to processed.

        The order is matched by Linnworks ID. An order stored under its
        number alone is matched by number instead and takes on the ID.

        Args:
            order_id: Linnworks order ID (preferred match)
            order_number: Order number (used when there is no ID match)
            processed_date: When the order was processed
            status: Status name to store

        Returns:
            True if an open order was updated
        """
        if not order_id and order_number is None:
            return False

        now = _ts(utc_now())
        update = """
            UPDATE orders
            SET processed_date = ?,
                is_processed = 1,
                is_open = 0,
                status = ?,
                linnworks_order_id = COALESCE(linnworks_order_id, ?),
                updated_at = ?,
                last_synced_at = ?
            WHERE {where} AND is_processed = 0
        """
        values = (_ts(processed_date), status, order_id, now, now)

        with self._get_connection() as conn:
            if order_id:
                cursor = conn.execute(
                    update.format(where="linnworks_order_id = ?"), values + (order_id,)
                )
                if cursor.rowcount > 0:
                    return True
                stored = conn.execute(
                    "SELECT 1 FROM orders WHERE linnworks_order_id = ?", (order_id,)
                ).fetchone()
                if stored is not None or order_number is None:
                    return False
                where = "order_number = ? AND linnworks_order_id IS NULL"
            else:
                where = "order_number = ?"

            cursor = conn.execute(update.format(where=where), values + (order_number,))
            return cursor.rowcount > 0

    # =========================================================================
    # SYNC CHECKPOINTS
    # =========================================================================

    @staticmethod
    def _row_to_checkpoint(row: sqlite3.Row) -> SyncCheckpoint:
        return SyncCheckpoint(
            id=row["id"],
            sync_type=row["sync_type"],
            source=row["source"],
            status=row["status"],
            last_sync_at=row["last_sync_at"],
            sync_started_at=row["sync_started_at"],
            sync_completed_at=row["sync_completed_at"],
            records_synced=row["records_synced"] or 0,
            records_created=row["records_created"] or 0,
            records_updated=row["records_updated"] or 0,
            records_failed=row["records_failed"] or 0,
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            error_message=row["error_message"],
        )

    def get_or_create_checkpoint(
        self,
        sync_type: str,
        source: str,
        now: Optional[datetime] = None,
    ) -> SyncCheckpoint:
        """Get the checkpoint of a sync type, creating it if missing.

        Creation is a single upsert, so concurrent callers end up with the
        same row. A new checkpoint is pending and looks one year back.
        """
        now = now or utc_now()
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_checkpoints (sync_type, source, status, last_sync_at, metadata)
                VALUES (?, ?, ?, ?, '{}')
                ON CONFLICT(sync_type, source) DO NOTHING
                """,
                (
                    sync_type,
                    source,
                    CHECKPOINT_PENDING,
                    _ts(now - timedelta(days=INITIAL_LOOKBACK_DAYS)),
                )
            )
            row = conn.execute(
                "SELECT * FROM sync_checkpoints WHERE sync_type = ? AND source = ?",
                (sync_type, source)
            ).fetchone()
            return self._row_to_checkpoint(row)

    def save_checkpoint(self, checkpoint: SyncCheckpoint) -> None:
        """Write every mutable field of a checkpoint back to its row."""
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE sync_checkpoints
                SET status = ?,
                    last_sync_at = ?,
                    sync_started_at = ?,
                    sync_completed_at = ?,
                    records_synced = ?,
                    records_created = ?,
                    records_updated = ?,
                    records_failed = ?,
                    metadata = ?,
                    error_message = ?
                WHERE sync_type = ? AND source = ?
                """,
                (
                    checkpoint.status,
                    _ts(checkpoint.last_sync_at),
                    _ts(checkpoint.sync_started_at),
                    _ts(checkpoint.sync_completed_at),
                    checkpoint.records_synced,
                    checkpoint.records_created,
                    checkpoint.records_updated,
                    checkpoint.records_failed,
                    json.dumps(checkpoint.metadata, default=str),
                    checkpoint.error_message,
                    checkpoint.sync_type,
                    checkpoint.source,
                )
            )

    def get_checkpoints(self) -> List[SyncCheckpoint]:
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT * FROM sync_checkpoints ORDER BY sync_type, source")
            return [self._row_to_checkpoint(row) for row in cursor.fetchall()]

    # =========================================================================
    # FAILED ORDER SYNCS
    # =========================================================================

    @staticmethod
    def _row_to_failed_sync(row: sqlite3.Row) -> FailedOrderSync:
        return FailedOrderSync(
            id=row["id"],
            order_id=row["order_id"],
            order_number=row["order_number"],
            order_type=row["order_type"],
            failure_reason=row["failure_reason"],
            error_message=row["error_message"],
            order_data=json.loads(row["order_data"]) if row["order_data"] else {},
            exception_context=json.loads(row["exception_context"]) if row["exception_context"] else {},
            attempt_count=row["attempt_count"],
            last_attempted_at=row["last_attempted_at"],
            next_retry_at=row["next_retry_at"],
            is_resolved=bool(row["is_resolved"]),
            resolved_at=row["resolved_at"],
        )

    def record_failed_sync(
        self,
        order_type: str,
        failure_reason: str,
        error_message: str,
        order_data: Dict[str, Any],
        order_id: Optional[str] = None,
        order_number: Optional[int] = None,
        exception_context: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> FailedOrderSync:
        """Record an order that could not be imported.

        A first failure is retried after an hour. If the same order already
        has an unresolved record, that record counts another failed attempt
        instead.

        Returns:
            The stored FailedOrderSync
        """
        now = now or utc_now()
        existing = self._find_unresolved_failure(order_type, order_id, order_number)
        if existing is not None:
            return self.record_retry_failure(existing.id, error_message, now=now)

        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO failed_order_syncs
                    (order_id, order_number, order_type, failure_reason, error_message,
                     order_data, exception_context, attempt_count, last_attempted_at,
                     next_retry_at, is_resolved)
                VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?, 0)
                """,
                (
                    order_id,
                    order_number,
                    order_type,
                    failure_reason,
                    error_message,
                    json.dumps(order_data, default=str),
                    json.dumps(exception_context or {}, default=str),
                    _ts(now),
                    _ts(now + timedelta(hours=failed_sync_backoff_hours(1))),
                )
            )
            record_id = cursor.lastrowid

        logger.warning(
            f"Recorded failed {order_type} sync for order "
            f"{order_number if order_number is not None else order_id}: {error_message}"
        )
        return self.get_failed_sync(record_id)

    def _find_unresolved_failure(
        self,
        order_type: str,
        order_id: Optional[str],
        order_number: Optional[int],
    ) -> Optional[FailedOrderSync]:
        if order_id:
            where, key = "order_id = ?", order_id
        elif order_number is not None:
            where, key = "order_number = ?", order_number
        else:
            return None
        with self._get_connection() as conn:
            row = conn.execute(
                f"""
                SELECT * FROM failed_order_syncs
                WHERE order_type = ? AND {where} AND is_resolved = 0
                ORDER BY id DESC LIMIT 1
                """,
                (order_type, key)
            ).fetchone()
            return self._row_to_failed_sync(row) if row else None

    def record_retry_failure(
        self,
        record_id: int,
        error_message: str,
        now: Optional[datetime] = None,
    ) -> FailedOrderSync:
        """Count another failed attempt and push the next retry out.

        The wait depends on the attempts counted before this one: 1h for one,
        6h for two, 24h for more. With the hour set when the record is
        created, the waits run 1h, 1h, 6h, 24h.
        """
        now = now or utc_now()
        record = self.get_failed_sync(record_id)
        if record is None:
            raise PersistenceError(f"Failed sync record {record_id} not found")

        next_retry = now + timedelta(hours=failed_sync_backoff_hours(record.attempt_count))
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE failed_order_syncs
                SET attempt_count = attempt_count + 1,
                    error_message = ?,
                    last_attempted_at = ?,
                    next_retry_at = ?
                WHERE id = ?
                """,
                (error_message, _ts(now), _ts(next_retry), record_id)
            )
        return self.get_failed_sync(record_id)

    def mark_failed_sync_resolved(self, record_id: int, now: Optional[datetime] = None) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE failed_order_syncs SET is_resolved = 1, resolved_at = ? WHERE id = ?",
                (_ts(now or utc_now()), record_id)
            )

    def get_failed_sync(self, record_id: int) -> Optional[FailedOrderSync]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM failed_order_syncs WHERE id = ?", (record_id,)
            ).fetchone()
            return self._row_to_failed_sync(row) if row else None

    def get_failed_syncs_ready_for_retry(
        self,
        limit: int = 50,
        now: Optional[datetime] = None,
    ) -> List[FailedOrderSync]:
        """Get unresolved failures whose next retry time has passed, oldest first."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM failed_order_syncs
                WHERE is_resolved = 0 AND next_retry_at <= ?
                ORDER BY next_retry_at ASC, id ASC
                LIMIT ?
                """,
                (_ts(now or utc_now()), limit)
            )
            return [self._row_to_failed_sync(row) for row in cursor.fetchall()]

    def count_pending_failed_syncs(self) -> int:
        with self._get_connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM failed_order_syncs WHERE is_resolved = 0"
            ).fetchone()[0]

    # =========================================================================
    # SYNC LOGS
    # =========================================================================

    def start_sync_log(
        self,
        sync_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Record the start of a sync run.

        Returns:
            ID of the new log entry
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_logs (sync_type, status, started_at, metadata)
                VALUES (?, ?, ?, ?)
                """,
                (sync_type, SYNC_LOG_STARTED, _ts(now or utc_now()), json.dumps(metadata or {}, default=str))
            )
            logger.info(f"Started {sync_type} sync log {cursor.lastrowid}")
            return cursor.lastrowid

    def finish_sync_log(
        self,
        log_id: int,
        status: str,
        total_fetched: int = 0,
        total_created: int = 0,
        total_updated: int = 0,
        total_skipped: int = 0,
        total_failed: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Record the outcome of a sync run.

        Args:
            log_id: Log entry ID from start_sync_log
            status: completed or failed
        """
        if status not in (SYNC_LOG_COMPLETED, SYNC_LOG_FAILED):
            raise ValueError(f"Invalid final sync log status: {status}")
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE sync_logs
                SET status = ?,
                    completed_at = ?,
                    total_fetched = ?,
                    total_created = ?,
                    total_updated = ?,
                    total_skipped = ?,
                    total_failed = ?,
                    metadata = ?,
                    error_message = ?
                WHERE id = ?
                """,
                (
                    status,
                    _ts(now or utc_now()),
                    total_fetched,
                    total_created,
                    total_updated,
                    total_skipped,
                    total_failed,
                    json.dumps(metadata or {}, default=str),
                    error_message,
                    log_id,
                )
            )
            logger.info(f"Sync log {log_id} finished with status {status}")

    def get_sync_logs(self, limit: int = 10, sync_type: Optional[str] = None) -> List[SyncLogEntry]:
        """Get recent sync runs, newest first."""
        with self._get_connection() as conn:
            if sync_type:
                cursor = conn.execute(
                    "SELECT * FROM sync_logs WHERE sync_type = ? ORDER BY started_at DESC, id DESC LIMIT ?",
                    (sync_type, limit)
                )
            else:
                cursor = conn.execute(
                    "SELECT * FROM sync_logs ORDER BY started_at DESC, id DESC LIMIT ?",
                    (limit,)
                )
            return [
                SyncLogEntry(
                    id=row["id"],
                    sync_type=row["sync_type"],
                    status=row["status"],
                    started_at=row["started_at"],
                    completed_at=row["completed_at"],
                    total_fetched=row["total_fetched"] or 0,
                    total_created=row["total_created"] or 0,
                    total_updated=row["total_updated"] or 0,
                    total_skipped=row["total_skipped"] or 0,
                    total_failed=row["total_failed"] or 0,
                    metadata=json.loads(row["metadata"]) if row["metadata"] else {},
                    error_message=row["error_message"],
                )
                for row in cursor.fetchall()
            ]

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get order and sync statistics.

        Returns:
            Dictionary with order counts, pending failures, checkpoints and recent runs
        """
        with self._get_connection() as conn:
            totals = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(is_open), 0) AS open,
                       COALESCE(SUM(is_processed), 0) AS processed
                FROM orders
                """
            ).fetchone()

        return {
            "orders": {
                "total": totals["total"],
                "open": totals["open"],
                "processed": totals["processed"],
            },
            "pending_failed_syncs": self.count_pending_failed_syncs(),
            "checkpoints": {
                f"{cp.sync_type}/{cp.source}": {
                    "status": cp.status,
                    "last_sync_at": cp.last_sync_at.isoformat() if cp.last_sync_at else None,
                }
                for cp in self.get_checkpoints()
            },
            "recent_syncs": [
                {
                    "sync_type": log.sync_type,
                    "status": log.status,
                    "started_at": log.started_at.isoformat(),
                    "duration": log.duration_for_humans,
                }
                for log in self.get_sync_logs(limit=5)
            ],
        }
