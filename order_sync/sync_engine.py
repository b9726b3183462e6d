"""Core sync orchestration engine.

Runs one sync of open or processed orders end to end: consult the
checkpoint, obtain a session, fetch the window page by page, normalize,
deduplicate, assemble and write each new order, then close the checkpoint
and the sync log. Failures of single orders are recorded and the batch
carries on; failures of the run itself mark it failed and propagate.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .checkpoints import Checkpoint
from .config import Settings
from .constants import (
    CHECKPOINT_IN_PROGRESS,
    FAILURE_MISSING_IDENTIFIER,
    FAILURE_PERSISTENCE,
    SYNC_LOG_COMPLETED,
    SYNC_LOG_FAILED,
    SYNC_OPEN_ORDERS,
    SYNC_PROCESSED_ORDERS,
    SYNC_TYPES,
)
from .assembler import assemble, map_order_status
from .database import Database, DuplicateOrderError, PersistenceError
from .deduplication import OrderDeduplicator, deduplicate_batch
from .fetcher import OrderEndpoint, PaginatedFetcher
from .linnworks_client import LinnworksClient
from .models import CanonicalOrder, ProcessedOrderFilters, utc_now
from .normalizer import ValidationRejection, ensure_identity, normalize_order
from .session import SessionManager

logger = logging.getLogger(__name__)

ENDPOINTS = {
    SYNC_OPEN_ORDERS: OrderEndpoint.OPEN,
    SYNC_PROCESSED_ORDERS: OrderEndpoint.PROCESSED,
}


class SyncInProgressError(Exception):
    """Raised when a sync of the same type is already running."""
    pass


@dataclass
class SyncResult:
    """Result of one sync run."""
    sync_type: str
    success: bool = True
    fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    not_due: bool = False
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    failed_pages: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def total_processed(self) -> int:
        return self.created + self.updated + self.skipped + self.failed

    @property
    def duration_seconds(self) -> Optional[float]:
        if not self.started_at or not self.completed_at:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def as_metadata(self) -> Dict[str, Any]:
        """Details stored with the checkpoint and the sync log."""
        return {
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "window_end": self.window_end.isoformat() if self.window_end else None,
            "failed_pages": self.failed_pages,
            "errors": self.errors[:20],
        }


@dataclass
class SyncRunSummary:
    """Results of running several sync types together."""
    results: Dict[str, SyncResult] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def total_errors(self) -> List[str]:
        errors = [f"{sync_type}: {message}" for sync_type, message in self.failures.items()]
        for result in self.results.values():
            errors.extend(result.errors)
        return errors

    @property
    def success(self) -> bool:
        return not self.failures and all(r.failed == 0 for r in self.results.values())


class SyncEngine:
    """Orchestrates order syncs from Linnworks into the local database."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        client: LinnworksClient,
        session_manager: Optional[SessionManager] = None,
        dry_run: bool = False,
        account_id: Optional[str] = None,
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            database: Database for orders and sync state
            client: Linnworks API client (inside its context manager)
            session_manager: Session source (built from the client if omitted)
            dry_run: If True, fetch and assemble without writing anything
            account_id: Linnworks account to sync (defaults to settings)
        """
        self.settings = settings
        self.db = database
        self.client = client
        self.sessions = session_manager or SessionManager(settings, database, client)
        self.dry_run = dry_run or settings.dry_run
        self.account_id = account_id or settings.linnworks_account_id
        self.deduplicator = OrderDeduplicator(database)

    # =========================================================================
    # SYNC RUNS
    # =========================================================================

    async def run_sync(
        self,
        sync_type: str,
        force: bool = False,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
        filters: Optional[ProcessedOrderFilters] = None,
    ) -> SyncResult:
        """Run one sync of the given type.

        Args:
            sync_type: open_orders or processed_orders
            force: Run even if the sync interval has not elapsed
            window_start: Override the checkpoint's incremental start
            window_end: Override the window end (defaults to now)
            filters: Search options for processed orders

        Returns:
            SyncResult (with `not_due` set when the run was not due)

        Raises:
            SyncInProgressError: If a non-stale run of this type is in progress
            AuthenticationError: If no session can be obtained
            TransientFetchError: If a required call keeps failing
        """
        if sync_type not in ENDPOINTS:
            raise ValueError(f"Unknown sync type: {sync_type}")

        checkpoint = Checkpoint.get_or_create(
            self.db,
            sync_type,
            stale_after_minutes=self.settings.stale_after_minutes,
            lookback_days=self.settings.processed_lookback_days,
        )

        if not checkpoint.should_sync(self.settings.sync_interval_minutes):
            if checkpoint.status == CHECKPOINT_IN_PROGRESS:
                raise SyncInProgressError(
                    f"A {sync_type} sync has been running since "
                    f"{checkpoint.state.sync_started_at}"
                )
            if not force:
                logger.info(
                    f"Skipping {sync_type}: last sync at {checkpoint.last_sync_at}, "
                    f"interval {self.settings.sync_interval_minutes} minutes"
                )
                return SyncResult(sync_type=sync_type, not_due=True)

        started_at = utc_now()
        result = SyncResult(
            sync_type=sync_type,
            window_start=window_start or checkpoint.incremental_start_date(now=started_at),
            window_end=window_end or started_at,
            started_at=started_at,
        )

        logger.info("=" * 50)
        logger.info(
            f"Starting {sync_type} sync: {result.window_start.isoformat()} "
            f"to {result.window_end.isoformat()}"
        )
        if self.dry_run:
            logger.info("DRY RUN MODE - No orders will be written")
        logger.info("=" * 50)

        log_id = None
        if not self.dry_run:
            log_id = self.db.start_sync_log(sync_type, metadata=result.as_metadata(), now=started_at)
            checkpoint.start_sync(now=started_at)

        try:
            session = await self.sessions.get_valid_token(self.account_id)
            fetcher = PaginatedFetcher(self.client, session, self.settings, filters=filters)
            fetched = await fetcher.fetch_all(
                ENDPOINTS[sync_type], result.window_start, result.window_end
            )
            result.fetched = len(fetched.orders)
            result.failed_pages = fetched.failed_pages
            if fetched.failed_pages:
                result.errors.append(f"Pages failed to fetch: {fetched.failed_pages}")

            self.import_orders(fetched.orders, sync_type, result)

        except Exception as e:
            result.success = False
            result.completed_at = utc_now()
            logger.error(f"{sync_type} sync failed: {e}")
            if not self.dry_run:
                checkpoint.fail_sync(str(e), now=result.completed_at)
                self.db.finish_sync_log(
                    log_id,
                    SYNC_LOG_FAILED,
                    total_fetched=result.fetched,
                    total_created=result.created,
                    total_updated=result.updated,
                    total_skipped=result.skipped,
                    total_failed=result.failed,
                    metadata=result.as_metadata(),
                    error_message=str(e),
                    now=result.completed_at,
                )
            raise

        result.completed_at = utc_now()
        if not self.dry_run:
            checkpoint.complete_sync(
                synced=result.fetched,
                created=result.created,
                updated=result.updated,
                failed=result.failed,
                metadata=result.as_metadata(),
                now=result.completed_at,
            )
            self.db.finish_sync_log(
                log_id,
                SYNC_LOG_COMPLETED,
                total_fetched=result.fetched,
                total_created=result.created,
                total_updated=result.updated,
                total_skipped=result.skipped,
                total_failed=result.failed,
                metadata=result.as_metadata(),
                now=result.completed_at,
            )

        logger.info("=" * 50)
        logger.info(f"SYNC COMPLETE: {sync_type}")
        logger.info(f"Duration: {result.duration_seconds:.1f}s")
        logger.info(
            f"Fetched {result.fetched}, created {result.created}, updated {result.updated}, "
            f"skipped {result.skipped}, failed {result.failed}"
        )
        logger.info("=" * 50)
        return result

    async def run_all(self, force: bool = False) -> SyncRunSummary:
        """Run the open and processed order syncs concurrently.

        A failure of one sync type does not stop the other.
        """
        outcomes = await asyncio.gather(
            *(self.run_sync(sync_type, force=force) for sync_type in SYNC_TYPES),
            return_exceptions=True,
        )
        summary = SyncRunSummary()
        for sync_type, outcome in zip(SYNC_TYPES, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                summary.failures[sync_type] = str(outcome)
            else:
                summary.results[sync_type] = outcome
        return summary

    # =========================================================================
    # ORDER IMPORT
    # =========================================================================

    def import_orders(
        self,
        raw_orders: List[Dict[str, Any]],
        sync_type: str,
        result: SyncResult,
    ) -> SyncResult:
        """Normalize, deduplicate and write a batch of raw orders.

        Args:
            raw_orders: Raw payloads in fetch order
            sync_type: Sync type the batch came from
            result: Result to accumulate counts into

        Returns:
            The updated result
        """
        identified: List[Tuple[CanonicalOrder, Dict[str, Any]]] = []
        for raw in raw_orders:
            order = normalize_order(raw)
            try:
                ensure_identity(order)
            except ValidationRejection as e:
                result.failed += 1
                result.errors.append(str(e))
                self._record_failure(sync_type, FAILURE_MISSING_IDENTIFIER, str(e), order, raw)
                continue
            identified.append((order, raw))

        raw_by_order = {id(order): raw for order, raw in identified}
        batch = [order for order, _ in identified]

        unique = deduplicate_batch(batch)
        result.skipped += len(batch) - len(unique)

        new_orders = self.deduplicator.filter_existing(unique)
        new_ids = {id(order) for order in new_orders}

        for order in unique:
            if id(order) not in new_ids:
                self._update_existing(order, result)

        for order in new_orders:
            self._import_order(order, raw_by_order[id(order)], sync_type, result)

        return result

    def _update_existing(self, order: CanonicalOrder, result: SyncResult) -> None:
        """Promote a stored open order that has since been processed."""
        if not order.is_processed or self.dry_run:
            result.skipped += 1
            return
        updated = self.db.mark_order_processed(
            order.order_id,
            order.number,
            order.processed_date,
            map_order_status(order.status, order.is_processed),
        )
        if updated:
            logger.info(f"Order {order.display_reference} is now processed")
            result.updated += 1
        else:
            result.skipped += 1

    def _import_order(
        self,
        order: CanonicalOrder,
        raw: Dict[str, Any],
        sync_type: str,
        result: SyncResult,
    ) -> bool:
        """Assemble and write one order; failures are recorded, not raised."""
        record_set = assemble(order)
        if self.dry_run:
            logger.info(
                f"[DRY RUN] Would import order {order.display_reference} "
                f"with {len(record_set.items)} items"
            )
            result.created += 1
            return True

        try:
            self.db.write_record_set(record_set)
        except DuplicateOrderError:
            logger.info(f"Order {order.display_reference} was stored concurrently, skipping")
            result.skipped += 1
            return True
        except PersistenceError as e:
            result.failed += 1
            result.errors.append(f"Order {order.display_reference}: {e}")
            self._record_failure(sync_type, FAILURE_PERSISTENCE, str(e), order, raw)
            return False

        result.created += 1
        return True

    def _record_failure(
        self,
        sync_type: str,
        reason: str,
        message: str,
        order: CanonicalOrder,
        raw: Any,
    ) -> None:
        if self.dry_run:
            logger.warning(f"[DRY RUN] Would record failed order {order.display_reference}: {message}")
            return
        self.db.record_failed_sync(
            order_type=sync_type,
            failure_reason=reason,
            error_message=message,
            order_data=raw if isinstance(raw, dict) else {"payload": raw},
            order_id=order.order_id,
            order_number=order.number,
            exception_context={"reference": order.channel_reference_number, "source": order.source},
        )

    # =========================================================================
    # RETRY FAILED ORDERS
    # =========================================================================

    async def retry_failed_syncs(self, limit: Optional[int] = None) -> SyncResult:
        """Retry failed order imports whose backoff has elapsed.

        Each record's stored payload is normalized and imported again. Success
        (or finding the order already stored) resolves the record; another
        failure pushes its next retry further out.

        Returns:
            SyncResult for the retry pass
        """
        limit = limit or self.settings.failed_retry_batch_size
        result = SyncResult(sync_type="retry", started_at=utc_now())
        records = self.db.get_failed_syncs_ready_for_retry(limit=limit)
        logger.info(f"Retrying {len(records)} failed order syncs")

        for record in records:
            result.fetched += 1
            order = normalize_order(record.order_data)
            if not order.has_identity:
                message = "Order still has neither identifier nor number"
                self._retry_failed(record.id, message, result)
                continue

            if self.db.order_exists(order.order_id, order.number):
                self._update_existing(order, result)
                if not self.dry_run:
                    self.db.mark_failed_sync_resolved(record.id)
                continue

            if self.dry_run:
                self._import_order(order, record.order_data, record.order_type, result)
                continue

            try:
                self.db.write_record_set(assemble(order))
            except DuplicateOrderError:
                result.skipped += 1
                self.db.mark_failed_sync_resolved(record.id)
            except PersistenceError as e:
                self._retry_failed(record.id, str(e), result)
            else:
                result.created += 1
                self.db.mark_failed_sync_resolved(record.id)
                logger.info(f"Retried order {order.display_reference} imported")

        result.completed_at = utc_now()
        result.success = result.failed == 0
        return result

    def _retry_failed(self, record_id: int, message: str, result: SyncResult) -> None:
        result.failed += 1
        result.errors.append(message)
        if self.dry_run:
            return
        record = self.db.record_retry_failure(record_id, message)
        if record.has_exceeded_max_retries:
            logger.error(
                f"Order {record.order_identifier} has failed {record.attempt_count} times: {message}"
            )

    async def verify_connection(self) -> bool:
        """Check that a session can be obtained and is accepted."""
        session = await self.sessions.get_valid_token(self.account_id)
        return await self.client.check_connection(session)
