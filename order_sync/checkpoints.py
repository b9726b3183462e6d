"""Checkpoint state machine for incremental syncs.

Each sync type keeps one checkpoint row recording when it last completed.
The row's in_progress status doubles as an advisory lock: a second run is
refused while another is in progress, unless that run has gone stale.

    pending --start_sync--> in_progress --complete_sync--> completed
                                        --fail_sync------> failed
    (completed and failed go back to in_progress on the next start_sync)
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .constants import (
    CHECKPOINT_COMPLETED,
    CHECKPOINT_FAILED,
    CHECKPOINT_IN_PROGRESS,
    DEFAULT_SOURCE,
    INCOMPLETE_LOOKBACK_DAYS,
)
from .database import Database
from .models import SyncCheckpoint, utc_now

logger = logging.getLogger(__name__)


class Checkpoint:
    """Handle over one persisted checkpoint row.

    Every transition is written to the database before the method returns.
    """

    def __init__(
        self,
        database: Database,
        state: SyncCheckpoint,
        stale_after_minutes: int = 60,
        lookback_days: int = INCOMPLETE_LOOKBACK_DAYS,
    ):
        self.db = database
        self.state = state
        self.stale_after_minutes = stale_after_minutes
        self.lookback_days = lookback_days

    @classmethod
    def get_or_create(
        cls,
        database: Database,
        sync_type: str,
        source: str = DEFAULT_SOURCE,
        stale_after_minutes: int = 60,
        lookback_days: int = INCOMPLETE_LOOKBACK_DAYS,
        now: Optional[datetime] = None,
    ) -> "Checkpoint":
        """Load the checkpoint of a sync type, creating a pending one if needed."""
        state = database.get_or_create_checkpoint(sync_type, source, now=now)
        return cls(
            database,
            state,
            stale_after_minutes=stale_after_minutes,
            lookback_days=lookback_days,
        )

    @property
    def sync_type(self) -> str:
        return self.state.sync_type

    @property
    def status(self) -> str:
        return self.state.status

    @property
    def last_sync_at(self) -> Optional[datetime]:
        return self.state.last_sync_at

    def _save(self, **changes: Any) -> None:
        self.state = self.state.model_copy(update=changes)
        self.db.save_checkpoint(self.state)

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def start_sync(self, now: Optional[datetime] = None) -> None:
        """Mark a run as started, from any state."""
        self._save(
            status=CHECKPOINT_IN_PROGRESS,
            sync_started_at=now or utc_now(),
            sync_completed_at=None,
            error_message=None,
        )
        logger.info(f"Checkpoint {self.sync_type}: sync started")

    def complete_sync(
        self,
        synced: int,
        created: int,
        updated: int,
        failed: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Mark the run completed and move last_sync_at to now."""
        now = now or utc_now()
        self._save(
            status=CHECKPOINT_COMPLETED,
            sync_completed_at=now,
            last_sync_at=now,
            records_synced=synced,
            records_created=created,
            records_updated=updated,
            records_failed=failed,
            metadata=metadata or {},
            error_message=None,
        )
        logger.info(
            f"Checkpoint {self.sync_type}: completed "
            f"({synced} synced, {created} created, {updated} updated, {failed} failed)"
        )

    def fail_sync(self, error_message: str, now: Optional[datetime] = None) -> None:
        """Mark the run failed; last_sync_at is left alone."""
        self._save(
            status=CHECKPOINT_FAILED,
            sync_completed_at=now or utc_now(),
            error_message=error_message,
        )
        logger.error(f"Checkpoint {self.sync_type}: failed - {error_message}")

    # =========================================================================
    # QUERIES
    # =========================================================================

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        """Whether an in-progress run started longer ago than the staleness limit."""
        if self.state.status != CHECKPOINT_IN_PROGRESS:
            return False
        started = self.state.sync_started_at
        if started is None:
            return True
        return (now or utc_now()) - started > timedelta(minutes=self.stale_after_minutes)

    def should_sync(self, interval_minutes: int = 60, now: Optional[datetime] = None) -> bool:
        """Decide whether a new run may start.

        A run in progress blocks new runs until it goes stale. Otherwise a
        run is due once `interval_minutes` have passed since the last sync.
        """
        now = now or utc_now()
        if self.state.status == CHECKPOINT_IN_PROGRESS:
            if self.is_stale(now):
                logger.warning(
                    f"Checkpoint {self.sync_type}: in-progress sync started at "
                    f"{self.state.sync_started_at} is stale, allowing a new run"
                )
                return True
            return False

        if self.state.last_sync_at is None:
            return True
        return now - self.state.last_sync_at >= timedelta(minutes=interval_minutes)

    def incremental_start_date(self, now: Optional[datetime] = None) -> datetime:
        """Start of the next fetch window.

        The last completed sync time when the previous run completed,
        otherwise `lookback_days` back (a week by default) so a failed or
        unfinished run is covered.
        """
        if self.state.status == CHECKPOINT_COMPLETED and self.state.last_sync_at:
            return self.state.last_sync_at
        return (now or utc_now()) - timedelta(days=self.lookback_days)
