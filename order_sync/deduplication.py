"""Deduplication of normalized orders.

The same order can arrive twice in one batch (listed as open and again as
processed) and can already be stored from an earlier run. Orders are keyed
by Linnworks order ID first and order number second; either one matching a
stored order is enough to drop the batch entry.
"""

import logging
import uuid
from typing import Dict, List, Optional, Sequence

from .database import Database
from .models import CanonicalOrder

logger = logging.getLogger(__name__)


def normalize_channel(value: Optional[str]) -> str:
    """Channel name as used in keys and stored rows: lowercase, underscores."""
    if not value:
        return "unknown"
    return value.strip().lower().replace(" ", "_")


def order_key(order: CanonicalOrder) -> str:
    """Key identifying an order within a batch.

    Orders with neither ID nor number fall back to their channel reference,
    or to a random key so they never collide with anything.
    """
    if order.order_id:
        return f"id:{order.order_id}"
    if order.number is not None:
        return f"num:{order.number}"
    reference = order.channel_reference_number or uuid.uuid4().hex
    return f"ref:{normalize_channel(order.source)}:{reference}"


def alternative_keys(order: CanonicalOrder) -> List[str]:
    """Every storage key the order could already be stored under."""
    keys = []
    if order.order_id:
        keys.append(f"id:{order.order_id}")
    if order.number is not None:
        keys.append(f"num:{order.number}")
    return keys


def deduplicate_batch(batch: Sequence[CanonicalOrder]) -> List[CanonicalOrder]:
    """Collapse duplicates within a batch.

    The first occurrence of a key keeps its position. A later processed
    variant replaces an open one in that position; otherwise the first
    variant wins. The input sequence is not modified.
    """
    survivors: Dict[str, CanonicalOrder] = {}
    for order in batch:
        key = order_key(order)
        current = survivors.get(key)
        if current is None:
            survivors[key] = order
        elif order.is_processed and not current.is_processed:
            survivors[key] = order
    return list(survivors.values())


def deduplication_stats(
    original: Sequence[CanonicalOrder],
    deduplicated: Sequence[CanonicalOrder],
) -> Dict[str, float]:
    """Counts and duplicate rate (percent) of a deduplication pass."""
    original_count = len(original)
    deduplicated_count = len(deduplicated)
    removed = original_count - deduplicated_count
    return {
        "original_count": original_count,
        "deduplicated_count": deduplicated_count,
        "duplicates_removed": removed,
        "duplicate_rate": round(removed / original_count * 100, 2) if original_count else 0.0,
    }


def find_duplicates(batch: Sequence[CanonicalOrder]) -> Dict[str, List[CanonicalOrder]]:
    """Group the orders of a batch that share a key, for diagnostics."""
    groups: Dict[str, List[CanonicalOrder]] = {}
    for order in batch:
        groups.setdefault(order_key(order), []).append(order)
    return {key: orders for key, orders in groups.items() if len(orders) > 1}


class OrderDeduplicator:
    """Removes batch duplicates and orders already in the database."""

    def __init__(self, database: Database):
        self.db = database

    def filter_existing(self, batch: Sequence[CanonicalOrder]) -> List[CanonicalOrder]:
        """Drop orders whose ID or number is already stored.

        One query per key kind covers the whole batch.
        """
        if not batch:
            return []

        found_ids, found_numbers = self.db.find_existing_order_keys(
            [order.order_id for order in batch if order.order_id],
            [order.number for order in batch if order.number is not None],
        )
        existing = {f"id:{i}" for i in found_ids} | {f"num:{n}" for n in found_numbers}
        if not existing:
            return list(batch)

        return [
            order for order in batch
            if not any(key in existing for key in alternative_keys(order))
        ]

    def existing_orders(self, batch: Sequence[CanonicalOrder]) -> List[CanonicalOrder]:
        """The complement of filter_existing: batch orders already stored."""
        kept = {id(order) for order in self.filter_existing(batch)}
        return [order for order in batch if id(order) not in kept]

    def deduplicate(self, batch: Sequence[CanonicalOrder]) -> List[CanonicalOrder]:
        """Remove in-batch duplicates, then orders already stored.

        Args:
            batch: Normalized orders in fetch order

        Returns:
            New orders, in their original relative order
        """
        unique = deduplicate_batch(batch)
        new_orders = self.filter_existing(unique)

        stats = deduplication_stats(batch, new_orders)
        logger.info(
            f"Deduplication: {stats['original_count']} in, "
            f"{len(batch) - len(unique)} batch duplicates, "
            f"{len(unique) - len(new_orders)} already stored, "
            f"{stats['deduplicated_count']} new"
        )
        return new_orders
