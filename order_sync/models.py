"""Pydantic data models for Linnworks orders and sync state.

These models provide validation and type safety for data moving
between the Linnworks API, the normalizer, and the local SQLite database.
"""

import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .constants import (
    CHECKPOINT_COMPLETED,
    CHECKPOINT_PENDING,
    EPOCH_PLACEHOLDER_YEAR,
    FAILED_SYNC_MAX_ATTEMPTS,
    PROCESSED_DATE_FIELDS,
    SESSION_EXPIRY_BUFFER_MINUTES,
    SYNC_LOG_STARTED,
)

_NET_DATE = re.compile(r"^/Date\((-?\d+)([+-]\d{4})?\)/$")
_FRACTION = re.compile(r"\.(\d+)")


def parse_linnworks_datetime(value) -> Optional[datetime]:
    """Parse Linnworks datetime values into timezone-aware UTC datetimes.

    Linnworks returns ISO 8601 strings with up to seven fractional digits
    (2024-01-15T10:30:00.1234567Z), occasionally without a timezone, and
    older endpoints use the .NET "/Date(1705314600000)/" form. Anything that
    cannot be parsed, and any date in or before 1970 (Linnworks' placeholder
    for "not set"), becomes None.
    """
    if value is None or value == "":
        return None

    parsed = None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        cleaned = value.strip()
        match = _NET_DATE.match(cleaned)
        if match:
            try:
                parsed = datetime.fromtimestamp(int(match.group(1)) / 1000, tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                return None
        else:
            if cleaned.endswith("Z"):
                cleaned = cleaned[:-1] + "+00:00"
            # fromisoformat before 3.11 only takes 3 or 6 fractional digits
            cleaned = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), cleaned)
            cleaned = re.sub(r"([+-]\d{2})(\d{2})$", r"\1:\2", cleaned)
            try:
                parsed = datetime.fromisoformat(cleaned)
            except ValueError:
                return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    else:
        parsed = parsed.astimezone(timezone.utc)

    if parsed.year <= EPOCH_PLACEHOLDER_YEAR:
        return None
    return parsed


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes read back from SQLite as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# CANONICAL ORDER MODELS
# =============================================================================

class CanonicalOrderItem(BaseModel):
    """Line item of a normalized order."""
    model_config = ConfigDict(frozen=True)

    item_id: Optional[str] = None
    stock_item_id: Optional[str] = None
    stock_item_int_id: Optional[int] = None
    row_id: Optional[str] = None
    item_number: Optional[str] = None
    sku: Optional[str] = None
    title: Optional[str] = None
    item_source: Optional[str] = None
    channel_sku: Optional[str] = None
    channel_title: Optional[str] = None
    barcode_number: Optional[str] = None
    quantity: int = 0
    part_shipped_qty: Optional[int] = None
    category_name: Optional[str] = None
    price_per_unit: Decimal = Decimal("0")
    unit_cost: Decimal = Decimal("0")
    line_total: Decimal = Decimal("0")
    cost: Decimal = Decimal("0")
    cost_inc_tax: Decimal = Decimal("0")
    despatch_stock_unit_cost: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    discount_value: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    tax_rate: Decimal = Decimal("0")
    sales_tax: Decimal = Decimal("0")
    tax_cost_inclusive: bool = False
    part_shipped: bool = False
    weight: Decimal = Decimal("0")
    shipping_cost: Decimal = Decimal("0")
    bin_rack: Optional[str] = None
    is_service: bool = False
    composite_sub_items: Optional[Any] = None
    additional_info: Optional[Any] = None
    added_date: Optional[datetime] = None

    @property
    def line_value(self) -> Decimal:
        """Quantity times unit price."""
        return self.price_per_unit * self.quantity

    @property
    def profit(self) -> Decimal:
        """Gross profit of the line."""
        return (self.price_per_unit - self.unit_cost) * self.quantity

    @property
    def profit_margin(self) -> Decimal:
        """Profit margin as a percentage of the unit price."""
        if self.price_per_unit == 0:
            return Decimal("0")
        return (self.price_per_unit - self.unit_cost) / self.price_per_unit * 100


class ShippingInfo(BaseModel):
    """Shipping details attached to an order."""
    model_config = ConfigDict(frozen=True)

    tracking_number: Optional[str] = None
    vendor: Optional[str] = None
    postal_service_id: Optional[str] = None
    postal_service_name: Optional[str] = None
    total_weight: Optional[Decimal] = None
    item_weight: Optional[Decimal] = None
    package_category: Optional[str] = None
    package_type: Optional[str] = None
    postage_cost: Optional[Decimal] = None
    postage_cost_ex_tax: Optional[Decimal] = None
    label_printed: bool = False
    label_error: Optional[str] = None
    invoice_printed: bool = False
    pick_list_printed: bool = False
    partial_shipped: bool = False
    manual_adjust: bool = False


class CanonicalOrder(BaseModel):
    """A Linnworks order in the one shape the rest of the pipeline uses.

    Instances are immutable; a re-sync of the same order produces a new one.
    """
    model_config = ConfigDict(frozen=True)

    order_id: Optional[str] = None
    number: Optional[int] = None
    received_date: Optional[datetime] = None
    processed_date: Optional[datetime] = None
    source: Optional[str] = None
    subsource: Optional[str] = None
    currency: str = "GBP"
    total_charge: Decimal = Decimal("0")
    postage_cost: Decimal = Decimal("0")
    postage_cost_ex_tax: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    profit_margin: Decimal = Decimal("0")
    total_discount: Decimal = Decimal("0")
    country_tax_rate: Optional[Decimal] = None
    conversion_rate: Decimal = Decimal("1")
    status: int = 0
    location_id: Optional[str] = None
    is_paid: bool = False
    paid_date: Optional[datetime] = None
    is_cancelled: bool = False
    channel_reference_number: Optional[str] = None
    secondary_reference: Optional[str] = None
    external_reference_num: Optional[str] = None
    items: List[CanonicalOrderItem] = Field(default_factory=list)
    marker: int = 0
    is_parked: bool = False
    label_printed: bool = False
    label_error: Optional[str] = None
    invoice_printed: bool = False
    pick_list_printed: bool = False
    is_rule_run: bool = False
    part_shipped: bool = False
    has_scheduled_delivery: bool = False
    pickwave_ids: Optional[Any] = None
    despatch_by_date: Optional[datetime] = None
    num_items: Optional[int] = None
    payment_method: Optional[str] = None
    payment_method_id: Optional[str] = None
    shipping: Optional[ShippingInfo] = None
    notes: List[Dict[str, Any]] = Field(default_factory=list)
    extended_properties: List[Dict[str, Any]] = Field(default_factory=list)
    identifiers: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def is_processed(self) -> bool:
        """An order is processed exactly when a processed date was resolved."""
        return self.processed_date is not None

    @property
    def has_identity(self) -> bool:
        """Whether the order carries an identifier or an order number."""
        return bool(self.order_id) or self.number is not None

    @property
    def items_value(self) -> Decimal:
        """Sum of line values."""
        return sum((item.line_value for item in self.items), Decimal("0"))

    @property
    def total_profit(self) -> Decimal:
        """Sum of line profits."""
        return sum((item.profit for item in self.items), Decimal("0"))

    @property
    def item_count(self) -> int:
        """Total quantity across all lines."""
        return sum(item.quantity for item in self.items)

    @property
    def net_revenue(self) -> Decimal:
        """Order total less tax."""
        return self.total_charge - self.tax

    @property
    def display_reference(self) -> str:
        """Human readable reference for log messages."""
        if self.number is not None:
            return f"#{self.number}"
        return self.order_id or self.channel_reference_number or "unidentified order"


# =============================================================================
# SESSION MODELS
# =============================================================================

class SessionToken(BaseModel):
    """Linnworks API session obtained from AuthorizeByApplication."""
    token: str
    server: str
    expires_at: datetime
    user_id: Optional[str] = None

    @field_validator("expires_at", mode="after")
    @classmethod
    def ensure_aware(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @classmethod
    def from_auth_response(
        cls,
        data: Dict[str, Any],
        ttl_minutes: int = 55,
        now: Optional[datetime] = None,
    ) -> "SessionToken":
        """Build a session from the AuthorizeByApplication response.

        Args:
            data: Decoded JSON response
            ttl_minutes: Lifetime to assume when the response has no expiry
            now: Reference time (defaults to the current time)

        Raises:
            ValueError: If the response lacks a token or server
        """
        now = now or utc_now()
        token = data.get("Token") or data.get("token")
        server = data.get("Server") or data.get("server")
        if not token or not server:
            raise ValueError("Auth response is missing Token or Server")

        expires_at = parse_linnworks_datetime(data.get("ExpiresAt") or data.get("expires_at"))
        if expires_at is None:
            expires_at = now + timedelta(minutes=ttl_minutes)

        user_id = data.get("UserId") or data.get("Id")
        return cls(
            token=token,
            server=server,
            expires_at=expires_at,
            user_id=str(user_id) if user_id else None,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    def is_expiring_soon(
        self,
        buffer_minutes: int = SESSION_EXPIRY_BUFFER_MINUTES,
        now: Optional[datetime] = None,
    ) -> bool:
        """Whether the session expires within the buffer."""
        return (now or utc_now()) + timedelta(minutes=buffer_minutes) >= self.expires_at

    @property
    def base_url(self) -> str:
        """API base URL on the server assigned to this session."""
        server = self.server.rstrip("/")
        if not server.startswith(("https://", "http://")):
            server = f"https://{server}"
        return f"{server}/api/"

    @property
    def auth_headers(self) -> Dict[str, str]:
        """Linnworks expects the raw session token in the Authorization header."""
        return {"Authorization": self.token}


class LinnworksConnection(BaseModel):
    """Stored credentials and current session of one Linnworks account."""
    account_id: str
    application_id: str
    application_secret: str
    installation_token: str
    session_token: Optional[str] = None
    server_location: Optional[str] = None
    session_expires_at: Optional[datetime] = None
    status: str = "pending"
    is_active: bool = True
    updated_at: Optional[datetime] = None

    @field_validator("session_expires_at", "updated_at", mode="after")
    @classmethod
    def ensure_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @property
    def session(self) -> Optional[SessionToken]:
        """The stored session, if one was ever obtained."""
        if not (self.session_token and self.server_location and self.session_expires_at):
            return None
        return SessionToken(
            token=self.session_token,
            server=self.server_location,
            expires_at=self.session_expires_at,
        )


# =============================================================================
# FETCH FILTERS
# =============================================================================

class ProcessedOrderFilters(BaseModel):
    """Search options for the processed orders endpoint."""
    date_field: str = "received"
    channel: Optional[str] = None
    status: Optional[int] = None
    reference: Optional[str] = None
    sku: Optional[str] = None
    tag: Optional[str] = None
    min_value: Optional[Decimal] = None
    max_value: Optional[Decimal] = None

    @field_validator("date_field")
    @classmethod
    def validate_date_field(cls, v: str) -> str:
        """Ensure the date field is one Linnworks can search by."""
        v = v.lower()
        if v not in PROCESSED_DATE_FIELDS:
            raise ValueError(f"date_field must be one of: {PROCESSED_DATE_FIELDS}")
        return v

    @property
    def has_value_bounds(self) -> bool:
        return self.min_value is not None or self.max_value is not None


# =============================================================================
# SYNC STATE MODELS
# =============================================================================

class SyncCheckpoint(BaseModel):
    """Persisted progress of one sync type against one source."""
    id: Optional[int] = None
    sync_type: str
    source: str
    status: str = CHECKPOINT_PENDING
    last_sync_at: Optional[datetime] = None
    sync_started_at: Optional[datetime] = None
    sync_completed_at: Optional[datetime] = None
    records_synced: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None

    @field_validator("last_sync_at", "sync_started_at", "sync_completed_at", mode="after")
    @classmethod
    def ensure_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @property
    def sync_duration_minutes(self) -> Optional[float]:
        """Minutes between start and completion of the last run."""
        if not self.sync_started_at or not self.sync_completed_at:
            return None
        return (self.sync_completed_at - self.sync_started_at).total_seconds() / 60

    @property
    def success_rate(self) -> float:
        """Percentage of synced records that did not fail."""
        if self.records_synced == 0:
            return 0.0
        return round((self.records_synced - self.records_failed) / self.records_synced * 100, 2)

    @property
    def is_successful(self) -> bool:
        return self.status == CHECKPOINT_COMPLETED and self.records_failed == 0


class FailedOrderSync(BaseModel):
    """An order that could not be imported, kept for retry."""
    id: Optional[int] = None
    order_id: Optional[str] = None
    order_number: Optional[int] = None
    order_type: str
    failure_reason: str
    error_message: Optional[str] = None
    order_data: Dict[str, Any] = Field(default_factory=dict)
    exception_context: Dict[str, Any] = Field(default_factory=dict)
    attempt_count: int = 1
    last_attempted_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    is_resolved: bool = False
    resolved_at: Optional[datetime] = None

    @field_validator("last_attempted_at", "next_retry_at", "resolved_at", mode="after")
    @classmethod
    def ensure_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @property
    def has_exceeded_max_retries(self) -> bool:
        return self.attempt_count >= FAILED_SYNC_MAX_ATTEMPTS

    @property
    def order_identifier(self) -> str:
        """Best available reference to the failed order."""
        if self.order_number is not None:
            return f"#{self.order_number}"
        return self.order_id or "unknown"

    def is_ready_for_retry(self, now: Optional[datetime] = None) -> bool:
        if self.is_resolved or self.next_retry_at is None:
            return False
        return self.next_retry_at <= (now or utc_now())


class SyncLogEntry(BaseModel):
    """Audit record of one sync run."""
    id: Optional[int] = None
    sync_type: str
    status: str = SYNC_LOG_STARTED
    started_at: datetime
    completed_at: Optional[datetime] = None
    total_fetched: int = 0
    total_created: int = 0
    total_updated: int = 0
    total_skipped: int = 0
    total_failed: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None

    @field_validator("started_at", "completed_at", mode="after")
    @classmethod
    def ensure_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @property
    def duration_seconds(self) -> Optional[float]:
        if not self.completed_at:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def duration_for_humans(self) -> str:
        """Duration such as "2 minutes 5 seconds"."""
        seconds = self.duration_seconds
        if seconds is None:
            return "in progress"
        total = int(round(seconds))
        parts = []
        hours, remainder = divmod(total, 3600)
        minutes, secs = divmod(remainder, 60)
        for amount, unit in ((hours, "hour"), (minutes, "minute"), (secs, "second")):
            if amount:
                parts.append(f"{amount} {unit}{'s' if amount != 1 else ''}")
        return " ".join(parts) or "0 seconds"

    @property
    def success_rate(self) -> float:
        """Percentage of processed orders that did not fail."""
        processed = self.total_created + self.total_updated + self.total_skipped + self.total_failed
        if processed == 0:
            return 0.0
        return round((processed - self.total_failed) / processed * 100, 2)


# =============================================================================
# BULK IMPORT
# =============================================================================

class BulkImportRecordSet(BaseModel):
    """Flat, insert-ready rows for one order and everything attached to it.

    Related rows carry `order_id=None` until the parent row exists and
    `with_parent_key` fills in its primary key.
    """
    model_config = ConfigDict(frozen=True)

    order: Dict[str, Any]
    items: List[Dict[str, Any]] = Field(default_factory=list)
    shipping: Optional[Dict[str, Any]] = None
    notes: List[Dict[str, Any]] = Field(default_factory=list)
    properties: List[Dict[str, Any]] = Field(default_factory=list)
    identifiers: List[Dict[str, Any]] = Field(default_factory=list)

    def with_parent_key(self, order_pk: int) -> "BulkImportRecordSet":
        """Copy of this record set with every child row pointing at `order_pk`."""
        def attach(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
            return [{**row, "order_id": order_pk} for row in rows]

        return BulkImportRecordSet(
            order=dict(self.order),
            items=attach(self.items),
            shipping={**self.shipping, "order_id": order_pk} if self.shipping else None,
            notes=attach(self.notes),
            properties=attach(self.properties),
            identifiers=attach(self.identifiers),
        )

    @property
    def child_rows(self) -> int:
        """Number of related rows, shipping included."""
        return (
            len(self.items)
            + len(self.notes)
            + len(self.properties)
            + len(self.identifiers)
            + (1 if self.shipping else 0)
        )
