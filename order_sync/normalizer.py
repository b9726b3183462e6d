"""Normalization of raw Linnworks order payloads.

Every payload shape Linnworks has produced is reduced to a CanonicalOrder
using the alias tables in constants. Normalization never raises: unknown
keys are ignored, missing ones take their defaults and malformed values
become null. Orders that cannot be identified are rejected afterwards by
`ensure_identity`, not here.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .constants import (
    EXTENDED_PROPERTIES_KEY,
    IDENTIFIERS_KEY,
    ITEM_FIELD_RULES,
    ITEMS_ALIASES,
    NOTES_KEY,
    ORDER_FIELD_RULES,
    PROCESSED_DATE_ALIASES,
    PROCESSED_FLAG_ALIASES,
    SHIPPING_FIELD_MAP,
    SHIPPING_INFO_KEY,
    STATUS_PAID,
    FieldRule,
)
from .models import (
    CanonicalOrder,
    CanonicalOrderItem,
    ShippingInfo,
    parse_linnworks_datetime,
)

logger = logging.getLogger(__name__)

_MISSING = object()

# Range of a SQLite INTEGER column
_INT64_MIN = -2 ** 63
_INT64_MAX = 2 ** 63 - 1


class ValidationRejection(Exception):
    """Raised when a normalized order has neither an identifier nor a number."""

    def __init__(self, order: CanonicalOrder, reason: str = "missing_identifier"):
        self.order = order
        self.reason = reason
        super().__init__(
            f"Order {order.channel_reference_number or '(no reference)'} "
            f"rejected: {reason}"
        )


# =============================================================================
# VALUE COERCION
# =============================================================================

def lookup(data: Mapping[str, Any], path: Tuple[str, ...]) -> Any:
    """Follow a key path through nested mappings.

    Returns the sentinel `_MISSING` when any step is absent or null.
    """
    current: Any = data
    for key in path:
        if not isinstance(current, Mapping):
            return _MISSING
        current = current.get(key)
        if current is None:
            return _MISSING
    return current


def first_present(data: Mapping[str, Any], paths) -> Any:
    """Value of the first path that holds a non-null value, else `_MISSING`."""
    for path in paths:
        value = lookup(data, path)
        if value is not _MISSING:
            return value
    return _MISSING


def to_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool):
        return Decimal(int(value))
    try:
        if isinstance(value, (int, Decimal)):
            result = Decimal(value)
        elif isinstance(value, float):
            result = Decimal(str(value))
        elif isinstance(value, str):
            result = Decimal(value.strip())
        else:
            return None
    except InvalidOperation:
        return None
    return result if result.is_finite() else None


def to_int(value: Any) -> Optional[int]:
    """Integer value, None when it is not a number or does not fit a SQLite INTEGER."""
    if isinstance(value, bool):
        return int(value)
    try:
        if isinstance(value, int):
            result = value
        elif isinstance(value, float):
            result = int(value)
        elif isinstance(value, (str, Decimal)):
            number = Decimal(value.strip()) if isinstance(value, str) else value
            if number.is_finite() and number.adjusted() > 18:
                return None
            result = int(number)
        else:
            return None
    except (InvalidOperation, ValueError, OverflowError):
        return None
    return result if _INT64_MIN <= result <= _INT64_MAX else None


def to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y"}
    return bool(value)


def to_str(value: Any) -> Optional[str]:
    if isinstance(value, (dict, list)):
        return None
    text = str(value)
    return text if text != "" else None


def coerce(value: Any, kind: str) -> Any:
    """Convert a raw value to the field kind, None when it does not fit."""
    if kind == "str":
        return to_str(value)
    if kind == "int":
        return to_int(value)
    if kind == "decimal":
        return to_decimal(value)
    if kind == "bool":
        return to_bool(value)
    if kind == "date":
        return parse_linnworks_datetime(value)
    return value


def resolve(data: Mapping[str, Any], rule: FieldRule) -> Any:
    """Resolve one field: the first alias whose value coerces, else the rule default.

    A present but unusable value (a non-numeric ReferenceNum for the order
    number, say) does not block the aliases after it.
    """
    for path in rule.aliases:
        value = lookup(data, path)
        if value is _MISSING:
            continue
        coerced = coerce(value, rule.kind)
        if coerced is not None:
            return coerced
    return _default(rule)


def _default(rule: FieldRule) -> Any:
    if rule.default is None:
        return None
    return coerce(rule.default, rule.kind)


# =============================================================================
# NORMALIZATION
# =============================================================================

def normalize_item(raw: Any) -> CanonicalOrderItem:
    """Normalize one order line."""
    if not isinstance(raw, Mapping):
        return CanonicalOrderItem()
    fields = {name: resolve(raw, rule) for name, rule in ITEM_FIELD_RULES.items()}
    return CanonicalOrderItem(**{k: v for k, v in fields.items() if v is not None})


def normalize_shipping(raw: Any) -> Optional[ShippingInfo]:
    """Map a ShippingInfo block, None when it is absent or empty."""
    if not isinstance(raw, Mapping) or not raw:
        return None
    fields = {}
    for key, (name, kind) in SHIPPING_FIELD_MAP.items():
        value = raw.get(key)
        if value is None:
            continue
        coerced = coerce(value, kind)
        if coerced is not None:
            fields[name] = coerced
    return ShippingInfo(**fields)


def resolve_processed_date(raw: Mapping[str, Any], received_date):
    """Processed timestamp of an order.

    An explicit processed date wins. Without one, a processed flag means
    the order was processed on receipt, so the received date is used.
    """
    explicit = first_present(raw, PROCESSED_DATE_ALIASES)
    if explicit is not _MISSING and explicit != "":
        return parse_linnworks_datetime(explicit)

    flag = first_present(raw, PROCESSED_FLAG_ALIASES)
    if flag is not _MISSING and to_bool(flag):
        return received_date
    return None


def _loose_list(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [dict(entry) for entry in value if isinstance(entry, Mapping)]


def normalize_order(raw: Any) -> CanonicalOrder:
    """Normalize a raw Linnworks order payload into a CanonicalOrder.

    Args:
        raw: Decoded JSON object of one order, in any supported shape

    Returns:
        CanonicalOrder (empty when the payload is not an object)
    """
    if not isinstance(raw, Mapping):
        logger.warning(f"Ignoring non-object order payload of type {type(raw).__name__}")
        return CanonicalOrder()

    fields = {name: resolve(raw, rule) for name, rule in ORDER_FIELD_RULES.items()}

    raw_items = first_present(raw, ITEMS_ALIASES)
    items = [normalize_item(item) for item in raw_items] if isinstance(raw_items, list) else []

    fields["items"] = items
    fields["num_items"] = sum(item.quantity for item in items) if items else None
    fields["processed_date"] = resolve_processed_date(raw, fields["received_date"])
    fields["is_paid"] = fields["paid_date"] is not None or fields["status"] == STATUS_PAID
    fields["shipping"] = normalize_shipping(raw.get(SHIPPING_INFO_KEY))
    fields["notes"] = _loose_list(raw.get(NOTES_KEY))
    fields["extended_properties"] = _loose_list(raw.get(EXTENDED_PROPERTIES_KEY))
    fields["identifiers"] = _loose_list(raw.get(IDENTIFIERS_KEY))

    return CanonicalOrder(**{k: v for k, v in fields.items() if v is not None})


def ensure_identity(order: CanonicalOrder) -> CanonicalOrder:
    """Return the order unchanged, or raise ValidationRejection.

    Raises:
        ValidationRejection: If the order has neither identifier nor number
    """
    if not order.has_identity:
        raise ValidationRejection(order)
    return order
