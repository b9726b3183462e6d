"""Constants and field mappings for the Linnworks order sync.

Linnworks has returned the same order under three generations of keys:
the nested GetOrdersById shape (GeneralInfo / TotalsInfo), the legacy flat
open-orders shape (dReceivedDate, nStatus, fTotalCharge) and snake_case keys
written by older exports. The tables below list, per canonical field, the
paths to try in order. The first path holding a non-null value wins.
"""

from typing import Any, Dict, NamedTuple, Tuple


class FieldRule(NamedTuple):
    """Resolution rule for one canonical field."""
    aliases: Tuple[Tuple[str, ...], ...]  # Key paths, tried in order
    kind: str                             # str, int, decimal, bool, date or raw
    default: Any = None


def _paths(*aliases: str) -> Tuple[Tuple[str, ...], ...]:
    """Turn dotted aliases ("GeneralInfo.Status") into key paths."""
    return tuple(tuple(alias.split(".")) for alias in aliases)


# =============================================================================
# ORDER STATUS
# =============================================================================
# Linnworks numeric order status. 1 doubles as the "paid" sentinel.

STATUS_UNPAID = 0
STATUS_PAID = 1
STATUS_RETURN = 2

ORDER_STATUS_NAMES: Dict[int, str] = {
    STATUS_UNPAID: "pending",
    STATUS_PAID: "processed",
    STATUS_RETURN: "cancelled",
}

DEFAULT_ORDER_STATUS_NAME = "pending"
PROCESSED_STATUS_NAME = "processed"

DEFAULT_CURRENCY = "GBP"

# Dates at or before this year are Linnworks placeholders for "not set"
EPOCH_PLACEHOLDER_YEAR = 1970


# =============================================================================
# ORDER FIELD ALIASES
# =============================================================================

ORDER_FIELD_RULES: Dict[str, FieldRule] = {
    "order_id": FieldRule(_paths("OrderId", "pkOrderID", "order_id"), "str"),
    "number": FieldRule(
        _paths("NumOrderId", "ReferenceNum", "nOrderId", "order_number"), "int"
    ),
    "received_date": FieldRule(
        _paths("GeneralInfo.ReceivedDate", "dReceivedDate", "received_date"), "date"
    ),
    "source": FieldRule(_paths("GeneralInfo.Source", "Source", "order_source"), "str"),
    "subsource": FieldRule(
        _paths("GeneralInfo.SubSource", "SubSource", "subsource"), "str"
    ),
    "currency": FieldRule(
        _paths("TotalsInfo.Currency", "cCurrency", "currency"), "str", DEFAULT_CURRENCY
    ),
    "total_charge": FieldRule(
        _paths("TotalsInfo.TotalCharge", "fTotalCharge", "total_charge"), "decimal", 0
    ),
    "postage_cost": FieldRule(
        _paths("TotalsInfo.PostageCost", "fPostageCost", "postage_cost"), "decimal", 0
    ),
    "postage_cost_ex_tax": FieldRule(
        _paths("TotalsInfo.PostageCostExTax", "postage_cost_ex_tax"), "decimal", 0
    ),
    "tax": FieldRule(_paths("TotalsInfo.Tax", "fTax", "tax"), "decimal", 0),
    "profit_margin": FieldRule(
        _paths("TotalsInfo.ProfitMargin", "ProfitMargin", "profit_margin"), "decimal", 0
    ),
    "total_discount": FieldRule(
        _paths("TotalsInfo.TotalDiscount", "total_discount"), "decimal", 0
    ),
    "status": FieldRule(
        _paths("GeneralInfo.Status", "nStatus", "order_status"), "int", STATUS_UNPAID
    ),
    "location_id": FieldRule(
        _paths("FulfilmentLocationId", "fkOrderLocationID", "location_id"), "str"
    ),
    "paid_date": FieldRule(
        _paths("PaidDateTime", "PaidDate", "dPaidDate", "paid_date"), "date"
    ),
    "is_cancelled": FieldRule(
        _paths("GeneralInfo.HoldOrCancel", "HoldOrCancel", "is_cancelled"), "bool", False
    ),
    "channel_reference_number": FieldRule(
        _paths("GeneralInfo.ReferenceNum", "channel_reference_number"), "str"
    ),
    "secondary_reference": FieldRule(
        _paths("GeneralInfo.SecondaryReference", "secondary_reference"), "str"
    ),
    "external_reference_num": FieldRule(
        _paths("GeneralInfo.ExternalReferenceNum", "external_reference_num"), "str"
    ),
    "marker": FieldRule(_paths("GeneralInfo.Marker", "Marker"), "int", 0),
    "is_parked": FieldRule(_paths("GeneralInfo.IsParked", "IsParked"), "bool", False),
    "label_printed": FieldRule(
        _paths("GeneralInfo.LabelPrinted", "label_printed"), "bool", False
    ),
    "label_error": FieldRule(_paths("GeneralInfo.LabelError", "label_error"), "str"),
    "invoice_printed": FieldRule(
        _paths("GeneralInfo.InvoicePrinted", "invoice_printed"), "bool", False
    ),
    "pick_list_printed": FieldRule(
        _paths("GeneralInfo.PickListPrinted", "pick_list_printed"), "bool", False
    ),
    "is_rule_run": FieldRule(_paths("GeneralInfo.IsRuleRun", "is_rule_run"), "bool", False),
    "part_shipped": FieldRule(
        _paths("GeneralInfo.PartShipped", "part_shipped"), "bool", False
    ),
    "has_scheduled_delivery": FieldRule(
        _paths("GeneralInfo.HasScheduledDelivery", "has_scheduled_delivery"), "bool", False
    ),
    "pickwave_ids": FieldRule(_paths("GeneralInfo.PickwaveIds", "pickwave_ids"), "raw"),
    "despatch_by_date": FieldRule(
        _paths("GeneralInfo.DespatchByDate", "DespatchByDate"), "date"
    ),
    "payment_method": FieldRule(
        _paths("TotalsInfo.PaymentMethod", "GeneralInfo.PaymentMethod", "PaymentMethod"),
        "str",
    ),
    "payment_method_id": FieldRule(
        _paths("TotalsInfo.PaymentMethodId", "payment_method_id"), "str"
    ),
    "country_tax_rate": FieldRule(_paths("TotalsInfo.CountryTaxRate"), "decimal"),
    "conversion_rate": FieldRule(
        _paths("TotalsInfo.ConversionRate", "conversion_rate"), "decimal", 1
    ),
}

# Explicit processed timestamps
PROCESSED_DATE_ALIASES = _paths(
    "dProcessedOn",
    "ProcessedDate",
    "dProcessedDate",
    "GeneralInfo.ProcessedDate",
    "GeneralInfo.dProcessedDate",
)

# Boolean processed flags; when set without a timestamp the received date is used
PROCESSED_FLAG_ALIASES = _paths(
    "Processed",
    "bProcessed",
    "GeneralInfo.Processed",
    "GeneralInfo.bProcessed",
)

ITEMS_ALIASES = _paths("Items", "items")
SHIPPING_INFO_KEY = "ShippingInfo"
NOTES_KEY = "Notes"
EXTENDED_PROPERTIES_KEY = "ExtendedProperties"
IDENTIFIERS_KEY = "OrderIdentifiers"

# ShippingInfo key -> (canonical name, kind)
SHIPPING_FIELD_MAP: Dict[str, Tuple[str, str]] = {
    "TrackingNumber": ("tracking_number", "str"),
    "Vendor": ("vendor", "str"),
    "PostalServiceId": ("postal_service_id", "str"),
    "PostalServiceName": ("postal_service_name", "str"),
    "TotalWeight": ("total_weight", "decimal"),
    "ItemWeight": ("item_weight", "decimal"),
    "PackageCategory": ("package_category", "str"),
    "PackageType": ("package_type", "str"),
    "PostageCost": ("postage_cost", "decimal"),
    "PostageCostExTax": ("postage_cost_ex_tax", "decimal"),
    "LabelPrinted": ("label_printed", "bool"),
    "LabelError": ("label_error", "str"),
    "InvoicePrinted": ("invoice_printed", "bool"),
    "PickListPrinted": ("pick_list_printed", "bool"),
    "PartialShipped": ("partial_shipped", "bool"),
    "ManualAdjust": ("manual_adjust", "bool"),
}


# =============================================================================
# ORDER ITEM FIELD ALIASES
# =============================================================================

ITEM_FIELD_RULES: Dict[str, FieldRule] = {
    "item_id": FieldRule(_paths("ItemId", "item_id"), "str"),
    "stock_item_id": FieldRule(_paths("StockItemId", "stock_item_id"), "str"),
    "stock_item_int_id": FieldRule(_paths("StockItemIntId"), "int"),
    "row_id": FieldRule(_paths("RowId", "row_id"), "str"),
    "item_number": FieldRule(_paths("ItemNumber", "item_number"), "str"),
    "sku": FieldRule(_paths("SKU", "sku"), "str"),
    "title": FieldRule(_paths("Title", "ItemTitle", "item_title"), "str"),
    "item_source": FieldRule(_paths("ItemSource", "item_source"), "str"),
    "channel_sku": FieldRule(_paths("ChannelSKU", "channel_sku"), "str"),
    "channel_title": FieldRule(_paths("ChannelTitle", "channel_title"), "str"),
    "barcode_number": FieldRule(_paths("BarcodeNumber", "barcode_number"), "str"),
    "quantity": FieldRule(_paths("Quantity", "quantity"), "int", 0),
    "part_shipped_qty": FieldRule(_paths("PartShippedQty"), "int"),
    "category_name": FieldRule(_paths("CategoryName", "category_name"), "str"),
    "price_per_unit": FieldRule(_paths("PricePerUnit", "price_per_unit"), "decimal", 0),
    "unit_cost": FieldRule(_paths("UnitCost", "unit_cost"), "decimal", 0),
    "line_total": FieldRule(_paths("Cost", "LineTotal", "line_total"), "decimal", 0),
    "cost": FieldRule(_paths("Cost", "cost"), "decimal", 0),
    "cost_inc_tax": FieldRule(_paths("CostIncTax", "cost_inc_tax"), "decimal", 0),
    "despatch_stock_unit_cost": FieldRule(
        _paths("DespatchStockUnitCost", "despatch_stock_unit_cost"), "decimal", 0
    ),
    "discount": FieldRule(_paths("Discount", "discount"), "decimal", 0),
    "discount_value": FieldRule(_paths("DiscountValue", "discount_value"), "decimal", 0),
    "tax": FieldRule(_paths("Tax", "tax"), "decimal", 0),
    "tax_rate": FieldRule(_paths("TaxRate", "tax_rate"), "decimal", 0),
    "sales_tax": FieldRule(_paths("SalesTax", "sales_tax"), "decimal", 0),
    "tax_cost_inclusive": FieldRule(
        _paths("TaxCostInclusive", "tax_cost_inclusive"), "bool", False
    ),
    "part_shipped": FieldRule(_paths("PartShipped", "part_shipped"), "bool", False),
    "weight": FieldRule(_paths("Weight", "weight"), "decimal", 0),
    "shipping_cost": FieldRule(_paths("ShippingCost", "shipping_cost"), "decimal", 0),
    "bin_rack": FieldRule(_paths("BinRack", "bin_rack"), "str"),
    "is_service": FieldRule(_paths("IsService", "is_service"), "bool", False),
    "composite_sub_items": FieldRule(
        _paths("CompositeSubItems", "composite_sub_items"), "raw"
    ),
    "additional_info": FieldRule(_paths("AdditionalInfo", "additional_info"), "raw"),
    "added_date": FieldRule(_paths("AddedDate", "added_date"), "date"),
}

UNKNOWN_ITEM_TITLE = "Unknown Item"


# =============================================================================
# SYNC TYPES AND SCHEDULES
# =============================================================================

SYNC_OPEN_ORDERS = "open_orders"
SYNC_PROCESSED_ORDERS = "processed_orders"
SYNC_TYPES = (SYNC_OPEN_ORDERS, SYNC_PROCESSED_ORDERS)

DEFAULT_SOURCE = "linnworks"

# Checkpoint lifecycle
CHECKPOINT_PENDING = "pending"
CHECKPOINT_IN_PROGRESS = "in_progress"
CHECKPOINT_COMPLETED = "completed"
CHECKPOINT_FAILED = "failed"

# A fresh checkpoint looks one year back; an unfinished one falls back a week
INITIAL_LOOKBACK_DAYS = 365
INCOMPLETE_LOOKBACK_DAYS = 7

# Sync log lifecycle
SYNC_LOG_STARTED = "started"
SYNC_LOG_COMPLETED = "completed"
SYNC_LOG_FAILED = "failed"

# Hours to wait before retrying an order, indexed by the attempts made before the latest failure
FAILED_SYNC_BACKOFF_HOURS = (1, 6, 24)
FAILED_SYNC_MAX_ATTEMPTS = 3

# Failure reasons stored on failed order syncs
FAILURE_MISSING_IDENTIFIER = "missing_identifier"
FAILURE_PERSISTENCE = "persistence_error"

# Session tokens are refreshed this many minutes before they expire
SESSION_EXPIRY_BUFFER_MINUTES = 5

# Retryable HTTP statuses besides 5xx
RETRYABLE_STATUS_CODES = (408, 429)

# Processed orders can be searched by any of these dates
PROCESSED_DATE_FIELDS = ("received", "processed", "payment", "cancelled")


def failed_sync_backoff_hours(attempt_count: int) -> int:
    """Get the wait before the next retry after `attempt_count` failures.

    Args:
        attempt_count: Number of failed attempts so far (1-based)

    Returns:
        Hours to wait
    """
    index = min(max(attempt_count, 1), len(FAILED_SYNC_BACKOFF_HOURS)) - 1
    return FAILED_SYNC_BACKOFF_HOURS[index]
