"""Assembly of insert-ready rows from normalized orders.

Each CanonicalOrder becomes one flat order row plus flat rows for its
items, shipping, notes, extended properties and identifiers. Related rows
leave `order_id` unset; `Database.write_record_set` fills it in once the
order row exists.
"""

import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .constants import (
    DEFAULT_ORDER_STATUS_NAME,
    EPOCH_PLACEHOLDER_YEAR,
    ORDER_STATUS_NAMES,
    PROCESSED_STATUS_NAME,
    UNKNOWN_ITEM_TITLE,
)
from .deduplication import normalize_channel
from .models import (
    BulkImportRecordSet,
    CanonicalOrder,
    CanonicalOrderItem,
    parse_linnworks_datetime,
)


def normalize_channel_name(value: Optional[str]) -> Optional[str]:
    """Lowercase with spaces replaced by underscores; empty stays None."""
    if not value:
        return None
    return normalize_channel(value)


def map_order_status(status: int, is_processed: bool) -> str:
    """Status name of an order. Being processed outranks the numeric status."""
    if is_processed:
        return PROCESSED_STATUS_NAME
    return ORDER_STATUS_NAMES.get(status, DEFAULT_ORDER_STATUS_NAME)


def _date(value: Any) -> Optional[str]:
    """ISO string for storage, dropping 1970 placeholders."""
    if isinstance(value, datetime):
        parsed = value if value.year > EPOCH_PLACEHOLDER_YEAR else None
    else:
        parsed = parse_linnworks_datetime(value)
    return parsed.isoformat() if parsed else None


def _money(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _flag(value: Any) -> int:
    return 1 if value else 0


def _json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


def assemble_order_row(order: CanonicalOrder) -> Dict[str, Any]:
    return {
        "linnworks_order_id": order.order_id,
        "order_number": order.number,
        "received_date": _date(order.received_date),
        "processed_date": _date(order.processed_date),
        "paid_date": _date(order.paid_date),
        "despatch_by_date": _date(order.despatch_by_date),
        "channel_name": normalize_channel_name(order.source),
        "subsource": normalize_channel_name(order.subsource),
        "currency": order.currency,
        "total_charge": _money(order.total_charge),
        "postage_cost": _money(order.postage_cost),
        "postage_cost_ex_tax": _money(order.postage_cost_ex_tax),
        "tax": _money(order.tax),
        "profit_margin": _money(order.profit_margin),
        "total_discount": _money(order.total_discount),
        "country_tax_rate": _money(order.country_tax_rate),
        "conversion_rate": _money(order.conversion_rate),
        "items_value": _money(order.items_value),
        "total_profit": _money(order.total_profit),
        "status": map_order_status(order.status, order.is_processed),
        "status_code": order.status,
        "is_open": _flag(not order.is_processed),
        "is_processed": _flag(order.is_processed),
        "is_paid": _flag(order.is_paid),
        "is_cancelled": _flag(order.is_cancelled),
        "is_parked": _flag(order.is_parked),
        "location_id": order.location_id,
        "channel_reference_number": order.channel_reference_number,
        "secondary_reference": order.secondary_reference,
        "external_reference_num": order.external_reference_num,
        "marker": order.marker,
        "label_printed": _flag(order.label_printed),
        "label_error": order.label_error,
        "invoice_printed": _flag(order.invoice_printed),
        "pick_list_printed": _flag(order.pick_list_printed),
        "is_rule_run": _flag(order.is_rule_run),
        "part_shipped": _flag(order.part_shipped),
        "has_scheduled_delivery": _flag(order.has_scheduled_delivery),
        "pickwave_ids": _json(order.pickwave_ids),
        "num_items": order.num_items,
        "payment_method": order.payment_method,
        "payment_method_id": order.payment_method_id,
    }


def assemble_item_row(item: CanonicalOrderItem) -> Dict[str, Any]:
    return {
        "order_id": None,
        "item_id": item.item_id,
        "stock_item_id": item.stock_item_id,
        "stock_item_int_id": item.stock_item_int_id,
        "row_id": item.row_id,
        "item_number": item.item_number,
        "sku": item.sku,
        "title": item.title or item.sku or UNKNOWN_ITEM_TITLE,
        "item_source": item.item_source,
        "channel_sku": item.channel_sku,
        "channel_title": item.channel_title,
        "barcode_number": item.barcode_number,
        "category_name": item.category_name,
        "quantity": item.quantity,
        "part_shipped_qty": item.part_shipped_qty,
        "price_per_unit": _money(item.price_per_unit),
        "unit_cost": _money(item.unit_cost),
        "line_total": _money(item.line_total),
        "cost": _money(item.cost),
        "cost_inc_tax": _money(item.cost_inc_tax),
        "despatch_stock_unit_cost": _money(item.despatch_stock_unit_cost),
        "discount": _money(item.discount),
        "discount_value": _money(item.discount_value),
        "tax": _money(item.tax),
        "tax_rate": _money(item.tax_rate),
        "sales_tax": _money(item.sales_tax),
        "tax_cost_inclusive": _flag(item.tax_cost_inclusive),
        "part_shipped": _flag(item.part_shipped),
        "weight": _money(item.weight),
        "shipping_cost": _money(item.shipping_cost),
        "bin_rack": item.bin_rack,
        "is_service": _flag(item.is_service),
        "composite_sub_items": _json(item.composite_sub_items),
        "additional_info": _json(item.additional_info),
        "added_date": _date(item.added_date),
        "line_value": _money(item.line_value),
        "profit": _money(item.profit),
        "profit_margin": _money(item.profit_margin),
    }


def assemble_shipping_row(order: CanonicalOrder) -> Optional[Dict[str, Any]]:
    if order.shipping is None:
        return None
    shipping = order.shipping
    return {
        "order_id": None,
        "tracking_number": shipping.tracking_number,
        "vendor": shipping.vendor,
        "postal_service_id": shipping.postal_service_id,
        "postal_service_name": shipping.postal_service_name,
        "total_weight": _money(shipping.total_weight),
        "item_weight": _money(shipping.item_weight),
        "package_category": shipping.package_category,
        "package_type": shipping.package_type,
        "postage_cost": _money(shipping.postage_cost),
        "postage_cost_ex_tax": _money(shipping.postage_cost_ex_tax),
        "label_printed": _flag(shipping.label_printed),
        "label_error": shipping.label_error,
        "invoice_printed": _flag(shipping.invoice_printed),
        "pick_list_printed": _flag(shipping.pick_list_printed),
        "partial_shipped": _flag(shipping.partial_shipped),
        "manual_adjust": _flag(shipping.manual_adjust),
    }


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def assemble_note_rows(order: CanonicalOrder) -> List[Dict[str, Any]]:
    return [
        {
            "order_id": None,
            "linnworks_note_id": _text(note.get("NoteId")),
            "note_date": _date(note.get("NoteDate")),
            "is_internal": _flag(note.get("Internal", note.get("IsInternal"))),
            "note_text": _text(note.get("Note")),
            "created_by": _text(note.get("CreatedBy")),
        }
        for note in order.notes
    ]


def assemble_property_rows(order: CanonicalOrder) -> List[Dict[str, Any]]:
    return [
        {
            "order_id": None,
            "property_type": _text(prop.get("PropertyType") or prop.get("Type")),
            "property_name": _text(prop.get("PropertyName") or prop.get("Name")),
            "property_value": _text(prop.get("PropertyValue") or prop.get("Value")),
        }
        for prop in order.extended_properties
    ]


def assemble_identifier_rows(order: CanonicalOrder) -> List[Dict[str, Any]]:
    rows = []
    for identifier in order.identifiers:
        try:
            identifier_id = int(identifier.get("OrderIdentifierId") or 0)
        except (TypeError, ValueError):
            identifier_id = 0
        rows.append({
            "order_id": None,
            "identifier_id": identifier_id,
            "tag": _text(identifier.get("Tag")),
            "name": _text(identifier.get("TagDisplayText") or identifier.get("Name")),
            "is_custom": _flag(identifier.get("IsCustom")),
        })
    return rows


def assemble(order: CanonicalOrder) -> BulkImportRecordSet:
    """Flatten a normalized order into insert-ready rows.

    Args:
        order: Normalized order

    Returns:
        BulkImportRecordSet whose related rows have no parent key yet
    """
    return BulkImportRecordSet(
        order=assemble_order_row(order),
        items=[assemble_item_row(item) for item in order.items],
        shipping=assemble_shipping_row(order),
        notes=assemble_note_rows(order),
        properties=assemble_property_rows(order),
        identifiers=assemble_identifier_rows(order),
    )
