"""Conversion between the remote store's JSON rows and typed entities.

The remote store is a spreadsheet exposed through a web app.  Its rows arrive
as loosely typed dictionaries whose keys are either the localized sheet
headers (``客戶名稱``, ``訂單ID`` ...) or their English equivalents, and whose
JSON columns may hold either parsed arrays or the raw text.  Everything in
this module is lenient: unknown fields are ignored, missing fields take a
default, and a malformed value never raises.

``decode_dataset``
    Build customers, products and orders from an ``init`` pull, grouping the
    order line items that share an order id.

``encode_customer`` / ``encode_product`` / ``encode_order``
    Produce the write payloads, including the ``originalLastUpdated`` and
    ``force`` flags when requested.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from ordersync.models import (
    DEFAULT_UNIT,
    Customer,
    Dataset,
    DefaultItem,
    Order,
    OrderItem,
    OrderStatus,
    PriceEntry,
    Product,
    SyncStatus,
    VersionStamp,
    coerce_version,
    version_to_wire,
)

logger = logging.getLogger(__name__)

UNKNOWN_CUSTOMER = "未知客戶"

CUSTOMER_KEYS: Mapping[str, Sequence[str]] = {
    "id": ("ID", "id"),
    "name": ("客戶名稱", "name"),
    "phone": ("電話", "phone"),
    "delivery_time": ("配送時間", "deliveryTime"),
    "delivery_method": ("配送方式", "deliveryMethod"),
    "payment_term": ("付款週期", "paymentTerm"),
    "default_items": ("預設品項JSON", "預設品項", "defaultItems"),
    "off_days": ("公休日週期JSON", "公休日週期", "offDays"),
    "holiday_dates": ("特定公休日JSON", "特定公休日", "holidayDates"),
}

PRODUCT_KEYS: Mapping[str, Sequence[str]] = {
    "id": ("ID", "id"),
    "name": ("品項", "name"),
    "unit": ("單位", "unit"),
    "price": ("單價", "price"),
    "category": ("分類", "category"),
}

ORDER_KEYS: Mapping[str, Sequence[str]] = {
    "id": ("訂單ID", "id"),
    "created_at": ("建立時間", "createdAt"),
    "customer_name": ("客戶名", "customerName"),
    "delivery_date": ("配送日期", "deliveryDate"),
    "delivery_time": ("配送時間", "deliveryTime"),
    "note": ("備註", "note"),
    "status": ("狀態", "status"),
    "delivery_method": ("配送方式", "deliveryMethod"),
    "product_name": ("品項", "productName"),
    "quantity": ("數量", "quantity"),
    "unit": ("unit", "單位"),
}

_PRICE_LIST_HINTS = ("價目表", "Price", "priceList")


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------
def pick(row: Mapping[str, Any], keys: Iterable[str], default: Any = "") -> Any:
    """Return the first non-empty value stored under any of ``keys``."""

    for key in keys:
        value = row.get(key)
        if value not in (None, ""):
            return value
    return default


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _number(value: Any, default: float = 0.0) -> float:
    if value in (None, "") or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def safe_json_array(value: Any) -> List[Any]:
    """Return ``value`` as a list, parsing JSON text when necessary."""

    if not value:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, tuple):
        return list(value)
    if isinstance(value, str):
        trimmed = value.strip()
        if trimmed in ("", '""'):
            return []
        try:
            parsed = json.loads(trimmed)
        except json.JSONDecodeError:
            logger.warning("JSON parse error for value: %r", value)
            return []
        return parsed if isinstance(parsed, list) else []
    return []


def normalize_date(value: Any) -> str:
    """Return ``YYYY-MM-DD`` for any recognisable date, else the raw text."""

    if not value:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    candidate = text.replace("/", "-")
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(candidate).date().isoformat()
    except ValueError:
        pass
    try:
        return datetime.strptime(candidate[:10], "%Y-%m-%d").date().isoformat()
    except ValueError:
        return text


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------
def decode_customer(row: Mapping[str, Any]) -> Customer:
    price_key = next(
        (key for key in row if any(hint in str(key) for hint in _PRICE_LIST_HINTS)),
        "價目表JSON",
    )
    default_items = []
    for entry in safe_json_array(pick(row, CUSTOMER_KEYS["default_items"], None)):
        if not isinstance(entry, Mapping):
            continue
        product_id = _text(entry.get("productId"))
        if not product_id:
            continue
        default_items.append(
            DefaultItem(
                product_id=product_id,
                quantity=_number(entry.get("quantity")),
                unit=_text(entry.get("unit")) or DEFAULT_UNIT,
            )
        )
    price_list = []
    for entry in safe_json_array(row.get(price_key) or row.get("priceList")):
        if not isinstance(entry, Mapping):
            continue
        price_list.append(
            PriceEntry(
                product_id=_text(entry.get("productId")),
                price=_number(entry.get("price")),
                unit=_text(entry.get("unit")) or DEFAULT_UNIT,
            )
        )
    off_days = []
    for day in safe_json_array(pick(row, CUSTOMER_KEYS["off_days"], None)):
        try:
            off_days.append(int(day))
        except (TypeError, ValueError):
            continue
    holiday_dates = [
        normalize_date(value)
        for value in safe_json_array(pick(row, CUSTOMER_KEYS["holiday_dates"], None))
        if value
    ]
    return Customer(
        id=_text(pick(row, CUSTOMER_KEYS["id"])),
        name=_text(pick(row, CUSTOMER_KEYS["name"])),
        phone=_text(pick(row, CUSTOMER_KEYS["phone"])),
        delivery_time=_text(pick(row, CUSTOMER_KEYS["delivery_time"])),
        delivery_method=_text(pick(row, CUSTOMER_KEYS["delivery_method"])),
        payment_term=_text(pick(row, CUSTOMER_KEYS["payment_term"])) or "daily",
        default_items=tuple(default_items),
        price_list=tuple(price_list),
        off_days=tuple(off_days),
        holiday_dates=tuple(holiday_dates),
        last_updated=coerce_version(row.get("lastUpdated")),
        sync_status=SyncStatus.SYNCED,
    )


def decode_product(row: Mapping[str, Any]) -> Product:
    return Product(
        id=_text(pick(row, PRODUCT_KEYS["id"])),
        name=_text(pick(row, PRODUCT_KEYS["name"])),
        unit=_text(pick(row, PRODUCT_KEYS["unit"])) or DEFAULT_UNIT,
        price=_number(pick(row, PRODUCT_KEYS["price"], 0)),
        category=_text(pick(row, PRODUCT_KEYS["category"])) or "other",
        last_updated=coerce_version(row.get("lastUpdated")),
        sync_status=SyncStatus.SYNCED,
    )


def decode_orders(rows: Iterable[Mapping[str, Any]], products: Sequence[Product]) -> List[Order]:
    """Group flat order line items into :class:`Order` records."""

    by_name = {product.name: product for product in products}
    headers: Dict[str, Dict[str, Any]] = {}
    items: Dict[str, List[OrderItem]] = {}
    for row in rows:
        order_id = _text(pick(row, ORDER_KEYS["id"]))
        if not order_id:
            logger.debug("Order row without identifier skipped: %r", row)
            continue
        if order_id not in headers:
            headers[order_id] = {
                "id": order_id,
                "created_at": _text(pick(row, ORDER_KEYS["created_at"])),
                "customer_name": _text(pick(row, ORDER_KEYS["customer_name"])) or UNKNOWN_CUSTOMER,
                "delivery_date": normalize_date(pick(row, ORDER_KEYS["delivery_date"])),
                "delivery_time": _text(pick(row, ORDER_KEYS["delivery_time"])),
                "note": _text(pick(row, ORDER_KEYS["note"])),
                "status": OrderStatus.parse(pick(row, ORDER_KEYS["status"], "PENDING")),
                "delivery_method": _text(pick(row, ORDER_KEYS["delivery_method"])),
                "last_updated": coerce_version(row.get("lastUpdated")),
            }
            items[order_id] = []
        product_name = _text(pick(row, ORDER_KEYS["product_name"]))
        if not product_name:
            continue
        product = by_name.get(product_name)
        items[order_id].append(
            OrderItem(
                product_id=product.id if product else product_name,
                quantity=_number(pick(row, ORDER_KEYS["quantity"], 0)),
                unit=_text(pick(row, ORDER_KEYS["unit"])) or (product.unit if product else DEFAULT_UNIT),
            )
        )
    return [
        Order(items=tuple(items[order_id]), sync_status=SyncStatus.SYNCED, **header)
        for order_id, header in headers.items()
    ]


def decode_dataset(payload: Optional[Mapping[str, Any]]) -> Dataset:
    """Decode the ``data`` member of an ``init`` pull."""

    payload = payload or {}
    customers = [
        decode_customer(row)
        for row in payload.get("customers") or []
        if isinstance(row, Mapping)
    ]
    products = [
        decode_product(row)
        for row in payload.get("products") or []
        if isinstance(row, Mapping)
    ]
    orders = decode_orders(
        (row for row in payload.get("orders") or [] if isinstance(row, Mapping)),
        products,
    )
    return Dataset(
        customers=[customer for customer in customers if customer.id],
        products=[product for product in products if product.id],
        orders=orders,
    )


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------
def _with_version(
    payload: Dict[str, Any], version: VersionStamp, force: bool
) -> Dict[str, Any]:
    wire = version_to_wire(version)
    if wire is not None:
        payload["originalLastUpdated"] = wire
    if force:
        payload["force"] = True
    return payload


def encode_customer(
    customer: Customer, version: VersionStamp, *, force: bool = False
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": customer.id,
        "name": customer.name,
        "phone": customer.phone,
        "deliveryTime": customer.delivery_time,
        "deliveryMethod": customer.delivery_method,
        "paymentTerm": customer.payment_term,
        "defaultItems": [
            {"productId": item.product_id, "quantity": item.quantity, "unit": item.unit}
            for item in customer.default_items
        ],
        "priceList": [
            {"productId": entry.product_id, "price": entry.price, "unit": entry.unit}
            for entry in customer.price_list
        ],
        "offDays": list(customer.off_days),
        "holidayDates": list(customer.holiday_dates),
    }
    return _with_version(payload, version, force)


def encode_product(
    product: Product, version: VersionStamp, *, force: bool = False
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": product.id,
        "name": product.name,
        "unit": product.unit,
        "price": product.price,
        "category": product.category,
    }
    return _with_version(payload, version, force)


def encode_order(
    order: Order,
    version: VersionStamp,
    products: Sequence[Product] = (),
    *,
    force: bool = False,
) -> Dict[str, Any]:
    """Return an order payload whose items carry product names, as stored remotely."""

    by_id = {product.id: product for product in products}
    items = []
    for item in order.items:
        product = by_id.get(item.product_id)
        items.append(
            {
                "productName": product.name if product else item.product_id,
                "quantity": item.quantity,
                "unit": item.unit,
            }
        )
    payload: Dict[str, Any] = {
        "id": order.id,
        "createdAt": order.created_at,
        "customerName": order.customer_name,
        "deliveryDate": order.delivery_date,
        "deliveryTime": order.delivery_time,
        "deliveryMethod": order.delivery_method,
        "items": items,
        "note": order.note,
        "status": order.status.value,
    }
    return _with_version(payload, version, force)


def encode_status(order: Order, version: VersionStamp, *, force: bool = False) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"id": order.id, "status": order.status.value}
    return _with_version(payload, version, force)


def encode_delete(record_id: str, version: VersionStamp, *, force: bool = False) -> Dict[str, Any]:
    return _with_version({"id": record_id}, version, force)


__all__ = [
    "decode_customer",
    "decode_dataset",
    "decode_orders",
    "decode_product",
    "encode_customer",
    "encode_delete",
    "encode_order",
    "encode_product",
    "encode_status",
    "normalize_date",
    "pick",
    "safe_json_array",
]
