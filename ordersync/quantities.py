"""Normalise the quantities typed into an order draft."""
from __future__ import annotations

from typing import Iterable, List, Mapping, Optional, Sequence

from ordersync.models import DEFAULT_UNIT, Customer, OrderItem, Product

MONEY_UNIT = "元"
KILOGRAM_UNIT = "公斤"

# One catty (斤) is 600 g.
KILOGRAM_TO_CATTY = 1000 / 600


def unit_price(
    product_id: str,
    customer: Optional[Customer],
    product: Optional[Product],
) -> float:
    """Price per product unit, preferring the customer's own price list."""

    if customer is not None:
        price = customer.price_for(product_id)
        if price is not None:
            return price
    return product.price if product is not None else 0.0


def normalize_item(
    item: OrderItem,
    customer: Optional[Customer],
    product: Optional[Product],
) -> OrderItem:
    """Convert money and kilogram amounts to the product's own unit.

    An amount in ``元`` is divided by the unit price when one is known; an
    amount in ``公斤`` becomes ``斤`` when that is the product's unit.  Results
    are rounded to two decimals and never negative.
    """

    quantity = max(0.0, float(item.quantity))
    unit = item.unit or DEFAULT_UNIT
    target_unit = product.unit if product is not None else DEFAULT_UNIT

    if unit == MONEY_UNIT:
        price = unit_price(item.product_id, customer, product)
        if price > 0:
            quantity = round(quantity / price, 2)
            unit = target_unit
    elif unit == KILOGRAM_UNIT and target_unit == DEFAULT_UNIT:
        quantity = round(quantity * KILOGRAM_TO_CATTY, 2)
        unit = DEFAULT_UNIT

    return OrderItem(product_id=item.product_id, quantity=max(0.0, quantity), unit=unit)


def normalize_items(
    items: Iterable[OrderItem],
    customer: Optional[Customer],
    products: Sequence[Product],
) -> List[OrderItem]:
    by_id: Mapping[str, Product] = {product.id: product for product in products}
    return [normalize_item(item, customer, by_id.get(item.product_id)) for item in items]


__all__ = [
    "KILOGRAM_TO_CATTY",
    "KILOGRAM_UNIT",
    "MONEY_UNIT",
    "normalize_item",
    "normalize_items",
    "unit_price",
]
