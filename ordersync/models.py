"""Typed records shared by the OrderSync synchronisation engine."""
from __future__ import annotations

import math
import time
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class Unversioned:
    """Marker for a record the remote store has never confirmed."""

    _instance: Optional["Unversioned"] = None

    def __new__(cls) -> "Unversioned":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNVERSIONED"


UNVERSIONED = Unversioned()


@dataclass(frozen=True, order=True)
class Version:
    """Version stamp assigned by the remote store on an accepted write."""

    stamp: int

    def __str__(self) -> str:
        return str(self.stamp)


VersionStamp = Union[Unversioned, Version]


def coerce_version(value: Any) -> VersionStamp:
    """Turn a raw ``lastUpdated`` value into a :data:`VersionStamp`."""

    if isinstance(value, (Version, Unversioned)):
        return value
    if value is None or isinstance(value, bool):
        return UNVERSIONED
    if isinstance(value, int):
        return Version(value)
    if not isinstance(value, float):
        text = str(value).strip()
        if not text:
            return UNVERSIONED
        try:
            value = float(text)
        except ValueError:
            return UNVERSIONED
    if not math.isfinite(value):
        return UNVERSIONED
    return Version(int(value))


def is_newer(candidate: VersionStamp, current: VersionStamp) -> bool:
    """Whether ``candidate`` should replace ``current``; anything beats unversioned."""

    if not isinstance(candidate, Version):
        return False
    return not isinstance(current, Version) or candidate > current


def version_to_wire(version: VersionStamp) -> Optional[int]:
    if isinstance(version, Version):
        return version.stamp
    return None


class SyncStatus(Enum):
    SYNCED = "synced"
    PENDING = "pending"
    ERROR = "error"


class PendingAction(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    STATUS_UPDATE = "statusUpdate"


class OrderStatus(Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"

    @classmethod
    def parse(cls, value: Any) -> "OrderStatus":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().upper()
        try:
            return cls(text)
        except ValueError:
            return cls.PENDING


class EntityKind(Enum):
    CUSTOMER = "customer"
    PRODUCT = "product"
    ORDER = "order"


# Remote action names per entity kind and pending action.
ACTION_NAMES: Dict[Tuple[EntityKind, PendingAction], str] = {
    (EntityKind.ORDER, PendingAction.CREATE): "createOrder",
    (EntityKind.ORDER, PendingAction.UPDATE): "updateOrderContent",
    (EntityKind.ORDER, PendingAction.STATUS_UPDATE): "updateOrderStatus",
    (EntityKind.ORDER, PendingAction.DELETE): "deleteOrder",
    (EntityKind.CUSTOMER, PendingAction.CREATE): "updateCustomer",
    (EntityKind.CUSTOMER, PendingAction.UPDATE): "updateCustomer",
    (EntityKind.CUSTOMER, PendingAction.DELETE): "deleteCustomer",
    (EntityKind.PRODUCT, PendingAction.CREATE): "updateProduct",
    (EntityKind.PRODUCT, PendingAction.UPDATE): "updateProduct",
    (EntityKind.PRODUCT, PendingAction.DELETE): "deleteProduct",
}

METADATA_FIELDS = frozenset(
    {"last_updated", "sync_status", "pending_action", "error_message"}
)

DEFAULT_UNIT = "斤"


def action_name(kind: EntityKind, action: PendingAction) -> str:
    try:
        return ACTION_NAMES[(kind, action)]
    except KeyError:
        raise ValueError(f"{action.value} is not supported for {kind.value} records") from None


def new_identifier(prefix: str = "") -> str:
    """Return a time based identifier, e.g. ``ORD-1717400000000``."""

    return f"{prefix}{int(time.time() * 1000)}"


@dataclass(frozen=True)
class DefaultItem:
    product_id: str
    quantity: float
    unit: str = DEFAULT_UNIT


@dataclass(frozen=True)
class PriceEntry:
    product_id: str
    price: float
    unit: str = DEFAULT_UNIT


@dataclass(frozen=True)
class OrderItem:
    product_id: str
    quantity: float
    unit: str = DEFAULT_UNIT


@dataclass(frozen=True)
class _SyncMetadata:
    """Mixin carrying the bookkeeping fields every entity shares."""

    def with_sync(
        self,
        status: SyncStatus,
        action: Optional[PendingAction] = None,
        error_message: Optional[str] = None,
    ):
        return replace(
            self,
            sync_status=status,
            pending_action=action,
            error_message=error_message if status is SyncStatus.ERROR else None,
        )

    def mark_synced(self, version: VersionStamp):
        return replace(
            self,
            last_updated=version,
            sync_status=SyncStatus.SYNCED,
            pending_action=None,
            error_message=None,
        )

    @property
    def is_unsynced(self) -> bool:
        return self.sync_status in (SyncStatus.PENDING, SyncStatus.ERROR)

    def business_fields(self) -> Dict[str, Any]:
        return {
            item.name: getattr(self, item.name)
            for item in fields(self)
            if item.name not in METADATA_FIELDS
        }


@dataclass(frozen=True)
class Customer(_SyncMetadata):
    id: str
    name: str
    phone: str = ""
    delivery_time: str = ""
    delivery_method: str = ""
    payment_term: str = "daily"
    default_items: Tuple[DefaultItem, ...] = ()
    price_list: Tuple[PriceEntry, ...] = ()
    off_days: Tuple[int, ...] = ()
    holiday_dates: Tuple[str, ...] = ()
    last_updated: VersionStamp = UNVERSIONED
    sync_status: SyncStatus = SyncStatus.SYNCED
    pending_action: Optional[PendingAction] = None
    error_message: Optional[str] = None

    def price_for(self, product_id: str) -> Optional[float]:
        for entry in self.price_list:
            if entry.product_id == product_id:
                return entry.price
        return None


@dataclass(frozen=True)
class Product(_SyncMetadata):
    id: str
    name: str
    unit: str = DEFAULT_UNIT
    price: float = 0.0
    category: str = "other"
    last_updated: VersionStamp = UNVERSIONED
    sync_status: SyncStatus = SyncStatus.SYNCED
    pending_action: Optional[PendingAction] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class Order(_SyncMetadata):
    id: str
    customer_name: str
    delivery_date: str
    created_at: str = ""
    delivery_time: str = ""
    delivery_method: str = ""
    items: Tuple[OrderItem, ...] = ()
    note: str = ""
    status: OrderStatus = OrderStatus.PENDING
    last_updated: VersionStamp = UNVERSIONED
    sync_status: SyncStatus = SyncStatus.SYNCED
    pending_action: Optional[PendingAction] = None
    error_message: Optional[str] = None


Entity = Union[Customer, Product, Order]

ENTITY_TYPES: Dict[EntityKind, type] = {
    EntityKind.CUSTOMER: Customer,
    EntityKind.PRODUCT: Product,
    EntityKind.ORDER: Order,
}


@dataclass
class Dataset:
    """The three collections as delivered by a pull."""

    customers: List[Customer] = field(default_factory=list)
    products: List[Product] = field(default_factory=list)
    orders: List[Order] = field(default_factory=list)

    def collection(self, kind: EntityKind) -> List[Entity]:
        if kind is EntityKind.CUSTOMER:
            return list(self.customers)
        if kind is EntityKind.PRODUCT:
            return list(self.products)
        return list(self.orders)

    def counts(self) -> Dict[str, int]:
        return {
            "customers": len(self.customers),
            "products": len(self.products),
            "orders": len(self.orders),
        }


@dataclass(frozen=True)
class ConflictDescriptor:
    """A write rejected with ``ERR_VERSION_CONFLICT``, kept for the operator."""

    action: str
    data: Dict[str, Any]
    description: str
    kind: EntityKind
    record_id: str
    pending_action: PendingAction


__all__ = [
    "ACTION_NAMES",
    "ConflictDescriptor",
    "Customer",
    "Dataset",
    "DefaultItem",
    "DEFAULT_UNIT",
    "Entity",
    "ENTITY_TYPES",
    "EntityKind",
    "METADATA_FIELDS",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PendingAction",
    "PriceEntry",
    "Product",
    "SyncStatus",
    "UNVERSIONED",
    "Unversioned",
    "Version",
    "VersionStamp",
    "action_name",
    "coerce_version",
    "is_newer",
    "new_identifier",
    "version_to_wire",
]
