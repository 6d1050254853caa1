"""Optimistic create/update/delete/status mutations for every entity kind.

Each public operation validates its input synchronously, applies the change to
the :class:`~ordersync.entity_store.EntityStore` straight away and hands the
remote write to the :class:`~ordersync.write_queue.WriteQueue` under the key
``(kind, record_id)``.  The returned :class:`concurrent.futures.Future`
resolves to a :class:`MutationResult` once the remote store answered:

* success marks the record ``synced`` and adopts the returned version;
* a version conflict is handed to the :class:`ConflictCoordinator` and the
  record stays ``pending``;
* any other failure marks the record ``error``.  A failed delete puts the
  removed record back so that :meth:`MutationPipeline.retry` has something to
  resubmit.
"""
from __future__ import annotations

import logging
import threading
from collections import Counter
from concurrent.futures import Future
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ordersync import codec
from ordersync.conflicts import ConflictCoordinator
from ordersync.debounce import Debouncer
from ordersync.entity_store import EntityStore
from ordersync.errors import ConflictError, GatewayError, ValidationError
from ordersync.gateway import RemoteGateway, returned_version
from ordersync.models import (
    UNVERSIONED,
    ConflictDescriptor,
    Customer,
    Entity,
    EntityKind,
    Order,
    OrderItem,
    OrderStatus,
    PendingAction,
    Product,
    SyncStatus,
    VersionStamp,
    action_name,
    coerce_version,
    new_identifier,
)
from ordersync.quantities import normalize_items
from ordersync.write_queue import WriteQueue

logger = logging.getLogger(__name__)

NotifyCallback = Callable[[str, str], None]
Key = Tuple[EntityKind, str]

OUTCOME_SYNCED = "synced"
OUTCOME_CONFLICT = "conflict"
OUTCOME_ERROR = "error"

QUICK_ADD_PREFIX = "Q-ORD-"
QUICK_ADD_NOTE = "追加單"


@dataclass(frozen=True)
class MutationResult:
    """Outcome of one remote write."""

    kind: EntityKind
    record_id: str
    action: str
    outcome: str
    version: VersionStamp = UNVERSIONED
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome == OUTCOME_SYNCED


@dataclass(frozen=True)
class BatchResult:
    """Outcome of a batch payment settlement."""

    updated: Tuple[str, ...]
    skipped: Tuple[str, ...]
    ok: bool
    error: Optional[str] = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _merge_action(current: Optional[PendingAction], requested: PendingAction) -> PendingAction:
    """Pending action to record when ``requested`` follows an unsynced ``current``."""

    if current is PendingAction.CREATE and requested is not PendingAction.DELETE:
        return PendingAction.CREATE
    if current is PendingAction.UPDATE and requested is PendingAction.STATUS_UPDATE:
        return PendingAction.UPDATE
    return requested


class MutationPipeline:
    def __init__(
        self,
        store: EntityStore,
        gateway: RemoteGateway,
        write_queue: WriteQueue,
        conflicts: ConflictCoordinator,
        *,
        debouncer: Optional[Debouncer] = None,
        notify: Optional[NotifyCallback] = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._queue = write_queue
        self._conflicts = conflicts
        self._debouncer = debouncer or Debouncer()
        self._notify_callback = notify
        self._lock = threading.Lock()
        self._outstanding: Counter = Counter()

    @property
    def debouncer(self) -> Debouncer:
        return self._debouncer

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    def create_order(self, order: Order) -> "Future[MutationResult]":
        order = self._prepare_order(order, prefix="ORD-")
        if self._store.get(EntityKind.ORDER, order.id) is not None:
            raise ValidationError(f"Order {order.id} already exists", field="id")
        self._apply(EntityKind.ORDER, order, PendingAction.CREATE)
        return self._submit(EntityKind.ORDER, order.id, PendingAction.CREATE)

    def update_order(self, order: Order) -> "Future[MutationResult]":
        existing = self._require(EntityKind.ORDER, order.id)
        if not order.created_at:
            order = replace(order, created_at=existing.created_at)
        order = self._prepare_order(order, prefix="ORD-")
        order = replace(order, last_updated=existing.last_updated)
        self._apply(EntityKind.ORDER, order, PendingAction.UPDATE)
        return self._submit(EntityKind.ORDER, order.id, PendingAction.UPDATE)

    def delete_order(self, order_id: str) -> "Future[MutationResult]":
        return self._delete(EntityKind.ORDER, order_id)

    def update_order_status(self, order_id: str, status: Any) -> None:
        """Change an order's status now; the remote call waits for a quiet window.

        Repeated calls for the same order inside the window collapse into one
        ``updateOrderStatus`` carrying the final status.
        """

        new_status = self._parse_status(status)
        order = self._require(EntityKind.ORDER, order_id)
        self._apply(EntityKind.ORDER, replace(order, status=new_status), PendingAction.STATUS_UPDATE)
        self._debouncer.call(
            (EntityKind.ORDER, order_id),
            lambda: self._submit_status(order_id),
        )

    def _submit_status(self, order_id: str) -> "Future[MutationResult]":
        """Send a debounced status change, widened to the content write it rides on.

        A status change made on top of an unconfirmed content edit or create
        must not report that edit as synced, so the full order is sent instead.
        """

        order = self._store.get(EntityKind.ORDER, order_id)
        pending = order.pending_action if order is not None else None
        action = PendingAction.STATUS_UPDATE
        if pending is PendingAction.UPDATE:
            action = PendingAction.UPDATE
        elif pending is PendingAction.CREATE:
            in_flight = self.has_outstanding(EntityKind.ORDER, order_id)
            action = PendingAction.UPDATE if in_flight else PendingAction.CREATE
        return self._submit(EntityKind.ORDER, order_id, action)

    def flush_status_updates(self) -> List["Future[MutationResult]"]:
        """Send every debounced status update immediately."""

        return [future for future in self._debouncer.flush() if future is not None]

    def quick_add_order(
        self,
        customer_name: str,
        items: Iterable[OrderItem],
        delivery_date: str,
    ) -> "Future[MutationResult]":
        """Create a supplementary order for ``customer_name`` on ``delivery_date``."""

        valid_items = [item for item in items if item.product_id and item.quantity > 0]
        if not valid_items:
            raise ValidationError("A quick-add order needs at least one item", field="items")
        customer = self._customer_named(customer_name)
        same_day = [
            order
            for order in self._store.records(EntityKind.ORDER)
            if order.customer_name == customer_name and order.delivery_date == delivery_date
        ]
        delivery_method = (same_day[0].delivery_method if same_day else "") or (
            customer.delivery_method if customer else ""
        )
        now = datetime.now()
        order = Order(
            id=new_identifier(QUICK_ADD_PREFIX),
            customer_name=customer_name,
            delivery_date=delivery_date,
            created_at=_now_iso(),
            delivery_time=now.strftime("%H:%M"),
            delivery_method=delivery_method,
            items=tuple(valid_items),
            note=QUICK_ADD_NOTE,
            status=OrderStatus.PENDING,
        )
        return self.create_order(order)

    def batch_update_payment_status(
        self,
        order_ids: Sequence[str],
        status: Any = OrderStatus.PAID,
    ) -> "Future[BatchResult]":
        """Settle several orders in one ``batchUpdatePaymentStatus`` call.

        The call bypasses the write queue.  Orders with writes still in flight
        or unsynced changes are skipped; if the call fails every updated order
        is put back the way it was.
        """

        new_status = self._parse_status(status)
        snapshots: Dict[str, Order] = {}
        skipped: List[str] = []
        with self._store.lock:
            for order_id in order_ids:
                order = self._store.get(EntityKind.ORDER, order_id)
                if order is None or order.is_unsynced or self.has_outstanding(EntityKind.ORDER, order_id):
                    skipped.append(order_id)
                    continue
                snapshots[order_id] = order
                self._store.upsert(
                    EntityKind.ORDER,
                    replace(order, status=new_status).with_sync(
                        SyncStatus.PENDING, PendingAction.STATUS_UPDATE
                    ),
                )
        if skipped:
            logger.info("Batch settlement skipped %d order(s) with local changes", len(skipped))
        if not snapshots:
            future: "Future[BatchResult]" = Future()
            future.set_result(BatchResult(updated=(), skipped=tuple(skipped), ok=True))
            return future

        def run() -> BatchResult:
            payload = {"orderIds": list(snapshots), "status": new_status.value}
            try:
                data = self._gateway.post("batchUpdatePaymentStatus", payload)
            except GatewayError as exc:
                logger.warning("Batch settlement failed: %s", exc)
                with self._store.lock:
                    for order_id, snapshot in snapshots.items():
                        if not self.has_outstanding(EntityKind.ORDER, order_id):
                            self._store.upsert(EntityKind.ORDER, snapshot)
                self._notify(f"Batch settlement failed: {exc}", "error")
                return BatchResult(updated=(), skipped=tuple(skipped), ok=False, error=str(exc))

            versions = data.get("versions") if isinstance(data, dict) else None
            versions = versions if isinstance(versions, dict) else {}
            for order_id, snapshot in snapshots.items():
                version = coerce_version(versions.get(order_id)) or snapshot.last_updated
                self._settle(EntityKind.ORDER, order_id, version, rebase=True)
            self._notify(f"Settled {len(snapshots)} order(s)", "success")
            return BatchResult(updated=tuple(snapshots), skipped=tuple(skipped), ok=True)

        return self._spawn("ordersync-batch", run)

    # ------------------------------------------------------------------
    # Customers and products
    # ------------------------------------------------------------------
    def save_customer(self, customer: Customer) -> "Future[MutationResult]":
        name = (customer.name or "").strip()
        if not name:
            raise ValidationError("Customer name is required", field="name")
        if not customer.id:
            customer = replace(customer, id=new_identifier())
        for other in self._store.records(EntityKind.CUSTOMER):
            if other.id != customer.id and other.name.strip() == name:
                raise ValidationError(f"Customer {name} already exists", field="name")
        customer = replace(customer, name=name)
        return self._save(EntityKind.CUSTOMER, customer)

    def delete_customer(self, customer_id: str) -> "Future[MutationResult]":
        return self._delete(EntityKind.CUSTOMER, customer_id)

    def save_product(self, product: Product) -> "Future[MutationResult]":
        name = (product.name or "").strip()
        if not name:
            raise ValidationError("Product name is required", field="name")
        if product.price < 0:
            raise ValidationError("Product price cannot be negative", field="price")
        if not product.id:
            product = replace(product, id=new_identifier("p"))
        return self._save(EntityKind.PRODUCT, replace(product, name=name))

    def delete_product(self, product_id: str) -> "Future[MutationResult]":
        return self._delete(EntityKind.PRODUCT, product_id)

    def reorder_products(self, product_ids: Sequence[str]) -> "Future[bool]":
        """Reorder the product list locally and persist it with ``reorderProducts``."""

        ordered_ids = list(dict.fromkeys(product_ids))
        with self._store.lock:
            previous = self._store.records(EntityKind.PRODUCT)
            by_id = {product.id: product for product in previous}
            unknown = [product_id for product_id in ordered_ids if product_id not in by_id]
            if unknown:
                raise ValidationError(f"Unknown product(s): {', '.join(unknown)}", field="productIds")
            listed = set(ordered_ids)
            arranged = [by_id[product_id] for product_id in ordered_ids]
            arranged.extend(product for product in previous if product.id not in listed)
            self._store.replace_all(EntityKind.PRODUCT, arranged)
        previous_order = [product.id for product in previous]

        def run() -> bool:
            try:
                self._gateway.post("reorderProducts", {"productIds": [p.id for p in arranged]})
            except GatewayError as exc:
                logger.warning("Product reorder failed: %s", exc)
                with self._store.lock:
                    current = {product.id: product for product in self._store.records(EntityKind.PRODUCT)}
                    restored = [current.pop(product_id) for product_id in previous_order if product_id in current]
                    restored.extend(current.values())
                    self._store.replace_all(EntityKind.PRODUCT, restored)
                self._notify(f"Product order could not be saved: {exc}", "error")
                return False
            return True

        return self._spawn("ordersync-reorder", run)

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------
    def retry(self, kind: EntityKind, record_id: str) -> "Future[MutationResult]":
        """Resubmit the write named by the record's ``pending_action``."""

        record = self._store.get(kind, record_id)
        if record is None or record.pending_action is None:
            raise ValidationError(f"Nothing to retry for {kind.value} {record_id}")
        action = record.pending_action
        if action is PendingAction.DELETE:
            self._store.remove(kind, record_id)
            return self._submit(kind, record_id, action, snapshot=record)
        self._store.patch(kind, record_id, sync_status=SyncStatus.PENDING, error_message=None)
        return self._submit(kind, record_id, action)

    def has_outstanding(self, kind: EntityKind, record_id: str) -> bool:
        key = (kind, record_id)
        with self._lock:
            if self._outstanding[key] > 0:
                return True
        return self._debouncer.is_pending(key)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _require(self, kind: EntityKind, record_id: str) -> Entity:
        record = self._store.get(kind, record_id) if record_id else None
        if record is None:
            raise ValidationError(f"Unknown {kind.value} {record_id}", field="id")
        return record

    @staticmethod
    def _parse_status(status: Any) -> OrderStatus:
        if isinstance(status, OrderStatus):
            return status
        try:
            return OrderStatus(str(status).strip().upper())
        except ValueError:
            raise ValidationError(f"Unknown order status: {status}", field="status") from None

    def _customer_named(self, name: str) -> Optional[Customer]:
        for customer in self._store.records(EntityKind.CUSTOMER):
            if customer.name == name:
                return customer
        return None

    def _prepare_order(self, order: Order, *, prefix: str) -> Order:
        customer_name = (order.customer_name or "").strip()
        if not customer_name:
            raise ValidationError("Customer name is required", field="customer_name")
        if not order.delivery_date:
            raise ValidationError("Delivery date is required", field="delivery_date")
        items = [item for item in order.items if item.product_id]
        if not items:
            raise ValidationError("An order needs at least one item", field="items")
        items = normalize_items(
            items,
            self._customer_named(customer_name),
            self._store.records(EntityKind.PRODUCT),
        )
        return replace(
            order,
            id=order.id or new_identifier(prefix),
            customer_name=customer_name,
            created_at=order.created_at or _now_iso(),
            items=tuple(items),
        )

    def _save(self, kind: EntityKind, record: Entity) -> "Future[MutationResult]":
        existing = self._store.get(kind, record.id)
        if existing is None:
            action = PendingAction.CREATE
        else:
            action = PendingAction.UPDATE
            record = replace(record, last_updated=existing.last_updated)
        self._apply(kind, record, action)
        return self._submit(kind, record.id, action)

    def _delete(self, kind: EntityKind, record_id: str) -> "Future[MutationResult]":
        snapshot = self._require(kind, record_id)
        self._debouncer.cancel((kind, record_id))
        self._store.remove(kind, record_id)
        return self._submit(kind, record_id, PendingAction.DELETE, snapshot=snapshot)

    def _apply(self, kind: EntityKind, record: Entity, action: PendingAction) -> Entity:
        with self._store.lock:
            current = self._store.get(kind, record.id)
            merged = action
            if current is not None and current.is_unsynced:
                merged = _merge_action(current.pending_action, action)
            return self._store.upsert(kind, record.with_sync(SyncStatus.PENDING, merged))

    def _submit(
        self,
        kind: EntityKind,
        record_id: str,
        action: PendingAction,
        *,
        snapshot: Optional[Entity] = None,
    ) -> "Future[MutationResult]":
        key = (kind, record_id)
        name = action_name(kind, action)
        current = self._store.get(kind, record_id)
        base = current if current is not None else snapshot
        known_version = base.last_updated if base is not None else UNVERSIONED
        result: "Future[MutationResult]" = Future()
        with self._lock:
            self._outstanding[key] += 1

        def task(attempted: VersionStamp) -> VersionStamp:
            try:
                return self._execute(kind, record_id, action, name, attempted, snapshot, result)
            finally:
                with self._lock:
                    self._outstanding[key] -= 1
                    if self._outstanding[key] <= 0:
                        del self._outstanding[key]

        def settle(version_future: "Future[VersionStamp]") -> None:
            if result.done():
                return
            message = "Write task failed"
            record = snapshot if action is PendingAction.DELETE else self._store.get(kind, record_id)
            if record is not None:
                self._mark_failed(kind, record, action, message)
            self._notify(f"Sync failed, marked as error: {message}", "error")
            result.set_result(MutationResult(kind, record_id, name, OUTCOME_ERROR, error=message))

        self._queue.enqueue(key, task, known_version).add_done_callback(settle)
        return result

    def _execute(
        self,
        kind: EntityKind,
        record_id: str,
        action: PendingAction,
        name: str,
        attempted: VersionStamp,
        snapshot: Optional[Entity],
        result: "Future[MutationResult]",
    ) -> VersionStamp:
        record = snapshot if action is PendingAction.DELETE else self._store.get(kind, record_id)
        if record is None:
            logger.info("Skipping %s for %s: record no longer exists", name, record_id)
            result.set_result(
                MutationResult(kind, record_id, name, OUTCOME_ERROR, attempted, "Record no longer exists")
            )
            return attempted

        payload = self._encode(kind, action, record, attempted)
        try:
            data = self._gateway.post(name, payload)
        except ConflictError as exc:
            logger.warning("Version conflict on %s for %s", name, record_id)
            if action is PendingAction.DELETE and self._store.get(kind, record_id) is None:
                self._store.upsert(kind, record.with_sync(SyncStatus.PENDING, PendingAction.DELETE))
            self._conflicts.raise_conflict(
                ConflictDescriptor(
                    action=name,
                    data=payload,
                    description=self._describe(kind, record),
                    kind=kind,
                    record_id=record_id,
                    pending_action=action,
                )
            )
            self._notify("The record was changed elsewhere; choose which version to keep", "error")
            result.set_result(MutationResult(kind, record_id, name, OUTCOME_CONFLICT, attempted, str(exc)))
            return attempted
        except GatewayError as exc:
            logger.warning("%s for %s failed: %s", name, record_id, exc)
            self._mark_failed(kind, record, action, str(exc))
            self._notify(f"Sync failed, marked as error: {exc}", "error")
            result.set_result(MutationResult(kind, record_id, name, OUTCOME_ERROR, attempted, str(exc)))
            return attempted

        version = coerce_version(returned_version(data)) or attempted
        if action is PendingAction.DELETE:
            self._store.remove(kind, record_id)
        else:
            self._settle(kind, record_id, version)
        logger.info("%s for %s accepted (version %s)", name, record_id, version)
        result.set_result(MutationResult(kind, record_id, name, OUTCOME_SYNCED, version))
        return version

    def _settle(self, kind: EntityKind, record_id: str, version: VersionStamp, *, rebase: bool = False) -> None:
        key = (kind, record_id)
        with self._store.lock:
            current = self._store.get(kind, record_id)
            if current is None:
                return
            with self._lock:
                later_writes = self._outstanding[key] > (0 if rebase else 1)
            if later_writes or self._debouncer.is_pending(key):
                changes: Dict[str, Any] = {"last_updated": version}
                if current.pending_action is PendingAction.CREATE:
                    changes["pending_action"] = PendingAction.UPDATE
                self._store.patch(kind, record_id, **changes)
                return
            self._store.upsert(kind, current.mark_synced(version))
        if rebase:
            self._queue.rebase(key, version)

    def _mark_failed(self, kind: EntityKind, record: Entity, action: PendingAction, message: str) -> None:
        with self._store.lock:
            current = self._store.get(kind, record.id)
            if action is PendingAction.DELETE:
                if current is None:
                    self._store.upsert(kind, record.with_sync(SyncStatus.ERROR, PendingAction.DELETE, message))
                return
            if current is None:
                return
            pending = current.pending_action or action
            self._store.upsert(kind, current.with_sync(SyncStatus.ERROR, pending, message))

    def _encode(self, kind: EntityKind, action: PendingAction, record: Entity, version: VersionStamp) -> Dict[str, Any]:
        if action is PendingAction.DELETE:
            return codec.encode_delete(record.id, version)
        if kind is EntityKind.ORDER:
            if action is PendingAction.STATUS_UPDATE:
                return codec.encode_status(record, version)
            return codec.encode_order(record, version, self._store.records(EntityKind.PRODUCT))
        if kind is EntityKind.CUSTOMER:
            return codec.encode_customer(record, version)
        return codec.encode_product(record, version)

    @staticmethod
    def _describe(kind: EntityKind, record: Entity) -> str:
        if kind is EntityKind.ORDER:
            return f"Order for {record.customer_name} ({record.delivery_date})"
        if kind is EntityKind.CUSTOMER:
            return f"Customer {record.name}"
        return f"Product {record.name}"

    def _spawn(self, name: str, work: Callable[[], Any]) -> Future:
        future: Future = Future()

        def runner() -> None:
            future.set_running_or_notify_cancel()
            try:
                future.set_result(work())
            except Exception as exc:
                logger.exception("%s failed", name)
                future.set_exception(exc)

        threading.Thread(target=runner, name=name, daemon=True).start()
        return future

    def _notify(self, message: str, level: str = "info") -> None:
        if self._notify_callback:
            try:
                self._notify_callback(message, level)
            except Exception:  # pragma: no cover - UI callback guard
                logger.debug("Notify callback failed", exc_info=True)


__all__ = [
    "BatchResult",
    "MutationPipeline",
    "MutationResult",
    "OUTCOME_CONFLICT",
    "OUTCOME_ERROR",
    "OUTCOME_SYNCED",
    "QUICK_ADD_NOTE",
    "QUICK_ADD_PREFIX",
]
