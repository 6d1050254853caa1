from __future__ import annotations

import os
import sys
import tempfile
import threading
from collections import deque
from datetime import date
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Tuple

os.environ["ORDERSYNC_HOME"] = tempfile.mkdtemp(prefix="ordersync-tests-")
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
import requests

from ordersync.session import SyncSession
from settings import SyncSettings

ENDPOINT = "https://script.example.test/macros/s/fake/exec"
TODAY = date(2024, 6, 1)

_INVALID_JSON = object()


class _FakeResponse:
    def __init__(self, payload: Any, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def json(self) -> Any:
        if self._payload is _INVALID_JSON:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeBackend:
    """In-memory stand-in for the web app, usable as a ``requests.Session``."""

    def __init__(self) -> None:
        self.headers: Dict[str, str] = {}
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.products: Dict[str, Dict[str, Any]] = {}
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.versions: Dict[str, int] = {}
        self.clock = 99
        self.password = "secret"
        self.posts: List[Tuple[str, Dict[str, Any]]] = []
        self.pulls: List[Dict[str, Any]] = []
        self.pulled = threading.Event()
        self.closed = False
        self._replies: Deque[Tuple[str, Any]] = deque()
        self._gates: Dict[Tuple[str, Optional[str]], Tuple[threading.Event, threading.Event]] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Seeding and remote-side edits
    # ------------------------------------------------------------------
    def _next_version(self) -> int:
        self.clock += 1
        return self.clock

    def _stamp(self, record_id: str, version: Optional[int]) -> int:
        if version is None:
            version = self._next_version()
        else:
            self.clock = max(self.clock, version)
        self.versions[record_id] = version
        return version

    def seed_product(self, product_id: str, name: str, unit: str = "斤", price: float = 0, version: Optional[int] = None) -> None:
        with self._lock:
            self.products[product_id] = {"id": product_id, "name": name, "unit": unit, "price": price, "category": "noodle"}
            self._stamp(product_id, version)

    def seed_customer(self, customer_id: str, name: str, *, delivery_method: str = "", price_list: Optional[List[Dict[str, Any]]] = None, version: Optional[int] = None) -> None:
        with self._lock:
            self.customers[customer_id] = {
                "id": customer_id,
                "name": name,
                "phone": "",
                "deliveryTime": "08:00",
                "deliveryMethod": delivery_method,
                "paymentTerm": "daily",
                "defaultItems": [],
                "priceList": price_list or [],
                "offDays": [],
                "holidayDates": [],
            }
            self._stamp(customer_id, version)

    def seed_order(
        self,
        order_id: str,
        customer_name: str,
        *,
        delivery_date: str = "2024-06-01",
        items: Optional[List[Tuple[str, float]]] = None,
        status: str = "PENDING",
        note: str = "",
        version: Optional[int] = None,
    ) -> None:
        with self._lock:
            self.orders[order_id] = {
                "id": order_id,
                "createdAt": "2024-05-31T08:00:00Z",
                "customerName": customer_name,
                "deliveryDate": delivery_date,
                "deliveryTime": "08:00",
                "deliveryMethod": "",
                "note": note,
                "status": status,
                "items": [
                    {"productName": name, "quantity": quantity, "unit": "斤"}
                    for name, quantity in (items or [("油麵", 10)])
                ],
            }
            self._stamp(order_id, version)

    def remote_edit(self, record_id: str, **fields: Any) -> int:
        """Change a record as another client would, bumping its version."""

        with self._lock:
            for table in (self.orders, self.customers, self.products):
                if record_id in table:
                    table[record_id].update(fields)
                    return self._stamp(record_id, None)
        raise KeyError(record_id)

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------
    def fail_next(self, action: str, error: str = "Sheet is locked", code: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"success": False, "error": error}
        if code:
            payload["errorCode"] = code
        self._replies.append((action, _FakeResponse(payload)))

    def reply_next(self, action: str, payload: Any = _INVALID_JSON, status_code: int = 200) -> None:
        self._replies.append((action, _FakeResponse(payload, status_code)))

    def drop_next(self, action: str) -> None:
        self._replies.append((action, requests.ConnectionError("connection reset")))

    def hold(self, action: str, record_id: Optional[str] = None) -> Tuple[threading.Event, threading.Event]:
        """Block ``action`` until the returned release event is set."""

        entered, release = threading.Event(), threading.Event()
        self._gates[(action, record_id)] = (entered, release)
        return entered, release

    def posted(self, action: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [data for name, data in self.posts if name == action]

    # ------------------------------------------------------------------
    # requests.Session interface
    # ------------------------------------------------------------------
    def get(self, url: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        params = dict(params or {})
        with self._lock:
            self.pulls.append(params)
        try:
            reply = self._take_reply("init")
            if reply is not None:
                return reply
            with self._lock:
                return _FakeResponse({"success": True, "data": self._dataset(params.get("startDate", ""))})
        finally:
            self.pulled.set()

    def post(self, url: str, json: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        body = json or {}
        action = body.get("action", "")
        data = dict(body.get("data") or {})
        with self._lock:
            self.posts.append((action, data))
        for key in ((action, data.get("id")), (action, None)):
            gate = self._gates.get(key)
            if gate is not None:
                gate[0].set()
                gate[1].wait(5)
                break
        reply = self._take_reply(action)
        if reply is not None:
            return reply
        with self._lock:
            return _FakeResponse(self._dispatch(action, data))

    def close(self) -> None:
        self.closed = True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _take_reply(self, action: str) -> Any:
        with self._lock:
            for index, (name, reply) in enumerate(self._replies):
                if name == action:
                    del self._replies[index]
                    break
            else:
                return None
        if isinstance(reply, Exception):
            raise reply
        return reply

    def _dataset(self, start_date: str) -> Dict[str, Any]:
        customers = [
            {
                "ID": row["id"],
                "客戶名稱": row["name"],
                "電話": row["phone"],
                "配送時間": row["deliveryTime"],
                "配送方式": row["deliveryMethod"],
                "付款週期": row["paymentTerm"],
                "預設品項JSON": list(row["defaultItems"]),
                "價目表JSON": list(row["priceList"]),
                "公休日週期JSON": list(row["offDays"]),
                "特定公休日JSON": list(row["holidayDates"]),
                "lastUpdated": self.versions[row["id"]],
            }
            for row in self.customers.values()
        ]
        products = [
            {
                "ID": row["id"],
                "品項": row["name"],
                "單位": row["unit"],
                "單價": row["price"],
                "分類": row["category"],
                "lastUpdated": self.versions[row["id"]],
            }
            for row in self.products.values()
        ]
        orders = []
        for row in self.orders.values():
            if start_date and row["deliveryDate"] < start_date:
                continue
            for item in row["items"]:
                orders.append(
                    {
                        "建立時間": row["createdAt"],
                        "訂單ID": row["id"],
                        "客戶名": row["customerName"],
                        "配送日期": row["deliveryDate"],
                        "配送時間": row["deliveryTime"],
                        "品項": item["productName"],
                        "數量": item["quantity"],
                        "unit": item.get("unit", ""),
                        "備註": row["note"],
                        "狀態": row["status"],
                        "配送方式": row["deliveryMethod"],
                        "lastUpdated": self.versions[row["id"]],
                    }
                )
        return {"customers": customers, "products": products, "orders": orders}

    def _conflicts(self, data: Dict[str, Any]) -> bool:
        record_id = data.get("id")
        if data.get("force") or record_id not in self.versions:
            return False
        original = data.get("originalLastUpdated")
        return original is not None and original != self.versions[record_id]

    def _dispatch(self, action: str, data: Dict[str, Any]) -> Dict[str, Any]:
        if action == "login":
            return {"success": True, "data": data.get("password") == self.password}
        if action == "changePassword":
            if data.get("oldPassword") != self.password:
                return {"success": True, "data": False}
            self.password = data.get("newPassword")
            return {"success": True, "data": True}
        if action == "batchUpdatePaymentStatus":
            versions = {}
            for order_id in data.get("orderIds", []):
                if order_id in self.orders:
                    self.orders[order_id]["status"] = data.get("status")
                    versions[order_id] = self._stamp(order_id, None)
            return {"success": True, "data": {"versions": versions}}
        if action == "reorderProducts":
            ids = data.get("productIds", [])
            self.products = {pid: self.products[pid] for pid in ids if pid in self.products}
            return {"success": True, "data": None}

        if self._conflicts(data):
            return {"success": False, "error": "Data was modified", "errorCode": "ERR_VERSION_CONFLICT"}

        record_id = data["id"]
        fields = {key: value for key, value in data.items() if key not in ("originalLastUpdated", "force")}
        if action in ("createOrder", "updateOrderContent"):
            self.orders[record_id] = fields
        elif action == "updateOrderStatus":
            if record_id not in self.orders:
                return {"success": False, "error": "Order not found"}
            self.orders[record_id]["status"] = fields["status"]
        elif action == "updateCustomer":
            self.customers[record_id] = fields
        elif action == "updateProduct":
            self.products[record_id] = fields
        elif action in ("deleteOrder", "deleteCustomer", "deleteProduct"):
            table = {"deleteOrder": self.orders, "deleteCustomer": self.customers, "deleteProduct": self.products}[action]
            table.pop(record_id, None)
            self.versions.pop(record_id, None)
            return {"success": True, "data": {"id": record_id}}
        else:
            return {"success": False, "error": f"Unknown action: {action}"}
        return {"success": True, "data": {"id": record_id, "lastUpdated": self._stamp(record_id, None)}}


@pytest.fixture(autouse=True)
def _no_endpoint_override(monkeypatch):
    monkeypatch.delenv("ORDERSYNC_ENDPOINT", raising=False)


@pytest.fixture
def backend() -> FakeBackend:
    fake = FakeBackend()
    fake.seed_product("p1", "油麵", unit="斤", price=30)
    fake.seed_product("p2", "烏龍麵", unit="包", price=25)
    fake.seed_customer("c1", "好吃麵店", delivery_method="機車")
    return fake


@pytest.fixture
def sync_settings() -> SyncSettings:
    return SyncSettings(endpoint=ENDPOINT, status_debounce_seconds=5.0, request_timeout_seconds=5.0)


@pytest.fixture
def session(backend, sync_settings):
    sync_session = SyncSession(sync_settings, http_session=backend, today=lambda: TODAY)
    yield sync_session
    for _, release in list(backend._gates.values()):
        release.set()
    sync_session.close(timeout=5)
