import json

from ordersync import codec
from ordersync.hash import record_fingerprint
from ordersync.models import (
    UNVERSIONED,
    Order,
    OrderItem,
    OrderStatus,
    Product,
    SyncStatus,
    Version,
    coerce_version,
)


def test_version_zero_is_not_unversioned():
    assert coerce_version(0) == Version(0)
    assert bool(coerce_version(0)) is True
    assert coerce_version(None) is UNVERSIONED
    assert coerce_version("") is UNVERSIONED
    assert coerce_version("1717400000000") == Version(1717400000000)
    assert not UNVERSIONED


def test_non_finite_versions_are_unversioned():
    assert coerce_version(float("nan")) is UNVERSIONED
    assert coerce_version(float("inf")) is UNVERSIONED
    assert coerce_version("inf") is UNVERSIONED
    assert coerce_version("1e400") is UNVERSIONED
    assert coerce_version("NaN") is UNVERSIONED
    assert coerce_version(105.0) == Version(105)


def test_decode_survives_a_corrupt_version_cell():
    payload = {
        "products": [
            {"ID": "p1", "品項": "油麵", "單位": "斤", "lastUpdated": float("nan")},
            {"ID": "p2", "品項": "烏龍麵", "單位": "包", "lastUpdated": float("inf")},
            {"ID": "p3", "品項": "拉麵", "單位": "斤", "lastUpdated": 12},
        ],
    }

    dataset = codec.decode_dataset(payload)

    assert [product.last_updated for product in dataset.products] == [UNVERSIONED, UNVERSIONED, Version(12)]


def test_decode_groups_localized_order_rows():
    payload = {
        "products": [
            {"ID": "p1", "品項": "油麵", "單位": "斤", "單價": "30"},
            {"id": "p2", "name": "烏龍麵", "unit": "包", "price": 25, "lastUpdated": 7},
        ],
        "orders": [
            {"訂單ID": "O1", "客戶名": "好吃麵店", "配送日期": "2024/06/01", "品項": "油麵", "數量": 10, "狀態": "SHIPPED", "lastUpdated": 100},
            {"訂單ID": "O1", "客戶名": "好吃麵店", "配送日期": "2024/06/01", "品項": "烏龍麵", "數量": "3"},
            {"訂單ID": "O2", "配送日期": "2024-06-02T16:00:00.000Z", "品項": "神秘麵", "數量": 1},
            {"客戶名": "沒有單號"},
        ],
    }

    dataset = codec.decode_dataset(payload)

    assert dataset.counts() == {"customers": 0, "products": 2, "orders": 2}
    first, second = dataset.orders
    assert first.id == "O1"
    assert first.delivery_date == "2024-06-01"
    assert first.status is OrderStatus.SHIPPED
    assert first.last_updated == Version(100)
    assert first.items == (OrderItem("p1", 10.0, "斤"), OrderItem("p2", 3.0, "包"))
    assert first.sync_status is SyncStatus.SYNCED
    assert second.customer_name == codec.UNKNOWN_CUSTOMER
    assert second.delivery_date == "2024-06-02"
    assert second.items[0].product_id == "神秘麵"
    assert second.last_updated is UNVERSIONED
    assert dataset.products[1].last_updated == Version(7)


def test_decode_customer_parses_json_text_and_tolerates_garbage():
    row = {
        "ID": "c1",
        "客戶名稱": " 好吃麵店 ",
        "預設品項JSON": json.dumps([{"productId": "p1", "quantity": 5}]),
        "價目表JSON": json.dumps([{"productId": "p1", "price": 28, "unit": "斤"}]),
        "公休日週期JSON": "[0, 3, \"x\"]",
        "特定公休日JSON": "{not json",
    }

    customer = codec.decode_customer(row)

    assert customer.name == "好吃麵店"
    assert customer.default_items[0].unit == "斤"
    assert customer.price_for("p1") == 28
    assert customer.price_for("p2") is None
    assert customer.off_days == (0, 3)
    assert customer.holiday_dates == ()
    assert customer.payment_term == "daily"


def test_encode_order_uploads_product_names_and_versions():
    order = Order(
        id="O1",
        customer_name="好吃麵店",
        delivery_date="2024-06-01",
        items=(OrderItem("p1", 10), OrderItem("unknown", 2, "包")),
        status=OrderStatus.PAID,
    )
    products = [Product(id="p1", name="油麵")]

    fresh = codec.encode_order(order, UNVERSIONED, products)
    forced = codec.encode_order(order, Version(100), products, force=True)

    assert "originalLastUpdated" not in fresh
    assert "force" not in fresh
    assert fresh["items"] == [
        {"productName": "油麵", "quantity": 10, "unit": "斤"},
        {"productName": "unknown", "quantity": 2, "unit": "包"},
    ]
    assert fresh["status"] == "PAID"
    assert forced["originalLastUpdated"] == 100
    assert forced["force"] is True
    assert codec.encode_delete("O1", Version(0)) == {"id": "O1", "originalLastUpdated": 0}


def test_fingerprint_ignores_sync_metadata():
    order = Order(id="O1", customer_name="好吃麵店", delivery_date="2024-06-01")
    pending = order.with_sync(SyncStatus.PENDING).mark_synced(Version(5))

    assert record_fingerprint(order) == record_fingerprint(pending)
    assert record_fingerprint(order) != record_fingerprint(
        Order(id="O1", customer_name="好吃麵店", delivery_date="2024-06-02")
    )
