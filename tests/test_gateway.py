from datetime import date

import pytest

from conftest import ENDPOINT
from ordersync.errors import ConflictError, NetworkError, ServerError
from ordersync.gateway import RemoteGateway, pull_start_date, returned_version


@pytest.fixture
def gateway(backend):
    return RemoteGateway(ENDPOINT, timeout=5, session=backend)


def test_pull_requests_the_init_dataset(gateway, backend):
    data = gateway.pull("2024-04-02")

    assert backend.pulls == [{"type": "init", "startDate": "2024-04-02"}]
    assert backend.headers["User-Agent"] == "OrderSync"
    assert {row["ID"] for row in data["products"]} == {"p1", "p2"}


def test_pull_start_date_counts_back_from_today():
    assert pull_start_date(60, date(2024, 6, 1)) == "2024-04-02"
    assert pull_start_date(-3, date(2024, 6, 1)) == "2024-06-01"


def test_successful_write_returns_data(gateway, backend):
    data = gateway.post("updateProduct", {"id": "p3", "name": "拉麵", "unit": "斤", "price": 40, "category": "noodle"})

    assert returned_version(data) == backend.versions["p3"]
    assert backend.posted("updateProduct")[0]["name"] == "拉麵"


def test_version_conflict_raises_conflict_error(gateway, backend):
    backend.seed_order("O1", "好吃麵店", version=100)
    backend.remote_edit("O1", note="改過了")

    with pytest.raises(ConflictError) as excinfo:
        gateway.post("updateOrderStatus", {"id": "O1", "status": "PAID", "originalLastUpdated": 100})

    assert excinfo.value.error_code == "ERR_VERSION_CONFLICT"


def test_server_failure_keeps_message_and_code(gateway, backend):
    backend.fail_next("deleteOrder", error="Order not found", code="ERR_NOT_FOUND")

    with pytest.raises(ServerError) as excinfo:
        gateway.post("deleteOrder", {"id": "O9"})

    assert str(excinfo.value) == "Order not found"
    assert excinfo.value.error_code == "ERR_NOT_FOUND"


@pytest.mark.parametrize(
    "arrange",
    [
        lambda backend: backend.reply_next("createOrder", status_code=502),
        lambda backend: backend.reply_next("createOrder"),
        lambda backend: backend.reply_next("createOrder", payload=["not", "a", "mapping"]),
        lambda backend: backend.drop_next("createOrder"),
    ],
    ids=["http-error", "invalid-json", "unexpected-shape", "connection-reset"],
)
def test_transport_failures_raise_network_error(gateway, backend, arrange):
    arrange(backend)

    with pytest.raises(NetworkError):
        gateway.post("createOrder", {"id": "ORD-1", "items": []})


def test_unknown_action_is_rejected_before_sending(gateway, backend):
    with pytest.raises(ValueError):
        gateway.post("dropAllTables", {})

    assert backend.posts == []


def test_login_and_change_password(gateway, backend):
    assert gateway.login("secret") is True
    assert gateway.login("wrong") is False
    assert gateway.change_password("wrong", "new") is False
    assert gateway.change_password("secret", "new") is True
    assert gateway.login("new") is True


def test_pull_failure_is_a_network_error(gateway, backend):
    backend.drop_next("init")

    with pytest.raises(NetworkError):
        gateway.pull("2024-04-02")
