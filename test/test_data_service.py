from datetime import date, timedelta
from pathlib import Path

import pytest
from conftest import FakeRemote, make_container

from pharmsync.domain.errors import InsufficientStockError, NotFoundError, ValidationError


def _setup(tmp_path: Path, remote=None, online: bool = False):
    c = make_container(tmp_path, remote=remote, online=online)
    c.data.initialize()
    return c


def _paracetamol(c) -> str:
    return c.data.create_product({"name": "Paracetamol 500mg", "price": 850, "category": "Analgesic"})


def test_create_and_update_are_readable_before_any_network_call(tmp_path: Path):
    remote = FakeRemote(fail_ids={"prod_fixed"})
    c = _setup(tmp_path, remote=remote)

    pid = c.data.create("products", {"id": "prod_fixed", "name": "Aspirin", "price": 300.0})
    assert c.data.get("products", pid)["name"] == "Aspirin"

    c.data.update("products", pid, {"price": 320.0})
    assert c.data.get("products", pid)["price"] == 320.0
    assert remote.calls == []
    assert c.data.get_pending_sync_count() == 2


def test_create_generates_prefixed_ids_and_stamps_timestamps(tmp_path: Path):
    c = _setup(tmp_path)

    pid = _paracetamol(c)
    row = c.data.get("products", pid)
    assert pid.startswith("prod_")
    assert row["created_at"] and row["updated_at"]
    assert row["updated_at"].endswith("Z")

    entry = c.store.list_pending(10)[0]
    assert (entry.table_name, entry.record_id, entry.operation) == ("products", pid, "insert")
    assert entry.data["name"] == "Paracetamol 500mg"


def test_offline_product_then_force_sync_uploads_it(tmp_path: Path):
    remote = FakeRemote()
    c = _setup(tmp_path, remote=remote)

    pid = _paracetamol(c)
    assert c.data.get_pending_sync_count() == 1
    assert c.data.force_sync().error == "No internet connection"

    c.coordinator.set_online(True)
    result = c.data.force_sync()
    c.data.close()

    assert result.success is True
    uploaded = remote.tables["products"][pid]
    assert uploaded["name"] == "Paracetamol 500mg"
    assert uploaded["price"] == 850.0
    assert uploaded["category"] == "Analgesic"
    assert c.data.get_pending_sync_count() == 0


def test_stock_update_records_in_movement(tmp_path: Path):
    c = _setup(tmp_path)
    pid = _paracetamol(c)

    inv = c.data.update_stock(pid, 150, "Restock", user_id="staff_1")

    assert inv["quantity"] == 150
    assert c.store.get_inventory_by_product(pid)["quantity"] == 150
    movements = c.data.list("stock_movements", where={"product_id": pid})
    assert len(movements) == 1
    assert movements[0]["type"] == "in"
    assert movements[0]["quantity"] == 150
    assert movements[0]["user_id"] == "staff_1"
    ops = [(e.table_name, e.operation) for e in c.store.list_pending(10)]
    assert ops == [("products", "insert"), ("inventory", "insert"), ("stock_movements", "insert")]


def test_stock_update_down_and_same_quantity(tmp_path: Path):
    c = _setup(tmp_path)
    pid = _paracetamol(c)
    c.data.update_stock(pid, 20, "Restock")

    c.data.update_stock(pid, 15, "Damaged")
    c.data.update_stock(pid, 15, "Count check")

    types = sorted((m["type"], m["quantity"]) for m in c.data.list("stock_movements", where={"product_id": pid}))
    assert types == [("adjustment", 0), ("in", 20), ("out", 5)]
    assert len(c.data.list("inventory", where={"product_id": pid})) == 1


def test_stock_update_validation(tmp_path: Path):
    c = _setup(tmp_path)
    pid = _paracetamol(c)

    with pytest.raises(ValidationError, match=">= 0"):
        c.data.update_stock(pid, -1, "oops")
    with pytest.raises(NotFoundError):
        c.data.update_stock("prod_missing", 5, "Restock")


def test_sequential_updates_upload_the_last_value(tmp_path: Path):
    remote = FakeRemote()
    c = _setup(tmp_path, remote=remote)
    pid = _paracetamol(c)
    c.coordinator.state.is_online = True

    c.data.update("products", pid, {"price": 900.0, "brand": "First"})
    c.data.update("products", pid, {"price": 950.0, "brand": "Second"})
    c.coordinator.drain_once()

    assert remote.tables["products"][pid]["price"] == 950.0
    assert remote.tables["products"][pid]["brand"] == "Second"
    assert [op for _, _, op in remote.calls] == ["insert", "update", "update"]


def test_offline_writes_are_uploaded_after_reconnect(tmp_path: Path):
    remote = FakeRemote()
    c = _setup(tmp_path, remote=remote)
    pid = _paracetamol(c)
    c.data.update_product(pid, {"price": 875.0})
    c.data.update_stock(pid, 40, "Opening stock")
    assert remote.calls == []

    c.coordinator.set_online(True)
    c.coordinator.tick()
    c.data.close()

    assert remote.tables["products"][pid]["price"] == 875.0
    inv = c.store.get_inventory_by_product(pid)
    assert remote.tables["inventory"][inv["id"]]["quantity"] == 40
    assert c.data.get_pending_sync_count() == 0


def test_create_sale_decrements_stock_and_queues_everything(tmp_path: Path):
    c = _setup(tmp_path)
    pid = _paracetamol(c)
    c.data.update_stock(pid, 10, "Restock")
    before = c.data.get_pending_sync_count()

    sale_id = c.data.create_sale(
        {"staff_id": "staff_1", "payment_method": "cash"},
        [
            {"product_id": pid, "quantity": 2, "unit_price": 850},
            {"product_id": pid, "quantity": 1, "unit_price": 850},
        ],
    )

    sale = c.data.get("sales", sale_id)
    assert sale_id.startswith("sale_")
    assert sale["total_amount"] == 2550.0
    assert c.store.get_inventory_by_product(pid)["quantity"] == 7
    items = c.data.list("sale_items", where={"sale_id": sale_id})
    assert sorted(i["quantity"] for i in items) == [1, 2]
    out = c.data.list("stock_movements", where={"product_id": pid, "type": "out"})
    assert [(m["quantity"], m["reason"]) for m in out] == [(3, "Sale")]
    # sale + 2 items + inventory + movement
    assert c.data.get_pending_sync_count() == before + 5


def test_create_sale_rejects_oversell_across_repeated_lines(tmp_path: Path):
    c = _setup(tmp_path)
    pid = _paracetamol(c)
    c.data.update_stock(pid, 3, "Restock")
    before = c.data.get_pending_sync_count()

    with pytest.raises(InsufficientStockError, match="Available: 3"):
        c.data.create_sale({}, [
            {"product_id": pid, "quantity": 2, "unit_price": 850},
            {"product_id": pid, "quantity": 2, "unit_price": 850},
        ])

    assert c.store.get_inventory_by_product(pid)["quantity"] == 3
    assert c.data.list("sales") == []
    assert c.data.get_pending_sync_count() == before


def test_create_sale_validation(tmp_path: Path):
    c = _setup(tmp_path)
    pid = _paracetamol(c)
    c.data.update_stock(pid, 5, "Restock")

    with pytest.raises(ValidationError, match="Cart is empty"):
        c.data.create_sale({}, [])
    with pytest.raises(ValidationError, match="Unit price must be > 0"):
        c.data.create_sale({}, [{"product_id": pid, "quantity": 1, "unit_price": -1}])
    with pytest.raises(ValidationError, match="Quantity must be >= 1"):
        c.data.create_sale({}, [{"product_id": pid, "quantity": 0, "unit_price": 10}])
    with pytest.raises(ValidationError):
        c.data.create_sale({"payment_method": "cheque"}, [{"product_id": pid, "quantity": 1, "unit_price": 10}])


def test_create_product_validation(tmp_path: Path):
    c = _setup(tmp_path)

    with pytest.raises(ValidationError, match="name is required"):
        c.data.create_product({"name": "  ", "price": 10})
    with pytest.raises(ValidationError, match="Price must be > 0"):
        c.data.create_product({"name": "Bad", "price": 0})
    with pytest.raises(ValidationError, match="Cost must be >= 0"):
        c.data.create_product({"name": "Bad", "price": 10, "cost_price": -1})
    assert c.data.get_pending_sync_count() == 0


def test_update_guards(tmp_path: Path):
    c = _setup(tmp_path)
    pid = _paracetamol(c)
    inv = c.data.update_stock(pid, 5, "Restock")
    before = c.data.get_pending_sync_count()

    with pytest.raises(ValidationError, match="update_stock"):
        c.data.update("inventory", inv["id"], {"quantity": 99})
    with pytest.raises(ValidationError, match="ids can not be changed"):
        c.data.update("products", pid, {"id": "prod_other"})
    with pytest.raises(ValidationError, match="Unknown field"):
        c.data.update("products", pid, {"colour": "red"})
    with pytest.raises(NotFoundError):
        c.data.update("products", "prod_missing", {"price": 1.0})

    assert c.data.get_pending_sync_count() == before
    assert c.store.get_inventory_by_product(pid)["quantity"] == 5


def test_delete_enqueues_and_protects_history_tables(tmp_path: Path):
    c = _setup(tmp_path)
    pid = c.data.create_product({"name": "Discontinued", "price": 10})

    c.data.delete("products", pid)
    assert c.data.get("products", pid) is None
    last = c.store.list_pending(10)[-1]
    assert (last.record_id, last.operation) == (pid, "delete")

    with pytest.raises(ValidationError):
        c.data.delete("stock_movements", "mov_1")
    with pytest.raises(ValidationError):
        c.data.delete("sale_items", "item_1")
    with pytest.raises(NotFoundError):
        c.data.delete("products", pid)


def test_inventory_alerts_are_sorted_by_severity(tmp_path: Path):
    c = _setup(tmp_path)
    today = date(2025, 3, 1)

    empty = c.data.create_product({"name": "Empty", "price": 1})
    low = c.data.create_product({"name": "Low", "price": 1})
    soon = c.data.create_product({"name": "Soon", "price": 1})
    old = c.data.create_product({"name": "Old", "price": 1})
    fine = c.data.create_product({"name": "Fine", "price": 1})

    c.data.update_stock(empty, 0, "Count")
    low_inv = c.data.update_stock(low, 2, "Count")
    c.data.update("inventory", low_inv["id"], {"reorder_point": 10})
    soon_inv = c.data.update_stock(soon, 50, "Count")
    c.data.update("inventory", soon_inv["id"], {"expiry_date": (today + timedelta(days=5)).isoformat()})
    old_inv = c.data.update_stock(old, 50, "Count")
    c.data.update("inventory", old_inv["id"], {"expiry_date": (today - timedelta(days=1)).isoformat()})
    fine_inv = c.data.update_stock(fine, 50, "Count")
    c.data.update("inventory", fine_inv["id"], {"reorder_point": 5, "expiry_date": "2026-01-01"})

    alerts = c.data.inventory_alerts(today=today)

    by_type = {(a.product_name, a.type): a for a in alerts}
    assert set(by_type) == {
        ("Empty", "out_of_stock"),
        ("Low", "low_stock"),
        ("Soon", "expiring_soon"),
        ("Old", "expired"),
    }
    assert by_type[("Low", "low_stock")].severity == "high"
    assert by_type[("Soon", "expiring_soon")].message == "Product expires in 5 days"
    assert [a.severity for a in alerts] == ["critical", "critical", "high", "high"]


def test_initialize_is_idempotent_and_reports_status(tmp_path: Path):
    c = make_container(tmp_path)
    assert c.data.get_sync_status().is_initialized is False

    c.data.initialize()
    c.data.initialize()

    status = c.data.get_sync_status()
    assert status.is_initialized is True
    assert status.is_online is False
    assert status.is_syncing is False
    health = c.data.health_check()
    assert health["local_ok"] is True
    assert health["pending"] == 0


def test_initialize_online_starts_polling(tmp_path: Path):
    c = make_container(tmp_path, online=True)
    c.data.initialize()
    try:
        assert c.data.get_sync_status().is_online is True
        assert c.coordinator.is_polling is True
    finally:
        c.data.close()
    assert c.coordinator.is_polling is False
