from datetime import datetime, timezone
from pathlib import Path

import pytest
from conftest import FakeRemote, make_container

from pharmsync.domain.errors import ValidationError
from pharmsync.domain.models import ConflictOutcome
from pharmsync.repositories.sqlite_store import SqliteLocalStore
from pharmsync.services.conflict import ConflictResolver, remote_is_newer
from pharmsync.time_utils import EPOCH_ISO, parse_iso_datetime

T1 = "2024-03-01T10:00:00.000Z"
T2 = "2024-03-01T10:00:00.001Z"


def _store_with_product(tmp_path: Path, updated_at: str = T1) -> SqliteLocalStore:
    store = SqliteLocalStore(tmp_path / "conflict.db")
    store.init_db()
    store.write("products", {"id": "prod_1", "name": "Local name", "price": 10.0, "updated_at": updated_at})
    return store


def test_newer_remote_replaces_local(tmp_path: Path):
    store = _store_with_product(tmp_path, T1)
    remote = {"id": "prod_1", "name": "Remote name", "price": 12.0, "updated_at": T2}

    outcome = ConflictResolver(store).resolve("products", remote)

    assert outcome is ConflictOutcome.REPLACED
    local = store.read("products", "prod_1")
    assert {k: local[k] for k in remote} == remote


@pytest.mark.parametrize("remote_ts", [T1, "2024-02-28T23:59:59.999Z"])
def test_same_or_older_remote_is_skipped(tmp_path: Path, remote_ts: str):
    store = _store_with_product(tmp_path, T1)

    outcome = ConflictResolver(store).resolve(
        "products", {"id": "prod_1", "name": "Remote name", "price": 12.0, "updated_at": remote_ts}
    )

    assert outcome is ConflictOutcome.SKIPPED
    assert store.read("products", "prod_1")["name"] == "Local name"


def test_missing_local_copy_is_inserted_and_unknown_remote_fields_dropped(tmp_path: Path):
    store = _store_with_product(tmp_path)

    outcome = ConflictResolver(store).resolve(
        "products",
        {"id": "prod_2", "name": "New", "price": 3.0, "updated_at": T2, "inventory": [{"quantity": 1}]},
    )

    assert outcome is ConflictOutcome.INSERTED
    assert store.read("products", "prod_2")["name"] == "New"
    assert store.count_pending() == 0


def test_remote_record_without_id_is_rejected(tmp_path: Path):
    store = _store_with_product(tmp_path)

    with pytest.raises(ValidationError):
        ConflictResolver(store).resolve("products", {"name": "No id"})


def test_timestamp_parsing_rules():
    assert remote_is_newer({"updated_at": "2024-03-01T11:00:00+01:00"}, {"updated_at": "2024-03-01T09:59:59Z"})
    assert not remote_is_newer({"updated_at": "2024-03-01T10:00:00"}, {"updated_at": "2024-03-01T10:00:00.000Z"})
    assert remote_is_newer({"updated_at": T1}, {"updated_at": "not a date"})
    assert not remote_is_newer({}, {"updated_at": None})


def test_pulled_inventory_takes_over_local_row_and_records_server_sync_movement(tmp_path: Path):
    c = make_container(tmp_path)
    c.data.initialize()
    pid = c.data.create_product({"name": "Insulin", "price": 40})
    local_inv = c.data.update_stock(pid, 10, "Restock")
    pending = c.data.get_pending_sync_count()

    remote_inv = {
        "id": "inv_remote",
        "product_id": pid,
        "quantity": 25,
        "reorder_point": 4,
        "updated_at": "2999-01-01T00:00:00.000Z",
    }
    outcome = ConflictResolver(c.store).resolve("inventory", remote_inv)

    assert outcome is ConflictOutcome.REPLACED
    rows = c.data.list("inventory", where={"product_id": pid})
    assert [(r["id"], r["quantity"]) for r in rows] == [("inv_remote", 25)]
    assert c.store.read("inventory", local_inv["id"]) is None
    synced = c.data.list("stock_movements", where={"product_id": pid, "reason": "Server sync"})
    assert [(m["type"], m["quantity"], m["user_id"]) for m in synced] == [("in", 15, "system")]
    assert c.data.get_pending_sync_count() == pending - 1
    (superseded,) = [e for e in c.store.list_entries() if e.record_id == local_inv["id"]]
    assert superseded.status == "synced"
    assert "inv_remote" in superseded.last_error


def test_pull_advances_last_sync_only_when_every_table_succeeds(tmp_path: Path):
    c = make_container(tmp_path)
    c.data.initialize()
    remote = FakeRemote(
        tables={"products": [{"id": "prod_r", "name": "Remote", "price": 2.0, "updated_at": T2}]},
        fail_tables={"sales"},
    )
    c.coordinator.remote = remote

    partial = c.coordinator.pull_once()
    assert partial.pulled == 1
    assert partial.errors
    assert c.store.get_last_sync_timestamp() == EPOCH_ISO

    remote.fail_tables.clear()
    full = c.coordinator.pull_once()
    assert full.errors == []
    assert full.pulled == 0
    assert remote.pulls[-1] == ("sales", EPOCH_ISO)
    advanced = c.store.get_last_sync_timestamp()
    assert advanced != EPOCH_ISO

    c.coordinator.pull_once()
    assert [ts for _, ts in remote.pulls[-3:]] == [advanced, advanced, advanced]


def test_pull_keeps_newer_local_edit(tmp_path: Path):
    c = make_container(tmp_path)
    c.data.initialize()
    pid = c.data.create_product({"name": "Local edit", "price": 5})
    remote = FakeRemote(tables={"products": [{"id": pid, "name": "Stale remote", "price": 5.0, "updated_at": T1}]})
    c.coordinator.remote = remote

    result = c.coordinator.pull_once()

    assert result.pulled == 0
    assert c.data.get("products", pid)["name"] == "Local edit"


def test_inventory_takeover_leaves_a_single_remote_row_after_drain(tmp_path: Path):
    c = make_container(tmp_path)
    c.data.initialize()
    pid = c.data.create_product({"name": "Salbutamol", "price": 15})
    c.data.update_stock(pid, 10, "Restock")
    remote = FakeRemote(
        tables={"inventory": [{"id": "inv_remote", "product_id": pid, "quantity": 25, "updated_at": "2999-01-01T00:00:00.000Z"}]}
    )
    c.coordinator.remote = remote

    c.coordinator.pull_once()
    c.coordinator.drain_once()

    remote_rows = [r["id"] for r in remote.tables["inventory"].values() if r["product_id"] == pid]
    assert remote_rows == ["inv_remote"]
    assert [r["id"] for r in c.data.list("inventory", where={"product_id": pid})] == ["inv_remote"]
    assert remote.tables["inventory"]["inv_remote"]["quantity"] == 25
    assert c.data.get_pending_sync_count() == 0


def test_newer_local_inventory_moves_onto_the_remote_id(tmp_path: Path):
    c = make_container(tmp_path)
    c.data.initialize()
    pid = c.data.create_product({"name": "Omeprazole", "price": 9})
    local_inv = c.data.update_stock(pid, 7, "Restock")
    remote = FakeRemote(tables={"inventory": [{"id": "inv_remote", "product_id": pid, "quantity": 3, "updated_at": T1}]})
    c.coordinator.remote = remote

    c.coordinator.pull_once()
    assert c.store.read("inventory", local_inv["id"]) is None
    assert c.store.read("inventory", "inv_remote")["quantity"] == 7

    c.coordinator.drain_once()

    assert list(remote.tables["inventory"]) == ["inv_remote"]
    assert remote.tables["inventory"]["inv_remote"]["quantity"] == 7
    assert c.data.get_pending_sync_count() == 0


def test_malformed_remote_quantity_is_a_validation_error(tmp_path: Path):
    store = _store_with_product(tmp_path)

    with pytest.raises(ValidationError, match="quantity"):
        ConflictResolver(store).resolve(
            "inventory", {"id": "inv_x", "product_id": "prod_1", "quantity": "lots", "updated_at": T2}
        )


@pytest.mark.parametrize(
    "value",
    ["2024-01-15T10:30:00.12+00:00", "2024-01-15T10:30:00.12345Z", "2024-01-15 10:30:00.1200000"],
)
def test_fractions_of_any_length_parse(value: str):
    parsed = parse_iso_datetime(value)

    assert parsed is not None
    assert parsed.replace(microsecond=0) == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
    assert remote_is_newer({"updated_at": value}, {"updated_at": "2024-01-15T10:29:59.999Z"})
