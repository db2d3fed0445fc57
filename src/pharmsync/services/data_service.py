from __future__ import annotations

import logging
import uuid
from collections import Counter
from datetime import date, datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from pharmsync.domain.errors import (
    AppError,
    InsufficientStockError,
    LocalStoreUnavailable,
    NotFoundError,
    OfflineError,
    ValidationError,
)
from pharmsync.domain.models import ForceSyncResult, InventoryAlert, SyncStatus
from pharmsync.repositories.sqlite_store import APPEND_ONLY_TABLES, BUSINESS_TABLES
from pharmsync.services.conflict import movement_type
from pharmsync.time_utils import utc_now_iso

log = logging.getLogger("pharmsync.data")

ID_PREFIXES = {
    "products": "prod",
    "inventory": "inv",
    "sales": "sale",
    "sale_items": "item",
    "stock_movements": "mov",
}
UNDELETABLE_TABLES = frozenset({"stock_movements", "sale_items"})
EXPIRY_WINDOW_DAYS = 30
SEVERITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3}


def new_id(table: str) -> str:
    return f"{ID_PREFIXES[table]}_{uuid.uuid4().hex}"


def _table(table: str) -> str:
    if table not in BUSINESS_TABLES:
        raise ValidationError(f"Unknown table: {table}")
    return table


def _int(value: Any, label: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{label} must be an integer.") from e


def _float(value: Any, label: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{label} must be a number.") from e


class DataService:
    """
    Local-first facade used by every caller.

    Each mutation writes to SQLite and records the matching sync queue entries in
    the same transaction, then returns. Nothing here waits on the network except
    force_sync().
    """

    def __init__(self, store, coordinator, connectivity=None):
        self.store = store
        self.coordinator = coordinator
        self.connectivity = connectivity
        if connectivity is not None:
            connectivity.add_listener(coordinator.set_online)

    # ---------- Lifecycle ----------
    def initialize(self) -> None:
        if self.coordinator.state.is_initialized:
            return
        try:
            self.store.init_db()
        except RuntimeError as e:
            raise LocalStoreUnavailable(str(e)) from e
        self.coordinator.mark_initialized()
        log.info("data_service_initialized db=%s", self.store.db_path)

        if self.connectivity is not None:
            online = self.connectivity.check()
            self.coordinator.state.is_online = online
            if online:
                self.coordinator.start_polling()

    def close(self) -> None:
        if self.connectivity is not None:
            self.connectivity.stop()
        self.coordinator.stop_polling()
        log.info("data_service_closed")

    # ---------- Generic records ----------
    def create(self, table: str, payload: Mapping[str, Any]) -> str:
        _table(table)
        record = dict(payload)
        if table == "inventory" and _int(record.get("quantity") or 0, "Quantity") != 0:
            raise ValidationError("Inventory quantity is set through update_stock.")

        now = utc_now_iso()
        record_id = str(record.get("id") or "").strip() or new_id(table)
        record["id"] = record_id
        record["updated_at"] = now
        if table == "stock_movements":
            record.setdefault("timestamp", now)
        else:
            record.setdefault("created_at", now)

        with self.store.unit_of_work() as uow:
            if uow.read(table, record_id) is not None:
                raise ValidationError(f"{table} record {record_id} already exists.")
            saved = uow.write(table, record)
            uow.enqueue(table, record_id, "insert", saved)
        log.info("record_created table=%s id=%s", table, record_id)
        return record_id

    def update(self, table: str, record_id: str, patch: Mapping[str, Any]) -> dict:
        _table(table)
        patch = dict(patch)
        if table in APPEND_ONLY_TABLES:
            raise ValidationError(f"'{table}' is append-only.")
        if "id" in patch and str(patch["id"]) != str(record_id):
            raise ValidationError("Record ids can not be changed.")
        if table == "inventory" and "quantity" in patch:
            raise ValidationError("Inventory quantity is set through update_stock.")
        patch.pop("id", None)

        with self.store.unit_of_work() as uow:
            current = uow.read(table, record_id)
            if current is None:
                raise NotFoundError(f"{table} record {record_id} not found.")
            merged = {**current, **patch, "id": current["id"], "updated_at": utc_now_iso()}
            saved = uow.write(table, merged)
            uow.enqueue(table, saved["id"], "update", saved)
        log.info("record_updated table=%s id=%s fields=%s", table, record_id, ",".join(sorted(patch)))
        return saved

    def delete(self, table: str, record_id: str) -> None:
        _table(table)
        if table in UNDELETABLE_TABLES:
            raise ValidationError(f"'{table}' records can not be deleted.")
        with self.store.unit_of_work() as uow:
            if not uow.delete(table, record_id):
                raise NotFoundError(f"{table} record {record_id} not found.")
            uow.enqueue(table, record_id, "delete", {"id": record_id})
        log.info("record_deleted table=%s id=%s", table, record_id)

    def get(self, table: str, record_id: str) -> Optional[dict]:
        return self.store.read(_table(table), record_id)

    def list(self, table: str, where: Optional[Mapping[str, Any]] = None) -> list[dict]:
        return self.store.query(_table(table), where=where)

    # ---------- Products ----------
    def create_product(self, payload: Mapping[str, Any]) -> str:
        record = dict(payload)
        name = str(record.get("name") or "").strip()
        if not name:
            raise ValidationError("Product name is required.")
        price = _float(record.get("price"), "Price")
        if price <= 0:
            raise ValidationError("Price must be > 0.")
        cost = record.get("cost_price")
        if cost is not None and _float(cost, "Cost") < 0:
            raise ValidationError("Cost must be >= 0.")

        record.update(name=name, price=price)
        if cost is not None:
            record["cost_price"] = float(cost)
        return self.create("products", record)

    def update_product(self, product_id: str, patch: Mapping[str, Any]) -> dict:
        patch = dict(patch)
        if "name" in patch and not str(patch["name"] or "").strip():
            raise ValidationError("Product name is required.")
        if "price" in patch and _float(patch["price"], "Price") <= 0:
            raise ValidationError("Price must be > 0.")
        if patch.get("cost_price") is not None and _float(patch["cost_price"], "Cost") < 0:
            raise ValidationError("Cost must be >= 0.")
        return self.update("products", product_id, patch)

    def search_products(self, text: str) -> list[dict]:
        return self.store.search_products(text)

    # ---------- Stock ----------
    def update_stock(
        self,
        product_id: str,
        new_quantity: int,
        reason: str,
        user_id: Optional[str] = None,
    ) -> dict:
        qty = _int(new_quantity, "Quantity")
        if qty < 0:
            raise ValidationError("Quantity must be >= 0.")

        now = utc_now_iso()
        with self.store.unit_of_work() as uow:
            if uow.read("products", product_id) is None:
                raise NotFoundError("Product not found.")
            rows = uow.query("inventory", where={"product_id": product_id}, order_by="updated_at DESC", limit=1)
            if rows:
                current, operation = rows[0], "update"
            else:
                current = {"id": new_id("inventory"), "product_id": product_id, "created_at": now}
                operation = "insert"

            old_qty = int(current.get("quantity") or 0)
            delta = qty - old_qty
            row = {**current, "quantity": qty, "updated_at": now}
            if delta > 0:
                row["last_restocked"] = now
            saved = uow.write("inventory", row)
            uow.enqueue("inventory", saved["id"], operation, saved)
            self._append_movement(
                uow, product_id, delta, reason, user_id, now, notes=f"Stock updated from {old_qty} to {qty}"
            )

        log.info("stock_updated product_id=%s from=%s to=%s reason=%s user=%s", product_id, old_qty, qty, reason, user_id)
        return saved

    def _append_movement(self, uow, product_id: str, delta: int, reason: str, user_id, now: str, notes: Optional[str] = None) -> dict:
        movement = {
            "id": new_id("stock_movements"),
            "product_id": product_id,
            "type": movement_type(delta),
            "quantity": abs(delta),
            "reason": reason,
            "notes": notes,
            "user_id": user_id,
            "timestamp": now,
            "updated_at": now,
        }
        saved = uow.write("stock_movements", movement)
        uow.enqueue("stock_movements", saved["id"], "insert", saved)
        return saved

    # ---------- Sales ----------
    def create_sale(self, sale: Mapping[str, Any], items: Iterable[Mapping[str, Any]]) -> str:
        """
        items: [{product_id, quantity, unit_price, batch_number?}]
        """
        items = list(items)
        if not items:
            raise ValidationError("Cart is empty.")

        # aggregate per product so split lines can not oversell
        qty_by_product: Counter[str] = Counter()
        for it in items:
            product_id = str(it.get("product_id") or "").strip()
            if not product_id:
                raise ValidationError("Sale item is missing a product.")
            if _int(it.get("quantity"), "Quantity") <= 0:
                raise ValidationError("Quantity must be >= 1.")
            if _float(it.get("unit_price"), "Unit price") <= 0:
                raise ValidationError("Unit price must be > 0.")
            qty_by_product[product_id] += int(it["quantity"])

        now = utc_now_iso()
        sale_row = dict(sale)
        sale_id = str(sale_row.get("id") or "").strip() or new_id("sales")
        subtotal = round(sum(int(it["quantity"]) * float(it["unit_price"]) for it in items), 2)
        sale_row.update(id=sale_id, created_at=now, updated_at=now)
        sale_row.setdefault("status", "completed")
        sale_row.setdefault("transaction_date", now)
        sale_row.setdefault("total_amount", subtotal)

        with self.store.unit_of_work() as uow:
            stock_rows: dict[str, dict] = {}
            for product_id, qty in qty_by_product.items():
                product = uow.read("products", product_id)
                if product is None:
                    raise NotFoundError("Product not found.")
                rows = uow.query("inventory", where={"product_id": product_id}, order_by="updated_at DESC", limit=1)
                available = int(rows[0]["quantity"] or 0) if rows else 0
                if qty > available:
                    raise InsufficientStockError(f"Not enough stock for {product['name']}. Available: {available}")
                stock_rows[product_id] = rows[0]

            saved_sale = uow.write("sales", sale_row)
            uow.enqueue("sales", sale_id, "insert", saved_sale)

            for it in items:
                qty, unit_price = int(it["quantity"]), float(it["unit_price"])
                line = uow.write(
                    "sale_items",
                    {
                        "id": str(it.get("id") or "").strip() or new_id("sale_items"),
                        "sale_id": sale_id,
                        "product_id": str(it["product_id"]).strip(),
                        "quantity": qty,
                        "unit_price": unit_price,
                        "total_price": round(qty * unit_price, 2),
                        "batch_number": it.get("batch_number"),
                        "created_at": now,
                        "updated_at": now,
                    },
                )
                uow.enqueue("sale_items", line["id"], "insert", line)

            for product_id, qty in qty_by_product.items():
                inv = stock_rows[product_id]
                saved_inv = uow.write("inventory", {**inv, "quantity": int(inv["quantity"]) - qty, "updated_at": now})
                uow.enqueue("inventory", saved_inv["id"], "update", saved_inv)
                self._append_movement(
                    uow, product_id, -qty, "Sale", sale_row.get("staff_id"), now, notes=f"Sale {sale_id}"
                )

        log.info(
            "sale_created sale_id=%s items=%s total=%.2f staff=%s",
            sale_id,
            len(items),
            float(saved_sale["total_amount"]),
            sale_row.get("staff_id"),
        )
        return sale_id

    # ---------- Alerts ----------
    def inventory_alerts(self, today: Optional[date] = None) -> list[InventoryAlert]:
        today = today or datetime.now(timezone.utc).date()
        now = utc_now_iso()
        names = {p["id"]: p["name"] for p in self.store.query("products")}
        alerts: list[InventoryAlert] = []

        def add(kind: str, item: dict, message: str, severity: str, action_required: bool = True) -> None:
            pid = item["product_id"]
            alerts.append(
                InventoryAlert(
                    id=f"alert_{pid}_{kind}",
                    type=kind,
                    product_id=pid,
                    product_name=names.get(pid, pid),
                    message=message,
                    severity=severity,
                    timestamp=now,
                    action_required=action_required,
                )
            )

        for item in self.store.query("inventory"):
            qty = int(item.get("quantity") or 0)
            reorder = int(item.get("reorder_point") or 0)
            if qty == 0:
                add("out_of_stock", item, "Product is out of stock", "critical")
            elif qty <= reorder:
                add(
                    "low_stock",
                    item,
                    f"Stock is running low ({qty} left, reorder at {reorder})",
                    "high" if qty <= reorder / 2 else "medium",
                )

            expiry = _expiry_date(item.get("expiry_date"))
            if expiry is None:
                continue
            days_left = (expiry - today).days
            if days_left <= 0:
                add("expired", item, f"Product has expired ({item['expiry_date']})", "critical")
            elif days_left <= EXPIRY_WINDOW_DAYS:
                add(
                    "expiring_soon",
                    item,
                    f"Product expires in {days_left} day{'s' if days_left != 1 else ''}",
                    "high" if days_left <= 7 else "medium",
                    action_required=days_left <= 7,
                )

        alerts.sort(key=lambda a: SEVERITY_ORDER.get(a.severity, len(SEVERITY_ORDER)))
        return alerts

    # ---------- Sync surface ----------
    def force_sync(self) -> ForceSyncResult:
        try:
            result = self.coordinator.force_sync()
        except OfflineError as e:
            return ForceSyncResult(success=False, error=str(e))
        except AppError as e:
            log.error("force_sync_failed error=%s", e)
            return ForceSyncResult(success=False, error=str(e))

        if result.skipped:
            return ForceSyncResult(success=False, error="Sync already in progress")
        if result.failed or result.errors:
            return ForceSyncResult(
                success=False,
                error=f"{len(result.errors)} sync error(s); first: {result.errors[0]}",
            )
        return ForceSyncResult(success=True)

    def get_sync_status(self) -> SyncStatus:
        return self.coordinator.status()

    def get_pending_sync_count(self) -> int:
        return self.store.count_pending()

    def health_check(self) -> dict[str, Any]:
        status = self.get_sync_status()
        integrity = self.store.integrity_check()
        return {
            "local_ok": integrity == "ok",
            "sqlite_integrity": integrity,
            "pending": self.store.count_pending(),
            "failed": self.store.count_failed(),
            "online": status.is_online,
            "syncing": status.is_syncing,
            "initialized": status.is_initialized,
        }


def _expiry_date(value: Any) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None
