from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Optional

from openpyxl import load_workbook

from pharmsync.domain.errors import AppError, ValidationError

log = logging.getLogger(__name__)

REQUIRED_HEADERS = ("name", "category", "price")
OPTIONAL_HEADERS = (
    "id",
    "generic_name",
    "brand",
    "cost_price",
    "barcode",
    "supplier",
    "quantity",
    "reorder_point",
    "expiry_date",
)
PRODUCT_FIELDS = ("name", "category", "price", "generic_name", "brand", "cost_price", "barcode", "supplier")


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _iso_date(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return date.fromisoformat(str(value).strip()[:10]).isoformat()


class ExcelService:
    def __init__(self, data_service):
        self.data = data_service

    def import_catalog_excel(self, path: str, user_id: Optional[str] = None) -> tuple[int, int]:
        """
        Excel represents the CATALOG plus ABSOLUTE opening stock.
        Headers:
          name | category | price  (required)
          id | generic_name | brand | cost_price | barcode | supplier |
          quantity | reorder_point | expiry_date  (optional)
        """
        wb = load_workbook(path, read_only=True, data_only=True)
        try:
            ws = wb.worksheets[0]
            rows = ws.iter_rows(values_only=True)
            first = next(rows, None) or ()

            headers: dict[str, int] = {}
            for idx, v in enumerate(first):
                if isinstance(v, str) and v.strip():
                    headers[v.strip().lower()] = idx

            for r in REQUIRED_HEADERS:
                if r not in headers:
                    raise ValidationError(f"Missing column header: {r}")

            ok = 0
            skipped = 0
            for row_no, values in enumerate(rows, start=2):
                cells = {h: values[i] if i < len(values) else None for h, i in headers.items()}
                if all(v is None or v == "" for v in cells.values()):
                    continue
                try:
                    self._import_row(cells, user_id)
                    ok += 1
                except (AppError, TypeError, ValueError) as e:
                    log.warning("catalog_import_row_skipped row=%s error=%s", row_no, e)
                    skipped += 1
        finally:
            wb.close()

        log.info("catalog_import_completed path=%s ok=%s skipped=%s", path, ok, skipped)
        return ok, skipped

    def _import_row(self, cells: dict[str, Any], user_id: Optional[str]) -> str:
        if not _text(cells.get("name")) or not _text(cells.get("category")):
            raise ValidationError("Name and category are required.")
        if cells.get("price") is None:
            raise ValidationError("Price is required.")

        product: dict[str, Any] = {}
        for field in PRODUCT_FIELDS:
            if field not in cells or cells[field] is None or cells[field] == "":
                continue
            value = cells[field]
            product[field] = float(value) if field in ("price", "cost_price") else _text(value)

        existing = self._find_existing(_text(cells.get("id")), product.get("barcode"))
        if existing is not None:
            product_id = existing["id"]
            self.data.update_product(product_id, product)
        else:
            if _text(cells.get("id")):
                product["id"] = _text(cells["id"])
            product_id = self.data.create_product(product)

        quantity = cells.get("quantity")
        if quantity is not None and quantity != "":
            self.data.update_stock(product_id, int(float(quantity)), "Catalog import", user_id)

        inventory_patch: dict[str, Any] = {}
        if cells.get("reorder_point") not in (None, ""):
            inventory_patch["reorder_point"] = int(float(cells["reorder_point"]))
        expiry = _iso_date(cells.get("expiry_date"))
        if expiry:
            inventory_patch["expiry_date"] = expiry
        if inventory_patch:
            inv = self.data.list("inventory", where={"product_id": product_id})
            if not inv:
                # opening stock of zero still needs a row to carry the thresholds
                inv = [self.data.update_stock(product_id, 0, "Catalog import", user_id)]
            self.data.update("inventory", inv[0]["id"], inventory_patch)
        return product_id

    def _find_existing(self, product_id: Optional[str], barcode: Optional[str]) -> Optional[dict]:
        if product_id:
            return self.data.get("products", product_id)
        if barcode:
            matches = self.data.list("products", where={"barcode": barcode})
            return matches[0] if matches else None
        return None
