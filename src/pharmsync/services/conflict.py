from __future__ import annotations

import logging
import uuid
from typing import Any, Mapping

from pharmsync.domain.errors import ValidationError
from pharmsync.domain.models import ConflictOutcome
from pharmsync.time_utils import timestamp_or_epoch, utc_now_iso

log = logging.getLogger("pharmsync.sync")


def remote_is_newer(remote: Mapping[str, Any], local: Mapping[str, Any]) -> bool:
    """Strictly newer wins; missing/unparseable timestamps count as the epoch."""
    return timestamp_or_epoch(remote.get("updated_at")) > timestamp_or_epoch(local.get("updated_at"))


def _quantity(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid inventory quantity: {value!r}") from e


def movement_type(delta: int) -> str:
    if delta > 0:
        return "in"
    if delta < 0:
        return "out"
    return "adjustment"


class ConflictResolver:
    """Last-write-wins merge of pulled remote records into the local store.

    Writes made here are never enqueued: the remote already holds them. The one
    exception is a newer local inventory row moved onto the remote id.
    """

    def __init__(self, store):
        self.store = store

    def resolve(self, table: str, remote_record: Mapping[str, Any]) -> ConflictOutcome:
        remote = dict(remote_record)
        if not str(remote.get("id") or "").strip():
            raise ValidationError(f"Remote '{table}' record without id.")

        if table == "inventory":
            outcome = self._resolve_inventory(remote)
        else:
            with self.store.unit_of_work() as uow:
                local = uow.read(table, remote["id"])
                if local is None:
                    uow.write(table, remote, strict=False)
                    outcome = ConflictOutcome.INSERTED
                elif remote_is_newer(remote, local):
                    uow.write(table, remote, strict=False)
                    outcome = ConflictOutcome.REPLACED
                else:
                    outcome = ConflictOutcome.SKIPPED

        log.debug("conflict_resolved table=%s id=%s outcome=%s", table, remote["id"], outcome.value)
        return outcome

    def _resolve_inventory(self, remote: dict) -> ConflictOutcome:
        new_qty = _quantity(remote.get("quantity"))
        with self.store.unit_of_work() as uow:
            local = uow.read("inventory", remote["id"])
            if local is None and remote.get("product_id"):
                rows = uow.query("inventory", where={"product_id": str(remote["product_id"])}, limit=1)
                local = rows[0] if rows else None

            if local is None:
                outcome = ConflictOutcome.INSERTED
                old_qty = 0
            elif remote_is_newer(remote, local):
                outcome = ConflictOutcome.REPLACED
                old_qty = _quantity(local.get("quantity"))
                if local["id"] != remote["id"]:
                    # one inventory row per product: the remote id takes over and
                    # the unsent local writes lose to the newer remote row
                    uow.delete("inventory", local["id"])
                    uow.supersede("inventory", local["id"], f"Superseded by remote {remote['id']}")
            else:
                if local["id"] != remote["id"]:
                    # local row is newer: keep its values under the remote id
                    uow.delete("inventory", local["id"])
                    uow.write("inventory", {**local, "id": remote["id"]})
                    if not uow.rekey("inventory", local["id"], remote["id"]):
                        uow.enqueue("inventory", remote["id"], "insert", {**local, "id": remote["id"]})
                    log.info("inventory_rekeyed old=%s new=%s", local["id"], remote["id"])
                return ConflictOutcome.SKIPPED

            saved = uow.write("inventory", remote, strict=False)
            delta = new_qty - old_qty
            if delta != 0:
                now = utc_now_iso()
                uow.write(
                    "stock_movements",
                    {
                        "id": f"mov_{uuid.uuid4().hex}",
                        "product_id": saved["product_id"],
                        "type": movement_type(delta),
                        "quantity": abs(delta),
                        "reason": "Server sync",
                        "notes": f"Stock updated from {old_qty} to {saved.get('quantity')}",
                        "user_id": "system",
                        "timestamp": now,
                        "updated_at": now,
                    },
                )
            return outcome
