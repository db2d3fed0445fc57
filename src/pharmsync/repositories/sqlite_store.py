from __future__ import annotations

import json
import shutil
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, Optional

from pharmsync.domain.errors import LocalStoreUnavailable, NotFoundError, ValidationError
from pharmsync.domain.models import QueueStatus, SyncQueueEntry
from pharmsync.time_utils import EPOCH_ISO, to_utc_z, utc_now_iso, utcnow

BUSINESS_TABLES = ("products", "inventory", "sales", "sale_items", "stock_movements")
APPEND_ONLY_TABLES = frozenset({"stock_movements"})
QUEUE_OPERATIONS = ("insert", "update", "delete")
LAST_SYNC_KEY = "last_sync_timestamp"

# statuses list_pending() hands back to the drain; 'syncing' rows are only ever
# visible there when a previous pass died mid-entry
_ELIGIBLE = (QueueStatus.PENDING.value, QueueStatus.FAILED.value, QueueStatus.SYNCING.value)


def _check_table(table: str) -> str:
    if table not in BUSINESS_TABLES:
        raise ValidationError(f"Unknown table: {table}")
    return table


def _columns(conn: sqlite3.Connection, table: str) -> list[str]:
    return [str(r[1]) for r in conn.execute(f"PRAGMA table_info({_check_table(table)})").fetchall()]


def read_row(conn: sqlite3.Connection, table: str, record_id: str) -> Optional[dict]:
    row = conn.execute(f"SELECT * FROM {_check_table(table)} WHERE id = ?", (str(record_id),)).fetchone()
    return dict(row) if row else None


def write_row(conn: sqlite3.Connection, table: str, record: Mapping[str, Any], *, strict: bool = True) -> dict:
    """
    Insert or replace one row by id.

    strict=True rejects keys that are not columns of the table; strict=False drops
    them (used for remote payloads that carry joined/unknown fields).
    """
    cols = _columns(conn, table)
    record = dict(record)
    record_id = str(record.get("id") or "").strip()
    if not record_id:
        raise ValidationError(f"Record for '{table}' is missing an id.")
    record["id"] = record_id

    unknown = sorted(k for k in record if k not in cols)
    if unknown and strict:
        raise ValidationError(f"Unknown field(s) for '{table}': {', '.join(unknown)}")
    data = {k: v for k, v in record.items() if k in cols}

    if table in APPEND_ONLY_TABLES and read_row(conn, table, record_id) is not None:
        raise ValidationError(f"'{table}' is append-only; record {record_id} already exists.")

    names = list(data)
    placeholders = ", ".join("?" for _ in names)
    updates = ", ".join(f"{n}=excluded.{n}" for n in names if n != "id")
    sql = f"INSERT INTO {table} ({', '.join(names)}) VALUES ({placeholders})"
    if updates:
        sql += f" ON CONFLICT(id) DO UPDATE SET {updates}"
    else:
        sql += " ON CONFLICT(id) DO NOTHING"
    conn.execute(sql, [data[n] for n in names])
    return read_row(conn, table, record_id) or data


def delete_row(conn: sqlite3.Connection, table: str, record_id: str) -> bool:
    if _check_table(table) in APPEND_ONLY_TABLES:
        raise ValidationError(f"'{table}' is append-only; rows can not be deleted.")
    cur = conn.execute(f"DELETE FROM {table} WHERE id = ?", (str(record_id),))
    return cur.rowcount > 0


def query_rows(
    conn: sqlite3.Connection,
    table: str,
    where: Optional[Mapping[str, Any]] = None,
    order_by: Optional[str] = None,
    limit: Optional[int] = None,
) -> list[dict]:
    cols = _columns(conn, table)
    sql = f"SELECT * FROM {table}"
    params: list[Any] = []
    if where:
        clauses = []
        for key, value in where.items():
            if key not in cols:
                raise ValidationError(f"Unknown field for '{table}': {key}")
            if value is None:
                clauses.append(f"{key} IS NULL")
            else:
                clauses.append(f"{key} = ?")
                params.append(value)
        sql += " WHERE " + " AND ".join(clauses)
    if order_by:
        col, _, direction = order_by.partition(" ")
        direction = direction.strip().upper() or "ASC"
        if col not in cols or direction not in {"ASC", "DESC"}:
            raise ValidationError(f"Invalid ordering for '{table}': {order_by}")
        sql += f" ORDER BY {col} {direction}"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    return [dict(r) for r in conn.execute(sql, params).fetchall()]


def enqueue_row(conn: sqlite3.Connection, table: str, record_id: str, operation: str, data: Mapping[str, Any]) -> int:
    _check_table(table)
    if operation not in QUEUE_OPERATIONS:
        raise ValidationError(f"Unknown sync operation: {operation}")
    cur = conn.execute(
        """
        INSERT INTO sync_queue (table_name, record_id, operation, data, timestamp, retry_count, status)
        VALUES (?, ?, ?, ?, ?, 0, 'pending')
        """,
        (table, str(record_id), operation, json.dumps(dict(data), ensure_ascii=False, default=str), utc_now_iso()),
    )
    return int(cur.lastrowid)


def supersede_queue_rows(conn: sqlite3.Connection, table: str, record_id: str, reason: str) -> int:
    """Close every unsent entry of one record without sending it."""
    cur = conn.execute(
        "UPDATE sync_queue SET status='synced', last_error=? WHERE table_name=? AND record_id=? AND status != 'synced'",
        (reason, _check_table(table), str(record_id)),
    )
    return cur.rowcount


def rekey_queue_rows(conn: sqlite3.Connection, table: str, old_id: str, new_id: str) -> int:
    """Point every unsent entry of old_id at new_id, payload id included."""
    rows = conn.execute(
        "SELECT id, data FROM sync_queue WHERE table_name=? AND record_id=? AND status != 'synced'",
        (_check_table(table), str(old_id)),
    ).fetchall()
    for row in rows:
        try:
            data = json.loads(row["data"]) if row["data"] else {}
        except ValueError:
            data = {}
        data["id"] = str(new_id)
        conn.execute(
            "UPDATE sync_queue SET record_id=?, data=? WHERE id=?",
            (str(new_id), json.dumps(data, ensure_ascii=False, default=str), int(row["id"])),
        )
    return len(rows)


def _entry_from_row(row: sqlite3.Row) -> SyncQueueEntry:
    raw = row["data"]
    try:
        data = json.loads(raw) if raw else {}
    except ValueError:
        data = {}
    return SyncQueueEntry(
        id=int(row["id"]),
        table_name=str(row["table_name"]),
        record_id=str(row["record_id"]),
        operation=str(row["operation"]),
        data=data,
        status=str(row["status"]),
        retry_count=int(row["retry_count"]),
        timestamp=str(row["timestamp"]),
        last_error=row["last_error"],
    )


class SqliteLocalStore:
    def __init__(self, db_path: Path | str):
        self.db_path = str(db_path)
        self._initialized = False

    def _conn(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.db_path, timeout=30)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON;")
        except sqlite3.Error as exc:
            raise LocalStoreUnavailable(f"Could not open local database: {exc}") from exc
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._conn()
        try:
            yield conn
            conn.commit()
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise ValidationError(f"Constraint violated: {exc}") from exc
        except sqlite3.Error as exc:
            conn.rollback()
            raise LocalStoreUnavailable(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def is_initialized(self) -> bool:
        return self._initialized

    def init_db(self) -> None:
        self.run_migrations()
        self._initialized = True

    def unit_of_work(self):
        from pharmsync.repositories.unit_of_work import LocalUnitOfWork

        return LocalUnitOfWork(self)

    # ---------- Migrations ----------
    def _current_schema_version(self) -> int:
        conn = self._conn()
        try:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)")
            row = conn.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations").fetchone()
            conn.commit()
            return int(row[0])
        except sqlite3.Error as exc:
            raise LocalStoreUnavailable(f"Local database unavailable: {exc}") from exc
        finally:
            conn.close()

    def _migrations(self) -> list[tuple[int, Callable[[sqlite3.Cursor], None]]]:
        return [
            (1, self._migration_v1_base),
            (2, self._migration_v2_queue_diagnostics),
        ]

    def run_migrations(self) -> None:
        current_version = self._current_schema_version()
        pending = [(v, m) for v, m in self._migrations() if v > current_version]
        if not pending:
            return

        backup_path = self._create_pre_migration_backup()
        conn = self._conn()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN")
            for version, migration in pending:
                migration(cur)
                cur.execute(
                    "INSERT INTO schema_migrations (version, applied_at) VALUES (?, datetime('now'))",
                    (version,),
                )
            conn.commit()
        except Exception as exc:
            conn.rollback()
            self._restore_pre_migration_backup(backup_path)
            raise RuntimeError(
                "Database migration failed. Original database restored from automatic backup."
            ) from exc
        finally:
            conn.close()

    def _create_pre_migration_backup(self) -> Path | None:
        db_file = Path(self.db_path)
        if not db_file.exists() or db_file.stat().st_size == 0:
            return None
        backup_file = db_file.with_name(f"{db_file.stem}.pre_migration_{datetime.now().strftime('%Y%m%d%H%M%S')}.bak")
        shutil.copy2(db_file, backup_file)
        return backup_file

    def _restore_pre_migration_backup(self, backup_path: Path | None) -> None:
        if backup_path is None or not backup_path.exists():
            return
        shutil.copy2(backup_path, self.db_path)

    def _migration_v1_base(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS products (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            generic_name TEXT,
            brand TEXT,
            price REAL NOT NULL CHECK(price > 0),
            cost_price REAL CHECK(cost_price IS NULL OR cost_price >= 0),
            category TEXT,
            description TEXT,
            barcode TEXT,
            supplier TEXT,
            created_at TEXT,
            updated_at TEXT
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS inventory (
            id TEXT PRIMARY KEY,
            product_id TEXT NOT NULL,
            quantity INTEGER NOT NULL DEFAULT 0 CHECK(quantity >= 0),
            min_stock_level INTEGER NOT NULL DEFAULT 0 CHECK(min_stock_level >= 0),
            reorder_point INTEGER NOT NULL DEFAULT 0 CHECK(reorder_point >= 0),
            batch_number TEXT,
            expiry_date TEXT,
            location TEXT,
            last_restocked TEXT,
            created_at TEXT,
            updated_at TEXT,
            FOREIGN KEY(product_id) REFERENCES products(id)
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS sales (
            id TEXT PRIMARY KEY,
            customer_id TEXT,
            staff_id TEXT,
            total_amount REAL NOT NULL CHECK(total_amount >= 0),
            tax_amount REAL NOT NULL DEFAULT 0,
            discount_amount REAL NOT NULL DEFAULT 0,
            payment_method TEXT CHECK(payment_method IN ('cash','card','transfer')),
            status TEXT NOT NULL DEFAULT 'completed',
            transaction_date TEXT,
            receipt_number TEXT,
            created_at TEXT,
            updated_at TEXT
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS sale_items (
            id TEXT PRIMARY KEY,
            sale_id TEXT NOT NULL,
            product_id TEXT NOT NULL,
            quantity INTEGER NOT NULL CHECK(quantity > 0),
            unit_price REAL NOT NULL CHECK(unit_price > 0),
            total_price REAL NOT NULL,
            batch_number TEXT,
            created_at TEXT,
            updated_at TEXT,
            FOREIGN KEY(sale_id) REFERENCES sales(id) ON DELETE CASCADE,
            FOREIGN KEY(product_id) REFERENCES products(id)
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS stock_movements (
            id TEXT PRIMARY KEY,
            product_id TEXT NOT NULL,
            type TEXT NOT NULL CHECK(type IN ('in','out','adjustment')),
            quantity INTEGER NOT NULL CHECK(quantity >= 0),
            reason TEXT,
            notes TEXT,
            user_id TEXT,
            timestamp TEXT NOT NULL,
            updated_at TEXT,
            FOREIGN KEY(product_id) REFERENCES products(id)
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS sync_queue (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            table_name TEXT NOT NULL,
            record_id TEXT NOT NULL,
            operation TEXT NOT NULL CHECK(operation IN ('insert','update','delete')),
            data TEXT,
            timestamp TEXT NOT NULL,
            retry_count INTEGER NOT NULL DEFAULT 0 CHECK(retry_count >= 0),
            status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending','syncing','synced','failed'))
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS sync_metadata (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT
        )
        """
        )

    def _migration_v2_queue_diagnostics(self, cur: sqlite3.Cursor) -> None:
        self._add_column_if_missing(cur, "sync_queue", "last_error", "TEXT")

        cur.execute("CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue(status, timestamp)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_inventory_product_id ON inventory(product_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_products_barcode ON products(barcode)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_sale_items_sale_id ON sale_items(sale_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_stock_movements_product_id ON stock_movements(product_id)")

    def _add_column_if_missing(self, cur: sqlite3.Cursor, table: str, column: str, definition: str) -> None:
        cur.execute(f"PRAGMA table_info({table})")
        cols = {str(r[1]) for r in cur.fetchall()}
        if column in cols:
            return
        cur.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    # ---------- Records ----------
    def write(self, table: str, record: Mapping[str, Any], *, strict: bool = True) -> dict:
        with self._transaction() as conn:
            return write_row(conn, table, record, strict=strict)

    def read(self, table: str, record_id: str) -> Optional[dict]:
        with self._transaction() as conn:
            return read_row(conn, table, record_id)

    def delete(self, table: str, record_id: str) -> bool:
        with self._transaction() as conn:
            return delete_row(conn, table, record_id)

    def query(
        self,
        table: str,
        where: Optional[Mapping[str, Any]] = None,
        predicate: Optional[Callable[[dict], bool]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        with self._transaction() as conn:
            # the predicate runs in Python, so LIMIT has to wait until after it
            rows = query_rows(conn, table, where, order_by, None if predicate else limit)
        if predicate is not None:
            rows = [r for r in rows if predicate(r)]
            if limit is not None:
                rows = rows[: int(limit)]
        return rows

    def search_products(self, text: str) -> list[dict]:
        term = f"%{(text or '').strip().lower()}%"
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM products
                WHERE LOWER(name) LIKE ?
                   OR LOWER(COALESCE(generic_name, '')) LIKE ?
                   OR LOWER(COALESCE(brand, '')) LIKE ?
                   OR LOWER(COALESCE(category, '')) LIKE ?
                ORDER BY name ASC
                """,
                (term, term, term, term),
            ).fetchall()
        return [dict(r) for r in rows]

    def get_inventory_by_product(self, product_id: str) -> Optional[dict]:
        rows = self.query("inventory", where={"product_id": str(product_id)}, order_by="updated_at DESC", limit=1)
        return rows[0] if rows else None

    # ---------- Sync queue ----------
    def enqueue(self, table: str, record_id: str, operation: str, data: Mapping[str, Any]) -> int:
        with self._transaction() as conn:
            return enqueue_row(conn, table, record_id, operation, data)

    def list_pending(self, limit: int = 50) -> list[SyncQueueEntry]:
        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM sync_queue
                WHERE status IN ({", ".join("?" for _ in _ELIGIBLE)})
                ORDER BY id ASC
                LIMIT ?
                """,
                (*_ELIGIBLE, int(limit)),
            ).fetchall()
        return [_entry_from_row(r) for r in rows]

    def list_entries(self, status: Optional[str] = None, limit: Optional[int] = None) -> list[SyncQueueEntry]:
        sql = "SELECT * FROM sync_queue"
        params: list[Any] = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(str(status))
        sql += " ORDER BY id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_entry_from_row(r) for r in rows]

    def _set_entry_status(self, entry_id: int, sql: str, params: tuple) -> None:
        with self._transaction() as conn:
            cur = conn.execute(sql, params)
            if cur.rowcount == 0:
                raise NotFoundError(f"Sync queue entry {entry_id} not found.")

    def mark_syncing(self, entry_id: int) -> None:
        self._set_entry_status(entry_id, "UPDATE sync_queue SET status='syncing' WHERE id=?", (int(entry_id),))

    def mark_synced(self, entry_id: int) -> None:
        self._set_entry_status(
            entry_id,
            "UPDATE sync_queue SET status='synced', last_error=NULL WHERE id=?",
            (int(entry_id),),
        )

    def mark_failed(self, entry_id: int, error: Optional[str] = None) -> None:
        self._set_entry_status(
            entry_id,
            "UPDATE sync_queue SET status='failed', retry_count=retry_count + 1, last_error=? WHERE id=?",
            (error, int(entry_id)),
        )

    def count_pending(self) -> int:
        with self._transaction() as conn:
            row = conn.execute("SELECT COUNT(*) FROM sync_queue WHERE status != 'synced'").fetchone()
        return int(row[0])

    def count_failed(self) -> int:
        with self._transaction() as conn:
            row = conn.execute("SELECT COUNT(*) FROM sync_queue WHERE status = 'failed'").fetchone()
        return int(row[0])

    def purge_synced(self, older_than_days: int) -> int:
        if older_than_days < 0:
            raise ValidationError("Retention days must be >= 0.")
        cutoff = to_utc_z(utcnow() - timedelta(days=int(older_than_days)))
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM sync_queue WHERE status='synced' AND timestamp < ?", (cutoff,))
            return int(cur.rowcount)

    # ---------- Sync metadata ----------
    def get_last_sync_timestamp(self) -> str:
        with self._transaction() as conn:
            row = conn.execute("SELECT value FROM sync_metadata WHERE key=?", (LAST_SYNC_KEY,)).fetchone()
        return str(row[0]) if row else EPOCH_ISO

    def set_last_sync_timestamp(self, timestamp: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO sync_metadata (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """,
                (LAST_SYNC_KEY, str(timestamp), utc_now_iso()),
            )

    # ---------- Maintenance ----------
    def integrity_check(self) -> str:
        with self._transaction() as conn:
            row = conn.execute("PRAGMA integrity_check").fetchone()
        return str(row[0]) if row else "unknown"
