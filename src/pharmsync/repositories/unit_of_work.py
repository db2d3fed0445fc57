from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol

from pharmsync.domain.errors import LocalStoreUnavailable, ValidationError
from pharmsync.repositories.sqlite_store import (
    delete_row,
    enqueue_row,
    query_rows,
    read_row,
    rekey_queue_rows,
    supersede_queue_rows,
    write_row,
)


class UnitOfWork(Protocol):
    def __enter__(self) -> "UnitOfWork": ...
    def __exit__(self, exc_type, exc, tb) -> None: ...
    def read(self, table: str, record_id: str) -> Optional[dict]: ...
    def query(self, table: str, where: Optional[Mapping[str, Any]] = None, order_by: Optional[str] = None, limit: Optional[int] = None) -> list[dict]: ...
    def delete(self, table: str, record_id: str) -> bool: ...
    def write(self, table: str, record: Mapping[str, Any], *, strict: bool = True) -> dict: ...
    def enqueue(self, table: str, record_id: str, operation: str, data: Mapping[str, Any]) -> int: ...
    def supersede(self, table: str, record_id: str, reason: str) -> int: ...
    def rekey(self, table: str, old_id: str, new_id: str) -> int: ...


@dataclass
class LocalUnitOfWork:
    """One SQLite transaction spanning record writes and their sync queue entries.

    The write lock is taken on enter (BEGIN IMMEDIATE) so read-modify-write
    sequences such as stock updates can not interleave with another writer.
    Commits on a clean exit, rolls back on any exception.
    """

    store: Any
    conn: Optional[sqlite3.Connection] = field(default=None, init=False)

    def __enter__(self) -> "LocalUnitOfWork":
        self.conn = self.store._conn()
        try:
            self.conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            self.conn.close()
            self.conn = None
            raise LocalStoreUnavailable(f"Could not start local transaction: {exc}") from exc
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        conn = self.conn
        self.conn = None
        if conn is None:
            return None
        try:
            if exc_type is None:
                conn.commit()
            else:
                conn.rollback()
        except sqlite3.Error as commit_exc:
            conn.rollback()
            raise LocalStoreUnavailable(f"Could not commit local transaction: {commit_exc}") from commit_exc
        finally:
            conn.close()
        if isinstance(exc, sqlite3.IntegrityError):
            raise ValidationError(f"Constraint violated: {exc}") from exc
        if isinstance(exc, sqlite3.Error):
            raise LocalStoreUnavailable(str(exc)) from exc
        return None

    def _active(self) -> sqlite3.Connection:
        if self.conn is None:
            raise LocalStoreUnavailable("Unit of work is not active.")
        return self.conn

    def read(self, table: str, record_id: str) -> Optional[dict]:
        return read_row(self._active(), table, record_id)

    def query(self, table: str, where: Optional[Mapping[str, Any]] = None, order_by: Optional[str] = None, limit: Optional[int] = None) -> list[dict]:
        return query_rows(self._active(), table, where, order_by, limit)

    def write(self, table: str, record: Mapping[str, Any], *, strict: bool = True) -> dict:
        return write_row(self._active(), table, record, strict=strict)

    def delete(self, table: str, record_id: str) -> bool:
        return delete_row(self._active(), table, record_id)

    def enqueue(self, table: str, record_id: str, operation: str, data: Mapping[str, Any]) -> int:
        return enqueue_row(self._active(), table, record_id, operation, data)

    def supersede(self, table: str, record_id: str, reason: str) -> int:
        return supersede_queue_rows(self._active(), table, record_id, reason)

    def rekey(self, table: str, old_id: str, new_id: str) -> int:
        return rekey_queue_rows(self._active(), table, old_id, new_id)
