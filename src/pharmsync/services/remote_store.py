from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import requests

from pharmsync.domain.errors import RemoteRejected, RemoteUnavailable
from pharmsync.domain.models import SyncQueueEntry
from pharmsync.repositories.sqlite_store import BUSINESS_TABLES

log = logging.getLogger("pharmsync.sync")


class RemoteStore(Protocol):
    def apply(self, entry: SyncQueueEntry) -> None: ...
    def changed_since(self, table: str, timestamp: str) -> list[dict]: ...


class SupabaseRemoteStore:
    """Thin wrapper over the Supabase PostgREST endpoints, one HTTP call per operation.

    Connection errors, timeouts and 5xx answers raise RemoteUnavailable; any other
    refusal (4xx, bad JSON, unknown table/operation) raises RemoteRejected.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        access_token: str = "",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self, prefer: Optional[str] = None) -> dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token or self.api_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _request(
        self,
        method: str,
        table: str,
        *,
        params: Optional[dict[str, str]] = None,
        json_body: Any = None,
        prefer: Optional[str] = None,
    ) -> requests.Response:
        if table not in BUSINESS_TABLES:
            raise RemoteRejected(f"Unknown remote table: {table}")
        if not self.base_url:
            raise RemoteUnavailable("Remote store is not configured.")

        url = f"{self.base_url}/rest/v1/{table}"
        try:
            r = self.session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=self._headers(prefer),
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise RemoteUnavailable(f"{method} {table} failed: {e}") from e
        except requests.RequestException as e:
            raise RemoteRejected(f"{method} {table} failed: {e}") from e

        if r.status_code >= 500:
            raise RemoteUnavailable(f"{method} {table} returned {r.status_code}: {r.text[:200]}")
        if r.status_code >= 400:
            raise RemoteRejected(f"{method} {table} returned {r.status_code}: {r.text[:200]}")
        return r

    def apply(self, entry: SyncQueueEntry) -> None:
        table = entry.table_name
        id_filter = {"id": f"eq.{entry.record_id}"}

        if entry.operation == "insert":
            # upsert so a retry after a lost response does not duplicate the row
            self._request(
                "POST",
                table,
                params={"on_conflict": "id"},
                json_body=[entry.data],
                prefer="resolution=merge-duplicates,return=minimal",
            )
        elif entry.operation == "update":
            self._request("PATCH", table, params=id_filter, json_body=entry.data, prefer="return=minimal")
        elif entry.operation == "delete":
            self._request("DELETE", table, params=id_filter, prefer="return=minimal")
        else:
            raise RemoteRejected(f"Unknown sync operation: {entry.operation}")

        log.debug("remote_applied table=%s id=%s op=%s", table, entry.record_id, entry.operation)

    def changed_since(self, table: str, timestamp: str) -> list[dict]:
        r = self._request(
            "GET",
            table,
            params={"select": "*", "updated_at": f"gt.{timestamp}", "order": "updated_at.asc"},
        )
        try:
            data = r.json()
        except ValueError as e:
            raise RemoteRejected(f"GET {table} returned invalid JSON: {e}") from e
        if not isinstance(data, list):
            raise RemoteRejected(f"GET {table} returned {type(data).__name__}, expected a list.")
        return [row for row in data if isinstance(row, dict)]
