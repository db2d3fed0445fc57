import sys
import threading
import time
from pathlib import Path
from types import SimpleNamespace

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


class FakeRemote:
    """In-memory stand-in for the Supabase tables."""

    def __init__(self, tables=None, fail_ids=(), fail_tables=(), delay: float = 0.0):
        self.tables = {t: {r["id"]: dict(r) for r in rows} for t, rows in (tables or {}).items()}
        self.fail_ids = set(fail_ids)
        self.fail_tables = set(fail_tables)
        self.delay = delay
        self.calls = []
        self.pulls = []
        self.entered = threading.Event()
        self._lock = threading.Lock()

    def apply(self, entry):
        from pharmsync.domain.errors import RemoteUnavailable

        with self._lock:
            self.calls.append((entry.table_name, entry.record_id, entry.operation))
        self.entered.set()
        if self.delay:
            time.sleep(self.delay)
        if entry.record_id in self.fail_ids:
            raise RemoteUnavailable(f"forced failure for {entry.record_id}")

        rows = self.tables.setdefault(entry.table_name, {})
        if entry.operation == "insert":
            rows[entry.record_id] = {**rows.get(entry.record_id, {}), **entry.data}
        elif entry.operation == "update":
            if entry.record_id in rows:
                rows[entry.record_id].update(entry.data)
        elif entry.operation == "delete":
            rows.pop(entry.record_id, None)

    def changed_since(self, table, timestamp):
        from pharmsync.domain.errors import RemoteUnavailable
        from pharmsync.time_utils import timestamp_or_epoch

        self.pulls.append((table, timestamp))
        if table in self.fail_tables:
            raise RemoteUnavailable(f"forced pull failure for {table}")
        since = timestamp_or_epoch(timestamp)
        rows = [dict(r) for r in self.tables.get(table, {}).values() if timestamp_or_epoch(r.get("updated_at")) > since]
        return sorted(rows, key=lambda r: timestamp_or_epoch(r.get("updated_at")))


class FakeProbeSession:
    def __init__(self, online: bool = True, status_code: int = 200):
        self.online = online
        self.status_code = status_code
        self.calls = 0

    def head(self, url, timeout=None, allow_redirects=True):
        import requests

        self.calls += 1
        if not self.online:
            raise requests.ConnectionError("probe unreachable")
        return SimpleNamespace(status_code=self.status_code)


def make_container(tmp_path: Path, remote=None, online: bool = False, **settings):
    from pharmsync.application.container import build_container
    from pharmsync.config import SyncSettings
    from pharmsync.services.connectivity import ConnectivityMonitor

    opts = {"initial_sync_delay": 3600.0, "sync_interval": 3600.0}
    opts.update(settings)
    probe = ConnectivityMonitor("https://probe.test", session=FakeProbeSession(online))
    return build_container(
        tmp_path / "pharmsync.db",
        settings=SyncSettings(**opts),
        remote=remote if remote is not None else FakeRemote(),
        connectivity=probe,
        logs_dir=tmp_path / "logs",
    )
