from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pharmsync.config import SyncSettings
from pharmsync.repositories.sqlite_store import SqliteLocalStore
from pharmsync.services.conflict import ConflictResolver
from pharmsync.services.connectivity import ConnectivityMonitor
from pharmsync.services.data_service import DataService
from pharmsync.services.excel_service import ExcelService
from pharmsync.services.operations_service import OperationsService
from pharmsync.services.remote_store import RemoteStore, SupabaseRemoteStore
from pharmsync.services.sync_coordinator import SyncCoordinator


@dataclass(frozen=True)
class AppContainer:
    settings: SyncSettings
    store: SqliteLocalStore
    remote: RemoteStore
    connectivity: ConnectivityMonitor
    coordinator: SyncCoordinator
    data: DataService
    excel: ExcelService
    operations: OperationsService


def build_container(
    db_path: Path | str,
    settings: Optional[SyncSettings] = None,
    remote: Optional[RemoteStore] = None,
    connectivity: Optional[ConnectivityMonitor] = None,
    logs_dir: Path | str | None = None,
) -> AppContainer:
    settings = settings or SyncSettings()
    store = SqliteLocalStore(db_path)

    remote = remote or SupabaseRemoteStore(
        settings.supabase_url,
        settings.supabase_key,
        access_token=settings.access_token,
        timeout=settings.request_timeout,
    )
    connectivity = connectivity or ConnectivityMonitor(
        settings.probe_url,
        interval=settings.probe_interval,
        timeout=min(settings.request_timeout, 5.0),
    )
    coordinator = SyncCoordinator(
        store,
        remote,
        ConflictResolver(store),
        interval=settings.sync_interval,
        initial_delay=settings.initial_sync_delay,
        batch_size=settings.batch_size,
        pull_enabled=settings.pull_enabled,
        retention_days=settings.retention_days,
    )
    data = DataService(store, coordinator, connectivity)
    excel = ExcelService(data)
    operations = OperationsService(
        data,
        db_path=db_path,
        logs_dir=Path(logs_dir) if logs_dir else Path(db_path).parent / "logs",
    )

    return AppContainer(
        settings=settings,
        store=store,
        remote=remote,
        connectivity=connectivity,
        coordinator=coordinator,
        data=data,
        excel=excel,
        operations=operations,
    )
