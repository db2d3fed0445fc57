from .conflict import ConflictResolver
from .connectivity import ConnectivityMonitor
from .data_service import DataService
from .excel_service import ExcelService
from .operations_service import OperationsService
from .remote_store import SupabaseRemoteStore
from .sync_coordinator import SyncCoordinator, SyncState

__all__ = [
    "ConflictResolver",
    "ConnectivityMonitor",
    "DataService",
    "ExcelService",
    "OperationsService",
    "SupabaseRemoteStore",
    "SyncCoordinator",
    "SyncState",
]
