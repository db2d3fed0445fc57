from __future__ import annotations

import json
import logging
import zipfile
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path

from pharmsync.domain.models import QueueStatus

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthReport:
    sqlite_integrity: str
    db_size_bytes: int
    logs_count: int
    pending: int
    failed: int
    online: bool
    syncing: bool
    initialized: bool
    generated_at: str


class OperationsService:
    def __init__(self, data_service, db_path: Path | str, logs_dir: Path | str):
        self.data = data_service
        self.db_path = Path(db_path)
        self.logs_dir = Path(logs_dir)

    def run_health_check(self) -> HealthReport:
        health = self.data.health_check()
        logs_count = len(list(self.logs_dir.glob("*.log*"))) if self.logs_dir.exists() else 0
        size = self.db_path.stat().st_size if self.db_path.exists() else 0
        report = HealthReport(
            sqlite_integrity=health["sqlite_integrity"],
            db_size_bytes=size,
            logs_count=logs_count,
            pending=health["pending"],
            failed=health["failed"],
            online=health["online"],
            syncing=health["syncing"],
            initialized=health["initialized"],
            generated_at=datetime.now().isoformat(timespec="seconds"),
        )
        if report.sqlite_integrity != "ok":
            log.error("health_check_integrity_failed result=%s", report.sqlite_integrity)
        return report

    def export_diagnostics(self, target_dir: Path | str | None = None) -> Path:
        out_dir = Path(target_dir) if target_dir else self.db_path.parent
        out_dir.mkdir(parents=True, exist_ok=True)

        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        zip_path = out_dir / f"diagnostics_{ts}.zip"
        report = self.run_health_check()
        failed = [asdict(e) for e in self.data.store.list_entries(status=QueueStatus.FAILED.value)]

        with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            if self.db_path.exists():
                zf.write(self.db_path, arcname=self.db_path.name)

            if self.logs_dir.exists():
                for f in sorted(self.logs_dir.glob("*.log*")):
                    zf.write(f, arcname=f"logs/{f.name}")

            zf.writestr("health_report.json", json.dumps(asdict(report), ensure_ascii=False, indent=2))
            zf.writestr("failed_queue.json", json.dumps(failed, ensure_ascii=False, indent=2, default=str))

        log.info("diagnostics_exported path=%s failed_entries=%s", zip_path, len(failed))
        return zip_path
