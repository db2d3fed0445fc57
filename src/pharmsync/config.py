from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os
import sys

from pharmsync.domain.errors import ValidationError


@dataclass(frozen=True)
class AppPaths:
    base_dir: Path
    db_path: Path
    logs_dir: Path


def _windows_appdata() -> Path:
    return Path(os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming")))


def _mac_app_support() -> Path:
    return Path.home() / "Library" / "Application Support"


def get_app_paths(app_name: str = "PharmSync") -> AppPaths:
    if sys.platform.startswith("win"):
        base = _windows_appdata() / app_name
    elif sys.platform == "darwin":
        base = _mac_app_support() / app_name
    else:
        base = Path.home() / f".{app_name.lower()}"

    logs = base / "logs"
    db = base / "pharmsync.db"

    base.mkdir(parents=True, exist_ok=True)
    logs.mkdir(parents=True, exist_ok=True)

    return AppPaths(base_dir=base, db_path=db, logs_dir=logs)


def _env_float(env: dict, name: str, default: float) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} must be a number. Received: {raw!r}") from exc
    if value < 0:
        raise ValidationError(f"{name} must be >= 0.")
    return value


def _env_int(env: dict, name: str, default: int) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} must be an integer. Received: {raw!r}") from exc
    if value <= 0:
        raise ValidationError(f"{name} must be > 0.")
    return value


def _env_bool(env: dict, name: str, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class SyncSettings:
    supabase_url: str = ""
    supabase_key: str = ""
    access_token: str = ""
    probe_url: str = "https://www.google.com"
    probe_interval: float = 30.0
    sync_interval: float = 300.0
    initial_sync_delay: float = 10.0
    batch_size: int = 5
    pull_enabled: bool = True
    retention_days: int = 30
    request_timeout: float = 10.0

    @classmethod
    def from_env(cls, env: dict | None = None) -> "SyncSettings":
        env = dict(os.environ if env is None else env)
        return cls(
            supabase_url=str(env.get("PHARMSYNC_SUPABASE_URL", "")).strip().rstrip("/"),
            supabase_key=str(env.get("PHARMSYNC_SUPABASE_KEY", "")).strip(),
            access_token=str(env.get("PHARMSYNC_ACCESS_TOKEN", "")).strip(),
            probe_url=str(env.get("PHARMSYNC_PROBE_URL", "")).strip() or cls.probe_url,
            probe_interval=_env_float(env, "PHARMSYNC_PROBE_INTERVAL", cls.probe_interval),
            sync_interval=_env_float(env, "PHARMSYNC_SYNC_INTERVAL", cls.sync_interval),
            initial_sync_delay=_env_float(env, "PHARMSYNC_INITIAL_SYNC_DELAY", cls.initial_sync_delay),
            batch_size=_env_int(env, "PHARMSYNC_BATCH_SIZE", cls.batch_size),
            pull_enabled=_env_bool(env, "PHARMSYNC_PULL_ENABLED", cls.pull_enabled),
            retention_days=_env_int(env, "PHARMSYNC_RETENTION_DAYS", cls.retention_days),
            request_timeout=_env_float(env, "PHARMSYNC_REQUEST_TIMEOUT", cls.request_timeout),
        )
