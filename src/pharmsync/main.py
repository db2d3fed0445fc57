from __future__ import annotations

import logging
import time

from pharmsync.application.container import build_container
from pharmsync.config import SyncSettings, get_app_paths
from pharmsync.logging_config import setup_logging

log = logging.getLogger("pharmsync.agent")


def main() -> None:
    paths = get_app_paths()
    setup_logging(paths.logs_dir, level=logging.INFO)

    settings = SyncSettings.from_env()
    if not settings.supabase_url:
        log.warning("agent_remote_not_configured env=PHARMSYNC_SUPABASE_URL")

    container = build_container(paths.db_path, settings=settings, logs_dir=paths.logs_dir)
    container.data.initialize()
    container.connectivity.start()
    log.info(
        "agent_started db=%s sync_interval=%.0fs probe_interval=%.0fs pending=%s",
        paths.db_path,
        settings.sync_interval,
        settings.probe_interval,
        container.data.get_pending_sync_count(),
    )

    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        log.info("agent_interrupted")
    finally:
        container.data.close()
        log.info("agent_stopped pending=%s", container.store.count_pending())


if __name__ == "__main__":
    main()
