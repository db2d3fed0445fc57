from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Iterable, Optional

from pharmsync.domain.errors import (
    AppError,
    LocalStoreUnavailable,
    NotFoundError,
    OfflineError,
    RemoteError,
)
from pharmsync.domain.models import ConflictOutcome, SyncResult, SyncStatus
from pharmsync.services.conflict import ConflictResolver
from pharmsync.time_utils import utc_now_iso

log = logging.getLogger("pharmsync.sync")

PULL_TABLES = ("products", "inventory", "sales")


@dataclass
class SyncState:
    is_online: bool = False
    is_syncing: bool = False
    is_initialized: bool = False

    def snapshot(self) -> SyncStatus:
        return SyncStatus(
            is_online=self.is_online,
            is_syncing=self.is_syncing,
            is_initialized=self.is_initialized,
        )


class SyncCoordinator:
    """Drains the local sync queue into the remote store and pulls remote changes back.

    Polling runs on a daemon thread with its own cancellation Event. Passes never
    overlap: the guard is taken with blocking=False, so a tick that lands while a
    pass is in flight is dropped rather than queued.
    """

    def __init__(
        self,
        store,
        remote,
        resolver: Optional[ConflictResolver] = None,
        state: Optional[SyncState] = None,
        *,
        interval: float = 300.0,
        initial_delay: float = 10.0,
        batch_size: int = 5,
        pull_enabled: bool = True,
        retention_days: int = 30,
        pull_tables: Iterable[str] = PULL_TABLES,
    ):
        self.store = store
        self.remote = remote
        self.resolver = resolver or ConflictResolver(store)
        self.state = state or SyncState()
        self.interval = float(interval)
        self.initial_delay = float(initial_delay)
        self.batch_size = int(batch_size)
        self.pull_enabled = bool(pull_enabled)
        self.retention_days = int(retention_days)
        self.pull_tables = tuple(pull_tables)

        self._guard = threading.Lock()
        self._timer_lock = threading.Lock()
        self._cancel: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    # ---------- State ----------
    def status(self) -> SyncStatus:
        return self.state.snapshot()

    def mark_initialized(self, initialized: bool = True) -> None:
        self.state.is_initialized = initialized

    @property
    def is_polling(self) -> bool:
        cancel, thread = self._cancel, self._thread
        return thread is not None and thread.is_alive() and cancel is not None and not cancel.is_set()

    def set_online(self, online: bool) -> None:
        was_online = self.state.is_online
        self.state.is_online = bool(online)
        if online and not was_online:
            log.info("sync_back_online starting_polling=%s", self.state.is_initialized)
            self.start_polling()
        elif was_online and not online:
            log.info("sync_went_offline stopping_polling=True")
            self.stop_polling()

    # ---------- Polling ----------
    def start_polling(self) -> bool:
        with self._timer_lock:
            if self.is_polling:
                return False
            if not (self.state.is_initialized and self.state.is_online):
                log.info(
                    "sync_polling_not_started initialized=%s online=%s",
                    self.state.is_initialized,
                    self.state.is_online,
                )
                return False
            cancel = threading.Event()
            self._cancel = cancel
            self._thread = threading.Thread(
                target=self._poll_loop, args=(cancel,), name="pharmsync-sync", daemon=True
            )
            self._thread.start()
        log.info("sync_polling_started interval=%.1fs initial_delay=%.1fs", self.interval, self.initial_delay)
        return True

    def stop_polling(self, timeout: Optional[float] = None) -> None:
        with self._timer_lock:
            cancel, thread = self._cancel, self._thread
            self._cancel = None
            self._thread = None
        if cancel is not None:
            cancel.set()
            log.info("sync_polling_stopped")
        # an in-flight pass is allowed to finish; only wait for it when asked to
        if thread is not None and timeout is not None:
            thread.join(timeout)

    def _poll_loop(self, cancel: threading.Event) -> None:
        if cancel.wait(self.initial_delay):
            return
        while True:
            self.tick()
            if cancel.wait(self.interval):
                return

    def tick(self) -> SyncResult:
        """Timer callback. Never raises; failures are logged."""
        if not self.state.is_online or not self.state.is_initialized:
            log.debug(
                "sync_tick_skipped online=%s initialized=%s",
                self.state.is_online,
                self.state.is_initialized,
            )
            return SyncResult(skipped=True)
        try:
            return self._run_guarded()
        except AppError as e:
            log.error("sync_pass_failed error=%s", e)
            return SyncResult(errors=[str(e)])
        except Exception as e:
            log.exception("sync_pass_crashed error=%s", e)
            return SyncResult(errors=[str(e)])

    def force_sync(self) -> SyncResult:
        if not self.state.is_online:
            raise OfflineError("No internet connection")
        if not self.state.is_initialized:
            raise LocalStoreUnavailable("Local store is not initialized.")
        return self._run_guarded()

    def _run_guarded(self) -> SyncResult:
        if not self._guard.acquire(blocking=False):
            log.info("sync_tick_skipped reason=in_flight")
            return SyncResult(skipped=True)
        self.state.is_syncing = True
        try:
            return self.run_sync()
        finally:
            self.state.is_syncing = False
            self._guard.release()

    def run_sync(self) -> SyncResult:
        """One drain, then a pull, then retention. Callers outside the guard must not overlap."""
        result = self.drain_once()
        if self.pull_enabled and self.state.is_online:
            pulled = self.pull_once()
            result.pulled = pulled.pulled
            result.errors.extend(pulled.errors)
        if self.retention_days > 0:
            purged = self.store.purge_synced(self.retention_days)
            if purged:
                log.info("sync_queue_purged removed=%s older_than_days=%s", purged, self.retention_days)
        return result

    # ---------- Draining ----------
    def drain_once(self) -> SyncResult:
        result = SyncResult()
        entries = self.store.list_pending(self.batch_size)
        if not entries:
            return result

        # a record whose earlier entry failed keeps its later entries queued behind it
        blocked: set[tuple[str, str]] = set()
        for entry in entries:
            key = (entry.table_name, entry.record_id)
            if key in blocked:
                result.deferred += 1
                log.info("sync_entry_deferred id=%s table=%s record=%s", entry.id, entry.table_name, entry.record_id)
                continue
            try:
                self.store.mark_syncing(entry.id)
            except (LocalStoreUnavailable, NotFoundError) as e:
                log.error("sync_mark_syncing_failed id=%s error=%s", entry.id, e)
                result.errors.append(f"{entry.table_name}:{entry.record_id} - {e}")
                blocked.add(key)
                continue

            try:
                self.remote.apply(entry)
            except RemoteError as e:
                result.failed += 1
                blocked.add(key)
                result.errors.append(f"{entry.table_name}:{entry.record_id} - {e}")
                log.warning(
                    "sync_entry_failed id=%s table=%s record=%s op=%s retry=%s error=%s",
                    entry.id,
                    entry.table_name,
                    entry.record_id,
                    entry.operation,
                    entry.retry_count + 1,
                    e,
                )
                try:
                    self.store.mark_failed(entry.id, str(e))
                except (LocalStoreUnavailable, NotFoundError) as le:
                    log.error("sync_mark_failed_failed id=%s error=%s", entry.id, le)
                continue

            try:
                self.store.mark_synced(entry.id)
            except (LocalStoreUnavailable, NotFoundError) as e:
                # left eligible; the upsert makes the re-send harmless
                log.error("sync_mark_synced_failed id=%s error=%s", entry.id, e)
                result.errors.append(f"{entry.table_name}:{entry.record_id} - {e}")
                blocked.add(key)
                continue
            result.synced += 1

        log.info(
            "sync_drain_completed synced=%s failed=%s deferred=%s batch=%s",
            result.synced,
            result.failed,
            result.deferred,
            len(entries),
        )
        return result

    # ---------- Pulling ----------
    def pull_once(self) -> SyncResult:
        result = SyncResult()
        started_at = utc_now_iso()
        since = self.store.get_last_sync_timestamp()
        complete = True

        for table in self.pull_tables:
            try:
                records = self.remote.changed_since(table, since)
            except RemoteError as e:
                complete = False
                result.errors.append(f"{table} - {e}")
                log.warning("sync_pull_failed table=%s since=%s error=%s", table, since, e)
                continue

            for record in records:
                try:
                    outcome = self.resolver.resolve(table, record)
                except AppError as e:
                    complete = False
                    result.errors.append(f"{table}:{record.get('id')} - {e}")
                    log.warning("sync_conflict_failed table=%s id=%s error=%s", table, record.get("id"), e)
                    continue
                if outcome is not ConflictOutcome.SKIPPED:
                    result.pulled += 1

        if complete:
            self.store.set_last_sync_timestamp(started_at)
        log.info("sync_pull_completed pulled=%s since=%s advanced=%s", result.pulled, since, complete)
        return result
