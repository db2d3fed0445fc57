from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

import requests

log = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Reachability probe (HTTP HEAD) on its own interval.

    Fail-closed: any exception or non 2xx/3xx answer means offline. Listeners
    are only called when the state flips.
    """

    def __init__(
        self,
        probe_url: str,
        interval: float = 30.0,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.probe_url = probe_url
        self.interval = float(interval)
        self.timeout = float(timeout)
        self.session = session or requests.Session()
        self.is_online = False
        self._listeners: list[Callable[[bool], None]] = []
        self._stop: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    def add_listener(self, listener: Callable[[bool], None]) -> None:
        self._listeners.append(listener)

    def probe(self) -> bool:
        try:
            r = self.session.head(self.probe_url, timeout=self.timeout, allow_redirects=True)
        except requests.RequestException as e:
            log.debug("connectivity_probe_failed url=%s error=%s", self.probe_url, e)
            return False
        return 200 <= r.status_code < 400

    def check(self) -> bool:
        online = self.probe()
        was_online = self.is_online
        self.is_online = online
        if online != was_online:
            log.info("connectivity_changed online=%s", online)
            for listener in list(self._listeners):
                try:
                    listener(online)
                except Exception:
                    log.exception("connectivity_listener_failed online=%s", online)
        return online

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        stop = threading.Event()
        self._stop = stop
        self._thread = threading.Thread(
            target=self._run, args=(stop,), name="pharmsync-connectivity", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        if self._stop is not None:
            self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and timeout is not None:
            thread.join(timeout)

    def _run(self, stop: threading.Event) -> None:
        self.check()
        while not stop.wait(self.interval):
            self.check()
