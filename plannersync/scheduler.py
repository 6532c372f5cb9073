from __future__ import annotations

import logging
import threading
from typing import Optional

from plannersync.config_manager import ConfigManager
from plannersync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

IDLE_POLL_SECONDS = 60


class SyncScheduler:
    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="plannersync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _next_wait(self) -> tuple[float, bool]:
        try:
            config = self.config_manager.load()
        except Exception:
            logger.exception("Could not load config, retrying in %ss", IDLE_POLL_SECONDS)
            return IDLE_POLL_SECONDS, False
        if not config.sync.auto_sync:
            return IDLE_POLL_SECONDS, False
        return max(30, int(config.sync.interval_seconds)), True

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            timeout, auto_sync = self._next_wait()
            manual = self._manual_trigger_event.wait(timeout=timeout)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            if manual:
                self.sync_engine.run_once(trigger="manual", stop_event=self._stop_event)
            elif auto_sync:
                self.sync_engine.run_once(trigger="scheduled", stop_event=self._stop_event)
