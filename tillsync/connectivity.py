# Connectivity Monitor - online/offline tracking for the TillSync till client
# Fires sync on reconnection; overlapping sync requests are dropped, not queued

import logging
import threading
from typing import Callable, List, Optional

from .sync_engine import SyncEngine, SyncReport

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Tracks reachability and drains the queue when the till comes back online"""

    def __init__(self, sync_engine: SyncEngine,
                 health_check: Optional[Callable[[], bool]] = None,
                 initially_online: bool = False):
        self.sync_engine = sync_engine
        self.health_check = health_check
        self._online = initially_online
        self._state_lock = threading.Lock()
        self._sync_lock = threading.Lock()
        self._online_callbacks: List[Callable[[], None]] = []
        self._offline_callbacks: List[Callable[[], None]] = []
        self.running = False
        self.thread = None
        self._stop_event = threading.Event()

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def sync_in_progress(self) -> bool:
        return self._sync_lock.locked()

    def on_online(self, callback: Callable[[], None]):
        self._online_callbacks.append(callback)

    def on_offline(self, callback: Callable[[], None]):
        self._offline_callbacks.append(callback)

    def set_online(self, online: bool) -> Optional[SyncReport]:
        """Feed a reachability signal. Returns the sync report when this call ran a sync."""
        online = bool(online)
        with self._state_lock:
            if online == self._online:
                return None
            self._online = online

        if not online:
            logger.warning(f"Connection lost - {self.pending_count()} transactions pending")
            self._notify(self._offline_callbacks)
            return None

        logger.info("Connection restored")
        self._notify(self._online_callbacks)
        return self.trigger_sync()

    def trigger_sync(self) -> Optional[SyncReport]:
        """Run one sync pass unless one is already running."""
        if not self._sync_lock.acquire(blocking=False):
            logger.info("Sync already in progress - request dropped")
            return None
        try:
            return self.sync_engine.sync_all()
        finally:
            self._sync_lock.release()

    def pending_count(self) -> int:
        return self.sync_engine.queue.pending_count()

    def start(self, interval: float = 15):
        """Poll the health check on a daemon thread"""
        if self.health_check is None:
            raise ValueError("A health check is required to poll connectivity")
        self.running = True
        self._stop_event.clear()
        self.thread = threading.Thread(target=self._poll, args=(interval,), daemon=True)
        self.thread.start()
        logger.info(f"Connectivity monitor started (every {interval}s)")

    def stop(self):
        self.running = False
        self._stop_event.set()
        if self.thread:
            self.thread.join(timeout=2)
        logger.info("Connectivity monitor stopped")

    def _poll(self, interval: float):
        retry_sync = False
        while self.running:
            try:
                report = self.check_now()
                if retry_sync and report is None and self._online:
                    # Still online after a failed pass; no transition will fire again
                    self.trigger_sync()
                retry_sync = False
            except Exception:
                logger.exception("Connectivity poll failed - retrying next interval")
                retry_sync = True
            self._stop_event.wait(interval)

    def check_now(self) -> Optional[SyncReport]:
        try:
            reachable = bool(self.health_check())
        except OSError as e:
            logger.debug(f"Health check failed: {e}")
            reachable = False
        return self.set_online(reachable)

    def _notify(self, callbacks):
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Connectivity callback failed")

    def get_status(self) -> dict:
        return {
            'online': self._online,
            'sync_in_progress': self.sync_in_progress,
            'pending_transactions': self.pending_count(),
            'polling': self.running,
        }
