from __future__ import annotations
from PySide6 import QtCore
import logging
import threading
import time

from .collectors import ConnectionMonitor
from .detectors import scan
from .errors import TcpWardenError
from .optimizer import ConnectionController, OptimizationEngine, execute
from .stats import build_system_stats

logger = logging.getLogger(__name__)


class _PollRunnable(QtCore.QRunnable):
    """Runs one poll on a pool thread."""
    def __init__(self, poller: "StatsPoller"):
        super().__init__()
        self._poller = poller
        self.setAutoDelete(True)

    def run(self):
        self._poller.poll()


class StatsPoller(QtCore.QObject):
    """
    Acquisition runs on a pool thread; finished, immutable snapshots go back
    to the owning thread through queued signals. Only one poll is in flight
    at a time and an in-flight poll cannot be cancelled.
    """
    stats_ready     = QtCore.Signal(object)   # SystemStats
    anomalies_ready = QtCore.Signal(list)     # List[Anomaly]
    actions_ready   = QtCore.Signal(list)     # List[OptimizationAction]
    poll_failed     = QtCore.Signal(str)

    def __init__(self, monitor: ConnectionMonitor, engine: OptimizationEngine,
                 decide: bool = True, pool: QtCore.QThreadPool = None,
                 controller: ConnectionController = None):
        super().__init__()
        self.monitor = monitor
        self.engine = engine
        self.decide = decide
        # set to execute decided actions on the pool thread before emitting them
        self.controller = controller
        self._pool = pool
        self._flag_lock = threading.Lock()
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        with self._flag_lock:
            return self._in_flight

    def _claim(self) -> bool:
        with self._flag_lock:
            if self._in_flight:
                return False
            self._in_flight = True
            return True

    @QtCore.Slot()
    def request(self) -> bool:
        """Schedule a poll. Returns False when the previous one is still running."""
        if not self._claim():
            logger.debug("poll skipped, previous acquisition still running")
            return False
        pool = self._pool or QtCore.QThreadPool.globalInstance()
        pool.start(_PollRunnable(self))
        return True

    def poll(self) -> None:
        """
        RUNS ON POOL THREAD. Also callable directly; the in-flight flag is
        taken if nobody took it yet and always released at the end.
        """
        with self._flag_lock:
            self._in_flight = True
        try:
            start = time.monotonic()
            try:
                conns = self.monitor.list_all_connections()
                stats = build_system_stats(conns, self.monitor.port_range())
            except TcpWardenError as e:
                logger.error("acquisition failed: %s", e)
                self.poll_failed.emit(str(e))
                return

            anomalies = scan(stats)
            actions = self.engine.decide_all(stats) if self.decide else []
            if self.controller is not None:
                actions = [execute(a, self.controller, conns) for a in actions]
            logger.debug("poll finished in %.0f ms (%d connections)",
                         (time.monotonic() - start) * 1000, stats.total_connections)

            self.stats_ready.emit(stats)
            self.anomalies_ready.emit(anomalies)
            if actions:
                self.actions_ready.emit(actions)
        finally:
            with self._flag_lock:
                self._in_flight = False
